"""
Error taxonomy and request contracts.

Every failure a core operation can raise is one of the LedgerError kinds
below; routes map the kind to an HTTP status without inspecting messages.

Request payloads are parsed once at the HTTP boundary into frozen
dataclasses. Services receive these typed values and only check business
rules (stock on hand, document state, tenancy), never primitive shape.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from .time_utils import parse_iso_date


# Maximum money amount accepted on input: 9,999,999.99 in minor units
MAX_AMOUNT_CENTS = 999_999_999
MAX_QUANTITY = 1_000_000

PAYMENT_METHODS = ("CASH", "CARD", "MOBILE_MONEY", "BANK_TRANSFER", "CREDIT")
SETTLEMENT_METHODS = ("CASH", "CARD", "MOBILE_MONEY", "BANK_TRANSFER")
RETURN_TYPES = ("REFUND", "EXCHANGE")
DISPOSITIONS = ("RETURN_TO_STOCK", "DAMAGED")
ADJUSTMENT_MODES = ("ADD", "REMOVE", "SET")
CASH_DIRECTIONS = ("PAY_IN", "PAY_OUT")


class LedgerError(Exception):
    """Base class for typed business failures."""
    kind = "error"
    status_code = 500

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind, "details": self.details}


class ValidationError(LedgerError, ValueError):
    """400-level input problem; nothing was written."""
    kind = "validation"
    status_code = 400


class SignatureError(ValidationError):
    """Webhook payload failed signature verification."""
    kind = "invalid_signature"
    status_code = 401


class NotFoundError(LedgerError, LookupError):
    """Entity absent, or present in another organization (indistinguishable)."""
    kind = "not_found"
    status_code = 404


class ConflictError(LedgerError):
    """409-level invariant violation."""
    kind = "conflict"
    status_code = 409


class NegativeStockError(ConflictError):
    kind = "negative_stock"


class InsufficientStockError(ConflictError):
    kind = "insufficient_stock"


class ConcurrencyConflictError(ConflictError):
    kind = "concurrent_write"


class StaleStateError(LedgerError):
    """Operation references a document that is already voided/completed/paid."""
    kind = "stale_state"
    status_code = 409


# =============================================================================
# PRIMITIVE PARSERS
# =============================================================================

def parse_int(value: Any, name: str) -> int:
    """Strict integer parsing: rejects floats, bools and scientific notation."""
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    raise ValidationError(f"{name} must be an integer")


def _get_int(payload: dict, name: str, *, required: bool = True, default: int | None = None,
             minimum: int | None = None, maximum: int | None = None) -> Optional[int]:
    raw = payload.get(name)
    if raw is None:
        if required:
            raise ValidationError(f"{name} is required")
        return default
    value = parse_int(raw, name)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{name} cannot exceed {maximum}")
    return value


def _get_str(payload: dict, name: str, *, max_length: int = 255) -> Optional[str]:
    raw = payload.get(name)
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    if len(value) > max_length:
        raise ValidationError(f"{name} exceeds max length {max_length}")
    return value


def _get_choice(payload: dict, name: str, choices: tuple[str, ...], *, default: str | None = None) -> str:
    raw = payload.get(name, default)
    if raw is None:
        raise ValidationError(f"{name} is required")
    value = str(raw).strip().upper()
    if value not in choices:
        raise ValidationError(f"{name} must be one of: {', '.join(choices)}")
    return value


def _get_date(payload: dict, name: str) -> Optional[date]:
    raw = payload.get(name)
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{name} must be an ISO-8601 date")
    try:
        return parse_iso_date(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


def _get_lines(payload: dict, name: str = "items") -> list[dict]:
    raw = payload.get(name)
    if not isinstance(raw, list) or not raw:
        raise ValidationError(f"{name} must be a non-empty list")
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError(f"each entry in {name} must be an object")
    return raw


def _require_object(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


# =============================================================================
# REQUEST CONTRACTS
# =============================================================================

@dataclass(frozen=True)
class SaleLineRequest:
    product_id: int
    quantity: int
    unit_price_cents: Optional[int] = None
    discount_cents: int = 0

    @classmethod
    def from_json(cls, payload: dict) -> "SaleLineRequest":
        return cls(
            product_id=_get_int(payload, "product_id", minimum=1),
            quantity=_get_int(payload, "quantity", minimum=1, maximum=MAX_QUANTITY),
            unit_price_cents=_get_int(payload, "unit_price_cents", required=False,
                                      minimum=0, maximum=MAX_AMOUNT_CENTS),
            discount_cents=_get_int(payload, "discount_cents", required=False, default=0,
                                    minimum=0, maximum=MAX_AMOUNT_CENTS),
        )


@dataclass(frozen=True)
class SaleRequest:
    location_id: int
    lines: tuple[SaleLineRequest, ...]
    payment_method: str = "CASH"
    customer_id: Optional[int] = None
    amount_paid_cents: Optional[int] = None
    notes: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "SaleRequest":
        payload = _require_object(payload)
        return cls(
            location_id=_get_int(payload, "location_id", minimum=1),
            lines=tuple(SaleLineRequest.from_json(p) for p in _get_lines(payload)),
            payment_method=_get_choice(payload, "payment_method", PAYMENT_METHODS, default="CASH"),
            customer_id=_get_int(payload, "customer_id", required=False, minimum=1),
            amount_paid_cents=_get_int(payload, "amount_paid_cents", required=False,
                                       minimum=0, maximum=MAX_AMOUNT_CENTS),
            notes=_get_str(payload, "notes", max_length=1000),
        )


@dataclass(frozen=True)
class ReturnLineRequest:
    sale_item_id: int
    quantity: int
    disposition: str = "RETURN_TO_STOCK"
    batch_id: Optional[int] = None

    @classmethod
    def from_json(cls, payload: dict) -> "ReturnLineRequest":
        return cls(
            sale_item_id=_get_int(payload, "sale_item_id", minimum=1),
            quantity=_get_int(payload, "quantity", minimum=1, maximum=MAX_QUANTITY),
            disposition=_get_choice(payload, "disposition", DISPOSITIONS, default="RETURN_TO_STOCK"),
            batch_id=_get_int(payload, "batch_id", required=False, minimum=1),
        )


@dataclass(frozen=True)
class ReturnRequest:
    sale_id: int
    lines: tuple[ReturnLineRequest, ...]
    return_type: str = "REFUND"
    refund_method: str = "CASH"
    reason: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "ReturnRequest":
        payload = _require_object(payload)
        return cls(
            sale_id=_get_int(payload, "sale_id", minimum=1),
            lines=tuple(ReturnLineRequest.from_json(p) for p in _get_lines(payload)),
            return_type=_get_choice(payload, "return_type", RETURN_TYPES, default="REFUND"),
            refund_method=_get_choice(payload, "refund_method", SETTLEMENT_METHODS, default="CASH"),
            reason=_get_str(payload, "reason", max_length=1000),
        )


@dataclass(frozen=True)
class TransferLineRequest:
    product_id: int
    quantity: int

    @classmethod
    def from_json(cls, payload: dict) -> "TransferLineRequest":
        return cls(
            product_id=_get_int(payload, "product_id", minimum=1),
            quantity=_get_int(payload, "quantity", minimum=1, maximum=MAX_QUANTITY),
        )


@dataclass(frozen=True)
class TransferRequest:
    from_location_id: int
    to_location_id: int
    lines: tuple[TransferLineRequest, ...]
    notes: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "TransferRequest":
        payload = _require_object(payload)
        req = cls(
            from_location_id=_get_int(payload, "from_location_id", minimum=1),
            to_location_id=_get_int(payload, "to_location_id", minimum=1),
            lines=tuple(TransferLineRequest.from_json(p) for p in _get_lines(payload)),
            notes=_get_str(payload, "notes", max_length=1000),
        )
        if req.from_location_id == req.to_location_id:
            raise ValidationError("from_location_id and to_location_id must differ")
        return req


@dataclass(frozen=True)
class PurchaseOrderLineRequest:
    product_id: int
    quantity_ordered: int
    unit_cost_cents: int = 0

    @classmethod
    def from_json(cls, payload: dict) -> "PurchaseOrderLineRequest":
        return cls(
            product_id=_get_int(payload, "product_id", minimum=1),
            quantity_ordered=_get_int(payload, "quantity_ordered", minimum=1, maximum=MAX_QUANTITY),
            unit_cost_cents=_get_int(payload, "unit_cost_cents", required=False, default=0,
                                     minimum=0, maximum=MAX_AMOUNT_CENTS),
        )


@dataclass(frozen=True)
class PurchaseOrderRequest:
    location_id: int
    lines: tuple[PurchaseOrderLineRequest, ...]
    supplier_name: Optional[str] = None
    expected_date: Optional[date] = None
    notes: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "PurchaseOrderRequest":
        payload = _require_object(payload)
        lines = tuple(PurchaseOrderLineRequest.from_json(p) for p in _get_lines(payload))
        product_ids = [line.product_id for line in lines]
        if len(product_ids) != len(set(product_ids)):
            raise ValidationError("each product may appear only once per purchase order")
        return cls(
            location_id=_get_int(payload, "location_id", minimum=1),
            lines=lines,
            supplier_name=_get_str(payload, "supplier_name"),
            expected_date=_get_date(payload, "expected_date"),
            notes=_get_str(payload, "notes", max_length=1000),
        )


@dataclass(frozen=True)
class ReceiveLineRequest:
    product_id: int
    quantity: int
    expiration_date: Optional[date] = None
    lot_number: Optional[str] = None

    @classmethod
    def from_json(cls, payload: dict) -> "ReceiveLineRequest":
        return cls(
            product_id=_get_int(payload, "product_id", minimum=1),
            quantity=_get_int(payload, "quantity", minimum=1, maximum=MAX_QUANTITY),
            expiration_date=_get_date(payload, "expiration_date"),
            lot_number=_get_str(payload, "lot_number", max_length=64),
        )


@dataclass(frozen=True)
class ReceiveRequest:
    lines: tuple[ReceiveLineRequest, ...]
    notes: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "ReceiveRequest":
        payload = _require_object(payload)
        return cls(
            lines=tuple(ReceiveLineRequest.from_json(p) for p in _get_lines(payload)),
            notes=_get_str(payload, "notes", max_length=1000),
        )


@dataclass(frozen=True)
class RepaymentRequest:
    """Customer payment against their outstanding balance (also used for quick payment)."""
    amount_cents: int
    payment_method: str = "CASH"
    reference: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "RepaymentRequest":
        payload = _require_object(payload)
        return cls(
            amount_cents=_get_int(payload, "amount_cents", minimum=1, maximum=MAX_AMOUNT_CENTS),
            payment_method=_get_choice(payload, "payment_method", SETTLEMENT_METHODS, default="CASH"),
            reference=_get_str(payload, "reference", max_length=128),
            notes=_get_str(payload, "notes", max_length=1000),
        )


@dataclass(frozen=True)
class InvoiceCreateRequest:
    sale_id: int
    due_date: Optional[date] = None

    @classmethod
    def from_json(cls, payload: Any) -> "InvoiceCreateRequest":
        payload = _require_object(payload)
        return cls(
            sale_id=_get_int(payload, "sale_id", minimum=1),
            due_date=_get_date(payload, "due_date"),
        )


@dataclass(frozen=True)
class InvoicePaymentRequest(RepaymentRequest):
    @classmethod
    def from_json(cls, payload: Any) -> "InvoicePaymentRequest":
        base = RepaymentRequest.from_json(payload)
        return cls(
            amount_cents=base.amount_cents,
            payment_method=base.payment_method,
            reference=base.reference,
            notes=base.notes,
        )


@dataclass(frozen=True)
class DrawerOpenRequest:
    starting_float_cents: int = 0
    notes: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "DrawerOpenRequest":
        payload = _require_object(payload)
        return cls(
            starting_float_cents=_get_int(payload, "starting_float_cents", required=False, default=0,
                                          minimum=0, maximum=MAX_AMOUNT_CENTS),
            notes=_get_str(payload, "notes", max_length=1000),
        )


@dataclass(frozen=True)
class DrawerCloseRequest:
    actual_balance_cents: int
    notes: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "DrawerCloseRequest":
        payload = _require_object(payload)
        return cls(
            actual_balance_cents=_get_int(payload, "actual_balance_cents", minimum=0,
                                          maximum=MAX_AMOUNT_CENTS),
            notes=_get_str(payload, "notes", max_length=1000),
        )


@dataclass(frozen=True)
class CashMovementRequest:
    direction: str
    amount_cents: int
    description: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "CashMovementRequest":
        payload = _require_object(payload)
        return cls(
            direction=_get_choice(payload, "direction", CASH_DIRECTIONS),
            amount_cents=_get_int(payload, "amount_cents", minimum=1, maximum=MAX_AMOUNT_CENTS),
            description=_get_str(payload, "description"),
        )


@dataclass(frozen=True)
class StockAdjustmentRequest:
    product_id: int
    location_id: int
    mode: str
    quantity: int
    expiration_date: Optional[date] = None
    reason: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any) -> "StockAdjustmentRequest":
        payload = _require_object(payload)
        mode = _get_choice(payload, "mode", ADJUSTMENT_MODES)
        return cls(
            product_id=_get_int(payload, "product_id", minimum=1),
            location_id=_get_int(payload, "location_id", minimum=1),
            mode=mode,
            quantity=_get_int(payload, "quantity", minimum=0 if mode == "SET" else 1,
                              maximum=MAX_QUANTITY),
            expiration_date=_get_date(payload, "expiration_date"),
            reason=_get_str(payload, "reason"),
        )


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller, established by the upstream gateway."""
    org_id: int
    user_id: int
    ip_address: Optional[str] = field(default=None, compare=False)

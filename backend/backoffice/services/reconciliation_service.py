"""
Payment Reconciliation Service (payment provider webhooks)

WHY: The provider delivers payment events at least once and may deliver the
same event concurrently. Each event must change invoice, sale, customer and
ledger state exactly once.

FLOW:
1. Verify HMAC-SHA512(secret, raw body) against the signature header
   BEFORE parsing anything
2. Parse {event, data: {reference, amount, metadata}}; only charge.success
   events for INVOICE payments are applied, everything else is ignored
3. In one transaction: lock invoice and customer, skip if a CreditTransaction
   with this reference exists, otherwise apply the payment
4. The (customer_id, reference) unique constraint closes the race between two
   concurrent deliveries; the loser's conflict is reported as a duplicate

Failures are not retried here; the provider retries, which is safe because
of step 3.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CreditTransaction
from ..time_utils import utcnow
from ..validation import ConcurrencyConflictError, SignatureError, ValidationError, parse_int
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, run_in_transaction
from .invoice_service import INVOICE_STATUS_PAID, apply_invoice_payment
from .projection_service import record_credit_movement
from .tenant_service import require_customer_in_org, require_invoice_in_org

logger = logging.getLogger(__name__)


EVENT_CHARGE_SUCCESS = "charge.success"
PAYMENT_TYPE_INVOICE = "INVOICE"
PROVIDER_PAYMENT_METHOD = "MOBILE_MONEY"

RESULT_APPLIED = "applied"
RESULT_DUPLICATE = "duplicate"
RESULT_IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentEvent:
    event: str
    reference: str
    amount_cents: int
    payment_type: Optional[str]
    invoice_id: Optional[int]
    org_id: Optional[int]
    user_id: Optional[int]


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature:
        raise SignatureError("Missing signature")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("Rejected payment webhook with invalid signature")
        raise SignatureError("Invalid signature")


def _optional_int(value, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    return parse_int(value, name)


def parse_event(raw_body: bytes) -> PaymentEvent:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        raise ValidationError("Webhook body must contain a data object")

    data = payload["data"]
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    reference = data.get("reference")
    if not reference or not isinstance(reference, str):
        raise ValidationError("data.reference is required")

    amount = parse_int(data.get("amount"), "data.amount")
    if amount <= 0:
        raise ValidationError("data.amount must be positive")

    return PaymentEvent(
        event=str(payload.get("event") or ""),
        reference=reference.strip(),
        amount_cents=amount,
        payment_type=metadata.get("paymentType"),
        invoice_id=_optional_int(metadata.get("referenceId"), "metadata.referenceId"),
        org_id=_optional_int(metadata.get("organizationId"), "metadata.organizationId"),
        user_id=_optional_int(metadata.get("userId"), "metadata.userId"),
    )


def _reference_recorded(event: PaymentEvent) -> bool:
    return (
        db.session.query(CreditTransaction.id)
        .filter_by(org_id=event.org_id, reference=event.reference)
        .first()
        is not None
    )


def apply_payment_event(event: PaymentEvent) -> dict:
    """
    Apply a verified charge.success INVOICE event exactly once.

    Raises:
        NotFoundError: invoice/customer missing or not in the event's org
    """
    if event.invoice_id is None or event.org_id is None:
        raise ValidationError("metadata.referenceId and metadata.organizationId are required")

    def _op() -> dict:
        begin_write()
        invoice = require_invoice_in_org(event.invoice_id, event.org_id, lock=True)
        customer = require_customer_in_org(invoice.customer_id, event.org_id, lock=True)

        existing = ledger_service.find_credit_entry_by_reference(customer.id, event.reference)
        if existing is not None:
            return {"status": RESULT_DUPLICATE, "reference": event.reference, "invoice_id": invoice.id}

        if invoice.status == INVOICE_STATUS_PAID:
            logger.warning(
                "Payment %s received for invoice %s which is already paid; recording overpayment",
                event.reference,
                invoice.invoice_number,
            )
        apply_invoice_payment(invoice, event.amount_cents)
        entry = record_credit_movement(
            customer=customer,
            type=ledger_service.CREDIT_PAYMENT,
            amount_cents=event.amount_cents,
            user_id=event.user_id,
            payment_method=PROVIDER_PAYMENT_METHOD,
            reference=event.reference,
            ref_table="invoices",
            ref_id=invoice.id,
            notes=f"Online payment for {invoice.invoice_number}",
        )
        customer.last_payment_at = utcnow()
        return {
            "status": RESULT_APPLIED,
            "reference": event.reference,
            "invoice_id": invoice.id,
            "invoice_status": invoice.status,
            "credit_transaction_id": entry.id,
        }

    try:
        result = run_in_transaction(_op, attempts=1)
    except ConcurrencyConflictError as exc:
        # A concurrent delivery of the same reference committed first.
        if not isinstance(exc.__cause__, IntegrityError) or not _reference_recorded(event):
            raise
        logger.info("Payment reference %s applied concurrently; treating as duplicate", event.reference)
        return {"status": RESULT_DUPLICATE, "reference": event.reference, "invoice_id": event.invoice_id}

    if result["status"] == RESULT_APPLIED:
        logger.info("Applied payment %s to invoice %s (org %s)", event.reference, event.invoice_id, event.org_id)
        emit_audit(AuditEvent(
            user_id=event.user_id,
            org_id=event.org_id,
            action="INVOICE_ONLINE_PAYMENT",
            entity_type="Invoice",
            entity_id=event.invoice_id,
            changes={"reference": event.reference, "amount_cents": event.amount_cents},
        ))
    else:
        logger.info("Ignored duplicate payment event %s", event.reference)
    return result


def handle_webhook(*, raw_body: bytes, signature: str | None, secret: str) -> dict:
    """Verify, parse and apply one provider delivery."""
    verify_signature(raw_body, signature, secret)
    event = parse_event(raw_body)
    if event.event != EVENT_CHARGE_SUCCESS or event.payment_type != PAYMENT_TYPE_INVOICE:
        return {"status": RESULT_IGNORED, "event": event.event, "reference": event.reference}
    return apply_payment_event(event)

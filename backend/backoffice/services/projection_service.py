# Overview: Balance projector; keeps StockLevel, customer and drawer balances in step with the ledger.

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import case, func, or_

from ..extensions import db
from ..models import CashDrawer, Customer, Product, StockLedgerEntry, StockLevel
from ..time_utils import today
from ..validation import ConflictError, InsufficientStockError, NegativeStockError, StaleStateError
from . import ledger_service
from .concurrency import lock_for_update
"""
Projection Invariants (authoritative)

- StockLevel.quantity never goes below zero and never below reserved_quantity.
  A movement that would do so raises NegativeStockError; nothing is clamped.
- A StockLevel row is created by the first inbound movement into a triple and
  deleted when its quantity returns to exactly zero.
- Every projection change is paired with exactly one ledger entry written in
  the same transaction (record_* helpers); apply_* helpers are not called
  on their own by orchestrators.
- FEFO allocation reads locked rows, skips expired stock for products that
  track expiration, uses available = quantity - reserved_quantity and orders
  by expiration ascending with the no-expiry pool last.
"""

logger = logging.getLogger(__name__)


# =============================================================================
# STOCK
# =============================================================================

def _level_query(product_id: int, location_id: int, expiration_date: Optional[date]):
    return db.session.query(StockLevel).filter_by(
        product_id=product_id,
        location_id=location_id,
        expiration_key=ledger_service.expiration_key(expiration_date),
    )


def get_stock_level(product_id: int, location_id: int, expiration_date: Optional[date], *, lock: bool = False) -> StockLevel | None:
    q = _level_query(product_id, location_id, expiration_date)
    if lock:
        q = lock_for_update(q)
    return q.first()


def apply_stock_delta(
    *,
    org_id: int,
    product_id: int,
    location_id: int,
    expiration_date: Optional[date],
    delta: int,
) -> int:
    """Apply delta to the triple's StockLevel and return the new quantity."""
    level = get_stock_level(product_id, location_id, expiration_date, lock=True)
    current = level.quantity if level else 0
    reserved = level.reserved_quantity if level else 0
    new_quantity = current + delta

    if new_quantity < 0 or new_quantity < reserved:
        raise NegativeStockError(
            "Stock level would go negative",
            details={
                "product_id": product_id,
                "location_id": location_id,
                "expiration_date": expiration_date.isoformat() if expiration_date else None,
                "quantity": current,
                "reserved_quantity": reserved,
                "delta": delta,
            },
        )

    if level is None:
        level = StockLevel(
            org_id=org_id,
            product_id=product_id,
            location_id=location_id,
            expiration_date=expiration_date,
            expiration_key=ledger_service.expiration_key(expiration_date),
            quantity=new_quantity,
            reserved_quantity=0,
        )
        db.session.add(level)
    elif new_quantity == 0:
        db.session.delete(level)
    else:
        level.quantity = new_quantity
    db.session.flush()
    return new_quantity


def record_stock_movement(
    *,
    org_id: int,
    product_id: int,
    location_id: int,
    expiration_date: Optional[date],
    delta: int,
    reason: str,
    ref_table: str,
    ref_id: int,
    batch_id: int | None = None,
    user_id: int | None = None,
    note: str | None = None,
):
    """Append one stock ledger entry and apply it to the projection."""
    entry = ledger_service.append_stock_entry(
        org_id=org_id,
        product_id=product_id,
        location_id=location_id,
        expiration_date=expiration_date,
        delta=delta,
        reason=reason,
        ref_table=ref_table,
        ref_id=ref_id,
        batch_id=batch_id,
        user_id=user_id,
        note=note,
    )
    apply_stock_delta(
        org_id=org_id,
        product_id=product_id,
        location_id=location_id,
        expiration_date=expiration_date,
        delta=delta,
    )
    return entry


def reverse_stock_entry(original: StockLedgerEntry, *, user_id: int | None = None, note: str | None = None):
    """Append the compensating VOID entry for `original` and apply it."""
    entry = ledger_service.append_compensating_entry(original, user_id=user_id, note=note)
    apply_stock_delta(
        org_id=original.org_id,
        product_id=original.product_id,
        location_id=original.location_id,
        expiration_date=original.expiration_date,
        delta=entry.delta,
    )
    return entry


def plan_fefo_allocation(*, product: Product, location_id: int, quantity: int) -> list[tuple[StockLevel, int]]:
    """
    Choose which (expiration) pools at a location satisfy `quantity`.

    Returns [(level, take), ...] in FEFO order without writing anything.
    Raises InsufficientStockError when available stock is short.
    """
    q = db.session.query(StockLevel).filter(
        StockLevel.product_id == product.id,
        StockLevel.location_id == location_id,
        StockLevel.quantity > StockLevel.reserved_quantity,
    )
    if product.tracks_expiration:
        q = q.filter(or_(StockLevel.expiration_date.is_(None), StockLevel.expiration_date >= today()))
    q = q.order_by(
        case((StockLevel.expiration_date.is_(None), 1), else_=0),
        StockLevel.expiration_date.asc(),
        StockLevel.id.asc(),
    )
    levels = lock_for_update(q).all()

    plan = []
    remaining = quantity
    for level in levels:
        if remaining <= 0:
            break
        take = min(level.available_quantity, remaining)
        if take > 0:
            plan.append((level, take))
            remaining -= take

    if remaining > 0:
        available = quantity - remaining
        raise InsufficientStockError(
            f"Insufficient stock for product {product.sku}",
            details={
                "product_id": product.id,
                "location_id": location_id,
                "requested": quantity,
                "available": available,
            },
        )
    return plan


def available_quantity(*, product: Product, location_id: int) -> int:
    q = db.session.query(
        func.coalesce(func.sum(StockLevel.quantity - StockLevel.reserved_quantity), 0)
    ).filter(
        StockLevel.product_id == product.id,
        StockLevel.location_id == location_id,
    )
    if product.tracks_expiration:
        q = q.filter(or_(StockLevel.expiration_date.is_(None), StockLevel.expiration_date >= today()))
    return int(q.scalar() or 0)


def rebuild_stock_levels(org_id: int) -> dict:
    """
    Recompute every StockLevel of an organization from ledger sums.

    Returns counts of rows created, updated and deleted. Raises
    NegativeStockError if any ledger sum is negative, since no valid
    projection exists for it.
    """
    sums = (
        db.session.query(
            StockLedgerEntry.product_id,
            StockLedgerEntry.location_id,
            StockLedgerEntry.expiration_key,
            func.max(StockLedgerEntry.expiration_date).label("expiration_date"),
            func.sum(StockLedgerEntry.delta).label("total"),
        )
        .filter(StockLedgerEntry.org_id == org_id)
        .group_by(
            StockLedgerEntry.product_id,
            StockLedgerEntry.location_id,
            StockLedgerEntry.expiration_key,
        )
        .all()
    )
    ledger = {(r.product_id, r.location_id, r.expiration_key): r for r in sums}

    negative = [
        {"product_id": k[0], "location_id": k[1], "expiration_date": k[2] or None, "total": int(r.total)}
        for k, r in ledger.items() if int(r.total or 0) < 0
    ]
    if negative:
        raise NegativeStockError("Ledger sums are negative; cannot rebuild", details={"triples": negative})

    levels = lock_for_update(db.session.query(StockLevel).filter(StockLevel.org_id == org_id)).all()
    existing = {(lvl.product_id, lvl.location_id, lvl.expiration_key): lvl for lvl in levels}

    created = updated = deleted = 0
    for key, level in existing.items():
        row = ledger.get(key)
        total = int(row.total or 0) if row else 0
        if total == 0:
            db.session.delete(level)
            deleted += 1
        elif level.quantity != total:
            level.quantity = total
            level.reserved_quantity = min(level.reserved_quantity, total)
            updated += 1

    for key, row in ledger.items():
        total = int(row.total or 0)
        if key in existing or total == 0:
            continue
        db.session.add(StockLevel(
            org_id=org_id,
            product_id=key[0],
            location_id=key[1],
            expiration_date=row.expiration_date,
            expiration_key=key[2],
            quantity=total,
            reserved_quantity=0,
        ))
        created += 1

    db.session.flush()
    if created or updated or deleted:
        logger.warning(
            "Rebuilt stock projection for org %s: created=%d updated=%d deleted=%d",
            org_id, created, updated, deleted,
        )
    return {"created": created, "updated": updated, "deleted": deleted}


# =============================================================================
# CUSTOMER BALANCE
# =============================================================================

def apply_balance_delta(customer: Customer, delta_cents: int) -> int:
    """
    Move a locked customer's balance by delta_cents and return the new balance.

    credit_balance_cents follows as max(0, -balance); credit_status flips
    between ACTIVE and WARNING against the credit limit (BLOCKED is sticky).
    """
    new_balance = customer.current_balance_cents + delta_cents
    customer.current_balance_cents = new_balance
    customer.credit_balance_cents = max(0, -new_balance)
    if customer.credit_status != "BLOCKED":
        over_limit = customer.credit_limit_cents > 0 and new_balance > customer.credit_limit_cents
        customer.credit_status = "WARNING" if over_limit else "ACTIVE"
    return new_balance


def record_credit_movement(
    *,
    customer: Customer,
    type: str,
    amount_cents: int,
    user_id: int | None = None,
    payment_method: str | None = None,
    reference: str | None = None,
    ref_table: str | None = None,
    ref_id: int | None = None,
    notes: str | None = None,
):
    """Append one CreditTransaction and apply it to the customer's balance."""
    delta = ledger_service.CREDIT_SIGNS[type] * amount_cents
    new_balance = apply_balance_delta(customer, delta)
    return ledger_service.append_credit_entry(
        customer=customer,
        type=type,
        amount_cents=amount_cents,
        balance_after_cents=new_balance,
        user_id=user_id,
        payment_method=payment_method,
        reference=reference,
        ref_table=ref_table,
        ref_id=ref_id,
        notes=notes,
    )


# =============================================================================
# CASH DRAWER BALANCE
# =============================================================================

def apply_drawer_delta(drawer: CashDrawer, amount_cents: int) -> tuple[int, int]:
    """Move a locked, open drawer's balance; returns (before, after)."""
    if drawer.status != "OPEN":
        raise StaleStateError(f"Cash drawer {drawer.name} is not open", details={"drawer_id": drawer.id})
    before = drawer.current_balance_cents
    after = before + amount_cents
    if after < 0:
        raise ConflictError(
            "Insufficient cash in drawer",
            details={"drawer_id": drawer.id, "balance_cents": before, "amount_cents": amount_cents},
        )
    drawer.current_balance_cents = after
    return before, after


def record_drawer_movement(
    *,
    drawer: CashDrawer,
    type: str,
    amount_cents: int,
    user_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    description: str | None = None,
):
    """Append one CashTransaction (signed amount) and apply it to the drawer."""
    before, after = apply_drawer_delta(drawer, amount_cents)
    return ledger_service.append_cash_entry(
        drawer=drawer,
        type=type,
        amount_cents=amount_cents,
        balance_before_cents=before,
        balance_after_cents=after,
        user_id=user_id,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
    )

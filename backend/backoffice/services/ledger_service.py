# Overview: Append-only ledger store for stock, customer credit and cash drawer history.

from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import func

from ..extensions import db
from ..models import (
    CashDrawer,
    CashTransaction,
    CreditTransaction,
    Customer,
    StockLedgerEntry,
    StockLevel,
)
from ..validation import ValidationError
"""
Ledger Invariants (authoritative)

- Entries are append-only: no UPDATE or DELETE is ever issued against
  stock_ledger_entries, credit_transactions or cash_transactions.
- A movement is undone only by a compensating entry whose delta is the exact
  negation of the original and whose ref_id is the original's ref_id.
- For every (product, location, expiration) triple:
    SUM(StockLedgerEntry.delta) == StockLevel.quantity
  (no StockLevel row means quantity 0).
- Credit chain per customer, in id order:
    balance_after[i] == balance_after[i-1] + delta[i]   (balance_after[-1] = 0)
    balance_after[last] == Customer.current_balance_cents
- Cash chain per drawer session, in id order:
    balance_before[i] == balance_after[i-1]   (0 for the first entry)
    balance_after[i] == balance_before[i] + amount[i]
    balance_after[last] == CashDrawer.current_balance_cents for the open session
- Appending never touches a projection; callers update the projection in the
  same transaction (see projection_service).
"""

STOCK_REASON_PURCHASE = "PURCHASE"
STOCK_REASON_SALE = "SALE"
STOCK_REASON_RETURN = "RETURN"
STOCK_REASON_TRANSFER = "TRANSFER"
STOCK_REASON_ADJUSTMENT = "ADJUSTMENT"
STOCK_REASON_VOID = "VOID"

STOCK_REASONS = (
    STOCK_REASON_PURCHASE,
    STOCK_REASON_SALE,
    STOCK_REASON_RETURN,
    STOCK_REASON_TRANSFER,
    STOCK_REASON_ADJUSTMENT,
    STOCK_REASON_VOID,
)

CREDIT_CHARGE = "CHARGE"
CREDIT_PAYMENT = "PAYMENT"
CREDIT_REFUND_ADJUSTMENT = "REFUND_ADJUSTMENT"

# Sign applied to the positive amount of each credit entry type
CREDIT_SIGNS = {
    CREDIT_CHARGE: 1,
    CREDIT_PAYMENT: -1,
    CREDIT_REFUND_ADJUSTMENT: -1,
}

CASH_OPENING_FLOAT = "OPENING_FLOAT"
CASH_SALE_IN = "SALE_CASH_IN"
CASH_RETURN_REFUND = "RETURN_REFUND"
CASH_PAY_IN = "PAY_IN"
CASH_PAY_OUT = "PAY_OUT"

CASH_TYPES = (CASH_OPENING_FLOAT, CASH_SALE_IN, CASH_RETURN_REFUND, CASH_PAY_IN, CASH_PAY_OUT)

_ANY = object()


def expiration_key(expiration_date: Optional[date]) -> str:
    """Text key for a triple's expiration ('' for the no-expiry pool)."""
    return expiration_date.isoformat() if expiration_date else ""


# =============================================================================
# STOCK LEDGER
# =============================================================================

def append_stock_entry(
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
    reverses_entry_id: int | None = None,
) -> StockLedgerEntry:
    if reason not in STOCK_REASONS:
        raise ValidationError(f"Unknown stock ledger reason: {reason}")
    if delta == 0:
        raise ValidationError("Stock ledger entries must carry a non-zero delta")

    entry = StockLedgerEntry(
        org_id=org_id,
        product_id=product_id,
        location_id=location_id,
        batch_id=batch_id,
        expiration_date=expiration_date,
        expiration_key=expiration_key(expiration_date),
        delta=delta,
        reason=reason,
        ref_table=ref_table,
        ref_id=ref_id,
        reverses_entry_id=reverses_entry_id,
        note=note,
        created_by_user_id=user_id,
    )
    db.session.add(entry)
    db.session.flush()  # assigns entry.id without committing
    return entry


def append_compensating_entry(
    original: StockLedgerEntry,
    *,
    reason: str = STOCK_REASON_VOID,
    user_id: int | None = None,
    note: str | None = None,
) -> StockLedgerEntry:
    """Append the exact negation of `original`, pointing at the same document."""
    return append_stock_entry(
        org_id=original.org_id,
        product_id=original.product_id,
        location_id=original.location_id,
        expiration_date=original.expiration_date,
        delta=-original.delta,
        reason=reason,
        ref_table=original.ref_table,
        ref_id=original.ref_id,
        batch_id=original.batch_id,
        user_id=user_id,
        note=note,
        reverses_entry_id=original.id,
    )


def entries_for_document(ref_table: str, ref_id: int) -> list[StockLedgerEntry]:
    return (
        db.session.query(StockLedgerEntry)
        .filter_by(ref_table=ref_table, ref_id=ref_id)
        .order_by(StockLedgerEntry.id)
        .all()
    )


def sum_stock_deltas(*, product_id: int, location_id: int | None = None, expiration_date=_ANY) -> int:
    """
    SUM(delta) for a product, optionally narrowed to a location and to one
    expiration (pass expiration_date=None for the no-expiry pool).
    """
    q = db.session.query(func.coalesce(func.sum(StockLedgerEntry.delta), 0)).filter(
        StockLedgerEntry.product_id == product_id,
    )
    if location_id is not None:
        q = q.filter(StockLedgerEntry.location_id == location_id)
    if expiration_date is not _ANY:
        q = q.filter(StockLedgerEntry.expiration_key == expiration_key(expiration_date))
    return int(q.scalar() or 0)


# =============================================================================
# CREDIT LEDGER
# =============================================================================

def append_credit_entry(
    *,
    customer: Customer,
    type: str,
    amount_cents: int,
    balance_after_cents: int,
    user_id: int | None = None,
    payment_method: str | None = None,
    reference: str | None = None,
    ref_table: str | None = None,
    ref_id: int | None = None,
    notes: str | None = None,
) -> CreditTransaction:
    if type not in CREDIT_SIGNS:
        raise ValidationError(f"Unknown credit transaction type: {type}")
    if amount_cents <= 0:
        raise ValidationError("Credit transaction amount must be positive")

    entry = CreditTransaction(
        org_id=customer.org_id,
        customer_id=customer.id,
        type=type,
        amount_cents=amount_cents,
        delta_cents=CREDIT_SIGNS[type] * amount_cents,
        balance_after_cents=balance_after_cents,
        payment_method=payment_method,
        reference=reference,
        ref_table=ref_table,
        ref_id=ref_id,
        notes=notes,
        created_by_user_id=user_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def find_credit_entry_by_reference(customer_id: int, reference: str) -> CreditTransaction | None:
    return (
        db.session.query(CreditTransaction)
        .filter_by(customer_id=customer_id, reference=reference)
        .first()
    )


def sum_customer_deltas(customer_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(CreditTransaction.delta_cents), 0))
        .filter(CreditTransaction.customer_id == customer_id)
        .scalar()
    )
    return int(total or 0)


# =============================================================================
# CASH LEDGER
# =============================================================================

def append_cash_entry(
    *,
    drawer: CashDrawer,
    type: str,
    amount_cents: int,
    balance_before_cents: int,
    balance_after_cents: int,
    user_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    description: str | None = None,
) -> CashTransaction:
    if type not in CASH_TYPES:
        raise ValidationError(f"Unknown cash transaction type: {type}")

    entry = CashTransaction(
        org_id=drawer.org_id,
        drawer_id=drawer.id,
        session_number=drawer.session_number,
        type=type,
        amount_cents=amount_cents,
        balance_before_cents=balance_before_cents,
        balance_after_cents=balance_after_cents,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        performed_by_user_id=user_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def sum_drawer_deltas(drawer_id: int, session_number: int | None = None) -> int:
    """SUM(amount) for a drawer; defaults to the drawer's current session."""
    if session_number is None:
        session_number = (
            db.session.query(CashDrawer.session_number).filter_by(id=drawer_id).scalar()
        )
    total = (
        db.session.query(func.coalesce(func.sum(CashTransaction.amount_cents), 0))
        .filter(
            CashTransaction.drawer_id == drawer_id,
            CashTransaction.session_number == session_number,
        )
        .scalar()
    )
    return int(total or 0)


# =============================================================================
# VERIFICATION
# =============================================================================

def verify_stock_ledger(org_id: int) -> list[dict]:
    """Report every triple whose ledger sum differs from its StockLevel."""
    sums = (
        db.session.query(
            StockLedgerEntry.product_id,
            StockLedgerEntry.location_id,
            StockLedgerEntry.expiration_key,
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
    ledger = {(r.product_id, r.location_id, r.expiration_key): int(r.total or 0) for r in sums}

    levels = db.session.query(StockLevel).filter(StockLevel.org_id == org_id).all()
    projected = {(lvl.product_id, lvl.location_id, lvl.expiration_key): lvl for lvl in levels}

    violations = []
    for key in sorted(set(ledger) | set(projected), key=lambda k: (k[0], k[1] or 0, k[2])):
        expected = ledger.get(key, 0)
        level = projected.get(key)
        actual = level.quantity if level else 0
        if expected != actual or actual < 0 or (level and level.reserved_quantity > level.quantity):
            violations.append({
                "product_id": key[0],
                "location_id": key[1],
                "expiration_date": key[2] or None,
                "ledger_quantity": expected,
                "projected_quantity": actual,
            })
    return violations


def verify_credit_chain(org_id: int) -> list[dict]:
    violations = []
    customers = db.session.query(Customer).filter_by(org_id=org_id).order_by(Customer.id).all()
    for customer in customers:
        entries = (
            db.session.query(CreditTransaction)
            .filter_by(customer_id=customer.id)
            .order_by(CreditTransaction.id)
            .all()
        )
        running = 0
        for entry in entries:
            running += entry.delta_cents
            if entry.balance_after_cents != running:
                violations.append({
                    "customer_id": customer.id,
                    "entry_id": entry.id,
                    "expected_balance_after_cents": running,
                    "balance_after_cents": entry.balance_after_cents,
                })
                running = entry.balance_after_cents
        if customer.current_balance_cents != running:
            violations.append({
                "customer_id": customer.id,
                "entry_id": None,
                "expected_balance_after_cents": running,
                "balance_after_cents": customer.current_balance_cents,
            })
    return violations


def verify_drawer_chain(org_id: int) -> list[dict]:
    violations = []
    drawers = db.session.query(CashDrawer).filter_by(org_id=org_id).order_by(CashDrawer.id).all()
    for drawer in drawers:
        entries = (
            db.session.query(CashTransaction)
            .filter_by(drawer_id=drawer.id)
            .order_by(CashTransaction.session_number, CashTransaction.id)
            .all()
        )
        session = None
        previous_after = 0
        for entry in entries:
            if entry.session_number != session:
                session = entry.session_number
                previous_after = 0
            if (
                entry.balance_before_cents != previous_after
                or entry.balance_after_cents != entry.balance_before_cents + entry.amount_cents
            ):
                violations.append({
                    "drawer_id": drawer.id,
                    "entry_id": entry.id,
                    "session_number": entry.session_number,
                    "expected_balance_before_cents": previous_after,
                    "balance_before_cents": entry.balance_before_cents,
                    "balance_after_cents": entry.balance_after_cents,
                })
            previous_after = entry.balance_after_cents

        if drawer.status == "OPEN":
            current = sum_drawer_deltas(drawer.id, drawer.session_number)
            if current != drawer.current_balance_cents:
                violations.append({
                    "drawer_id": drawer.id,
                    "entry_id": None,
                    "session_number": drawer.session_number,
                    "expected_balance_before_cents": current,
                    "balance_before_cents": drawer.current_balance_cents,
                    "balance_after_cents": drawer.current_balance_cents,
                })
    return violations


def verify_org_ledgers(org_id: int) -> dict:
    stock = verify_stock_ledger(org_id)
    credit = verify_credit_chain(org_id)
    cash = verify_drawer_chain(org_id)
    return {
        "ok": not (stock or credit or cash),
        "stock": stock,
        "credit": credit,
        "cash": cash,
    }

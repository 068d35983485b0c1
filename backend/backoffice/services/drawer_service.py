"""
Cash Drawer Service

WHY: Cash taken by sales and repayments, and cash paid out by refunds, has
to land in a specific drawer so the end-of-shift count can be reconciled
against a verifiable balance chain.

DESIGN PRINCIPLES:
- A drawer is OPEN or CLOSED; cash movements against a CLOSED drawer fail
- Opening starts a new session: the balance restarts at zero and the
  starting float is booked as an OPENING_FLOAT entry
- Closing never moves cash; it records expected vs counted and the
  discrepancy
- Absence of an open drawer is not an error for sales or repayments; the
  caller simply skips the cash-side effect
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import CashDrawer
from ..time_utils import utcnow
from ..validation import CashMovementRequest, DrawerCloseRequest, DrawerOpenRequest, StaleStateError
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, lock_for_update, run_in_transaction
from .projection_service import record_drawer_movement
from .tenant_service import require_drawer_in_org

logger = logging.getLogger(__name__)


DRAWER_STATUS_OPEN = "OPEN"
DRAWER_STATUS_CLOSED = "CLOSED"


def find_active_drawer(*, org_id: int, user_id: int | None, location_id: int | None = None) -> CashDrawer | None:
    """
    Locate the drawer that should receive a cash movement.

    Order: the caller's own open drawer, then an open drawer at location_id
    (or anywhere in the organization when no location is given), newest
    session first. The returned row is locked for update.
    """
    base = db.session.query(CashDrawer).filter(
        CashDrawer.org_id == org_id,
        CashDrawer.status == DRAWER_STATUS_OPEN,
    )
    newest_first = (CashDrawer.opened_at.desc(), CashDrawer.id.desc())

    if user_id is not None:
        own = lock_for_update(
            base.filter(CashDrawer.opened_by_user_id == user_id).order_by(*newest_first)
        ).first()
        if own is not None:
            return own

    fallback = base
    if location_id is not None:
        fallback = fallback.filter(CashDrawer.location_id == location_id)
    return lock_for_update(fallback.order_by(*newest_first)).first()


def open_drawer(
    *,
    org_id: int,
    user_id: int,
    drawer_id: int,
    request: DrawerOpenRequest,
    ip_address: str | None = None,
) -> CashDrawer:
    def _op() -> CashDrawer:
        begin_write()
        drawer = require_drawer_in_org(drawer_id, org_id, lock=True)
        if drawer.status == DRAWER_STATUS_OPEN:
            raise StaleStateError("Drawer is already open", details={"drawer_id": drawer.id})

        drawer.status = DRAWER_STATUS_OPEN
        drawer.session_number = (drawer.session_number or 0) + 1
        drawer.opened_at = utcnow()
        drawer.opened_by_user_id = user_id
        drawer.starting_float_cents = request.starting_float_cents
        drawer.current_balance_cents = 0
        drawer.expected_balance_cents = None
        drawer.actual_balance_cents = None
        drawer.discrepancy_cents = None
        drawer.closed_at = None
        drawer.closed_by_user_id = None
        drawer.notes = request.notes
        db.session.flush()

        if request.starting_float_cents > 0:
            record_drawer_movement(
                drawer=drawer,
                type=ledger_service.CASH_OPENING_FLOAT,
                amount_cents=request.starting_float_cents,
                user_id=user_id,
                description="Opening float",
            )
        return drawer

    drawer = run_in_transaction(_op)
    logger.info("Opened drawer %s (session %s) for org %s", drawer.id, drawer.session_number, org_id)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="DRAWER_OPENED",
        entity_type="CashDrawer",
        entity_id=drawer.id,
        changes={"starting_float_cents": request.starting_float_cents, "session_number": drawer.session_number},
        ip_address=ip_address,
    ))
    return drawer


def close_drawer(
    *,
    org_id: int,
    user_id: int,
    drawer_id: int,
    request: DrawerCloseRequest,
    ip_address: str | None = None,
) -> CashDrawer:
    def _op() -> CashDrawer:
        begin_write()
        drawer = require_drawer_in_org(drawer_id, org_id, lock=True)
        if drawer.status != DRAWER_STATUS_OPEN:
            raise StaleStateError("Drawer is not open", details={"drawer_id": drawer.id})

        expected = drawer.current_balance_cents
        drawer.status = DRAWER_STATUS_CLOSED
        drawer.closed_at = utcnow()
        drawer.closed_by_user_id = user_id
        drawer.expected_balance_cents = expected
        drawer.actual_balance_cents = request.actual_balance_cents
        drawer.discrepancy_cents = request.actual_balance_cents - expected
        if request.notes:
            drawer.notes = f"{drawer.notes or ''} | Closing Note: {request.notes}".lstrip(" |")
        return drawer

    drawer = run_in_transaction(_op)
    if drawer.discrepancy_cents:
        logger.warning(
            "Drawer %s closed with discrepancy %s cents (expected %s, counted %s)",
            drawer.id, drawer.discrepancy_cents, drawer.expected_balance_cents, drawer.actual_balance_cents,
        )
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="DRAWER_CLOSED",
        entity_type="CashDrawer",
        entity_id=drawer.id,
        changes={
            "expected_balance_cents": drawer.expected_balance_cents,
            "actual_balance_cents": drawer.actual_balance_cents,
            "discrepancy_cents": drawer.discrepancy_cents,
        },
        ip_address=ip_address,
    ))
    return drawer


def record_cash_movement(
    *,
    org_id: int,
    user_id: int,
    drawer_id: int,
    request: CashMovementRequest,
    ip_address: str | None = None,
):
    """Manual PAY_IN / PAY_OUT against an open drawer."""
    def _op():
        begin_write()
        drawer = require_drawer_in_org(drawer_id, org_id, lock=True)
        if request.direction == "PAY_IN":
            tx_type, amount = ledger_service.CASH_PAY_IN, request.amount_cents
        else:
            tx_type, amount = ledger_service.CASH_PAY_OUT, -request.amount_cents
        return record_drawer_movement(
            drawer=drawer,
            type=tx_type,
            amount_cents=amount,
            user_id=user_id,
            description=request.description,
        )

    entry = run_in_transaction(_op)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action=f"DRAWER_{request.direction}",
        entity_type="CashTransaction",
        entity_id=entry.id,
        changes={"drawer_id": drawer_id, "amount_cents": entry.amount_cents},
        ip_address=ip_address,
    ))
    return entry

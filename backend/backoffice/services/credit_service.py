"""
Customer Credit Service

WHY: Customers who buy on credit pay their balance down over time, either
against the account as a whole (repayment) or spread across their open
invoices oldest-due-first (quick payment).

DESIGN PRINCIPLES:
- Each payment is exactly one PAYMENT entry on the customer's credit chain
- Paying more than is owed is allowed; the balance goes negative (credit
  owed to the customer)
- CASH payments are booked into the caller's open drawer, falling back to
  any open drawer in the organization; no open drawer is not an error
"""

from __future__ import annotations

import logging

from sqlalchemy import case

from ..extensions import db
from ..models import CreditTransaction, Invoice
from ..time_utils import utcnow
from ..validation import RepaymentRequest, ValidationError
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, lock_for_update, run_in_transaction
from .invoice_service import (
    INVOICE_STATUS_PAID,
    apply_invoice_payment,
    collect_cash,
    ensure_reference_unused,
)
from .projection_service import record_credit_movement
from .tenant_service import require_customer_in_org

logger = logging.getLogger(__name__)


def record_repayment(
    *,
    org_id: int,
    user_id: int,
    customer_id: int,
    request: RepaymentRequest,
    ip_address: str | None = None,
) -> CreditTransaction:
    """
    Record a payment against a customer's outstanding balance.

    Raises:
        NotFoundError: customer missing or in another org
        ConflictError: payment reference already recorded for this customer
    """
    def _op() -> CreditTransaction:
        begin_write()
        customer = require_customer_in_org(customer_id, org_id, lock=True)
        ensure_reference_unused(customer.id, request.reference)

        entry = record_credit_movement(
            customer=customer,
            type=ledger_service.CREDIT_PAYMENT,
            amount_cents=request.amount_cents,
            user_id=user_id,
            payment_method=request.payment_method,
            reference=request.reference,
            notes=request.notes or "Balance repayment",
        )
        customer.last_payment_at = utcnow()

        if request.payment_method == "CASH":
            collect_cash(
                org_id=org_id,
                user_id=user_id,
                amount_cents=request.amount_cents,
                credit_entry=entry,
                description=f"Repayment from {customer.name}",
            )
        return entry

    entry = run_in_transaction(_op)
    logger.info("Recorded repayment %s for customer %s in org %s", entry.id, customer_id, org_id)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="CUSTOMER_REPAYMENT",
        entity_type="Customer",
        entity_id=customer_id,
        changes={
            "amount_cents": entry.amount_cents,
            "payment_method": entry.payment_method,
            "balance_after_cents": entry.balance_after_cents,
        },
        ip_address=ip_address,
    ))
    return entry


def quick_payment(
    *,
    org_id: int,
    user_id: int,
    customer_id: int,
    request: RepaymentRequest,
    ip_address: str | None = None,
) -> dict:
    """
    Apply one payment across the customer's open invoices, oldest due first.

    Returns {"credit_transaction": ..., "applied": [{invoice_id, invoice_number, amount_cents}]}.

    Raises:
        NotFoundError: customer missing or in another org
        ValidationError: customer has no unpaid invoices
    """
    def _op() -> dict:
        begin_write()
        customer = require_customer_in_org(customer_id, org_id, lock=True)
        ensure_reference_unused(customer.id, request.reference)

        invoices = lock_for_update(
            db.session.query(Invoice)
            .filter(
                Invoice.org_id == org_id,
                Invoice.customer_id == customer.id,
                Invoice.status != INVOICE_STATUS_PAID,
                Invoice.balance_due_cents > 0,
            )
            .order_by(
                case((Invoice.due_date.is_(None), 1), else_=0),
                Invoice.due_date.asc(),
                Invoice.id.asc(),
            )
        ).all()
        if not invoices:
            raise ValidationError("No unpaid invoices found", details={"customer_id": customer.id})

        remaining = request.amount_cents
        applied = []
        for invoice in invoices:
            if remaining <= 0:
                break
            amount = min(remaining, invoice.balance_due_cents)
            apply_invoice_payment(invoice, amount)
            applied.append({
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "amount_cents": amount,
            })
            remaining -= amount

        numbers = ", ".join(a["invoice_number"] for a in applied)
        entry = record_credit_movement(
            customer=customer,
            type=ledger_service.CREDIT_PAYMENT,
            amount_cents=request.amount_cents,
            user_id=user_id,
            payment_method=request.payment_method,
            reference=request.reference,
            notes=request.notes or f"Quick payment applied to: {numbers}",
        )
        customer.last_payment_at = utcnow()

        if request.payment_method == "CASH":
            collect_cash(
                org_id=org_id,
                user_id=user_id,
                amount_cents=request.amount_cents,
                credit_entry=entry,
                description=f"Quick payment from {customer.name} ({numbers})",
            )
        return {"credit_transaction": entry, "applied": applied, "unapplied_cents": remaining}

    result = run_in_transaction(_op)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="CUSTOMER_QUICK_PAYMENT",
        entity_type="Customer",
        entity_id=customer_id,
        changes={"amount_cents": request.amount_cents, "applied": result["applied"]},
        ip_address=ip_address,
    ))
    return result

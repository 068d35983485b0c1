"""
Invoice Service

WHY: Credit sales become receivables that customers settle later, in one
go or in instalments, at the counter or through the payment provider.

INVARIANTS:
- balance_due = max(0, total - amount_paid); status PAID iff balance_due == 0,
  PARTIAL iff something has been paid, otherwise UNPAID
- Every invoice payment also raises the linked sale's amount_paid and is
  recorded as one PAYMENT entry on the customer's credit chain
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Invoice, Sale
from ..time_utils import utcnow
from ..validation import (
    ConflictError,
    InvoiceCreateRequest,
    InvoicePaymentRequest,
    StaleStateError,
    ValidationError,
)
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, lock_for_update, run_in_transaction
from .document_service import next_document_number
from .drawer_service import find_active_drawer
from .projection_service import record_credit_movement, record_drawer_movement
from .tenant_service import require_customer_in_org, require_in_org, require_invoice_in_org

logger = logging.getLogger(__name__)


INVOICE_STATUS_UNPAID = "UNPAID"
INVOICE_STATUS_PARTIAL = "PARTIAL"
INVOICE_STATUS_PAID = "PAID"


def recompute_invoice(invoice: Invoice) -> None:
    invoice.balance_due_cents = max(0, invoice.total_cents - invoice.amount_paid_cents)
    if invoice.balance_due_cents == 0:
        invoice.status = INVOICE_STATUS_PAID
        if invoice.paid_at is None:
            invoice.paid_at = utcnow()
    elif invoice.amount_paid_cents > 0:
        invoice.status = INVOICE_STATUS_PARTIAL
        invoice.paid_at = None
    else:
        invoice.status = INVOICE_STATUS_UNPAID
        invoice.paid_at = None


def apply_invoice_payment(invoice: Invoice, amount_cents: int) -> None:
    """Raise amount_paid on a locked invoice and its sale, then recompute."""
    invoice.amount_paid_cents += amount_cents
    recompute_invoice(invoice)
    if invoice.sale_id is not None:
        sale = lock_for_update(db.session.query(Sale).filter_by(id=invoice.sale_id)).first()
        if sale is not None:
            sale.amount_paid_cents += amount_cents


def collect_cash(*, org_id: int, user_id: int | None, amount_cents: int, credit_entry, description: str) -> None:
    """Put a cash payment into the active drawer; skipped when none is open."""
    drawer = find_active_drawer(org_id=org_id, user_id=user_id)
    if drawer is None:
        logger.info("No open drawer for org %s; cash payment %s not booked to a drawer", org_id, credit_entry.id)
        return
    record_drawer_movement(
        drawer=drawer,
        type=ledger_service.CASH_SALE_IN,
        amount_cents=amount_cents,
        user_id=user_id,
        reference_type="CreditTransaction",
        reference_id=credit_entry.id,
        description=description,
    )


def ensure_reference_unused(customer_id: int, reference: str | None) -> None:
    if reference and ledger_service.find_credit_entry_by_reference(customer_id, reference):
        raise ConflictError("Payment reference already recorded", details={"reference": reference})


def create_invoice_for_sale(
    *,
    org_id: int,
    user_id: int,
    request: InvoiceCreateRequest,
    ip_address: str | None = None,
) -> Invoice:
    def _op() -> Invoice:
        begin_write()
        sale = require_in_org(Sale, request.sale_id, org_id, label="Sale", lock=True)
        if sale.customer_id is None:
            raise ValidationError("Invoices require a sale with a customer", details={"sale_id": sale.id})
        if db.session.query(Invoice.id).filter_by(sale_id=sale.id).first() is not None:
            raise ConflictError("Sale already has an invoice", details={"sale_id": sale.id})

        invoice = Invoice(
            org_id=org_id,
            customer_id=sale.customer_id,
            sale_id=sale.id,
            invoice_number=next_document_number(org_id=org_id, document_type="INVOICE"),
            total_cents=sale.total_cents,
            amount_paid_cents=min(sale.amount_paid_cents, sale.total_cents),
            balance_due_cents=0,
            due_date=request.due_date,
        )
        recompute_invoice(invoice)
        db.session.add(invoice)
        db.session.flush()
        return invoice

    invoice = run_in_transaction(_op)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="INVOICE_CREATED",
        entity_type="Invoice",
        entity_id=invoice.id,
        changes={"sale_id": invoice.sale_id, "total_cents": invoice.total_cents},
        ip_address=ip_address,
    ))
    return invoice


def record_invoice_payment(
    *,
    org_id: int,
    user_id: int,
    invoice_id: int,
    request: InvoicePaymentRequest,
    ip_address: str | None = None,
) -> Invoice:
    """
    Manual payment against one invoice.

    Raises:
        NotFoundError: invoice missing or in another org
        StaleStateError: invoice already paid
        ValidationError: amount exceeds the balance due
        ConflictError: payment reference already recorded for this customer
    """
    def _op() -> Invoice:
        begin_write()
        invoice = require_invoice_in_org(invoice_id, org_id, lock=True)
        if invoice.status == INVOICE_STATUS_PAID:
            raise StaleStateError("Invoice is already paid", details={"invoice_id": invoice.id})
        if request.amount_cents > invoice.balance_due_cents:
            raise ValidationError(
                "Payment amount exceeds balance due",
                details={"balance_due_cents": invoice.balance_due_cents, "amount_cents": request.amount_cents},
            )

        customer = require_customer_in_org(invoice.customer_id, org_id, lock=True)
        ensure_reference_unused(customer.id, request.reference)

        apply_invoice_payment(invoice, request.amount_cents)
        entry = record_credit_movement(
            customer=customer,
            type=ledger_service.CREDIT_PAYMENT,
            amount_cents=request.amount_cents,
            user_id=user_id,
            payment_method=request.payment_method,
            reference=request.reference,
            ref_table="invoices",
            ref_id=invoice.id,
            notes=request.notes or f"Payment for {invoice.invoice_number}",
        )
        customer.last_payment_at = utcnow()

        if request.payment_method == "CASH":
            collect_cash(
                org_id=org_id,
                user_id=user_id,
                amount_cents=request.amount_cents,
                credit_entry=entry,
                description=f"Invoice payment {invoice.invoice_number}",
            )
        return invoice

    invoice = run_in_transaction(_op)
    logger.info("Recorded payment on invoice %s for org %s (status %s)", invoice.invoice_number, org_id, invoice.status)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="INVOICE_PAYMENT",
        entity_type="Invoice",
        entity_id=invoice.id,
        changes={"amount_cents": request.amount_cents, "status": invoice.status},
        ip_address=ip_address,
    ))
    return invoice

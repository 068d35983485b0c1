"""
Return Processing Service

WHY: Returned goods must re-enter the stock ledger and the refund must land
on exactly one monetary chain (customer credit or drawer cash).

DESIGN PRINCIPLES:
- Returns reference the original Sale and its items for traceability
- Over-return guard: already returned + requested <= sold, per sale item
  (REJECTED returns do not count)
- RETURN_TO_STOCK items go back into the given batch's pool, or into the
  sale location's no-expiry pool when no batch is named; DAMAGED items are
  recorded but move no stock
- REFUND with a customer attached decrements the customer's balance by the
  refund total (REFUND_ADJUSTMENT), whether or not a matching charge exists
- REFUND without a customer pays cash out of the active drawer when one is
  open; EXCHANGE moves stock only
- The sale becomes REFUNDED once cumulative refunds reach its total
"""

from __future__ import annotations

import logging
from collections import defaultdict

from sqlalchemy import func

from ..extensions import db
from ..models import Batch, Customer, Return, ReturnItem, Sale
from ..validation import ConflictError, NotFoundError, ReturnRequest, ValidationError
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, lock_for_update, run_in_transaction
from .document_service import next_document_number
from .drawer_service import find_active_drawer
from .projection_service import record_credit_movement, record_drawer_movement, record_stock_movement
from .sales_service import SALE_STATUS_REFUNDED
from .tenant_service import require_in_org

logger = logging.getLogger(__name__)


RETURN_STATUS_COMPLETED = "COMPLETED"
RETURN_STATUS_REJECTED = "REJECTED"

RETURN_TYPE_REFUND = "REFUND"
RETURN_TYPE_EXCHANGE = "EXCHANGE"

DISPOSITION_RETURN_TO_STOCK = "RETURN_TO_STOCK"


def returned_quantity(sale_item_id: int) -> int:
    """Units of a sale item already returned (REJECTED returns excluded)."""
    total = (
        db.session.query(func.coalesce(func.sum(ReturnItem.quantity), 0))
        .join(Return, Return.id == ReturnItem.return_id)
        .filter(
            ReturnItem.sale_item_id == sale_item_id,
            Return.status != RETURN_STATUS_REJECTED,
        )
        .scalar()
    )
    return int(total or 0)


def line_refund_cents(item, quantity: int, already_returned: int = 0) -> int:
    """
    Refund for `quantity` more units of a sale item, pro rata of what was charged.

    Measured on the cumulative returned count so that refunds for a line
    returned in pieces add up to exactly its line total.
    """
    total = item.line_total_cents
    before = (total * already_returned) // item.quantity
    after = (total * (already_returned + quantity)) // item.quantity
    return after - before


def _restock_target(line, sale: Sale, product_id: int, org_id: int):
    """(location_id, expiration_date, batch_id) the returned units go back into."""
    if line.batch_id is None:
        return sale.location_id, None, None
    batch = require_in_org(Batch, line.batch_id, org_id, label="Batch")
    if batch.product_id != product_id:
        raise ValidationError(
            "batch_id does not belong to the returned product",
            details={"batch_id": batch.id, "product_id": product_id},
        )
    return batch.location_id, batch.expiration_date, batch.id


def record_return(
    *,
    org_id: int,
    user_id: int,
    request: ReturnRequest,
    ip_address: str | None = None,
) -> Return:
    """
    Record a completed return against a sale.

    Raises:
        NotFoundError: sale, sale item or batch missing or in another org
        ConflictError: requested quantity exceeds what is still returnable
        ValidationError: batch does not match the returned product
    """
    def _op() -> Return:
        begin_write()
        sale = require_in_org(Sale, request.sale_id, org_id, label="Sale", lock=True)
        items = {item.id: item for item in sale.items}

        requested = defaultdict(int)
        for line in request.lines:
            if line.sale_item_id not in items:
                raise NotFoundError("Sale item not found", details={"sale_item_id": line.sale_item_id})
            requested[line.sale_item_id] += line.quantity

        returned_before = {}
        for sale_item_id, quantity in requested.items():
            item = items[sale_item_id]
            already = returned_quantity(sale_item_id)
            returned_before[sale_item_id] = already
            if already + quantity > item.quantity:
                raise ConflictError(
                    f"Cannot return {quantity} units",
                    details={
                        "sale_item_id": sale_item_id,
                        "sold": item.quantity,
                        "already_returned": already,
                        "returnable": item.quantity - already,
                    },
                )

        customer = None
        if sale.customer_id is not None:
            customer = lock_for_update(db.session.query(Customer).filter_by(id=sale.customer_id)).first()

        ret = Return(
            org_id=org_id,
            sale_id=sale.id,
            customer_id=sale.customer_id,
            location_id=sale.location_id,
            document_number=next_document_number(org_id=org_id, document_type="RETURN"),
            return_type=request.return_type,
            refund_method=request.refund_method if request.return_type == RETURN_TYPE_REFUND else None,
            status=RETURN_STATUS_COMPLETED,
            reason=request.reason,
            created_by_user_id=user_id,
        )
        db.session.add(ret)
        db.session.flush()

        refund_total = 0
        for line in request.lines:
            item = items[line.sale_item_id]
            refund = line_refund_cents(item, line.quantity, returned_before[item.id])
            returned_before[item.id] += line.quantity
            location_id, expiration_date, batch_id = None, None, line.batch_id
            if line.disposition == DISPOSITION_RETURN_TO_STOCK:
                location_id, expiration_date, batch_id = _restock_target(line, sale, item.product_id, org_id)

            db.session.add(ReturnItem(
                return_id=ret.id,
                sale_item_id=item.id,
                product_id=item.product_id,
                batch_id=batch_id,
                quantity=line.quantity,
                unit_price_cents=item.unit_price_cents,
                refund_cents=refund,
                disposition=line.disposition,
            ))
            refund_total += refund

            if location_id is not None:
                record_stock_movement(
                    org_id=org_id,
                    product_id=item.product_id,
                    location_id=location_id,
                    expiration_date=expiration_date,
                    delta=line.quantity,
                    reason=ledger_service.STOCK_REASON_RETURN,
                    ref_table="returns",
                    ref_id=ret.id,
                    batch_id=batch_id,
                    user_id=user_id,
                    note=f"{ret.document_number} for {sale.document_number}",
                )

        if request.return_type == RETURN_TYPE_REFUND and refund_total > 0:
            ret.refund_cents = refund_total
            if customer is not None:
                record_credit_movement(
                    customer=customer,
                    type=ledger_service.CREDIT_REFUND_ADJUSTMENT,
                    amount_cents=refund_total,
                    user_id=user_id,
                    ref_table="returns",
                    ref_id=ret.id,
                    notes=f"Refund {ret.document_number} for sale {sale.document_number}",
                )
            elif request.refund_method == "CASH":
                drawer = find_active_drawer(org_id=org_id, user_id=user_id, location_id=sale.location_id)
                if drawer is not None:
                    record_drawer_movement(
                        drawer=drawer,
                        type=ledger_service.CASH_RETURN_REFUND,
                        amount_cents=-refund_total,
                        user_id=user_id,
                        reference_type="Return",
                        reference_id=ret.id,
                        description=f"Refund {ret.document_number}",
                    )

            sale.refunded_cents = (sale.refunded_cents or 0) + refund_total
            if sale.refunded_cents >= sale.total_cents:
                sale.status = SALE_STATUS_REFUNDED

        db.session.flush()
        return ret

    ret = run_in_transaction(_op)
    logger.info("Recorded return %s (%s) for org %s", ret.document_number, ret.return_type, org_id)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="RETURN_CREATED",
        entity_type="Return",
        entity_id=ret.id,
        changes={
            "sale_id": ret.sale_id,
            "return_type": ret.return_type,
            "refund_cents": ret.refund_cents,
        },
        ip_address=ip_address,
    ))
    return ret

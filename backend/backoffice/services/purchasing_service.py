"""
Purchase Order & Receiving Service

WHY: Purchase receipts are the main source of new stock and of batches
(lot number and expiry). They also drive the PO's aggregate status.

LIFECYCLE:
1. create_purchase_order (DRAFT)
2. mark_purchase_order_sent (DRAFT -> SENT)
3. receive_purchase_order (SENT/PARTIAL -> PARTIAL/RECEIVED), repeatable
4. compensation_service.void_receiving undoes one receipt

STATUS RULE:
PO status is always recomputed from the full set of items after a receipt
or a void: RECEIVED iff every item has received >= ordered, PARTIAL iff
anything has been received, otherwise SENT.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Batch, PurchaseOrder, PurchaseOrderItem, ReceivingRecord, ReceivingRecordItem
from ..time_utils import utcnow
from ..validation import PurchaseOrderRequest, ReceiveRequest, StaleStateError, ValidationError
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, run_in_transaction
from .document_service import next_document_number
from .projection_service import record_stock_movement
from .tenant_service import require_in_org, require_location_in_org, require_product_in_org

logger = logging.getLogger(__name__)


PO_STATUS_DRAFT = "DRAFT"
PO_STATUS_SENT = "SENT"
PO_STATUS_PARTIAL = "PARTIAL"
PO_STATUS_RECEIVED = "RECEIVED"
PO_STATUS_CANCELLED = "CANCELLED"

RECEIVABLE_STATUSES = (PO_STATUS_SENT, PO_STATUS_PARTIAL)


def recompute_purchase_order_status(po: PurchaseOrder) -> str:
    """Derive PO status from current item totals (never incrementally)."""
    items = db.session.query(PurchaseOrderItem).filter_by(purchase_order_id=po.id).all()
    total_received = sum(item.received_quantity for item in items)
    if items and all(item.received_quantity >= item.quantity_ordered for item in items):
        status = PO_STATUS_RECEIVED
    elif total_received > 0:
        status = PO_STATUS_PARTIAL
    else:
        status = PO_STATUS_SENT

    po.status = status
    po.received_at = utcnow() if status == PO_STATUS_RECEIVED else None
    return status


def create_purchase_order(
    *,
    org_id: int,
    user_id: int,
    request: PurchaseOrderRequest,
    ip_address: str | None = None,
) -> PurchaseOrder:
    def _op() -> PurchaseOrder:
        begin_write()
        location = require_location_in_org(request.location_id, org_id)
        for line in request.lines:
            require_product_in_org(line.product_id, org_id)

        po = PurchaseOrder(
            org_id=org_id,
            location_id=location.id,
            document_number=next_document_number(org_id=org_id, document_type="PURCHASE_ORDER"),
            supplier_name=request.supplier_name,
            status=PO_STATUS_DRAFT,
            total_cents=sum(line.quantity_ordered * line.unit_cost_cents for line in request.lines),
            expected_date=request.expected_date,
            notes=request.notes,
            created_by_user_id=user_id,
        )
        db.session.add(po)
        db.session.flush()
        for line in request.lines:
            db.session.add(PurchaseOrderItem(
                purchase_order_id=po.id,
                product_id=line.product_id,
                quantity_ordered=line.quantity_ordered,
                received_quantity=0,
                unit_cost_cents=line.unit_cost_cents,
            ))
        db.session.flush()
        return po

    po = run_in_transaction(_op)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="PURCHASE_ORDER_CREATED",
        entity_type="PurchaseOrder",
        entity_id=po.id,
        changes={"document_number": po.document_number, "total_cents": po.total_cents},
        ip_address=ip_address,
    ))
    return po


def mark_purchase_order_sent(
    *,
    org_id: int,
    user_id: int,
    purchase_order_id: int,
    ip_address: str | None = None,
) -> PurchaseOrder:
    def _op() -> PurchaseOrder:
        begin_write()
        po = require_in_org(PurchaseOrder, purchase_order_id, org_id, label="Purchase order", lock=True)
        if po.status != PO_STATUS_DRAFT:
            raise StaleStateError(
                f"Purchase order is {po.status}",
                details={"purchase_order_id": po.id, "status": po.status},
            )
        po.status = PO_STATUS_SENT
        po.sent_at = utcnow()
        return po

    po = run_in_transaction(_op)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="PURCHASE_ORDER_SENT",
        entity_type="PurchaseOrder",
        entity_id=po.id,
        changes={"status": po.status},
        ip_address=ip_address,
    ))
    return po


def receive_purchase_order(
    *,
    org_id: int,
    user_id: int,
    purchase_order_id: int,
    request: ReceiveRequest,
    ip_address: str | None = None,
) -> ReceivingRecord:
    """
    Book a delivery against a SENT or PARTIAL purchase order.

    Each line is clamped to the item's remaining quantity; lines for
    products not on the order are ignored. Each booked line creates a Batch,
    a ReceivingRecordItem and one PURCHASE ledger entry at the PO's location.

    Raises:
        NotFoundError: PO missing or in another org
        StaleStateError: PO not in SENT/PARTIAL
        ValidationError: nothing left to receive for any requested line
    """
    def _op() -> ReceivingRecord:
        begin_write()
        po = require_in_org(PurchaseOrder, purchase_order_id, org_id, label="Purchase order", lock=True)
        if po.status not in RECEIVABLE_STATUSES:
            raise StaleStateError(
                f"Cannot receive a purchase order in status {po.status}",
                details={"purchase_order_id": po.id, "status": po.status},
            )

        items = {item.product_id: item for item in po.items}
        record = ReceivingRecord(
            org_id=org_id,
            purchase_order_id=po.id,
            location_id=po.location_id,
            document_number=next_document_number(org_id=org_id, document_type="RECEIVING"),
            notes=request.notes,
            received_by_user_id=user_id,
        )
        db.session.add(record)
        db.session.flush()

        booked = 0
        for line in request.lines:
            item = items.get(line.product_id)
            if item is None:
                continue
            quantity = min(line.quantity, item.remaining_quantity)
            if quantity <= 0:
                continue

            batch = Batch(
                org_id=org_id,
                product_id=item.product_id,
                location_id=po.location_id,
                purchase_order_id=po.id,
                lot_number=line.lot_number,
                expiration_date=line.expiration_date,
                quantity_received=quantity,
                unit_cost_cents=item.unit_cost_cents,
            )
            db.session.add(batch)
            db.session.flush()

            item.received_quantity += quantity
            db.session.add(ReceivingRecordItem(
                receiving_record_id=record.id,
                purchase_order_item_id=item.id,
                product_id=item.product_id,
                batch_id=batch.id,
                quantity=quantity,
                expiration_date=line.expiration_date,
            ))
            record_stock_movement(
                org_id=org_id,
                product_id=item.product_id,
                location_id=po.location_id,
                expiration_date=line.expiration_date,
                delta=quantity,
                reason=ledger_service.STOCK_REASON_PURCHASE,
                ref_table="receiving_records",
                ref_id=record.id,
                batch_id=batch.id,
                user_id=user_id,
                note=f"{record.document_number} for {po.document_number}",
            )
            booked += quantity

        if booked == 0:
            raise ValidationError(
                "Nothing to receive: all requested items are fully received or not on this order",
                details={"purchase_order_id": po.id},
            )

        recompute_purchase_order_status(po)
        db.session.flush()
        return record

    record = run_in_transaction(_op)
    logger.info("Received %s against purchase order %s for org %s", record.document_number, purchase_order_id, org_id)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="PURCHASE_ORDER_RECEIVED",
        entity_type="ReceivingRecord",
        entity_id=record.id,
        changes={
            "purchase_order_id": purchase_order_id,
            "items": [{"product_id": i.product_id, "quantity": i.quantity} for i in record.items],
        },
        ip_address=ip_address,
    ))
    return record

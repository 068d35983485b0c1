"""
Compensation Service: voiding committed receipts

WHY: A receipt booked against the wrong PO (or entered twice) must be
undone without rewriting history. The stock side is undone with VOID
ledger entries that exactly negate the original PURCHASE entries; the
document side is undone by recomputation from what remains.

INVARIANTS:
- receive then void is an identity on StockLevel and
  PurchaseOrderItem.received_quantity
- The void fails (ConflictError) when the received stock has already moved
  elsewhere; the projection is never driven negative
- PO status is derived fresh from remaining item totals afterwards
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Batch, PurchaseOrder, PurchaseOrderItem, ReceivingRecord, StockLedgerEntry
from ..time_utils import utcnow
from ..validation import ConflictError, NegativeStockError, StaleStateError
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, run_in_transaction
from .projection_service import reverse_stock_entry
from .purchasing_service import PO_STATUS_CANCELLED, PO_STATUS_DRAFT, recompute_purchase_order_status
from .tenant_service import TenantAccessError, require_in_org

logger = logging.getLogger(__name__)


def _unreversed_entries(record_id: int) -> list[StockLedgerEntry]:
    entries = ledger_service.entries_for_document("receiving_records", record_id)
    reversed_ids = {e.reverses_entry_id for e in entries if e.reverses_entry_id is not None}
    return [
        e for e in entries
        if e.reason == ledger_service.STOCK_REASON_PURCHASE and e.id not in reversed_ids
    ]


def void_receiving(
    *,
    org_id: int,
    user_id: int,
    purchase_order_id: int,
    record_id: int,
    ip_address: str | None = None,
) -> PurchaseOrder:
    """
    Void one receiving record of a purchase order.

    Raises:
        NotFoundError: PO or record missing, in another org, or not on this PO
        StaleStateError: PO is DRAFT or CANCELLED
        ConflictError: received units are no longer on hand
    """
    def _op() -> PurchaseOrder:
        begin_write()
        po = require_in_org(PurchaseOrder, purchase_order_id, org_id, label="Purchase order", lock=True)
        if po.status in (PO_STATUS_DRAFT, PO_STATUS_CANCELLED):
            raise StaleStateError(
                f"Cannot void receipts of a {po.status} purchase order",
                details={"purchase_order_id": po.id},
            )

        record = (
            db.session.query(ReceivingRecord)
            .filter_by(id=record_id, purchase_order_id=po.id)
            .first()
        )
        if record is None or record.org_id != org_id:
            raise TenantAccessError("Receiving record not found", details={"id": record_id})

        voided_items = [(item.purchase_order_item_id, item.batch_id, item.quantity) for item in record.items]

        try:
            for entry in _unreversed_entries(record.id):
                reverse_stock_entry(entry, user_id=user_id, note=f"Void {record.document_number}")
        except NegativeStockError as exc:
            raise ConflictError(
                "Cannot void receipt: received stock has already been moved or sold",
                details=exc.details,
            ) from exc

        now = utcnow()
        for po_item_id, batch_id, quantity in voided_items:
            po_item = db.session.get(PurchaseOrderItem, po_item_id)
            po_item.received_quantity = max(0, po_item.received_quantity - quantity)
            batch = db.session.get(Batch, batch_id)
            if batch is not None:
                batch.voided_at = now

        db.session.delete(record)
        db.session.flush()

        recompute_purchase_order_status(po)
        return po

    po = run_in_transaction(_op)
    logger.info("Voided receiving record %s on purchase order %s (now %s)", record_id, po.document_number, po.status)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="RECEIVING_VOIDED",
        entity_type="ReceivingRecord",
        entity_id=record_id,
        changes={"purchase_order_id": po.id, "status": po.status},
        ip_address=ip_address,
    ))
    return po

"""
Inter-Location Transfer Service

WHY: Moving stock between locations must never create or destroy units:
every unit leaving the source arrives at the destination with the same
expiration date, in the same transaction.

LIFECYCLE:
1. create_transfer (DRAFT) - both locations in the caller's org, availability
   pre-checked but nothing moves
2. complete_transfer (DRAFT -> RECEIVED) - FEFO deduction at the source, one
   TRANSFER ledger entry per moved pool on each side
3. cancel_transfer (DRAFT -> CANCELLED) - only before completion
"""

from __future__ import annotations

import logging
from collections import defaultdict

from ..extensions import db
from ..models import Product, Transfer, TransferItem
from ..time_utils import utcnow
from ..validation import InsufficientStockError, StaleStateError, TransferRequest
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, run_in_transaction
from .document_service import next_document_number
from .projection_service import available_quantity, plan_fefo_allocation, record_stock_movement
from .tenant_service import require_in_org, require_locations_in_org, require_product_in_org

logger = logging.getLogger(__name__)


TRANSFER_STATUS_DRAFT = "DRAFT"
TRANSFER_STATUS_RECEIVED = "RECEIVED"
TRANSFER_STATUS_CANCELLED = "CANCELLED"


def create_transfer(
    *,
    org_id: int,
    user_id: int,
    request: TransferRequest,
    ip_address: str | None = None,
) -> Transfer:
    def _op() -> Transfer:
        begin_write()
        source, destination = require_locations_in_org(
            [request.from_location_id, request.to_location_id], org_id
        )

        needed = defaultdict(int)
        products = {}
        for line in request.lines:
            products[line.product_id] = require_product_in_org(line.product_id, org_id)
            needed[line.product_id] += line.quantity

        shortfalls = []
        for product_id, quantity in needed.items():
            available = available_quantity(product=products[product_id], location_id=source.id)
            if available < quantity:
                shortfalls.append({"product_id": product_id, "requested": quantity, "available": available})
        if shortfalls:
            raise InsufficientStockError("Insufficient stock at source location", details={"lines": shortfalls})

        transfer = Transfer(
            org_id=org_id,
            from_location_id=source.id,
            to_location_id=destination.id,
            document_number=next_document_number(org_id=org_id, document_type="TRANSFER"),
            status=TRANSFER_STATUS_DRAFT,
            notes=request.notes,
            created_by_user_id=user_id,
        )
        db.session.add(transfer)
        db.session.flush()
        for line in request.lines:
            db.session.add(TransferItem(transfer_id=transfer.id, product_id=line.product_id, quantity=line.quantity))
        db.session.flush()
        return transfer

    transfer = run_in_transaction(_op)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="TRANSFER_CREATED",
        entity_type="Transfer",
        entity_id=transfer.id,
        changes={"document_number": transfer.document_number},
        ip_address=ip_address,
    ))
    return transfer


def complete_transfer(
    *,
    org_id: int,
    user_id: int,
    transfer_id: int,
    ip_address: str | None = None,
) -> Transfer:
    """
    Move the transfer's stock.

    Raises:
        NotFoundError: transfer missing or in another org
        StaleStateError: transfer already completed or cancelled
        InsufficientStockError: source no longer holds enough non-expired stock
    """
    def _op() -> Transfer:
        begin_write()
        transfer = require_in_org(Transfer, transfer_id, org_id, label="Transfer", lock=True)
        if transfer.status != TRANSFER_STATUS_DRAFT:
            raise StaleStateError(
                f"Transfer is {transfer.status}",
                details={"transfer_id": transfer.id, "status": transfer.status},
            )

        for item in transfer.items:
            product = db.session.get(Product, item.product_id)
            plan = plan_fefo_allocation(product=product, location_id=transfer.from_location_id, quantity=item.quantity)
            for level, take in plan:
                expiration_date = level.expiration_date
                for location_id, delta in ((transfer.from_location_id, -take), (transfer.to_location_id, take)):
                    record_stock_movement(
                        org_id=org_id,
                        product_id=product.id,
                        location_id=location_id,
                        expiration_date=expiration_date,
                        delta=delta,
                        reason=ledger_service.STOCK_REASON_TRANSFER,
                        ref_table="transfers",
                        ref_id=transfer.id,
                        user_id=user_id,
                        note=transfer.document_number,
                    )

        transfer.status = TRANSFER_STATUS_RECEIVED
        transfer.completed_at = utcnow()
        transfer.completed_by_user_id = user_id
        return transfer

    transfer = run_in_transaction(_op)
    logger.info("Completed transfer %s for org %s", transfer.document_number, org_id)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="TRANSFER_COMPLETED",
        entity_type="Transfer",
        entity_id=transfer.id,
        changes={"status": transfer.status},
        ip_address=ip_address,
    ))
    return transfer


def cancel_transfer(
    *,
    org_id: int,
    user_id: int,
    transfer_id: int,
    ip_address: str | None = None,
) -> Transfer:
    def _op() -> Transfer:
        begin_write()
        transfer = require_in_org(Transfer, transfer_id, org_id, label="Transfer", lock=True)
        if transfer.status != TRANSFER_STATUS_DRAFT:
            raise StaleStateError(
                f"Transfer is {transfer.status}",
                details={"transfer_id": transfer.id, "status": transfer.status},
            )
        transfer.status = TRANSFER_STATUS_CANCELLED
        transfer.cancelled_at = utcnow()
        return transfer

    transfer = run_in_transaction(_op)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="TRANSFER_CANCELLED",
        entity_type="Transfer",
        entity_id=transfer.id,
        changes={"status": transfer.status},
        ip_address=ip_address,
    ))
    return transfer

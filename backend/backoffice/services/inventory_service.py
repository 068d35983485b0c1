# Overview: Service-layer operations for inventory; stock adjustment and projection queries.

from __future__ import annotations

import logging

from sqlalchemy import func

from ..extensions import db
from ..models import Product, StockAdjustment, StockLedgerEntry, StockLevel
from ..validation import StockAdjustmentRequest, ValidationError
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, run_in_transaction
from .projection_service import get_stock_level, record_stock_movement
from .tenant_service import require_location_in_org, require_product_in_org
"""
Inventory Invariants (authoritative)

- Every quantity change, including a manual correction, is an ADJUSTMENT
  ledger entry pointing at a StockAdjustment document. There is no path that
  writes StockLevel.quantity without a ledger entry.
- SET computes its delta from the live (locked) projection; a SET that
  matches the current quantity is rejected as a no-op.
- REMOVE cannot take a pool below zero (NegativeStockError).
"""

logger = logging.getLogger(__name__)


def adjust_stock(
    *,
    org_id: int,
    user_id: int,
    request: StockAdjustmentRequest,
    ip_address: str | None = None,
) -> StockAdjustment:
    def _op() -> StockAdjustment:
        begin_write()
        product = require_product_in_org(request.product_id, org_id)
        location = require_location_in_org(request.location_id, org_id)

        level = get_stock_level(product.id, location.id, request.expiration_date, lock=True)
        current = level.quantity if level else 0
        if request.mode == "ADD":
            delta = request.quantity
        elif request.mode == "REMOVE":
            delta = -request.quantity
        else:
            delta = request.quantity - current
        if delta == 0:
            raise ValidationError(
                "Adjustment does not change the quantity",
                details={"product_id": product.id, "location_id": location.id, "quantity": current},
            )

        adjustment = StockAdjustment(
            org_id=org_id,
            product_id=product.id,
            location_id=location.id,
            expiration_date=request.expiration_date,
            mode=request.mode,
            requested_quantity=request.quantity,
            delta=delta,
            reason=request.reason,
            created_by_user_id=user_id,
        )
        db.session.add(adjustment)
        db.session.flush()

        record_stock_movement(
            org_id=org_id,
            product_id=product.id,
            location_id=location.id,
            expiration_date=request.expiration_date,
            delta=delta,
            reason=ledger_service.STOCK_REASON_ADJUSTMENT,
            ref_table="stock_adjustments",
            ref_id=adjustment.id,
            user_id=user_id,
            note=request.reason,
        )
        return adjustment

    adjustment = run_in_transaction(_op)
    logger.info(
        "Adjusted product %s at location %s by %s (org %s)",
        adjustment.product_id, adjustment.location_id, adjustment.delta, org_id,
    )
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="STOCK_ADJUSTED",
        entity_type="StockAdjustment",
        entity_id=adjustment.id,
        changes={"mode": adjustment.mode, "delta": adjustment.delta},
        ip_address=ip_address,
    ))
    return adjustment


def list_stock_levels(org_id: int, *, location_id: int | None = None, product_id: int | None = None) -> list[StockLevel]:
    q = db.session.query(StockLevel).filter(StockLevel.org_id == org_id)
    if location_id is not None:
        q = q.filter(StockLevel.location_id == require_location_in_org(location_id, org_id).id)
    if product_id is not None:
        q = q.filter(StockLevel.product_id == require_product_in_org(product_id, org_id).id)
    return q.order_by(
        StockLevel.product_id,
        StockLevel.location_id,
        StockLevel.expiration_key,
    ).all()


def list_ledger_entries(
    org_id: int,
    *,
    product_id: int | None = None,
    location_id: int | None = None,
    limit: int = 200,
) -> list[StockLedgerEntry]:
    q = db.session.query(StockLedgerEntry).filter(StockLedgerEntry.org_id == org_id)
    if product_id is not None:
        q = q.filter(StockLedgerEntry.product_id == product_id)
    if location_id is not None:
        q = q.filter(StockLedgerEntry.location_id == location_id)
    return q.order_by(StockLedgerEntry.id.desc()).limit(limit).all()


def products_below_reorder_threshold(org_id: int) -> list[dict]:
    """Active products whose on-hand total across locations is at or below their reorder threshold."""
    on_hand = (
        db.session.query(
            StockLevel.product_id.label("product_id"),
            func.sum(StockLevel.quantity).label("quantity"),
        )
        .filter(StockLevel.org_id == org_id)
        .group_by(StockLevel.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, func.coalesce(on_hand.c.quantity, 0))
        .outerjoin(on_hand, on_hand.c.product_id == Product.id)
        .filter(
            Product.org_id == org_id,
            Product.is_active.is_(True),
            Product.reorder_threshold > 0,
            func.coalesce(on_hand.c.quantity, 0) <= Product.reorder_threshold,
        )
        .order_by(Product.id)
        .all()
    )
    return [
        {
            "product_id": product.id,
            "sku": product.sku,
            "quantity": int(quantity),
            "reorder_threshold": product.reorder_threshold,
        }
        for product, quantity in rows
    ]

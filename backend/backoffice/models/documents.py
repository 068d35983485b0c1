from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


class Return(db.Model):
    """
    Return against a completed sale.

    return_type REFUND credits the customer (or pays cash out of a drawer
    when no customer is attached); EXCHANGE moves stock only.
    REJECTED returns do not count toward the already-returned quantity.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("org_id", "document_number", name="uq_returns_org_docnum"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)

    document_number = db.Column(db.String(32), nullable=False)
    return_type = db.Column(db.String(16), nullable=False)
    refund_method = db.Column(db.String(16), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="COMPLETED")
    refund_cents = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship("ReturnItem", backref="return_doc", lazy=True, order_by="ReturnItem.id")

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "location_id": self.location_id,
            "document_number": self.document_number,
            "return_type": self.return_type,
            "refund_method": self.refund_method,
            "status": self.status,
            "refund_cents": self.refund_cents,
            "reason": self.reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ReturnItem(db.Model):
    __tablename__ = "return_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    refund_cents = db.Column(db.Integer, nullable=False)
    disposition = db.Column(db.String(24), nullable=False, default="RETURN_TO_STOCK")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "refund_cents": self.refund_cents,
            "disposition": self.disposition,
        }


class Transfer(db.Model):
    """
    Inter-location stock movement.

    LIFECYCLE: DRAFT -> RECEIVED (complete) or DRAFT -> CANCELLED.
    Stock moves only on completion, one TRANSFER ledger entry per moved
    (product, location, expiration) triple on each side.
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.UniqueConstraint("org_id", "document_number", name="uq_transfers_org_docnum"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    from_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    to_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)

    document_number = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="DRAFT")
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=False)
    completed_by_user_id = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship("TransferItem", backref="transfer", lazy=True, order_by="TransferItem.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "document_number": self.document_number,
            "status": self.status,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "completed_by_user_id": self.completed_by_user_id,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class TransferItem(db.Model):
    __tablename__ = "transfer_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
        }


class StockAdjustment(db.Model):
    """
    Manual stock correction. Exists so ADJUSTMENT ledger entries have a
    document to point back to.
    """
    __tablename__ = "stock_adjustments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    expiration_date = db.Column(db.Date, nullable=True)

    mode = db.Column(db.String(8), nullable=False)
    requested_quantity = db.Column(db.Integer, nullable=False)
    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "expiration_date": to_iso_date(self.expiration_date),
            "mode": self.mode,
            "requested_quantity": self.requested_quantity,
            "delta": self.delta,
            "reason": self.reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }

from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


class PurchaseOrder(db.Model):
    """
    Supplier order delivered into one location.

    LIFECYCLE: DRAFT -> SENT -> PARTIAL -> RECEIVED (CANCELLED from DRAFT/SENT).
    SENT/PARTIAL/RECEIVED are always recomputed from item totals after a
    receipt or a void; they are never bumped incrementally.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("org_id", "document_number", name="uq_purchase_orders_org_docnum"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)

    document_number = db.Column(db.String(32), nullable=False)
    supplier_name = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="DRAFT")
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    expected_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship("PurchaseOrderItem", backref="purchase_order", lazy=True, order_by="PurchaseOrderItem.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "location_id": self.location_id,
            "document_number": self.document_number,
            "supplier_name": self.supplier_name,
            "status": self.status,
            "total_cents": self.total_cents,
            "expected_date": to_iso_date(self.expected_date),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "sent_at": to_utc_z(self.sent_at),
            "received_at": to_utc_z(self.received_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class PurchaseOrderItem(db.Model):
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_items_po_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity_ordered = db.Column(db.Integer, nullable=False)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    @property
    def remaining_quantity(self) -> int:
        return max(0, self.quantity_ordered - self.received_quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "quantity_ordered": self.quantity_ordered,
            "received_quantity": self.received_quantity,
            "unit_cost_cents": self.unit_cost_cents,
        }


class ReceivingRecord(db.Model):
    """
    One delivery booked against a purchase order.

    Voiding deletes the record (and its items) after appending VOID ledger
    entries; the batches it created remain with voided_at set.
    """
    __tablename__ = "receiving_records"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)

    document_number = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    received_by_user_id = db.Column(db.Integer, nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship(
        "ReceivingRecordItem",
        backref="receiving_record",
        lazy=True,
        order_by="ReceivingRecordItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "location_id": self.location_id,
            "document_number": self.document_number,
            "notes": self.notes,
            "received_by_user_id": self.received_by_user_id,
            "received_at": to_utc_z(self.received_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ReceivingRecordItem(db.Model):
    __tablename__ = "receiving_record_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    receiving_record_id = db.Column(db.Integer, db.ForeignKey("receiving_records.id"), nullable=False, index=True)
    purchase_order_item_id = db.Column(db.Integer, db.ForeignKey("purchase_order_items.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    expiration_date = db.Column(db.Date, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_item_id": self.purchase_order_item_id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "expiration_date": to_iso_date(self.expiration_date),
        }

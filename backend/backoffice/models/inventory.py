from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


class Product(db.Model):
    """
    Product master data.

    MULTI-TENANT: Products are owned by an organization; SKUs are unique
    within the organization.

    tracks_expiration switches sales and transfers to FEFO batch selection.
    default_location_id is where sales deduct when the request names none.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("org_id", "sku", name="uq_products_org_sku"),
        db.Index("ix_products_org_active", "org_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=True)
    # Tax rate in basis points (1250 = 12.5%)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    reorder_threshold = db.Column(db.Integer, nullable=False, default=0)
    tracks_expiration = db.Column(db.Boolean, nullable=False, default=False)
    default_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    organization = db.relationship("Organization", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} org_id={self.org_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "reorder_threshold": self.reorder_threshold,
            "tracks_expiration": self.tracks_expiration,
            "default_location_id": self.default_location_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Batch(db.Model):
    """
    One receipt of a product with lot number and optional expiry.

    Batches are never deleted; voiding the receipt that created one sets
    voided_at and appends the compensating ledger entry.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.Index("ix_batches_product_location", "product_id", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=True, index=True)

    lot_number = db.Column(db.String(64), nullable=True)
    expiration_date = db.Column(db.Date, nullable=True)
    quantity_received = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=True)

    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "purchase_order_id": self.purchase_order_id,
            "lot_number": self.lot_number,
            "expiration_date": to_iso_date(self.expiration_date),
            "quantity_received": self.quantity_received,
            "unit_cost_cents": self.unit_cost_cents,
            "voided_at": to_utc_z(self.voided_at),
            "created_at": to_utc_z(self.created_at),
        }


class StockLevel(db.Model):
    """
    Projected quantity on hand for one (product, location, expiration) triple.

    INVARIANTS:
    - quantity >= 0 and reserved_quantity <= quantity, checked by the
      projector before every write (not a store constraint)
    - quantity == SUM(StockLedgerEntry.delta) for the same triple
    - Rows are created on first inbound movement and deleted when quantity
      reaches zero

    expiration_key mirrors expiration_date as text ('' for no expiry) so the
    unique constraint also covers the no-expiry pool; SQL treats NULLs as
    distinct in unique indexes.
    """
    __tablename__ = "stock_levels"
    __table_args__ = (
        db.UniqueConstraint("product_id", "location_id", "expiration_key", name="uq_stock_levels_triple"),
        db.Index("ix_stock_levels_org_product", "org_id", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    expiration_date = db.Column(db.Date, nullable=True)
    expiration_key = db.Column(db.String(10), nullable=False, default="")

    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "expiration_date": to_iso_date(self.expiration_date),
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
        }


class StockLedgerEntry(db.Model):
    """
    Immutable stock movement fact.

    APPEND-ONLY: rows are never updated or deleted. A movement is undone by
    appending an entry with the negated delta and reverses_entry_id set.
    ref_table/ref_id point at the business document that caused it.
    """
    __tablename__ = "stock_ledger_entries"
    __table_args__ = (
        db.Index("ix_stock_ledger_triple", "product_id", "location_id", "expiration_key"),
        db.Index("ix_stock_ledger_ref", "ref_table", "ref_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True)
    expiration_date = db.Column(db.Date, nullable=True)
    expiration_key = db.Column(db.String(10), nullable=False, default="")

    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(16), nullable=False, index=True)
    ref_table = db.Column(db.String(64), nullable=False)
    ref_id = db.Column(db.Integer, nullable=False)
    reverses_entry_id = db.Column(db.Integer, db.ForeignKey("stock_ledger_entries.id"), nullable=True)

    note = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return (
            f"<StockLedgerEntry id={self.id} product_id={self.product_id} "
            f"location_id={self.location_id} delta={self.delta} reason={self.reason}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "batch_id": self.batch_id,
            "expiration_date": to_iso_date(self.expiration_date),
            "delta": self.delta,
            "reason": self.reason,
            "ref_table": self.ref_table,
            "ref_id": self.ref_id,
            "reverses_entry_id": self.reverses_entry_id,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }

from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


class Customer(db.Model):
    """
    Customer with a credit account.

    DERIVED STATE (owned by the balance projector, never hand-edited):
    - current_balance_cents: amount owed by the customer; negative means the
      business owes the customer
    - credit_balance_cents: max(0, -current_balance_cents)
    Both are projections over CreditTransaction rows.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_org_active", "org_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_status = db.Column(db.String(16), nullable=False, default="ACTIVE")
    current_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    last_payment_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("customers", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "credit_limit_cents": self.credit_limit_cents,
            "credit_status": self.credit_status,
            "current_balance_cents": self.current_balance_cents,
            "credit_balance_cents": self.credit_balance_cents,
            "last_payment_at": to_utc_z(self.last_payment_at),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class CreditTransaction(db.Model):
    """
    Append-only customer balance history.

    CHAIN INVARIANT: balance_after_cents == previous entry's balance_after_cents
    + delta_cents, and the newest entry matches Customer.current_balance_cents.
    amount_cents is always positive; delta_cents carries the sign
    (CHARGE +, PAYMENT -, REFUND_ADJUSTMENT -).

    (customer_id, reference) is unique so a redelivered external payment
    cannot be applied twice, even by concurrent handlers.
    """
    __tablename__ = "credit_transactions"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "reference", name="uq_credit_tx_customer_reference"),
        db.Index("ix_credit_tx_customer_id_seq", "customer_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)

    type = db.Column(db.String(24), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    delta_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(16), nullable=True)
    reference = db.Column(db.String(128), nullable=True)
    ref_table = db.Column(db.String(64), nullable=True)
    ref_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "delta_cents": self.delta_cents,
            "balance_after_cents": self.balance_after_cents,
            "payment_method": self.payment_method,
            "reference": self.reference,
            "ref_table": self.ref_table,
            "ref_id": self.ref_id,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class Invoice(db.Model):
    """
    Receivable raised against a sale.

    INVARIANTS:
    - balance_due_cents == max(0, total_cents - amount_paid_cents)
    - status == PAID iff balance_due_cents == 0; PARTIAL iff something paid
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
        db.UniqueConstraint("sale_id", name="uq_invoices_sale"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True)

    invoice_number = db.Column(db.String(32), nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_due_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="UNPAID")

    due_date = db.Column(db.Date, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer")
    sale = db.relationship("Sale")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "customer_id": self.customer_id,
            "sale_id": self.sale_id,
            "invoice_number": self.invoice_number,
            "total_cents": self.total_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "balance_due_cents": self.balance_due_cents,
            "status": self.status,
            "due_date": to_iso_date(self.due_date),
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
        }

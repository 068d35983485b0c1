from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class CashDrawer(db.Model):
    """
    Physical cash drawer at a location.

    LIFECYCLE: CLOSED -> OPEN (open_drawer) -> CLOSED (close_drawer).
    Every open starts a new session_number; current_balance_cents restarts
    at zero with the starting float booked as the first entry, and is the
    projection of that session's CashTransaction rows. Cash movements are
    only valid while OPEN.
    """
    __tablename__ = "cash_drawers"
    __table_args__ = (
        db.UniqueConstraint("org_id", "name", name="uq_cash_drawers_org_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="CLOSED")
    session_number = db.Column(db.Integer, nullable=False, default=0)

    starting_float_cents = db.Column(db.Integer, nullable=False, default=0)
    current_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    expected_balance_cents = db.Column(db.Integer, nullable=True)
    actual_balance_cents = db.Column(db.Integer, nullable=True)
    discrepancy_cents = db.Column(db.Integer, nullable=True)

    opened_by_user_id = db.Column(db.Integer, nullable=True)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by_user_id = db.Column(db.Integer, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "location_id": self.location_id,
            "name": self.name,
            "status": self.status,
            "session_number": self.session_number,
            "starting_float_cents": self.starting_float_cents,
            "current_balance_cents": self.current_balance_cents,
            "expected_balance_cents": self.expected_balance_cents,
            "actual_balance_cents": self.actual_balance_cents,
            "discrepancy_cents": self.discrepancy_cents,
            "opened_by_user_id": self.opened_by_user_id,
            "opened_at": to_utc_z(self.opened_at),
            "closed_by_user_id": self.closed_by_user_id,
            "closed_at": to_utc_z(self.closed_at),
            "notes": self.notes,
        }


class CashTransaction(db.Model):
    """
    Append-only drawer balance history.

    CHAIN INVARIANT (per drawer session): balance_before_cents equals the
    previous entry's balance_after_cents (0 for the first entry of a
    session), balance_after_cents == balance_before_cents + amount_cents,
    and the newest entry of the open session matches
    CashDrawer.current_balance_cents. amount_cents is signed (out < 0).
    """
    __tablename__ = "cash_transactions"
    __table_args__ = (
        db.Index("ix_cash_tx_drawer_session", "drawer_id", "session_number", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    drawer_id = db.Column(db.Integer, db.ForeignKey("cash_drawers.id"), nullable=False)
    session_number = db.Column(db.Integer, nullable=False)

    type = db.Column(db.String(24), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(64), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    description = db.Column(db.String(255), nullable=True)

    performed_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "drawer_id": self.drawer_id,
            "session_number": self.session_number,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "description": self.description,
            "performed_by_user_id": self.performed_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }

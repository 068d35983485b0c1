"""
Cash Drawer Tests

Covers the drawer session lifecycle and the cash balance chain:
- Opening books the float as the first entry of a fresh session
- Cash sales, refunds and manual movements land on the active drawer
- The balance can never go negative and a closed drawer takes no cash
- Closing records expected vs counted without moving cash
"""

import pytest

from backoffice.extensions import db
from backoffice.models import CashDrawer, CashTransaction
from backoffice.services import drawer_service, ledger_service, return_service, sales_service
from backoffice.validation import (
    CashMovementRequest,
    ConflictError,
    DrawerCloseRequest,
    DrawerOpenRequest,
    ReturnLineRequest,
    ReturnRequest,
    SaleLineRequest,
    SaleRequest,
    StaleStateError,
)
from conftest import USER_A, USER_B, receive_stock


def _open(drawer, org_id, float_cents=0, user_id=USER_A):
    return drawer_service.open_drawer(
        org_id=org_id, user_id=user_id, drawer_id=drawer.id,
        request=DrawerOpenRequest(starting_float_cents=float_cents),
    )


def _entries(drawer_id):
    return (
        db.session.query(CashTransaction)
        .filter_by(drawer_id=drawer_id)
        .order_by(CashTransaction.id)
        .all()
    )


def _cash_sale(org_id, location_id, product_id, quantity, tendered=None):
    return sales_service.record_sale(
        org_id=org_id,
        user_id=USER_A,
        request=SaleRequest(
            location_id=location_id,
            lines=(SaleLineRequest(product_id=product_id, quantity=quantity),),
            payment_method="CASH",
            amount_paid_cents=tendered,
        ),
    )


class TestDrawerSessions:

    def test_open_books_float_as_first_entry(self, drawer_a, org_a):
        drawer = _open(drawer_a, org_a.id, float_cents=5000)

        assert drawer.status == "OPEN"
        assert drawer.session_number == 1
        assert drawer.current_balance_cents == 5000
        entries = _entries(drawer.id)
        assert [(e.type, e.amount_cents, e.balance_before_cents, e.balance_after_cents) for e in entries] == [
            ("OPENING_FLOAT", 5000, 0, 5000),
        ]

    def test_open_without_float_writes_no_entry(self, drawer_a, org_a):
        _open(drawer_a, org_a.id)

        assert _entries(drawer_a.id) == []
        assert db.session.get(CashDrawer, drawer_a.id).current_balance_cents == 0

    def test_opening_an_open_drawer_is_stale(self, drawer_a, org_a):
        _open(drawer_a, org_a.id)

        with pytest.raises(StaleStateError):
            _open(drawer_a, org_a.id, float_cents=100)
        assert len(_entries(drawer_a.id)) == 0

    def test_close_records_discrepancy_without_moving_cash(self, drawer_a, org_a):
        _open(drawer_a, org_a.id, float_cents=5000)

        drawer = drawer_service.close_drawer(
            org_id=org_a.id, user_id=USER_A, drawer_id=drawer_a.id,
            request=DrawerCloseRequest(actual_balance_cents=4800, notes="short"),
        )

        assert drawer.status == "CLOSED"
        assert (drawer.expected_balance_cents, drawer.actual_balance_cents, drawer.discrepancy_cents) == (
            5000, 4800, -200,
        )
        assert len(_entries(drawer_a.id)) == 1

    def test_closing_a_closed_drawer_is_stale(self, drawer_a, org_a):
        with pytest.raises(StaleStateError):
            drawer_service.close_drawer(
                org_id=org_a.id, user_id=USER_A, drawer_id=drawer_a.id,
                request=DrawerCloseRequest(actual_balance_cents=0),
            )

    def test_reopen_starts_new_session_at_zero(self, drawer_a, org_a):
        _open(drawer_a, org_a.id, float_cents=5000)
        drawer_service.record_cash_movement(
            org_id=org_a.id, user_id=USER_A, drawer_id=drawer_a.id,
            request=CashMovementRequest(direction="PAY_IN", amount_cents=700),
        )
        drawer_service.close_drawer(
            org_id=org_a.id, user_id=USER_A, drawer_id=drawer_a.id,
            request=DrawerCloseRequest(actual_balance_cents=5700),
        )

        drawer = _open(drawer_a, org_a.id, float_cents=1000)

        assert drawer.session_number == 2
        assert drawer.current_balance_cents == 1000
        second_session = [e for e in _entries(drawer_a.id) if e.session_number == 2]
        assert [(e.balance_before_cents, e.balance_after_cents) for e in second_session] == [(0, 1000)]
        assert ledger_service.verify_drawer_chain(org_a.id) == []


class TestCashMovements:

    def test_pay_out_is_stored_negative(self, drawer_a, org_a):
        _open(drawer_a, org_a.id, float_cents=5000)

        entry = drawer_service.record_cash_movement(
            org_id=org_a.id, user_id=USER_A, drawer_id=drawer_a.id,
            request=CashMovementRequest(direction="PAY_OUT", amount_cents=1200, description="Fuel"),
        )

        assert entry.type == "PAY_OUT"
        assert entry.amount_cents == -1200
        assert (entry.balance_before_cents, entry.balance_after_cents) == (5000, 3800)

    def test_pay_out_beyond_balance_is_rejected(self, drawer_a, org_a):
        _open(drawer_a, org_a.id, float_cents=500)

        with pytest.raises(ConflictError):
            drawer_service.record_cash_movement(
                org_id=org_a.id, user_id=USER_A, drawer_id=drawer_a.id,
                request=CashMovementRequest(direction="PAY_OUT", amount_cents=501),
            )
        assert db.session.get(CashDrawer, drawer_a.id).current_balance_cents == 500
        assert len(_entries(drawer_a.id)) == 1

    def test_movement_on_closed_drawer_is_stale(self, drawer_a, org_a):
        with pytest.raises(StaleStateError):
            drawer_service.record_cash_movement(
                org_id=org_a.id, user_id=USER_A, drawer_id=drawer_a.id,
                request=CashMovementRequest(direction="PAY_IN", amount_cents=100),
            )
        assert _entries(drawer_a.id) == []


class TestDrawerSelection:

    def test_callers_own_drawer_is_preferred(self, db_session, org_a, location_a, drawer_a):
        other = CashDrawer(org_id=org_a.id, location_id=location_a.id, name="Till 2", status="CLOSED")
        db_session.add(other)
        db_session.commit()
        _open(drawer_a, org_a.id, user_id=USER_A)
        _open(other, org_a.id, user_id=USER_B)

        assert drawer_service.find_active_drawer(org_id=org_a.id, user_id=USER_A).id == drawer_a.id
        assert drawer_service.find_active_drawer(org_id=org_a.id, user_id=USER_B).id == other.id
        db.session.rollback()

    def test_no_open_drawer_returns_none(self, drawer_a, org_a):
        assert drawer_service.find_active_drawer(org_id=org_a.id, user_id=USER_A) is None
        db.session.rollback()


class TestSaleAndRefundCash:

    def test_cash_sale_books_applied_amount_not_tender(self, org_a, location_a, product_a, drawer_a):
        receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=20)
        _open(drawer_a, org_a.id, float_cents=1000)

        sale = _cash_sale(org_a.id, location_a.id, product_a.id, 10, tendered=2000)

        assert (sale.amount_paid_cents, sale.change_given_cents) == (1000, 1000)
        cash_in = [e for e in _entries(drawer_a.id) if e.type == "SALE_CASH_IN"]
        assert len(cash_in) == 1
        assert cash_in[0].amount_cents == 1000
        assert cash_in[0].reference_id == sale.id
        assert db.session.get(CashDrawer, drawer_a.id).current_balance_cents == 2000

    def test_cash_sale_without_open_drawer_still_succeeds(self, org_a, location_a, product_a, drawer_a):
        receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=5)

        sale = _cash_sale(org_a.id, location_a.id, product_a.id, 5)

        assert sale.amount_paid_cents == 500
        assert _entries(drawer_a.id) == []

    def test_cash_refund_pays_out_of_drawer(self, org_a, location_a, product_a, drawer_a):
        receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=20)
        _open(drawer_a, org_a.id)
        sale = _cash_sale(org_a.id, location_a.id, product_a.id, 10)

        return_service.record_return(
            org_id=org_a.id,
            user_id=USER_A,
            request=ReturnRequest(
                sale_id=sale.id,
                lines=(ReturnLineRequest(sale_item_id=sale.items[0].id, quantity=4),),
                return_type="REFUND",
                refund_method="CASH",
            ),
        )

        refund = [e for e in _entries(drawer_a.id) if e.type == "RETURN_REFUND"]
        assert len(refund) == 1
        assert refund[0].amount_cents == -400
        assert db.session.get(CashDrawer, drawer_a.id).current_balance_cents == 600
        assert ledger_service.verify_drawer_chain(org_a.id) == []

    def test_cash_refund_beyond_drawer_balance_is_rejected(self, org_a, location_a, product_a, drawer_a):
        receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=20)
        sale = _cash_sale(org_a.id, location_a.id, product_a.id, 10)
        _open(drawer_a, org_a.id, float_cents=100)

        with pytest.raises(ConflictError):
            return_service.record_return(
                org_id=org_a.id,
                user_id=USER_A,
                request=ReturnRequest(
                    sale_id=sale.id,
                    lines=(ReturnLineRequest(sale_item_id=sale.items[0].id, quantity=5),),
                    return_type="REFUND",
                    refund_method="CASH",
                ),
            )
        assert return_service.returned_quantity(sale.items[0].id) == 0

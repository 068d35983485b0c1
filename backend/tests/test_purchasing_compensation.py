# Overview: Pytest coverage for purchase receiving and receipt voiding.

"""
Purchasing & Compensation Tests

Covers:
- Receiving clamps to the remaining ordered quantity and drives PO status
- Receive then void restores StockLevel and received_quantity exactly
- A void fails with ConflictError once the received stock has moved
"""

from datetime import timedelta

import pytest

from backoffice.extensions import db
from backoffice.models import Batch, PurchaseOrderItem, ReceivingRecord, StockLedgerEntry
from backoffice.services import compensation_service, ledger_service, purchasing_service, sales_service
from backoffice.services.projection_service import get_stock_level
from backoffice.time_utils import today
from backoffice.validation import (
    ConflictError,
    NotFoundError,
    PurchaseOrderLineRequest,
    PurchaseOrderRequest,
    ReceiveLineRequest,
    ReceiveRequest,
    SaleLineRequest,
    SaleRequest,
    StaleStateError,
    ValidationError,
)
from conftest import USER_A, receive_stock


def _open_po(org_id, location_id, lines):
    po = purchasing_service.create_purchase_order(
        org_id=org_id,
        user_id=USER_A,
        request=PurchaseOrderRequest(
            location_id=location_id,
            lines=tuple(
                PurchaseOrderLineRequest(product_id=pid, quantity_ordered=qty, unit_cost_cents=40)
                for pid, qty in lines
            ),
        ),
    )
    purchasing_service.mark_purchase_order_sent(org_id=org_id, user_id=USER_A, purchase_order_id=po.id)
    return po


def _receive(org_id, po_id, lines):
    return purchasing_service.receive_purchase_order(
        org_id=org_id,
        user_id=USER_A,
        purchase_order_id=po_id,
        request=ReceiveRequest(lines=tuple(
            ReceiveLineRequest(product_id=pid, quantity=qty, expiration_date=exp) for pid, qty, exp in lines
        )),
    )


def _quantity(product_id, location_id, expiration_date=None) -> int:
    level = get_stock_level(product_id, location_id, expiration_date)
    return level.quantity if level else 0


class TestReceiving:

    def test_draft_purchase_order_cannot_be_received(self, db_session, org_a, location_a, product_a):
        po = purchasing_service.create_purchase_order(
            org_id=org_a.id,
            user_id=USER_A,
            request=PurchaseOrderRequest(
                location_id=location_a.id,
                lines=(PurchaseOrderLineRequest(product_id=product_a.id, quantity_ordered=5),),
            ),
        )
        assert po.status == "DRAFT"
        assert po.document_number == "PO-000001"

        with pytest.raises(StaleStateError):
            _receive(org_a.id, po.id, [(product_a.id, 5, None)])

    def test_partial_then_full_receipt(self, db_session, org_a, location_a, product_a):
        po = _open_po(org_a.id, location_a.id, [(product_a.id, 10)])

        first = _receive(org_a.id, po.id, [(product_a.id, 4, None)])
        db.session.refresh(po)
        assert po.status == "PARTIAL"
        assert first.document_number == "RCV-000001"

        _receive(org_a.id, po.id, [(product_a.id, 6, None)])
        db.session.refresh(po)
        assert po.status == "RECEIVED"
        assert po.received_at is not None
        assert _quantity(product_a.id, location_a.id) == 10

    def test_receipt_is_clamped_to_remaining_quantity(self, db_session, org_a, location_a, product_a):
        po = _open_po(org_a.id, location_a.id, [(product_a.id, 10)])

        record = _receive(org_a.id, po.id, [(product_a.id, 15, None)])

        assert [item.quantity for item in record.items] == [10]
        assert _quantity(product_a.id, location_a.id) == 10
        item = db.session.query(PurchaseOrderItem).filter_by(purchase_order_id=po.id).one()
        assert item.received_quantity == 10

    def test_lines_not_on_the_order_are_ignored(self, db_session, org_a, location_a, product_a, perishable_a):
        po = _open_po(org_a.id, location_a.id, [(product_a.id, 10)])

        with pytest.raises(ValidationError):
            _receive(org_a.id, po.id, [(perishable_a.id, 3, today() + timedelta(days=20))])

        assert db.session.query(ReceivingRecord).count() == 0
        assert db.session.query(StockLedgerEntry).count() == 0

    def test_each_line_creates_a_batch(self, db_session, org_a, location_a, perishable_a):
        expiry = today() + timedelta(days=15)
        po, record = receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=perishable_a.id,
                                   quantity=8, expiration_date=expiry, lot_number="LOT-42")

        batch = db.session.get(Batch, record.items[0].batch_id)
        assert batch.lot_number == "LOT-42"
        assert batch.expiration_date == expiry
        assert batch.quantity_received == 8
        assert batch.purchase_order_id == po.id


class TestVoidReceiving:

    def test_receive_then_void_is_identity(self, db_session, org_a, location_a, product_a):
        # Pre-existing stock in the same triple from another order
        receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=5)
        po = _open_po(org_a.id, location_a.id, [(product_a.id, 10)])
        item = db.session.query(PurchaseOrderItem).filter_by(purchase_order_id=po.id).one()
        before = (_quantity(product_a.id, location_a.id), item.received_quantity, po.status)

        record = _receive(org_a.id, po.id, [(product_a.id, 4, None)])
        assert _quantity(product_a.id, location_a.id) == 9

        result = compensation_service.void_receiving(
            org_id=org_a.id, user_id=USER_A, purchase_order_id=po.id, record_id=record.id,
        )

        db.session.refresh(item)
        after = (_quantity(product_a.id, location_a.id), item.received_quantity, result.status)
        assert after == before == (5, 0, "SENT")
        assert db.session.get(ReceivingRecord, record.id) is None

        entries = ledger_service.entries_for_document("receiving_records", record.id)
        assert sorted((e.reason, e.delta) for e in entries) == [("PURCHASE", 4), ("VOID", -4)]
        void_entry = next(e for e in entries if e.reason == "VOID")
        assert void_entry.reverses_entry_id == next(e.id for e in entries if e.reason == "PURCHASE")
        assert ledger_service.verify_stock_ledger(org_a.id) == []

    def test_void_with_expiry_removes_the_pool_and_marks_batch(self, db_session, org_a, location_a, perishable_a):
        expiry = today() + timedelta(days=60)
        po, record = receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=perishable_a.id,
                                   quantity=3, expiration_date=expiry)
        batch_id = record.items[0].batch_id
        record_id = record.id

        compensation_service.void_receiving(
            org_id=org_a.id, user_id=USER_A, purchase_order_id=po.id, record_id=record_id,
        )

        assert get_stock_level(perishable_a.id, location_a.id, expiry) is None
        assert db.session.get(Batch, batch_id).voided_at is not None

    def test_void_after_stock_was_sold_is_rejected(self, db_session, org_a, location_a, product_a):
        po, record = receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=10)
        sales_service.record_sale(
            org_id=org_a.id,
            user_id=USER_A,
            request=SaleRequest(
                location_id=location_a.id,
                lines=(SaleLineRequest(product_id=product_a.id, quantity=8),),
                payment_method="CARD",
            ),
        )

        with pytest.raises(ConflictError):
            compensation_service.void_receiving(
                org_id=org_a.id, user_id=USER_A, purchase_order_id=po.id, record_id=record.id,
            )

        assert _quantity(product_a.id, location_a.id) == 2
        assert db.session.get(ReceivingRecord, record.id) is not None
        item = db.session.query(PurchaseOrderItem).filter_by(purchase_order_id=po.id).one()
        assert item.received_quantity == 10
        assert db.session.query(StockLedgerEntry).filter_by(reason="VOID").count() == 0

    def test_void_record_of_another_order_is_not_found(self, db_session, org_a, location_a, product_a):
        po_one, record = receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id,
                                       quantity=2)
        po_two, _ = receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id,
                                  quantity=2)

        with pytest.raises(NotFoundError):
            compensation_service.void_receiving(
                org_id=org_a.id, user_id=USER_A, purchase_order_id=po_two.id, record_id=record.id,
            )

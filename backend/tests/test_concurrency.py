"""
Concurrency Tests

Two writers racing for the same balance must serialize: the loser either
sees the winner's committed state or gets a conflict, and no interleaving
can drive stock negative or apply a payment twice.

These tests need real connections from several threads, so they run
against a file-backed SQLite database instead of the shared in-memory one.
"""

import json
import threading

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import CreditTransaction, Customer, Invoice, Location, Organization, Product, StockLedgerEntry
from backoffice.services import invoice_service, reconciliation_service, sales_service
from backoffice.services.projection_service import get_stock_level
from backoffice.validation import (
    ConflictError,
    InvoiceCreateRequest,
    SaleLineRequest,
    SaleRequest,
)
from conftest import TEST_CONFIG, USER_A, USER_B, WEBHOOK_SECRET, receive_stock


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        **TEST_CONFIG,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 15}},
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def seeded(file_app):
    """Org with 100 units of one product and a credit customer; returns ids."""
    with file_app.app_context():
        org = Organization(name="Race Org", code="RACE", is_active=True)
        db.session.add(org)
        db.session.flush()
        location = Location(org_id=org.id, name="Shop")
        product = Product(org_id=org.id, sku="RACE-1", name="Race Product", price_cents=100)
        customer = Customer(org_id=org.id, name="Racer", credit_limit_cents=0)
        db.session.add_all([location, product, customer])
        db.session.commit()
        receive_stock(org_id=org.id, location_id=location.id, product_id=product.id, quantity=100)
        ids = {
            "org_id": org.id,
            "location_id": location.id,
            "product_id": product.id,
            "customer_id": customer.id,
        }
        db.session.remove()
    return ids


def _race(file_app, workers):
    """Run each worker in its own thread and app context, released together."""
    barrier = threading.Barrier(len(workers))
    outcomes = [None] * len(workers)

    def run(index, work):
        with file_app.app_context():
            try:
                barrier.wait(timeout=10)
                outcomes[index] = ("ok", work())
            except Exception as exc:
                outcomes[index] = ("error", exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=run, args=(i, w)) for i, w in enumerate(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


class TestConcurrentSales:

    def test_two_sales_cannot_oversell(self, file_app, seeded):
        def sell(user_id):
            def work():
                sale = sales_service.record_sale(
                    org_id=seeded["org_id"],
                    user_id=user_id,
                    request=SaleRequest(
                        location_id=seeded["location_id"],
                        lines=(SaleLineRequest(product_id=seeded["product_id"], quantity=60),),
                    ),
                )
                return sale.id
            return work

        outcomes = _race(file_app, [sell(USER_A), sell(USER_B)])

        successes = [o for o in outcomes if o[0] == "ok"]
        failures = [o for o in outcomes if o[0] == "error"]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0][1], ConflictError)

        with file_app.app_context():
            level = get_stock_level(seeded["product_id"], seeded["location_id"], None)
            total = sum(
                e.delta for e in db.session.query(StockLedgerEntry).filter_by(product_id=seeded["product_id"])
            )
            assert level.quantity == 40
            assert total == 40


class TestConcurrentWebhooks:

    def test_duplicate_deliveries_apply_once(self, file_app, seeded):
        with file_app.app_context():
            sale = sales_service.record_sale(
                org_id=seeded["org_id"],
                user_id=USER_A,
                request=SaleRequest(
                    location_id=seeded["location_id"],
                    lines=(SaleLineRequest(product_id=seeded["product_id"], quantity=10),),
                    payment_method="CREDIT",
                    customer_id=seeded["customer_id"],
                ),
            )
            invoice = invoice_service.create_invoice_for_sale(
                org_id=seeded["org_id"], user_id=USER_A, request=InvoiceCreateRequest(sale_id=sale.id),
            )
            invoice_id = invoice.id
            db.session.remove()

        body = json.dumps({
            "event": "charge.success",
            "data": {
                "reference": "PSK-RACE-1",
                "amount": 700,
                "metadata": {
                    "paymentType": "INVOICE",
                    "referenceId": invoice_id,
                    "organizationId": seeded["org_id"],
                },
            },
        }).encode("utf-8")
        signature = reconciliation_service.compute_signature(body, WEBHOOK_SECRET)

        def deliver():
            return reconciliation_service.handle_webhook(raw_body=body, signature=signature, secret=WEBHOOK_SECRET)

        outcomes = _race(file_app, [deliver, deliver])

        assert all(kind == "ok" for kind, _ in outcomes), outcomes
        assert sorted(result["status"] for _, result in outcomes) == ["applied", "duplicate"]

        with file_app.app_context():
            invoice = db.session.get(Invoice, invoice_id)
            customer = db.session.get(Customer, seeded["customer_id"])
            assert invoice.amount_paid_cents == 700
            assert customer.current_balance_cents == 300
            assert db.session.query(CreditTransaction).filter_by(reference="PSK-RACE-1").count() == 1

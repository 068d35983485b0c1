"""
Pytest fixtures for backoffice ledger tests.

Provides test database setup, two-tenant fixtures, test client, and helpers
that bring stock in through the real receiving path.
"""

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import CashDrawer, Customer, Location, Organization, Product
from backoffice.services import purchasing_service
from backoffice.validation import (
    PurchaseOrderLineRequest,
    PurchaseOrderRequest,
    ReceiveLineRequest,
    ReceiveRequest,
)

WEBHOOK_SECRET = "whsec_test_secret"

USER_A = 101
USER_B = 202

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'PAYMENT_WEBHOOK_SECRET': WEBHOOK_SECRET,
    'AUDIT_SINK': 'database',
    'TXN_RETRY_BACKOFF': 0.0,
    'RESOURCE_MONITOR_ENABLED': False,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def org_a(db_session):
    """Create Organization A (first tenant)."""
    org = Organization(name="Org A - Acme Corp", code="ACME", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def org_b(db_session):
    """Create Organization B (second tenant)."""
    org = Organization(name="Org B - Beta Inc", code="BETA", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def location_a(db_session, org_a):
    location = Location(org_id=org_a.id, name="Main Shop")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def warehouse_a(db_session, org_a):
    location = Location(org_id=org_a.id, name="Warehouse")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def location_b(db_session, org_b):
    location = Location(org_id=org_b.id, name="Main Shop")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def product_a(db_session, org_a):
    """Plain product in Organization A, 1.00 per unit, no tax."""
    product = Product(org_id=org_a.id, sku="PROD-A-001", name="Product A", price_cents=100, cost_cents=60)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def perishable_a(db_session, org_a):
    """Expiration-tracked product in Organization A."""
    product = Product(
        org_id=org_a.id,
        sku="MILK-001",
        name="Milk 1L",
        price_cents=250,
        tax_rate_bps=1250,
        tracks_expiration=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_b(db_session, org_b):
    product = Product(org_id=org_b.id, sku="PROD-B-001", name="Product B", price_cents=2000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer_a(db_session, org_a):
    customer = Customer(org_id=org_a.id, name="Ama Mensah", phone="0240000000", credit_limit_cents=50000)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def customer_b(db_session, org_b):
    customer = Customer(org_id=org_b.id, name="Kofi Boateng")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def drawer_a(db_session, org_a, location_a):
    drawer = CashDrawer(org_id=org_a.id, location_id=location_a.id, name="Till 1", status="CLOSED")
    db_session.add(drawer)
    db_session.commit()
    return drawer


@pytest.fixture(scope='function')
def drawer_b(db_session, org_b, location_b):
    drawer = CashDrawer(org_id=org_b.id, location_id=location_b.id, name="Till 1", status="CLOSED")
    db_session.add(drawer)
    db_session.commit()
    return drawer


def receive_stock(*, org_id, location_id, product_id, quantity, expiration_date=None,
                  unit_cost_cents=50, user_id=USER_A, lot_number=None):
    """Bring stock in through a purchase order; returns (purchase_order, receiving_record)."""
    po = purchasing_service.create_purchase_order(
        org_id=org_id,
        user_id=user_id,
        request=PurchaseOrderRequest(
            location_id=location_id,
            lines=(PurchaseOrderLineRequest(product_id=product_id, quantity_ordered=quantity,
                                            unit_cost_cents=unit_cost_cents),),
            supplier_name="Test Supplier",
        ),
    )
    purchasing_service.mark_purchase_order_sent(org_id=org_id, user_id=user_id, purchase_order_id=po.id)
    record = purchasing_service.receive_purchase_order(
        org_id=org_id,
        user_id=user_id,
        purchase_order_id=po.id,
        request=ReceiveRequest(lines=(
            ReceiveLineRequest(product_id=product_id, quantity=quantity,
                               expiration_date=expiration_date, lot_number=lot_number),
        )),
    )
    return po, record


@pytest.fixture(scope='function')
def stock_in(db_session):
    """Helper fixture exposing receive_stock to tests."""
    return receive_stock


def caller_headers(org_id: int, user_id: int = USER_A) -> dict:
    """Helper to create gateway identity headers."""
    return {'X-Organization-Id': str(org_id), 'X-User-Id': str(user_id)}

# Overview: Pytest coverage for the HTTP layer: identity headers, status mapping and response shapes.

"""
API Tests

Covers:
- 401 when gateway identity headers are missing, malformed or name an
  unknown organization
- Typed failures map to {error, kind, details} with the matching status
- Happy paths for sales, adjustments, drawers, invoices and verification
- The payment webhook route authenticates by signature only
"""

import json

import pytest

from backoffice.services import reconciliation_service
from conftest import USER_A, WEBHOOK_SECRET, caller_headers, receive_stock


@pytest.fixture
def shop(db_session, org_a, location_a, product_a):
    receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=50)
    return {"org_id": org_a.id, "location_id": location_a.id, "product_id": product_a.id}


def _sale_body(shop, quantity, **extra):
    body = {"location_id": shop["location_id"], "items": [{"product_id": shop["product_id"], "quantity": quantity}]}
    body.update(extra)
    return body


class TestCallerIdentity:

    def test_missing_headers_are_401(self, client, shop):
        resp = client.post('/api/sales', json=_sale_body(shop, 1))

        assert resp.status_code == 401
        assert resp.get_json()["kind"] == "unauthenticated"

    @pytest.mark.parametrize("org_header,user_header", [
        ("abc", "1"),
        ("1", "-5"),
        ("0", "1"),
        ("", "1"),
    ])
    def test_malformed_headers_are_401(self, client, db_session, org_header, user_header):
        resp = client.get('/api/inventory/levels',
                          headers={'X-Organization-Id': org_header, 'X-User-Id': user_header})
        assert resp.status_code == 401

    def test_unknown_org_is_401(self, client, db_session):
        resp = client.get('/api/inventory/levels', headers=caller_headers(424242))
        assert resp.status_code == 401

    def test_inactive_org_is_401(self, client, db_session, org_a):
        org_a.is_active = False
        db_session.commit()

        resp = client.get('/api/inventory/levels', headers=caller_headers(org_a.id))
        assert resp.status_code == 401


class TestErrorMapping:

    def test_decimal_quantity_is_400(self, client, shop):
        resp = client.post('/api/sales', json=_sale_body(shop, "3.5"), headers=caller_headers(shop["org_id"]))

        assert resp.status_code == 400
        body = resp.get_json()
        assert body["kind"] == "validation"
        assert set(body) == {"error", "kind", "details"}

    def test_non_object_body_is_400(self, client, shop):
        resp = client.post('/api/sales', data="[1, 2]", content_type="application/json",
                           headers=caller_headers(shop["org_id"]))
        assert resp.status_code == 400

    def test_short_stock_is_409_with_shortfall(self, client, shop):
        resp = client.post('/api/sales', json=_sale_body(shop, 51), headers=caller_headers(shop["org_id"]))

        assert resp.status_code == 409
        body = resp.get_json()
        assert body["kind"] == "insufficient_stock"
        assert body["details"]["lines"][0]["available"] == 50

    def test_unknown_drawer_is_404(self, client, shop):
        resp = client.post('/api/drawers/999/open', json={}, headers=caller_headers(shop["org_id"]))

        assert resp.status_code == 404
        assert resp.get_json()["kind"] == "not_found"

    def test_closed_drawer_movement_is_409_stale(self, client, shop, drawer_a):
        resp = client.post(f'/api/drawers/{drawer_a.id}/movements',
                           json={"direction": "PAY_IN", "amount_cents": 100},
                           headers=caller_headers(shop["org_id"]))

        assert resp.status_code == 409
        assert resp.get_json()["kind"] == "stale_state"


class TestHappyPaths:

    def test_sale_is_201_with_items(self, client, shop):
        resp = client.post('/api/sales', json=_sale_body(shop, 3), headers=caller_headers(shop["org_id"]))

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["document_number"] == "S-000001"
        assert body["total_cents"] == 300
        assert [item["quantity"] for item in body["items"]] == [3]

    def test_adjust_then_list_levels(self, client, shop):
        headers = caller_headers(shop["org_id"])
        resp = client.post('/api/inventory/adjust', json={
            "product_id": shop["product_id"],
            "location_id": shop["location_id"],
            "mode": "SET",
            "quantity": 42,
            "reason": "Cycle count",
        }, headers=headers)
        assert resp.status_code == 201

        levels = client.get(f'/api/inventory/levels?location_id={shop["location_id"]}', headers=headers)
        assert [i["quantity"] for i in levels.get_json()["items"]] == [42]

        entries = client.get(f'/api/ledger/stock?product_id={shop["product_id"]}&limit=1', headers=headers)
        body = entries.get_json()
        assert body["limit"] == 1
        assert [(e["reason"], e["delta"]) for e in body["items"]] == [("ADJUSTMENT", -8)]

    def test_drawer_open_sale_close(self, client, shop, drawer_a):
        headers = caller_headers(shop["org_id"])

        opened = client.post(f'/api/drawers/{drawer_a.id}/open', json={"starting_float_cents": 1000}, headers=headers)
        assert opened.status_code == 200
        assert opened.get_json()["current_balance_cents"] == 1000

        sale = client.post('/api/sales', json=_sale_body(shop, 5, amount_paid_cents=1000), headers=headers)
        assert sale.get_json()["change_given_cents"] == 500

        closed = client.post(f'/api/drawers/{drawer_a.id}/close', json={"actual_balance_cents": 1500}, headers=headers)
        assert closed.status_code == 200
        assert closed.get_json()["discrepancy_cents"] == 0

    def test_invoice_and_payment(self, client, shop, customer_a):
        headers = caller_headers(shop["org_id"])
        sale = client.post('/api/sales', json=_sale_body(shop, 10, payment_method="CREDIT",
                                                           customer_id=customer_a.id), headers=headers)
        invoice = client.post('/api/invoices', json={"sale_id": sale.get_json()["id"]}, headers=headers)
        assert invoice.status_code == 201
        invoice_id = invoice.get_json()["id"]

        paid = client.post(f'/api/invoices/{invoice_id}/payments',
                           json={"amount_cents": 1000, "payment_method": "CARD"}, headers=headers)
        assert paid.status_code == 201
        assert paid.get_json()["status"] == "PAID"

    def test_verify_reports_ok(self, client, shop):
        resp = client.get('/api/ledger/verify', headers=caller_headers(shop["org_id"]))

        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True, "stock": [], "credit": [], "cash": []}


class TestWebhookRoute:

    def _payload(self, invoice_id, org_id):
        return json.dumps({
            "event": "charge.success",
            "data": {
                "reference": "PSK-HTTP-1",
                "amount": 400,
                "metadata": {"paymentType": "INVOICE", "referenceId": invoice_id,
                             "organizationId": org_id, "userId": USER_A},
            },
        }).encode("utf-8")

    def _invoice(self, client, shop, customer_id):
        headers = caller_headers(shop["org_id"])
        sale = client.post('/api/sales', json=_sale_body(shop, 10, payment_method="CREDIT",
                                                           customer_id=customer_id), headers=headers)
        return client.post('/api/invoices', json={"sale_id": sale.get_json()["id"]}, headers=headers).get_json()

    def test_bad_signature_is_401(self, client, shop, customer_a):
        invoice = self._invoice(client, shop, customer_a.id)
        body = self._payload(invoice["id"], shop["org_id"])

        resp = client.post('/api/webhooks/paystack', data=body, content_type="application/json",
                           headers={'x-paystack-signature': 'deadbeef'})

        assert resp.status_code == 401
        assert resp.get_json()["kind"] == "invalid_signature"

    def test_delivery_then_replay(self, client, shop, customer_a):
        invoice = self._invoice(client, shop, customer_a.id)
        body = self._payload(invoice["id"], shop["org_id"])
        signature = reconciliation_service.compute_signature(body, WEBHOOK_SECRET)

        first = client.post('/api/webhooks/paystack', data=body, content_type="application/json",
                            headers={'x-paystack-signature': signature})
        second = client.post('/api/webhooks/paystack', data=body, content_type="application/json",
                             headers={'x-paystack-signature': signature})

        assert (first.status_code, first.get_json()["status"]) == (200, "applied")
        assert (second.status_code, second.get_json()["status"]) == (200, "duplicate")


class TestSystem:

    def test_health(self, client, db_session):
        resp = client.get('/health')

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["resource_monitor"]["details"]["running"] is False

    def test_version(self, client):
        assert client.get('/version').get_json()["api_version"] == "0.1.0"

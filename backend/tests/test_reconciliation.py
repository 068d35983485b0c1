# Overview: Pytest coverage for payment provider webhook reconciliation.

"""
Payment Reconciliation Tests

SECURITY & IDEMPOTENCY TESTS:
1. The signature is verified over the raw body before anything is parsed
2. Replaying the same reference changes invoice, customer and ledger once
3. Event kinds other than INVOICE charge.success are acknowledged and ignored
4. An event naming another organization's invoice is treated as not found
"""

import json
import logging

import pytest

from backoffice.extensions import db
from backoffice.models import CreditTransaction, Invoice, Sale
from backoffice.services import invoice_service, ledger_service, reconciliation_service, sales_service
from backoffice.validation import (
    InvoiceCreateRequest,
    NotFoundError,
    SaleLineRequest,
    SaleRequest,
    SignatureError,
    ValidationError,
)
from conftest import USER_A, WEBHOOK_SECRET, receive_stock


def _body(*, reference, amount, invoice_id, org_id, event="charge.success", payment_type="INVOICE") -> bytes:
    return json.dumps({
        "event": event,
        "data": {
            "reference": reference,
            "amount": amount,
            "metadata": {
                "paymentType": payment_type,
                "referenceId": invoice_id,
                "organizationId": org_id,
                "userId": USER_A,
            },
        },
    }).encode("utf-8")


def _deliver(raw_body: bytes, signature: str | None = None) -> dict:
    if signature is None:
        signature = reconciliation_service.compute_signature(raw_body, WEBHOOK_SECRET)
    return reconciliation_service.handle_webhook(raw_body=raw_body, signature=signature, secret=WEBHOOK_SECRET)


@pytest.fixture
def open_invoice(db_session, org_a, location_a, product_a, customer_a):
    """A 1,000-cent credit sale with its unpaid invoice."""
    receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=50)
    sale = sales_service.record_sale(
        org_id=org_a.id,
        user_id=USER_A,
        request=SaleRequest(
            location_id=location_a.id,
            lines=(SaleLineRequest(product_id=product_a.id, quantity=10),),
            payment_method="CREDIT",
            customer_id=customer_a.id,
        ),
    )
    return invoice_service.create_invoice_for_sale(
        org_id=org_a.id, user_id=USER_A, request=InvoiceCreateRequest(sale_id=sale.id),
    )


class TestSignature:

    def test_valid_signature_is_accepted(self):
        body = b'{"event":"charge.success"}'
        signature = reconciliation_service.compute_signature(body, "secret")
        reconciliation_service.verify_signature(body, signature, "secret")
        reconciliation_service.verify_signature(body, signature.upper(), "secret")

    def test_signature_over_different_bytes_is_rejected(self):
        signature = reconciliation_service.compute_signature(b'{"a": 1}', "secret")
        with pytest.raises(SignatureError):
            reconciliation_service.verify_signature(b'{"a":1}', signature, "secret")

    def test_missing_signature_or_secret_is_rejected(self):
        with pytest.raises(SignatureError):
            reconciliation_service.verify_signature(b"{}", None, "secret")
        with pytest.raises(SignatureError):
            reconciliation_service.verify_signature(b"{}", "abc", "")

    def test_bad_signature_changes_nothing(self, open_invoice, org_a, customer_a):
        body = _body(reference="PSK-1", amount=1000, invoice_id=open_invoice.id, org_id=org_a.id)

        with pytest.raises(SignatureError):
            _deliver(body, signature="0" * 128)

        assert db.session.get(Invoice, open_invoice.id).status == "UNPAID"
        assert db.session.query(CreditTransaction).filter_by(reference="PSK-1").count() == 0


class TestApply:

    def test_payment_is_applied_once(self, open_invoice, org_a, customer_a):
        body = _body(reference="PSK-100", amount=600, invoice_id=open_invoice.id, org_id=org_a.id)

        first = _deliver(body)
        assert first["status"] == "applied"
        assert first["invoice_status"] == "PARTIAL"

        second = _deliver(body)
        assert second["status"] == "duplicate"

        invoice = db.session.get(Invoice, open_invoice.id)
        assert (invoice.amount_paid_cents, invoice.balance_due_cents) == (600, 400)
        assert db.session.get(Sale, invoice.sale_id).amount_paid_cents == 600
        db.session.refresh(customer_a)
        assert customer_a.current_balance_cents == 400
        entries = db.session.query(CreditTransaction).filter_by(reference="PSK-100").all()
        assert len(entries) == 1
        assert entries[0].payment_method == "MOBILE_MONEY"
        assert entries[0].ref_table == "invoices"

    def test_full_payment_marks_invoice_paid(self, open_invoice, org_a):
        result = _deliver(_body(reference="PSK-200", amount=1000, invoice_id=open_invoice.id, org_id=org_a.id))

        assert result["invoice_status"] == "PAID"
        assert db.session.get(Invoice, open_invoice.id).paid_at is not None

    def test_payment_on_paid_invoice_is_logged(self, open_invoice, org_a, caplog):
        _deliver(_body(reference="PSK-210", amount=1000, invoice_id=open_invoice.id, org_id=org_a.id))

        with caplog.at_level(logging.WARNING):
            result = _deliver(_body(reference="PSK-211", amount=200, invoice_id=open_invoice.id, org_id=org_a.id))

        assert result["status"] == "applied"
        assert db.session.get(Invoice, open_invoice.id).amount_paid_cents == 1200
        assert "already paid" in caplog.text

    def test_reference_race_reports_duplicate(self, open_invoice, org_a, monkeypatch):
        body = _body(reference="PSK-220", amount=300, invoice_id=open_invoice.id, org_id=org_a.id)
        assert _deliver(body)["status"] == "applied"

        # Second delivery misses the lookup, as if it ran before the first committed.
        monkeypatch.setattr(ledger_service, "find_credit_entry_by_reference", lambda *args, **kwargs: None)
        result = _deliver(body)

        assert result["status"] == "duplicate"
        assert db.session.get(Invoice, open_invoice.id).amount_paid_cents == 300
        assert db.session.query(CreditTransaction).filter_by(reference="PSK-220").count() == 1

    def test_other_events_are_ignored(self, open_invoice, org_a):
        refund = _deliver(_body(reference="PSK-300", amount=1000, invoice_id=open_invoice.id,
                                org_id=org_a.id, event="refund.processed"))
        subscription = _deliver(_body(reference="PSK-301", amount=1000, invoice_id=open_invoice.id,
                                      org_id=org_a.id, payment_type="SUBSCRIPTION"))

        assert refund["status"] == "ignored"
        assert subscription["status"] == "ignored"
        assert db.session.get(Invoice, open_invoice.id).amount_paid_cents == 0

    def test_invoice_of_another_org_is_not_found(self, open_invoice, org_b):
        body = _body(reference="PSK-400", amount=1000, invoice_id=open_invoice.id, org_id=org_b.id)

        with pytest.raises(NotFoundError):
            _deliver(body)
        assert db.session.get(Invoice, open_invoice.id).amount_paid_cents == 0

    def test_malformed_payloads_are_rejected(self, db_session):
        with pytest.raises(ValidationError):
            _deliver(b"not json")
        with pytest.raises(ValidationError):
            _deliver(json.dumps({"event": "charge.success", "data": {"amount": 5}}).encode())
        with pytest.raises(ValidationError):
            _deliver(json.dumps({"event": "charge.success",
                                 "data": {"reference": "X", "amount": 10.5}}).encode())

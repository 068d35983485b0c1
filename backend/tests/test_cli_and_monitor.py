"""
CLI, Audit Sink and Resource Monitor Tests
"""

import json
import logging

import pytest

from backoffice.extensions import db
from backoffice.models import AuditLog, Organization, StockLevel
from backoffice.services import sales_service
from backoffice.services.audit_service import (
    AuditEvent,
    DatabaseAuditSink,
    LoggingAuditSink,
    build_audit_sink,
    emit_audit,
)
from backoffice.services.monitor_service import ResourceMonitor
from backoffice.validation import SaleLineRequest, SaleRequest
from conftest import USER_A, receive_stock


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def stocked_org(db_session, org_a, location_a, product_a):
    receive_stock(org_id=org_a.id, location_id=location_a.id, product_id=product_a.id, quantity=12)
    return org_a


def _tamper(product_id, quantity):
    level = db.session.query(StockLevel).filter_by(product_id=product_id).one()
    level.quantity = quantity
    db.session.commit()


class TestLedgerCommands:

    def test_verify_passes_on_clean_ledger(self, runner, stocked_org):
        result = runner.invoke(args=['ledger', 'verify', '--org-id', str(stocked_org.id)])

        assert result.exit_code == 0
        assert "PASS stock: 0 violation(s)" in result.output

    def test_verify_fails_after_tampering(self, runner, stocked_org, product_a):
        _tamper(product_a.id, 99)

        result = runner.invoke(args=['ledger', 'verify', '--org-id', str(stocked_org.id)])

        assert result.exit_code == 1
        assert "FAIL stock: 1 violation(s)" in result.output

    def test_verify_json_report(self, runner, stocked_org):
        result = runner.invoke(args=['ledger', 'verify', '--org-id', str(stocked_org.id), '--json'])

        assert result.exit_code == 0
        assert json.loads(result.output)["ok"] is True

    def test_rebuild_repairs_projection(self, runner, stocked_org, product_a):
        _tamper(product_a.id, 99)

        result = runner.invoke(args=['ledger', 'rebuild-stock', '--org-id', str(stocked_org.id)])

        assert result.exit_code == 0
        assert "updated=1" in result.output
        db.session.expire_all()
        assert db.session.query(StockLevel).filter_by(product_id=product_a.id).one().quantity == 12


class TestOrgCommands:

    def test_create_and_list(self, runner, db_session):
        created = runner.invoke(args=['orgs', 'create', '--name', 'Gamma Ltd', '--code', 'GAMMA'])
        duplicate = runner.invoke(args=['orgs', 'create', '--name', 'Gamma Again', '--code', 'GAMMA'])
        listed = runner.invoke(args=['orgs', 'list'])

        assert "PASS Created organization: Gamma Ltd" in created.output
        assert "already exists" in duplicate.output
        assert "GAMMA" in listed.output
        assert db.session.query(Organization).filter_by(code="GAMMA").count() == 1

    def test_add_location_and_drawer(self, runner, org_a):
        loc = runner.invoke(args=['orgs', 'add-location', '--org-id', str(org_a.id), '--name', 'Kiosk'])
        assert "PASS Created location: Kiosk" in loc.output

        location_id = int(loc.output.split("ID: ")[1].split(")")[0])
        drawer = runner.invoke(args=['orgs', 'add-drawer', '--org-id', str(org_a.id),
                                     '--location-id', str(location_id), '--name', 'Kiosk Till'])
        assert "PASS Created drawer: Kiosk Till" in drawer.output


class TestAuditSinks:

    def test_database_sink_records_committed_sale(self, stocked_org, location_a, product_a):
        sale = sales_service.record_sale(
            org_id=stocked_org.id,
            user_id=USER_A,
            request=SaleRequest(location_id=location_a.id,
                                lines=(SaleLineRequest(product_id=product_a.id, quantity=2),)),
        )

        row = db.session.query(AuditLog).filter_by(action="SALE_CREATED").one()
        assert (row.org_id, row.entity_id, row.user_id) == (stocked_org.id, sale.id, USER_A)
        assert row.changes["total_cents"] == 200

    def test_build_audit_sink(self):
        assert isinstance(build_audit_sink("log"), LoggingAuditSink)
        assert isinstance(build_audit_sink("database"), DatabaseAuditSink)
        with pytest.raises(ValueError):
            build_audit_sink("kafka")

    def test_failing_sink_never_raises(self, app, db_session, caplog):
        class BrokenSink:
            def record(self, event):
                raise RuntimeError("sink down")

        original = app.extensions["audit_sink"]
        app.extensions["audit_sink"] = BrokenSink()
        try:
            with caplog.at_level(logging.ERROR):
                emit_audit(AuditEvent(user_id=USER_A, org_id=1, action="TEST", entity_type="Thing", entity_id=1))
        finally:
            app.extensions["audit_sink"] = original

        assert "Failed to record audit event TEST" in caplog.text


class TestResourceMonitor:

    def test_sample_reads_memory_and_pool(self):
        monitor = ResourceMonitor(interval=60, pool_status=lambda: "Pool size: 5")

        sample = monitor.sample()

        assert sample.max_rss_kb > 0
        assert sample.pool_status == "Pool size: 5"
        assert monitor.last_sample is sample

    def test_failing_pool_probe_still_samples(self):
        def broken():
            raise RuntimeError("no engine")

        sample = ResourceMonitor(pool_status=broken).sample()
        assert sample.pool_status is None

    def test_start_stop_is_idempotent(self):
        monitor = ResourceMonitor(interval=0.01)

        monitor.start()
        monitor.start()
        assert monitor.running

        monitor.stop()
        monitor.stop()
        assert not monitor.running

    def test_app_registers_stopped_monitor(self, app):
        monitor = app.extensions["resource_monitor"]
        assert isinstance(monitor, ResourceMonitor)
        assert not monitor.running

"""Tests for tenant-scoped audit logging and redaction."""

import json

from src.db.models import AuditEventType, AuditLog, LogLevel
from src.services.audit_service import REDACTED, AuditService, redact_sensitive


class TestRedaction:
    """Sensitive keys are replaced at any depth."""

    def test_top_level_and_nested(self) -> None:
        data = {
            "status": "DEL",
            "consignee_phone": "+966500000000",
            "recipient": {"recipient_name": "A. Customer", "city": "Jeddah"},
            "items": [{"Api-Key": "secret"}],
        }
        redacted = redact_sensitive(data)
        assert redacted["status"] == "DEL"
        assert redacted["consignee_phone"] == REDACTED
        assert redacted["recipient"]["recipient_name"] == REDACTED
        assert redacted["recipient"]["city"] == "Jeddah"
        assert redacted["items"][0]["Api-Key"] == REDACTED

    def test_original_is_untouched(self) -> None:
        data = {"email": "a@example.com"}
        redact_sensitive(data)
        assert data["email"] == "a@example.com"

    def test_scalars_pass_through(self) -> None:
        assert redact_sensitive(None) is None
        assert redact_sensitive("plain") == "plain"


class TestAuditLog:
    """Writes flush into the caller's unit of work unless commit=True."""

    def test_log_encodes_and_redacts_values(self, db_session, tenant_id) -> None:
        audit = AuditService(db_session)
        entry = audit.log(
            tenant_id=tenant_id,
            event_type=AuditEventType.shipment_ingested,
            entity_type="shipment_event",
            entity_id="evt-1",
            action="transitioned",
            workflow_name="shipment-status-ingest",
            new_value={"tracking_number": "AWB1", "address": "1 Main St"},
        )
        db_session.commit()
        stored = json.loads(entry.new_value)
        assert stored == {"tracking_number": "AWB1", "address": REDACTED}
        assert entry.level == "INFO"

    def test_rollback_discards_uncommitted_record(self, db_session, tenant_id) -> None:
        AuditService(db_session).log_transition(
            tenant_id, "ORD-1", None, "new", "call_center", "order-state-transition"
        )
        db_session.rollback()
        assert db_session.query(AuditLog).count() == 0

    def test_commit_true_survives_rollback(self, db_session, tenant_id) -> None:
        AuditService(db_session).log_error(
            tenant_id, "E-4002", "boom", "shipment-status-ingest", commit=True
        )
        db_session.rollback()
        entry = db_session.query(AuditLog).one()
        assert entry.level == "ERROR"
        assert json.loads(entry.new_value)["error_code"] == "E-4002"

    def test_anomaly_record(self, db_session, tenant_id) -> None:
        entry = AuditService(db_session).log_anomaly(
            tenant_id, "ORD-1", "delivered", "in_transit", "shipment-status-ingest", "evt-9"
        )
        assert entry.event_type == "anomaly"
        assert entry.level == "WARNING"
        assert json.loads(entry.old_value) == {"state": "delivered"}


class TestQueries:
    """Filtering, tenant scoping and text export."""

    def _seed(self, db_session, tenant_id, other_tenant_id) -> AuditService:
        audit = AuditService(db_session)
        audit.log_transition(tenant_id, "ORD-1", None, "new", "call_center", "w")
        audit.log_transition(tenant_id, "ORD-1", "new", "cancelled", "operations", "w")
        audit.log_anomaly(tenant_id, "ORD-2", "delivered", "shipped", "w")
        audit.log_transition(other_tenant_id, "ORD-1", None, "new", "call_center", "w")
        db_session.commit()
        return audit

    def test_filters(self, db_session, tenant_id, other_tenant_id) -> None:
        audit = self._seed(db_session, tenant_id, other_tenant_id)
        assert len(audit.get_logs(tenant_id)) == 3
        assert len(audit.get_logs(tenant_id, entity_id="ORD-1")) == 2
        assert len(audit.get_logs(tenant_id, event_type=AuditEventType.anomaly)) == 1
        assert len(audit.get_logs(tenant_id, level=LogLevel.WARNING)) == 1
        assert len(audit.get_logs(other_tenant_id)) == 1

    def test_get_log_is_tenant_scoped(self, db_session, tenant_id, other_tenant_id) -> None:
        audit = self._seed(db_session, tenant_id, other_tenant_id)
        entry = audit.get_logs(tenant_id)[0]
        assert audit.get_log(tenant_id, entry.id).id == entry.id
        assert audit.get_log(other_tenant_id, entry.id) is None

    def test_export_text(self, db_session, tenant_id, other_tenant_id) -> None:
        audit = self._seed(db_session, tenant_id, other_tenant_id)
        text = audit.export_logs_text(tenant_id, entity_type="order", entity_id="ORD-1")
        lines = text.splitlines()
        assert lines[0].endswith("[INFO] [state_transition] order/ORD-1 transition")
        assert any(line.strip().startswith("old:") for line in lines)
        assert "ORD-2" not in text

    def test_download_filename(self, db_session, tenant_id) -> None:
        filename, _ = AuditService(db_session).export_logs_for_download(
            tenant_id, "acme orders!"
        )
        assert filename.startswith("acme_orders_audit_")
        assert filename.endswith(".txt")

"""Tests for the structured audit trail."""

import json

from threatfeed.core import AuditEventType, AuditLogger, AuditSeverity, get_audit_logger

from conftest import observation


class TestAuditLogger:
    def test_event_written_as_json_line(self, tmp_path):
        audit = AuditLogger(log_dir=tmp_path)
        try:
            event_id = audit.log_event(
                AuditEventType.ADMIN_ACTION,
                AuditSeverity.INFO,
                "Manual fetch",
                details={"source_id": "otx"},
                actor="alice",
            )
        finally:
            audit.close()

        (log_file,) = tmp_path.glob("audit_*.log")
        lines = [json.loads(line) for line in log_file.read_text().splitlines() if line]
        entry = [e for e in lines if e.get("event_id") == event_id][0]
        assert entry["event_type"] == "admin.action"
        assert entry["actor"] == "alice"
        assert entry["details"] == {"source_id": "otx"}

    def test_recent_tail_is_bounded_and_filterable(self, tmp_path):
        audit = AuditLogger(log_dir=tmp_path, tail_size=3)
        try:
            for i in range(5):
                audit.log_event(AuditEventType.SOURCE_UPDATED, AuditSeverity.INFO, f"update {i}")
            audit.log_event(AuditEventType.EMERGENCY_ALERT, AuditSeverity.CRITICAL, "alert")
        finally:
            audit.close()

        events = audit.recent()
        assert len(events) == 3
        assert events[-1]["message"] == "alert"
        alerts = audit.recent(event_type=AuditEventType.EMERGENCY_ALERT)
        assert [e["message"] for e in alerts] == ["alert"]

    def test_default_actor_is_system(self, tmp_path):
        audit = AuditLogger(log_dir=tmp_path)
        try:
            audit.log_event(AuditEventType.SYSTEM_START, AuditSeverity.INFO, "start")
        finally:
            audit.close()
        assert audit.recent()[-1]["actor"] == "system"


class TestFeedAuditEvents:
    def test_resolution_is_audited(self, service):
        record = service.ingest(observation()).record
        service.resolve(record.id, reason="taken down", actor="moderator-1")

        events = get_audit_logger().recent(event_type=AuditEventType.RECORD_RESOLVED)
        assert events[-1]["details"]["record_id"] == record.id
        assert events[-1]["actor"] == "moderator-1"

    def test_admin_status_exposes_recent_events(self, service):
        service.initialize(actor="admin")
        status = service.admin_status()
        assert any(e["event_type"] == "admin.action" for e in status["recent_audit"])

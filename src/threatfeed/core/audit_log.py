# Core Module - Audit Trail
#
# Append-only structured audit log for security-relevant feed events:
# record creation/resolution, status transitions, moderation, emergency
# alerts, admin actions and adapter suspension.  Operational logging
# stays on stdlib ``logging``; this log is the forensic record.

import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4

import structlog

AUDIT_LOGGER_NAME = "threatfeed.audit"


class AuditEventType(str, Enum):
    """Types of feed events written to the audit trail."""

    RECORD_CREATED = "record.created"
    RECORD_UPDATED = "record.updated"
    RECORD_STATUS_CHANGED = "record.status_changed"
    RECORD_RESOLVED = "record.resolved"
    CORRELATION_DISPUTED = "correlation.disputed"
    CORRELATION_CONFIRMED = "correlation.confirmed"
    PATTERN_CHANGED = "pattern.changed"
    SOURCE_SUSPENDED = "source.suspended"
    SOURCE_UPDATED = "source.updated"
    AGING_SWEEP = "aging.sweep"
    EMERGENCY_ALERT = "alert.emergency"
    ADMIN_ACTION = "admin.action"
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""

    INFO = "info"
    NOTICE = "notice"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for feed events.

    Features:
    - Structured JSON lines via structlog
    - Automatic timestamp and event ID
    - Daily log file under ``log_dir``
    - Bounded in-memory tail for the admin status surface
    """

    def __init__(self, log_dir: Optional[Path] = None, tail_size: int = 500):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
            tail_size: Number of recent events kept in memory
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=tail_size)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self._handler = self._setup_file_handler()
        self.logger = structlog.get_logger(AUDIT_LOGGER_NAME)

    def _setup_file_handler(self) -> logging.Handler:
        """Attach a daily file handler to the audit logger only."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(message)s"))

        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        return file_handler

    def log_event(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> str:
        """
        Append an event to the audit trail.

        Args:
            event_type: Type of event
            severity: Severity level
            message: Human-readable description
            details: Additional structured details
            actor: Who triggered the event (user id, "system", adapter id)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "actor": actor or "system",
        }
        self._recent.append(event_data)
        self.logger.info("feed_event", **event_data)
        return event_id

    def recent(
        self,
        limit: int = 50,
        event_type: Optional[AuditEventType] = None,
    ) -> List[Dict[str, Any]]:
        """Return the most recent audit events (newest last)."""
        events = list(self._recent)
        if event_type is not None:
            events = [e for e in events if e["event_type"] == event_type.value]
        return events[-limit:]

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger(AUDIT_LOGGER_NAME).removeHandler(self._handler)
        self._handler.close()


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        from .config import get_settings

        _audit_logger = AuditLogger(log_dir=Path(get_settings().audit_dir))
    return _audit_logger

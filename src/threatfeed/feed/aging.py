# Feed Module - Aging & Lifecycle
#
# Owns the record status state machine:
#
#   active --(ttl elapsed)--------------> expired
#   active --(manual / scheduled)-------> resolved
#   active --(moderation)---------------> false_positive
#   active <--(flag / re-verification)--> under_review
#   under_review --(moderation)---------> false_positive
#
# The periodic sweep never expires a record that is still waiting for
# correlation, and every write is conditioned on the version and
# last_seen observed when the candidate was selected, so a record
# re-seen while the sweep runs keeps its status.

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.audit_log import AuditEventType, AuditSeverity, get_audit_logger
from ..core.config import FeedSettings, get_settings
from .errors import ConflictError, NotFoundError, ValidationError
from .events import EventBus, RecordMutated
from .models import MutationKind, RecordStatus, Severity, ThreatRecord, utcnow
from .scoring import rescore
from .store import ThreatStore

logger = logging.getLogger(__name__)

_MUTATION_FOR_STATUS = {
    RecordStatus.RESOLVED: MutationKind.RESOLVED,
    RecordStatus.EXPIRED: MutationKind.EXPIRED,
}


def severity_ttl(settings: FeedSettings, severity: Severity) -> timedelta:
    return timedelta(days=settings.severity_ttl_days[severity.value])


def compute_expires_at(
    record: ThreatRecord, settings: FeedSettings, *explicit: Optional[datetime]
) -> datetime:
    """``max(ttl anchor + severity TTL, explicit expiries)``.

    The result is never earlier than ``timeline.last_seen``.
    """
    candidates = [record.timeline.ttl_anchor + severity_ttl(settings, record.severity)]
    candidates.extend(e for e in explicit if e is not None)
    return max(candidates)


@dataclass
class SweepReport:
    """Outcome of one aging sweep."""

    expired: List[str] = field(default_factory=list)
    resolved: List[str] = field(default_factory=list)
    flagged_stale: List[str] = field(default_factory=list)
    pending_skipped: int = 0
    conflicts: int = 0
    skipped: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired": len(self.expired),
            "resolved": len(self.resolved),
            "flagged_stale": len(self.flagged_stale),
            "pending_skipped": self.pending_skipped,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
            "record_ids": {
                "expired": list(self.expired),
                "resolved": list(self.resolved),
                "flagged_stale": list(self.flagged_stale),
            },
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class AgingEngine:
    """Periodic sweep plus explicit, legality-checked status transitions."""

    def __init__(
        self,
        store: ThreatStore,
        bus: EventBus,
        settings: Optional[FeedSettings] = None,
    ):
        self.store = store
        self.bus = bus
        self.settings = settings or get_settings()
        self._sweep_lock = threading.Lock()
        self._runs = 0
        self._last_report: Optional[SweepReport] = None

    # ---- Sweep -----------------------------------------------------------

    def run_aging_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Expire, resolve and flag active records.

        Returns immediately with ``skipped=True`` if another sweep holds
        the lock.
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Aging sweep already running; skipping")
            return SweepReport(skipped=True, finished_at=utcnow())
        try:
            now = now or utcnow()
            report = SweepReport(started_at=now)
            for record in self.store.records_with_status([RecordStatus.ACTIVE]):
                if record.pending_analysis:
                    report.pending_skipped += 1
                    continue
                target, bucket, reason = self._sweep_decision(record, now)
                if target is None:
                    continue
                try:
                    self._write_transition(
                        record,
                        target,
                        reason,
                        actor="aging_sweep",
                        now=now,
                        expected_last_seen=record.timeline.last_seen,
                    )
                except ConflictError:
                    report.conflicts += 1
                    logger.debug("Record %s changed during sweep; left as is", record.id)
                    continue
                getattr(report, bucket).append(record.id)

            report.finished_at = utcnow()
            self._runs += 1
            self._last_report = report
            logger.info(
                "Aging sweep: expired=%d resolved=%d flagged_stale=%d pending=%d conflicts=%d",
                len(report.expired),
                len(report.resolved),
                len(report.flagged_stale),
                report.pending_skipped,
                report.conflicts,
            )
            get_audit_logger().log_event(
                AuditEventType.AGING_SWEEP,
                AuditSeverity.INFO,
                "Aging sweep completed",
                details=report.to_dict(),
            )
            return report
        finally:
            self._sweep_lock.release()

    def _sweep_decision(self, record: ThreatRecord, now: datetime):
        scheduled = record.timeline.scheduled_resolution_at
        if scheduled is not None and scheduled <= now:
            return RecordStatus.RESOLVED, "resolved", "scheduled resolution"
        deadline = compute_expires_at(record, self.settings, record.expires_at)
        if deadline < now:
            return RecordStatus.EXPIRED, "expired", "ttl elapsed"
        untouched = now - record.timeline.ttl_anchor
        if (
            record.confidence < self.settings.stale_confidence_floor
            and untouched >= timedelta(days=self.settings.stale_after_days)
        ):
            return RecordStatus.UNDER_REVIEW, "flagged_stale", "low confidence and stale"
        return None, None, None

    @property
    def is_running(self) -> bool:
        return self._sweep_lock.locked()

    def status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "runs": self._runs,
            "last_report": self._last_report.to_dict() if self._last_report else None,
            "severity_ttl_days": dict(self.settings.severity_ttl_days),
        }

    # ---- Explicit transitions --------------------------------------------

    def transition(
        self,
        record_id: str,
        to_status: RecordStatus,
        reason: str = "",
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ThreatRecord:
        """Move a record to ``to_status`` if the state machine allows it.

        Raises:
            NotFoundError: unknown record.
            ValidationError: the transition is not allowed.
            ConflictError: ``expected_version`` no longer matches, or the
                record kept changing across retries.
        """
        attempts = 1 if expected_version is not None else max(1, self.settings.merge_retry_attempts)
        for _ in range(attempts):
            record = self.store.get_record(record_id)
            if record is None:
                raise NotFoundError(f"Threat {record_id} not found")
            if expected_version is not None and record.version != expected_version:
                raise ConflictError(
                    "Record was modified by someone else",
                    {"record_id": record_id, "current_version": record.version},
                )
            try:
                return self._write_transition(record, to_status, reason, actor, now or utcnow())
            except ConflictError:
                if expected_version is not None:
                    raise
        raise ConflictError("Record kept changing; transition abandoned", {"record_id": record_id})

    def reverify(self, record_id: str, actor: Optional[str] = None) -> ThreatRecord:
        """Confirm a record is still live and restart its TTL clock."""
        record = self.store.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Threat {record_id} not found")
        if record.status == RecordStatus.UNDER_REVIEW:
            return self.transition(record_id, RecordStatus.ACTIVE, "re-verified", actor=actor)
        if record.status != RecordStatus.ACTIVE:
            raise ValidationError(
                f"Cannot re-verify a {record.status.value} record", {"record_id": record_id}
            )
        now = utcnow()
        updated = copy.deepcopy(record)
        updated.timeline.verified_at = now
        updated.expires_at = compute_expires_at(updated, self.settings)
        if not self.store.update_record(updated, record.version):
            raise ConflictError("Record was modified during re-verification", {"record_id": record_id})
        self.bus.publish(RecordMutated(kind=MutationKind.UPDATED, record=updated, actor=actor or "system"))
        return updated

    def _write_transition(
        self,
        record: ThreatRecord,
        to_status: RecordStatus,
        reason: str,
        actor: Optional[str],
        now: datetime,
        expected_last_seen: Optional[datetime] = None,
    ) -> ThreatRecord:
        previous = record.status
        if not previous.can_transition_to(to_status):
            raise ValidationError(
                f"Illegal status transition {previous.value} -> {to_status.value}",
                {"record_id": record.id, "from": previous.value, "to": to_status.value},
            )
        updated = copy.deepcopy(record)
        updated.status = to_status
        if to_status == RecordStatus.RESOLVED:
            updated.timeline.resolved_at = now
        if to_status == RecordStatus.ACTIVE and previous == RecordStatus.UNDER_REVIEW:
            updated.timeline.verified_at = now
            updated.expires_at = compute_expires_at(updated, self.settings)
        rescore(updated)
        if not self.store.update_record(updated, record.version, expected_last_seen):
            raise ConflictError(
                "Record was modified concurrently", {"record_id": record.id}
            )

        logger.info(
            "Threat %s: %s -> %s (%s)", record.id, previous.value, to_status.value, reason or "-"
        )
        audit_type = (
            AuditEventType.RECORD_RESOLVED
            if to_status == RecordStatus.RESOLVED
            else AuditEventType.RECORD_STATUS_CHANGED
        )
        get_audit_logger().log_event(
            audit_type,
            AuditSeverity.NOTICE,
            f"Threat status {previous.value} -> {to_status.value}",
            details={"record_id": record.id, "reason": reason},
            actor=actor,
        )
        self.bus.publish(
            RecordMutated(
                kind=_MUTATION_FOR_STATUS.get(to_status, MutationKind.STATUS_CHANGED),
                record=updated,
                previous_status=previous,
                actor=actor or "system",
            )
        )
        return updated

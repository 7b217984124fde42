# Feed Module - Threat Feed Service
#
# Wires the engines together and is the only entry point used by the
# API and the CLI:
#
#   store -> patterns -> ingestion --(RecordMutated)--> bus
#                                                        |-> subscriptions
#   ingestion commit --(worker pool)--> correlation
#   scheduler: aging job (pending correlation, sweep, stats, digests),
#              stats job, one interval job per source adapter

import copy
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..core.audit_log import AuditEventType, AuditSeverity, get_audit_logger
from ..core.config import FeedSettings, get_settings
from .adapters import AdapterRegistry, FetchReport
from .aging import AgingEngine
from .correlation import CorrelationEngine
from .errors import ConflictError, NotFoundError, ThreatFeedError, ValidationError
from .events import EventBus, RecordMutated
from .ingestion import BatchIngestReport, IngestionEngine, IngestResult
from .models import (
    Attribution,
    Impact,
    MutationKind,
    OPEN_STATUSES,
    RecordStatus,
    Severity,
    SourceKind,
    StatsPeriod,
    Target,
    TargetType,
    ThreatCategory,
    ThreatContext,
    ThreatRecord,
    ThreatSource,
    ThreatType,
    Timeline,
    parse_enum,
    utcnow,
)
from .patterns import PatternEngine
from .scoring import rescore
from .stats import StatsAggregator
from .store import ThreatStore
from .subscriptions import DeliveryChannel, SubscriptionEngine, watch_keys

logger = logging.getLogger(__name__)

# Fields a moderator may change through update_record
MODERATION_FIELDS = {
    "title",
    "description",
    "tags",
    "references",
    "impact",
    "attribution",
    "status",
}

MAX_PAGE_SIZE = 200


def _string_list(value: Any, name: str) -> List[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{name} must be a list of strings", {"field": name})
    return list(dict.fromkeys(v.strip() for v in value if v.strip()))


class ThreatFeedService:
    """Facade over every feed engine.

    Usage::

        service = ThreatFeedService(FeedSettings(db_path=":memory:"))
        service.initialize()
        result = service.ingest({...})
        service.start()        # schedulers, if you want them
        service.shutdown()
    """

    def __init__(
        self,
        settings: Optional[FeedSettings] = None,
        store: Optional[ThreatStore] = None,
        channels: Optional[Iterable[DeliveryChannel]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or ThreatStore(self.settings.db_path)
        self.bus = EventBus()
        self.patterns = PatternEngine(self.store)
        self.ingestion = IngestionEngine(self.store, self.patterns, self.bus, self.settings)
        self.correlation = CorrelationEngine(self.store, self.bus, self.settings)
        self.aging = AgingEngine(self.store, self.bus, self.settings)
        self.subscriptions = SubscriptionEngine(self.store, self.settings, channels)
        self.subscriptions.attach(self.bus)
        self.adapters = AdapterRegistry(
            self.store, self.ingestion, self.settings, on_ingested=self._hand_off_batch
        )
        self.stats = StatsAggregator(self.store)

        self._correlation_pool: Optional[ThreadPoolExecutor] = None
        if not self.settings.correlation_inline:
            self._correlation_pool = ThreadPoolExecutor(
                max_workers=self.settings.correlation_workers,
                thread_name_prefix="threatfeed-correlation",
            )
        self._inflight: Set[Future] = set()
        self._inflight_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._last_job: Optional[Dict[str, Any]] = None
        self._started_at = utcnow()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, actor: Optional[str] = None) -> Dict[str, Any]:
        """Install default patterns and sources (idempotent)."""
        patterns = self.patterns.initialize_defaults()
        sources = self.adapters.initialize_defaults()
        get_audit_logger().log_event(
            AuditEventType.ADMIN_ACTION,
            AuditSeverity.INFO,
            "Threat feed initialized",
            details={"patterns_created": patterns, "sources_added": sources},
            actor=actor,
        )
        return {"patterns_created": patterns, "sources_added": sources}

    def start(self) -> None:
        """Start the background scheduler (aging, stats, adapters)."""
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
        self._scheduler.add_job(
            self.run_aging_job,
            trigger=CronTrigger.from_crontab(self.settings.aging_cron, timezone="UTC"),
            id="threatfeed_aging",
            name="Threat aging job",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.generate_stats,
            trigger=CronTrigger.from_crontab(self.settings.stats_cron, timezone="UTC"),
            args=[StatsPeriod.HOURLY],
            id="threatfeed_stats",
            name="Hourly stats rollup",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.adapters.attach_scheduler(self._scheduler)
        self._scheduler.start()
        logger.info(
            "Threat feed scheduler started (aging '%s', stats '%s')",
            self.settings.aging_cron,
            self.settings.stats_cron,
        )
        get_audit_logger().log_event(
            AuditEventType.SYSTEM_START, AuditSeverity.INFO, "Threat feed scheduler started"
        )

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Threat feed scheduler stopped")
        if self._correlation_pool is not None:
            self._correlation_pool.shutdown(wait=True)
        self.subscriptions.shutdown()
        self.adapters.shutdown()
        get_audit_logger().log_event(
            AuditEventType.SYSTEM_STOP, AuditSeverity.INFO, "Threat feed stopped"
        )
        self.store.close()

    @property
    def scheduler_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ------------------------------------------------------------------
    # Ingestion + correlation hand-off
    # ------------------------------------------------------------------

    def ingest(self, raw: Dict[str, Any], actor: Optional[str] = None) -> IngestResult:
        result = self.ingestion.ingest(raw, actor=actor)
        if result.record.pending_analysis:
            self._schedule_correlation(result.record.id, result.patterns.correlation_hints)
        return result

    def ingest_batch(self, observations: Iterable[Dict[str, Any]], actor: Optional[str] = None) -> BatchIngestReport:
        report = self.ingestion.ingest_batch(observations, actor=actor)
        self._hand_off_batch(report)
        return report

    def _hand_off_batch(self, report: BatchIngestReport) -> None:
        for result in report.results:
            if result.record.pending_analysis:
                self._schedule_correlation(result.record.id, result.patterns.correlation_hints)

    def _schedule_correlation(self, record_id: str, hints: Iterable[str] = ()) -> None:
        hints = list(hints)
        if self._correlation_pool is None:
            self._run_correlation(record_id, hints)
            return
        future = self._correlation_pool.submit(self._run_correlation, record_id, hints)
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _run_correlation(self, record_id: str, hints: List[str]) -> None:
        try:
            self.correlation.correlate(record_id, hints)
        except ThreatFeedError as exc:
            # Record stays pending; the aging job retries it
            logger.warning("Correlation of %s deferred: %s", record_id, exc.message)
        except Exception:
            logger.exception("Correlation of %s crashed", record_id)

    def wait_for_correlation(self, timeout: Optional[float] = None) -> bool:
        """Block until queued correlation work finishes. False on timeout."""
        with self._inflight_lock:
            pending = list(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> ThreatRecord:
        record = self.store.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Threat {record_id} not found")
        return record

    def list_records(
        self,
        threat_type: Optional[str] = None,
        severity: Optional[str] = None,
        status: Optional[str] = None,
        source: Optional[str] = None,
        target: Optional[str] = None,
        tag: Optional[str] = None,
        min_confidence: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ThreatRecord], int]:
        """Filtered page of records plus the total match count."""
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be within 1-{MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        filters: Dict[str, Any] = {
            "threat_type": parse_enum(ThreatType, threat_type, "type") if threat_type else None,
            "severity": parse_enum(Severity, severity, "severity") if severity else None,
            "status": parse_enum(RecordStatus, status, "status") if status else None,
            "source_id": source or None,
            "targets": sorted(watch_keys(target)) if target else None,
            "tag": tag or None,
            "min_confidence": min_confidence,
        }
        records = self.store.query_records(limit=limit, offset=offset, **filters)
        return records, self.store.count_records(**filters)

    def correlations_for(self, record_id: str) -> List[Dict[str, Any]]:
        self.get_record(record_id)
        return [e.to_dict() for e in self.correlation.correlations_for(record_id)]

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    def update_record(
        self,
        record_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int],
        actor: Optional[str] = None,
    ) -> ThreatRecord:
        """Apply a moderator's partial update.

        Raises:
            ValidationError: automatic fields, bad values, a missing
                ``expected_version`` or an illegal status transition.
            NotFoundError: unknown record.
            ConflictError: the record changed since ``expected_version``.
        """
        if expected_version is None:
            raise ValidationError("expected_version is required", {"field": "expected_version"})
        rejected = sorted(set(changes) - MODERATION_FIELDS)
        if rejected:
            raise ValidationError(
                f"Fields are computed by the feed and cannot be set: {', '.join(rejected)}",
                {"fields": rejected},
            )
        record = self.get_record(record_id)
        if record.version != expected_version:
            raise ConflictError(
                "Record was modified by someone else",
                {"record_id": record_id, "current_version": record.version},
            )

        to_status = None
        if "status" in changes:
            to_status = parse_enum(RecordStatus, changes["status"], "status")
            if to_status == record.status:
                to_status = None
            elif not record.status.can_transition_to(to_status):
                raise ValidationError(
                    f"Illegal status transition {record.status.value} -> {to_status.value}",
                    {"from": record.status.value, "to": to_status.value},
                )

        updated = copy.deepcopy(record)
        content = {k: v for k, v in changes.items() if k != "status"}
        reanalyze = self._apply_moderation(updated, content)
        if content:
            if reanalyze:
                updated.pending_analysis = True
            rescore(updated)
            if not self.store.update_record(updated, expected_version):
                raise ConflictError(
                    "Record was modified by someone else", {"record_id": record_id}
                )
            get_audit_logger().log_event(
                AuditEventType.RECORD_UPDATED,
                AuditSeverity.INFO,
                "Threat record moderated",
                details={"record_id": record_id, "fields": sorted(content)},
                actor=actor,
            )
            self.bus.publish(
                RecordMutated(kind=MutationKind.UPDATED, record=updated, actor=actor or "moderator")
            )
            if reanalyze:
                self._schedule_correlation(record_id)

        if to_status is not None:
            updated = self.aging.transition(
                record_id,
                to_status,
                reason="moderation",
                actor=actor,
                expected_version=updated.version,
            )
        return updated

    @staticmethod
    def _apply_moderation(record: ThreatRecord, changes: Dict[str, Any]) -> bool:
        """Write moderation fields onto ``record``. True if correlation inputs changed."""
        ctx = record.context
        if "title" in changes:
            ctx.title = str(changes["title"] or "")
        if "description" in changes:
            ctx.description = str(changes["description"] or "")
        if "tags" in changes:
            ctx.tags = _string_list(changes["tags"], "tags")
        if "references" in changes:
            ctx.references = _string_list(changes["references"], "references")
        for name in ("impact", "attribution"):
            if name in changes and not isinstance(changes[name], (dict, type(None))):
                raise ValidationError(f"{name} must be an object", {"field": name})
        if "impact" in changes:
            record.impact = Impact.from_dict(changes["impact"])
        if "attribution" in changes:
            attribution = Attribution.from_dict(changes["attribution"])
            if attribution != record.attribution:
                record.attribution = attribution
                return True
        return False

    def vote(self, record_id: str, direction: str, actor: Optional[str] = None) -> ThreatRecord:
        """Count a community vote and rescore the record."""
        if direction not in ("up", "down"):
            raise ValidationError("vote must be 'up' or 'down'", {"field": "vote"})
        self.get_record(record_id)

        def apply(record: ThreatRecord) -> bool:
            if direction == "up":
                record.votes.upvotes += 1
            else:
                record.votes.downvotes += 1
            rescore(record)
            return True

        updated = self.store.modify_record(record_id, apply, self.settings.merge_retry_attempts)
        if updated is None:
            raise NotFoundError(f"Threat {record_id} not found")
        self.bus.publish(
            RecordMutated(kind=MutationKind.UPDATED, record=updated, actor=actor or "community")
        )
        return updated

    def resolve(self, record_id: str, reason: str = "", actor: Optional[str] = None) -> ThreatRecord:
        return self.aging.transition(
            record_id, RecordStatus.RESOLVED, reason=reason or "resolved", actor=actor
        )

    def reverify(self, record_id: str, actor: Optional[str] = None) -> ThreatRecord:
        return self.aging.reverify(record_id, actor=actor)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def process_pending(self, deadline_seconds: Optional[float] = None) -> Dict[str, Any]:
        """Retry correlation for open records still marked pending."""
        ids = [
            r.id
            for r in self.store.records_with_status(OPEN_STATUSES, pending_analysis=True)
        ]
        return self.correlation.correlate_batch(ids, deadline_seconds).to_dict()

    def generate_stats(self, period: StatsPeriod = StatsPeriod.HOURLY, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.stats.generate(period, now).to_dict()

    def run_aging_job(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Full maintenance pass; each step runs even if an earlier one failed."""
        now = now or utcnow()
        steps: List[Tuple[str, Callable[[], Any]]] = [
            ("pending_correlation", self.process_pending),
            ("sweep", lambda: self.aging.run_aging_sweep(now).to_dict()),
            ("stats", lambda: [self.generate_stats(p, now) for p in (StatsPeriod.HOURLY, StatsPeriod.DAILY)]),
            ("digests", lambda: [r.to_dict() for r in self.subscriptions.flush_due_digests(now)]),
        ]
        results: Dict[str, Any] = {"started_at": now.isoformat()}
        for name, step in steps:
            try:
                results[name] = step()
            except Exception as exc:
                logger.exception("Aging job step %s failed", name)
                results[name] = {"error": str(exc) or exc.__class__.__name__}
        results["finished_at"] = utcnow().isoformat()
        self._last_job = results
        return results

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def fetch_external(self, source_id: str, actor: Optional[str] = None) -> FetchReport:
        return self.adapters.fetch_external(source_id, actor=actor)

    def emergency_alert(
        self,
        title: str,
        message: str,
        severity: str,
        target_type: Optional[str] = None,
        target_value: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Push an urgent, unpersisted alert through subscription matching."""
        if not title or not message or not severity:
            raise ValidationError("title, message and severity are required")
        now = utcnow()
        alert = ThreatRecord(
            identity_hash="emergency",
            source=ThreatSource(
                id="emergency", name="Emergency Alert System", kind=SourceKind.MANUAL, reliability=100
            ),
            type=ThreatType.SCAM,
            category=ThreatCategory.FINANCIAL,
            severity=parse_enum(Severity, severity, "severity"),
            reported_severity=parse_enum(Severity, severity, "severity"),
            target=Target(
                type=parse_enum(TargetType, target_type or "other", "target_type"),
                value=target_value or "multiple",
            ),
            timeline=Timeline(first_seen=now, last_seen=now, discovered_at=now),
            confidence=100,
            context=ThreatContext(title=title, description=message, tags=["emergency", "alert"]),
            pending_analysis=False,
        )
        alert.sources = [alert.source]
        event = RecordMutated(kind=MutationKind.CREATED, record=alert, urgent=True, actor=actor or "admin")
        logger.warning("Emergency alert broadcast: %s", title)
        get_audit_logger().log_event(
            AuditEventType.EMERGENCY_ALERT,
            AuditSeverity.CRITICAL,
            f"Emergency alert: {title}",
            details={"event_id": event.event_id, "severity": alert.severity.value},
            actor=actor,
        )
        deliveries = self.subscriptions.dispatch(event)
        return {"event_id": event.event_id, "deliveries": len(deliveries)}

    def admin_status(self) -> Dict[str, Any]:
        with self._inflight_lock:
            inflight = len(self._inflight)
        return {
            "started_at": self._started_at.isoformat(),
            "scheduler_running": self.scheduler_running,
            "aging": self.aging.status(),
            "last_job": self._last_job,
            "correlation": {
                "inline": self._correlation_pool is None,
                "inflight": inflight,
            },
            "adapters": self.adapters.stats(),
            "subscriptions": self.subscriptions.stats(),
            "events": self.bus.stats(),
            "store": self.store.stats(),
            "recent_audit": get_audit_logger().recent(limit=20),
        }


# Singleton (initialized lazily, one per process)
_service: Optional[ThreatFeedService] = None
_init_lock = threading.Lock()


def get_feed_service() -> ThreatFeedService:
    """Get or create the process-wide service."""
    global _service
    if _service is None:
        with _init_lock:
            if _service is None:
                _service = ThreatFeedService()
    return _service


def set_feed_service(service: Optional[ThreatFeedService]) -> None:
    """Install (or clear) the process-wide service. Used by tests and the CLI."""
    global _service
    _service = service

# Feed Module - Ingestion & Deduplication
#
# Turns validated raw observations into canonical records:
#
#   1. normalize target + indicators, compute identity_hash
#   2. look up the open record for the hash
#   3. absent  -> build a new record, apply patterns, insert-if-absent
#      present -> merge, apply patterns, conditional update on version
#   4. on a lost race (insert conflict / version mismatch) re-read and
#      retry a bounded number of times, then raise ConflictError
#
# Re-ingesting an identical observation is a content no-op: only
# last_seen (and the fields derived from it) and version move.

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.audit_log import AuditEventType, AuditSeverity, get_audit_logger
from ..core.config import FeedSettings, get_settings
from .aging import compute_expires_at
from .errors import ConflictError, InternalError, ThreatFeedError, ValidationError
from .events import EventBus, RecordMutated
from .models import (
    MutationKind,
    RawObservation,
    RecordStatus,
    ThreatRecord,
    Timeline,
    new_id,
    utcnow,
)
from .normalize import identity_hash, normalize_indicators, normalize_value
from .patterns import PatternEngine, PatternOutcome
from .scoring import rescore
from .store import ThreatStore

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of ingesting one observation."""

    record: ThreatRecord
    is_new: bool
    merged_from: Optional[str] = None  # source id merged into an existing record
    content_changed: bool = True
    patterns: PatternOutcome = field(default_factory=PatternOutcome)
    event: Optional[RecordMutated] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record": self.record.to_dict(),
            "is_new": self.is_new,
            "merged_from": self.merged_from,
            "matched_patterns": [m.to_dict() for m in self.patterns.matches],
        }


@dataclass
class BatchIngestReport:
    """Per-item results of ``ingest_batch``; failures are collected."""

    results: List[IngestResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(1 for r in self.results if r.is_new)

    @property
    def merged(self) -> int:
        return sum(1 for r in self.results if not r.is_new)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "merged": self.merged,
            "failed": len(self.errors),
            "errors": self.errors,
            "record_ids": [r.record.id for r in self.results],
        }


def _union(existing: List[str], incoming: Iterable[str]) -> bool:
    """Append unseen items in order. Returns True if anything was added."""
    added = False
    for item in incoming:
        if item not in existing:
            existing.append(item)
            added = True
    return added


class IngestionEngine:
    """Validates, normalizes, deduplicates and persists observations."""

    def __init__(
        self,
        store: ThreatStore,
        patterns: PatternEngine,
        bus: EventBus,
        settings: Optional[FeedSettings] = None,
    ):
        self.store = store
        self.patterns = patterns
        self.bus = bus
        self.settings = settings or get_settings()

    # ---- Public API ------------------------------------------------------

    def ingest(
        self,
        raw: Union[RawObservation, Dict[str, Any]],
        now: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> IngestResult:
        """Ingest one observation.

        Raises:
            ValidationError: malformed input; nothing is written.
            ConflictError: the merge lost the version race on every attempt.
        """
        obs = raw if isinstance(raw, RawObservation) else RawObservation.from_dict(raw)
        obs = self._normalized(obs)
        indicator_values = [i.value for i in obs.indicators]
        digest = identity_hash(obs.target.type, obs.target.value, indicator_values)
        now = now or utcnow()

        attempts = max(1, self.settings.merge_retry_attempts)
        for attempt in range(1, attempts + 1):
            existing = self.store.find_open_by_hash(digest)
            if existing is None:
                result = self._try_create(obs, digest, now)
            else:
                result = self._try_merge(existing, obs, now)
            if result is not None:
                self._after_commit(result, now, actor)
                return result
            logger.debug(
                "Ingest race on %s (attempt %d/%d), re-reading", digest[:12], attempt, attempts
            )

        raise ConflictError(
            "Concurrent updates prevented merging the observation",
            {"identity_hash": digest, "attempts": attempts},
        )

    def ingest_batch(
        self,
        observations: Iterable[Union[RawObservation, Dict[str, Any]]],
        now: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> BatchIngestReport:
        report = BatchIngestReport()
        for index, raw in enumerate(observations):
            try:
                report.results.append(self.ingest(raw, now=now, actor=actor))
            except ThreatFeedError as exc:
                report.errors.append({"index": index, **exc.to_dict()})
            except Exception:
                # Reported per item; the rest of the batch still runs
                error = InternalError("Observation could not be ingested", mutation_id=new_id())
                logger.exception("Batch item %d failed (id %s)", index, error.mutation_id)
                report.errors.append({"index": index, **error.to_dict()})
        if report.errors:
            logger.warning(
                "Batch ingest: %d ok, %d failed", len(report.results), len(report.errors)
            )
        return report

    # ---- Internals -------------------------------------------------------

    @staticmethod
    def _normalized(obs: RawObservation) -> RawObservation:
        obs = copy.deepcopy(obs)
        obs.target.value = normalize_value(obs.target.type, obs.target.value)
        if not obs.target.value:
            raise ValidationError(
                "target.value is empty after normalization", {"field": "target.value"}
            )
        obs.indicators = normalize_indicators(obs.indicators)
        if not 0 <= obs.source.reliability <= 100:
            raise ValidationError(
                "source.reliability must be within 0-100", {"field": "source.reliability"}
            )
        return obs

    def _try_create(
        self, obs: RawObservation, digest: str, now: datetime
    ) -> Optional[IngestResult]:
        record = ThreatRecord(
            identity_hash=digest,
            source=copy.deepcopy(obs.source),
            sources=[copy.deepcopy(obs.source)],
            type=obs.type,
            category=obs.category,
            severity=obs.severity,
            reported_severity=obs.severity,
            target=copy.deepcopy(obs.target),
            indicators=list(obs.indicators),
            context=copy.deepcopy(obs.context),
            attribution=copy.deepcopy(obs.attribution),
            impact=copy.deepcopy(obs.impact),
            timeline=Timeline(
                first_seen=now,
                last_seen=now,
                discovered_at=now,
                reported_at=obs.reported_at,
            ),
            status=RecordStatus.ACTIVE,
            pending_analysis=True,
            created_at=now,
            updated_at=now,
        )
        self._dedupe_context(record)
        outcome = self.patterns.apply(record, now)
        rescore(record)
        record.expires_at = compute_expires_at(record, self.settings, obs.expires_at)
        if not self.store.insert_if_absent(record):
            return None
        previous = RecordStatus.ACTIVE if outcome.resolved else None
        event = RecordMutated(
            kind=MutationKind.CREATED,
            record=record,
            previous_status=previous,
            urgent=outcome.urgent,
        )
        return IngestResult(record=record, is_new=True, patterns=outcome, event=event)

    def _try_merge(
        self, existing: ThreatRecord, obs: RawObservation, now: datetime
    ) -> Optional[IngestResult]:
        expected_version = existing.version
        record = copy.deepcopy(existing)
        changed = self._merge_into(record, obs)
        if now > record.timeline.last_seen:
            record.timeline.last_seen = now

        outcome = PatternOutcome()
        if changed:
            outcome = self.patterns.apply(record, now)
            record.pending_analysis = True
        rescore(record)
        record.expires_at = compute_expires_at(
            record, self.settings, obs.expires_at, existing.expires_at
        )
        if not self.store.update_record(record, expected_version):
            return None
        previous = existing.status if record.status != existing.status else None
        event = RecordMutated(
            kind=MutationKind.MERGED,
            record=record,
            previous_status=previous,
            urgent=outcome.urgent,
        )
        return IngestResult(
            record=record,
            is_new=False,
            merged_from=obs.source.id,
            content_changed=changed,
            patterns=outcome,
            event=event,
        )

    @staticmethod
    def _dedupe_context(record: ThreatRecord) -> None:
        ctx = record.context
        ctx.tags = list(dict.fromkeys(ctx.tags))
        ctx.references = list(dict.fromkeys(ctx.references))
        seen = set()
        evidence = []
        for item in ctx.evidence:
            if item.key not in seen:
                seen.add(item.key)
                evidence.append(item)
        ctx.evidence = evidence

    @staticmethod
    def _merge_into(record: ThreatRecord, obs: RawObservation) -> bool:
        """Fold an observation into ``record``. Returns True if content changed."""
        changed = False

        known = {i.key for i in record.indicators}
        for ind in obs.indicators:
            if ind.key not in known:
                record.indicators.append(ind)
                known.add(ind.key)
                changed = True

        ctx = record.context
        seen_evidence = {e.key for e in ctx.evidence}
        for item in obs.context.evidence:
            if item.key not in seen_evidence:
                ctx.evidence.append(item)
                seen_evidence.add(item.key)
                changed = True
        changed |= _union(ctx.tags, obs.context.tags)
        changed |= _union(ctx.references, obs.context.references)
        if not ctx.title and obs.context.title:
            ctx.title = obs.context.title
            changed = True
        if not ctx.description and obs.context.description:
            ctx.description = obs.context.description
            changed = True

        if obs.source.id not in {s.id for s in record.sources}:
            record.sources.append(copy.deepcopy(obs.source))
            changed = True

        if obs.severity > record.reported_severity:
            record.reported_severity = obs.severity
            changed = True

        attr = record.attribution
        for name in ("actor", "campaign", "malware_family"):
            incoming = getattr(obs.attribution, name)
            if incoming and not getattr(attr, name):
                setattr(attr, name, incoming)
                changed = True
        changed |= _union(attr.techniques, obs.attribution.techniques)

        impact = record.impact
        for name in ("financial_loss", "affected_users", "estimated_reach"):
            incoming = getattr(obs.impact, name)
            current = getattr(impact, name)
            if incoming is not None and (current is None or incoming > current):
                setattr(impact, name, incoming)
                changed = True

        if obs.reported_at and record.timeline.reported_at is None:
            record.timeline.reported_at = obs.reported_at
            changed = True
        return changed

    def _after_commit(self, result: IngestResult, now: datetime, actor: Optional[str]) -> None:
        record = result.record
        if result.patterns.applied:
            self.patterns.record_triggers(result.patterns, now)
        if result.is_new:
            logger.info(
                "Created threat %s (%s %s, confidence=%d)",
                record.id,
                record.type.value,
                record.severity.value,
                record.confidence,
            )
            get_audit_logger().log_event(
                AuditEventType.RECORD_CREATED,
                AuditSeverity.INFO,
                f"Threat record created: {record.type.value} on {record.target.type.value}",
                details={
                    "record_id": record.id,
                    "identity_hash": record.identity_hash,
                    "source_id": record.source.id,
                    "severity": record.severity.value,
                    "confidence": record.confidence,
                },
                actor=actor or record.source.id,
            )
        else:
            logger.debug(
                "Merged observation from %s into %s (changed=%s)",
                result.merged_from,
                record.id,
                result.content_changed,
            )
        if result.patterns.resolved:
            get_audit_logger().log_event(
                AuditEventType.RECORD_RESOLVED,
                AuditSeverity.NOTICE,
                "Threat record auto-resolved by pattern",
                details={"record_id": record.id},
                actor="pattern_engine",
            )
        if result.event is not None:
            self.bus.publish(result.event)

# Feed Module - Correlation Engine
#
# Links related canonical records with typed, confidence-scored edges.
#
# Candidates for a record R are open records that
#   - share at least one indicator value with R, or
#   - carry the same target value (any target type), or
#   - were created within the correlation window and share an actor,
#     campaign or malware family with R, or
#   - share the attribute named by a pattern ``correlate`` hint.
#
# Edge confidence (0-100):
#   100 * (0.45 * indicator jaccard + 0.20 * timeline proximity
#          + 0.20 * attribution similarity + 0.15 * target similarity)
#
# Edges are never deleted; an edge superseded by a different type is
# marked disputed.  Correlation is not transitive.

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from difflib import SequenceMatcher
from typing import Any, Dict, Iterable, List, Optional, Set

from ..core.audit_log import AuditEventType, AuditSeverity, get_audit_logger
from ..core.config import FeedSettings, get_settings
from .errors import ConflictError, NotFoundError
from .events import EventBus, RecordMutated
from .models import (
    Attribution,
    CorrelationEvidence,
    CorrelationStatus,
    CorrelationType,
    Indicator,
    MutationKind,
    Target,
    ThreatCorrelation,
    ThreatRecord,
    Timeline,
    utcnow,
)
from .store import ThreatStore

logger = logging.getLogger(__name__)

INDICATOR_WEIGHT = 0.45
TIMELINE_WEIGHT = 0.20
ATTRIBUTION_WEIGHT = 0.20
TARGET_WEIGHT = 0.15

DUPLICATE_THRESHOLD = 85
TIMELINE_HORIZON = timedelta(days=30)

# Pattern hint field -> searchable record term kind
HINT_TERMS = {
    "attribution.actor": "actor",
    "attribution.campaign": "campaign",
    "attribution.malware_family": "malware_family",
    "target.value": "target",
    "context.tags": "tag",
    "indicators.value": "indicator",
}


# ---------------------------------------------------------------------------
# Similarity measures (each in [0, 1])
# ---------------------------------------------------------------------------


def _text_similarity(a: Optional[str], b: Optional[str]) -> float:
    if not a or not b:
        return 0.0
    if a.lower() == b.lower():
        return 1.0
    return SequenceMatcher(None, a.lower(), b.lower()).ratio()


def indicator_similarity(a: List[Indicator], b: List[Indicator]) -> float:
    """Jaccard index over ``type:value`` keys; two empty sets count as equal."""
    keys_a = {i.key for i in a}
    keys_b = {i.key for i in b}
    if not keys_a and not keys_b:
        return 1.0
    if not keys_a or not keys_b:
        return 0.0
    return len(keys_a & keys_b) / len(keys_a | keys_b)


def timeline_similarity(a: Timeline, b: Timeline) -> float:
    diff = abs(a.first_seen - b.first_seen)
    return max(0.0, 1.0 - diff / TIMELINE_HORIZON)


def attribution_similarity(a: Attribution, b: Attribution) -> float:
    if a.is_empty or b.is_empty:
        return 0.0
    score = 0.0
    factors = 0
    for name in ("actor", "campaign", "malware_family"):
        left, right = getattr(a, name), getattr(b, name)
        if left or right:
            factors += 1
            score += _text_similarity(left, right)
    if a.techniques or b.techniques:
        factors += 1
        ta, tb = set(a.techniques), set(b.techniques)
        if ta and tb:
            score += len(ta & tb) / len(ta | tb)
    return score / factors if factors else 0.0


def target_similarity(a: Target, b: Target) -> float:
    if a.value == b.value and a.type == b.type:
        return 1.0
    score = 0.0
    if a.type == b.type:
        score += 0.3
    if a.network and b.network and a.network == b.network:
        score += 0.2
    score += 0.5 * _text_similarity(a.value, b.value)
    return min(score, 1.0)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def classify(record: ThreatRecord, other: ThreatRecord, confidence: int) -> CorrelationType:
    same_target = record.target.value == other.target.value
    if confidence >= DUPLICATE_THRESHOLD and same_target and record.target.type == other.target.type:
        return CorrelationType.DUPLICATE
    if _same(record.attribution.campaign, other.attribution.campaign):
        return CorrelationType.CAMPAIGN
    if _same(record.attribution.actor, other.attribution.actor) or _same(
        record.attribution.malware_family, other.attribution.malware_family
    ):
        return CorrelationType.ATTRIBUTION
    if same_target:
        return CorrelationType.TARGET_OVERLAP
    return CorrelationType.RELATED


def score_pair(record: ThreatRecord, other: ThreatRecord) -> ThreatCorrelation:
    """Build the (unsaved) edge between two records."""
    ind = indicator_similarity(record.indicators, other.indicators)
    tl = timeline_similarity(record.timeline, other.timeline)
    attr = attribution_similarity(record.attribution, other.attribution)
    tgt = target_similarity(record.target, other.target)
    confidence = int(round(100 * (
        INDICATOR_WEIGHT * ind
        + TIMELINE_WEIGHT * tl
        + ATTRIBUTION_WEIGHT * attr
        + TARGET_WEIGHT * tgt
    )))
    confidence = max(0, min(100, confidence))
    common = sorted({i.value for i in record.indicators} & {i.value for i in other.indicators})
    return ThreatCorrelation(
        parent_id=record.id,
        child_id=other.id,
        correlation_type=classify(record, other, confidence),
        confidence=confidence,
        evidence=CorrelationEvidence(
            common_indicators=common,
            timeline_similarity=round(tl, 4),
            attribution_similarity=round(attr, 4),
            target_similarity=round(tgt, 4),
        ),
    )


@dataclass
class BatchCorrelationReport:
    processed: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    edges: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": len(self.processed),
            "pending": len(self.pending),
            "failed": len(self.failed),
            "edges": self.edges,
        }


class CorrelationEngine:
    """Finds and maintains correlation edges between open records."""

    def __init__(
        self,
        store: ThreatStore,
        bus: EventBus,
        settings: Optional[FeedSettings] = None,
    ):
        self.store = store
        self.bus = bus
        self.settings = settings or get_settings()

    # ---- Analysis --------------------------------------------------------

    def candidate_ids(self, record: ThreatRecord, hints: Iterable[str] = ()) -> Set[str]:
        ids: Set[str] = set()
        ids.update(
            self.store.find_record_ids_by_terms(
                "indicator", [i.value for i in record.indicators], exclude_id=record.id
            )
        )
        ids.update(
            self.store.find_record_ids_by_terms(
                "target", [record.target.value], exclude_id=record.id
            )
        )

        attr = record.attribution
        attributed: Set[str] = set()
        for kind, value in (
            ("actor", attr.actor),
            ("campaign", attr.campaign),
            ("malware_family", attr.malware_family),
        ):
            if value:
                attributed.update(
                    self.store.find_record_ids_by_terms(kind, [value.lower()], exclude_id=record.id)
                )
        if attributed:
            window = timedelta(hours=self.settings.correlation_window_hours)
            in_window = set(
                self.store.find_open_ids_created_between(
                    record.created_at - window, record.created_at + window, exclude_id=record.id
                )
            )
            ids.update(attributed & in_window)

        for hint in hints:
            kind = HINT_TERMS.get(hint)
            if kind is None:
                logger.debug("Ignoring unknown correlation hint %r", hint)
                continue
            values = self._hint_values(record, kind)
            ids.update(self.store.find_record_ids_by_terms(kind, values, exclude_id=record.id))
        return ids

    @staticmethod
    def _hint_values(record: ThreatRecord, kind: str) -> List[str]:
        attr = record.attribution
        if kind == "actor":
            return [attr.actor.lower()] if attr.actor else []
        if kind == "campaign":
            return [attr.campaign.lower()] if attr.campaign else []
        if kind == "malware_family":
            return [attr.malware_family.lower()] if attr.malware_family else []
        if kind == "target":
            return [record.target.value]
        if kind == "tag":
            return list(record.context.tags)
        return [i.value for i in record.indicators]

    def correlate(
        self,
        record_id: str,
        hints: Iterable[str] = (),
    ) -> List[ThreatCorrelation]:
        """Analyze one record and write its correlation edges.

        Clears ``pending_analysis`` on success.

        Returns:
            Edges created or refreshed by this analysis.
        """
        record = self.store.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Threat {record_id} not found")
        written: List[ThreatCorrelation] = []
        if record.is_open:
            scored = [
                score_pair(record, other)
                for other in self.store.get_records(self.candidate_ids(record, hints))
                if other.is_open
            ]
            scored = [e for e in scored if e.confidence >= self.settings.correlation_min_confidence]
            scored.sort(key=lambda e: (-e.confidence, e.child_id))
            for edge in scored[: self.settings.correlation_max_edges]:
                saved = self._save_edge(edge)
                if saved is not None:
                    written.append(saved)

        linked = set()
        for edge in written:
            other_id = edge.other_end(record.id)
            if self._link(other_id, record.id):
                linked.add(other_id)

        new_ids = [e.other_end(record.id) for e in written]

        def finish(r: ThreatRecord) -> bool:
            changed = r.pending_analysis
            r.pending_analysis = False
            for other_id in new_ids:
                if other_id not in r.correlated_threats:
                    r.correlated_threats.append(other_id)
                    changed = True
            return changed

        updated = self.store.modify_record(record.id, finish, self.settings.merge_retry_attempts)
        if written:
            logger.info("Correlated %s with %d record(s)", record.id, len(written))
            if updated is not None:
                self.bus.publish(RecordMutated(kind=MutationKind.CORRELATED, record=updated))
            for other in self.store.get_records(linked):
                self.bus.publish(RecordMutated(kind=MutationKind.CORRELATED, record=other))
        return written

    def correlate_batch(
        self,
        record_ids: Iterable[str],
        deadline_seconds: Optional[float] = None,
        hints: Optional[Dict[str, List[str]]] = None,
    ) -> BatchCorrelationReport:
        """Correlate records until the deadline; the rest stay pending."""
        seconds = (
            self.settings.correlation_batch_deadline_seconds
            if deadline_seconds is None
            else deadline_seconds
        )
        deadline = time.monotonic() + seconds
        report = BatchCorrelationReport()
        ids = list(record_ids)
        for index, record_id in enumerate(ids):
            if time.monotonic() >= deadline:
                report.pending.extend(ids[index:])
                logger.warning(
                    "Correlation batch deadline reached; %d record(s) left pending",
                    len(ids) - index,
                )
                break
            try:
                report.edges += len(self.correlate(record_id, (hints or {}).get(record_id, ())))
                report.processed.append(record_id)
            except NotFoundError:
                report.failed[record_id] = "not_found"
            except ConflictError as exc:
                report.failed[record_id] = exc.message
                logger.warning("Correlation of %s abandoned: %s", record_id, exc.message)
        return report

    # ---- Edge bookkeeping ------------------------------------------------

    def _save_edge(self, edge: ThreatCorrelation) -> Optional[ThreatCorrelation]:
        existing = self.store.live_correlation_for_pair(edge.parent_id, edge.child_id)
        if existing is not None:
            if existing.correlation_type == edge.correlation_type:
                existing.confidence = edge.confidence
                existing.evidence = edge.evidence
                self.store.update_correlation(existing)
                return existing
            if existing.status == CorrelationStatus.CONFIRMED:
                return None
            existing.status = CorrelationStatus.DISPUTED
            self.store.update_correlation(existing)
            logger.info(
                "Edge %s superseded (%s -> %s)",
                existing.id,
                existing.correlation_type.value,
                edge.correlation_type.value,
            )
        if self.store.insert_correlation(edge):
            return edge
        # Another worker wrote the pair first
        return self.store.live_correlation_for_pair(edge.parent_id, edge.child_id)

    def _link(self, record_id: str, other_id: str) -> bool:
        def add(r: ThreatRecord) -> bool:
            if other_id in r.correlated_threats:
                return False
            r.correlated_threats.append(other_id)
            return True

        before = self.store.get_record(record_id)
        if before is None or other_id in before.correlated_threats:
            return False
        self.store.modify_record(record_id, add, self.settings.merge_retry_attempts)
        return True

    def _unlink(self, record_id: str, other_id: str) -> None:
        def remove(r: ThreatRecord) -> bool:
            if other_id not in r.correlated_threats:
                return False
            r.correlated_threats.remove(other_id)
            return True

        self.store.modify_record(record_id, remove, self.settings.merge_retry_attempts)

    # ---- Moderation ------------------------------------------------------

    def correlations_for(self, record_id: str, include_disputed: bool = True) -> List[ThreatCorrelation]:
        if self.store.get_record(record_id) is None:
            raise NotFoundError(f"Threat {record_id} not found")
        return self.store.correlations_for(record_id, include_disputed=include_disputed)

    def dispute(self, edge_id: str, actor: Optional[str] = None) -> ThreatCorrelation:
        """Mark an edge disputed and drop the mutual record references."""
        edge = self._get_edge(edge_id)
        if edge.status != CorrelationStatus.DISPUTED:
            edge.status = CorrelationStatus.DISPUTED
            self.store.update_correlation(edge)
            self._unlink(edge.parent_id, edge.child_id)
            self._unlink(edge.child_id, edge.parent_id)
            self._audit(AuditEventType.CORRELATION_DISPUTED, edge, actor)
        return edge

    def confirm(self, edge_id: str, actor: Optional[str] = None) -> ThreatCorrelation:
        edge = self._get_edge(edge_id)
        if edge.status == CorrelationStatus.DISPUTED:
            raise ConflictError("A disputed correlation cannot be confirmed", {"edge_id": edge_id})
        if edge.status != CorrelationStatus.CONFIRMED:
            edge.status = CorrelationStatus.CONFIRMED
            self.store.update_correlation(edge)
            self._audit(AuditEventType.CORRELATION_CONFIRMED, edge, actor)
        return edge

    def _get_edge(self, edge_id: str) -> ThreatCorrelation:
        edge = self.store.get_correlation(edge_id)
        if edge is None:
            raise NotFoundError(f"Correlation {edge_id} not found")
        return edge

    def _audit(self, event_type: AuditEventType, edge: ThreatCorrelation, actor: Optional[str]) -> None:
        get_audit_logger().log_event(
            event_type,
            AuditSeverity.INFO,
            f"Correlation {edge.id} {edge.status.value}",
            details={
                "edge_id": edge.id,
                "parent_id": edge.parent_id,
                "child_id": edge.child_id,
                "correlation_type": edge.correlation_type.value,
                "at": utcnow().isoformat(),
            },
            actor=actor,
        )

# Feed Module - Pattern / Rule Engine
#
# Declarative weighted rules evaluated against every ingested or merged
# record.  A pattern fires when the weighted share of matching clauses
# reaches its threshold.  All active patterns are scored against the
# same pre-action snapshot, then the actions of fired patterns are
# applied in (priority desc, creation order) so the outcome never
# depends on store iteration order.

import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.audit_log import AuditEventType, AuditSeverity, get_audit_logger
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    PatternAction,
    PatternActionType,
    PatternClause,
    PatternMatchEntry,
    PatternOperator,
    RecordStatus,
    Severity,
    ThreatCategory,
    ThreatPattern,
    ThreatRecord,
    encode,
    new_id,
    parse_enum,
    require_list,
    utcnow,
)
from .scoring import compute_confidence, effective_severity
from .store import ThreatStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_DELTA = 5
URGENT_LEVELS = ("high", "critical")

# Fields a pattern may edit in place before it has fired
_MUTABLE_FIELDS = (
    "name",
    "description",
    "category",
    "priority",
    "clauses",
    "threshold",
    "actions",
)


DEFAULT_PATTERNS: List[Dict[str, Any]] = [
    {
        "pattern_key": "phishing_url_pattern",
        "name": "Phishing URL Detection",
        "description": "Detects URLs with common phishing patterns",
        "category": "identity_theft",
        "priority": 20,
        "clauses": [
            {
                "field": "target.value",
                "operator": "regex",
                "value": r"(paypal|amazon|google|microsoft|apple|facebook|login|secure|verify|account)",
                "weight": 0.4,
            },
            {"field": "target.value", "operator": "regex", "value": r"\.(tk|ml|ga|cf|info|biz)", "weight": 0.3},
            {"field": "context.title", "operator": "contains", "value": "verify", "weight": 0.3},
        ],
        "threshold": 0.7,
        "actions": [
            {"type": "increase_severity", "parameters": {"target_severity": "high"}},
            {"type": "add_tag", "parameters": {"tag": "phishing_suspected"}},
        ],
    },
    {
        "pattern_key": "rugpull_token_pattern",
        "name": "Rugpull Token Detection",
        "description": "Detects potential rugpull tokens based on behavior patterns",
        "category": "financial",
        "priority": 30,
        "clauses": [
            {"field": "type", "operator": "equals", "value": "rugpull", "weight": 0.5},
            {"field": "target.type", "operator": "equals", "value": "contract", "weight": 0.3},
            {"field": "confidence", "operator": "regex", "value": r"^([8-9][0-9]|100)$", "weight": 0.2},
        ],
        "threshold": 0.8,
        "actions": [
            {"type": "increase_severity", "parameters": {"target_severity": "critical"}},
            {"type": "add_tag", "parameters": {"tag": "rugpull_confirmed"}},
            {"type": "correlate", "parameters": {"search_field": "attribution.actor"}},
        ],
    },
    {
        "pattern_key": "coordinated_attack_pattern",
        "name": "Coordinated Attack Detection",
        "description": "Detects coordinated attacks from same actor/campaign",
        "category": "technical",
        "priority": 10,
        "clauses": [
            {"field": "attribution.actor", "operator": "regex", "value": ".+", "weight": 0.4},
            {"field": "timeline.first_seen", "operator": "regex", "value": ".+", "weight": 0.3},
            {"field": "context.tags", "operator": "contains", "value": "campaign", "weight": 0.3},
        ],
        "threshold": 0.6,
        "actions": [
            {"type": "add_tag", "parameters": {"tag": "coordinated_attack"}},
            {"type": "correlate", "parameters": {"search_field": "attribution.campaign"}},
        ],
    },
    {
        "pattern_key": "high_confidence_scam_pattern",
        "name": "High Confidence Scam Detection",
        "description": "Identifies highly confident scam reports for auto-escalation",
        "category": "financial",
        "priority": 40,
        "clauses": [
            {"field": "type", "operator": "equals", "value": "scam", "weight": 0.3},
            {"field": "confidence", "operator": "regex", "value": r"^(9[0-9]|100)$", "weight": 0.4},
            {"field": "source.reliability", "operator": "regex", "value": r"^(8[0-9]|9[0-9]|100)$", "weight": 0.3},
        ],
        "threshold": 0.9,
        "actions": [
            {"type": "increase_severity", "parameters": {"target_severity": "critical"}},
            {"type": "add_tag", "parameters": {"tag": "auto_verified"}},
            {"type": "notify", "parameters": {"urgency": "high"}},
        ],
    },
    {
        "pattern_key": "wallet_drainer_pattern",
        "name": "Wallet Drainer Detection",
        "description": "Detects wallet drainer malware patterns",
        "category": "technical",
        "priority": 50,
        "clauses": [
            {"field": "type", "operator": "equals", "value": "drainer", "weight": 0.4},
            {"field": "target.type", "operator": "equals", "value": "wallet", "weight": 0.3},
            {"field": "context.description", "operator": "regex", "value": "(drain|empty|steal|transfer)", "weight": 0.3},
        ],
        "threshold": 0.7,
        "actions": [
            {"type": "increase_severity", "parameters": {"target_severity": "critical"}},
            {"type": "add_tag", "parameters": {"tag": "wallet_drainer"}},
            {"type": "add_tag", "parameters": {"tag": "immediate_action_required"}},
        ],
    },
]


@dataclass
class PatternMatch:
    """A fired pattern and the clauses that contributed to its score."""

    pattern: ThreatPattern
    score: float
    triggered_clauses: List[PatternClause] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern.id,
            "pattern_key": self.pattern.pattern_key,
            "pattern_version": self.pattern.version,
            "name": self.pattern.name,
            "score": round(self.score, 4),
            "triggered_clauses": encode(self.triggered_clauses),
        }


@dataclass
class PatternOutcome:
    """Result of applying fired patterns to a record."""

    matches: List[PatternMatch] = field(default_factory=list)
    applied: List[PatternMatch] = field(default_factory=list)
    tags_added: List[str] = field(default_factory=list)
    correlation_hints: List[str] = field(default_factory=list)
    urgent: bool = False
    resolved: bool = False
    resolution_scheduled: Optional[datetime] = None

    @property
    def fired(self) -> bool:
        return bool(self.matches)


# ---------------------------------------------------------------------------
# Clause evaluation
# ---------------------------------------------------------------------------


def field_value(record: ThreatRecord, path: str) -> Any:
    """Resolve a dotted path (``target.value``) against a record."""
    value: Any = record
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def clause_matches(clause: PatternClause, value: Any) -> bool:
    """Evaluate one clause; list-valued fields match if any element does."""
    if isinstance(value, (list, tuple, set)):
        return any(clause_matches(clause, v) for v in value)
    text = _as_text(value)
    if text is None:
        return False
    target = clause.value
    op = clause.operator
    if op == PatternOperator.EQUALS:
        return text == target
    if op == PatternOperator.CONTAINS:
        return target.lower() in text.lower()
    if op == PatternOperator.STARTS_WITH:
        return text.lower().startswith(target.lower())
    if op == PatternOperator.ENDS_WITH:
        return text.lower().endswith(target.lower())
    if op == PatternOperator.REGEX:
        try:
            return re.search(target, text, re.IGNORECASE) is not None
        except re.error:
            return False
    return False


def score_pattern(pattern: ThreatPattern, record: ThreatRecord) -> PatternMatch:
    total = sum(c.weight for c in pattern.clauses)
    matched: List[PatternClause] = []
    matched_weight = 0.0
    for clause in pattern.clauses:
        if clause_matches(clause, field_value(record, clause.field)):
            matched.append(clause)
            matched_weight += clause.weight
    score = matched_weight / total if total > 0 else 0.0
    return PatternMatch(pattern=pattern, score=score, triggered_clauses=matched)


def validate_pattern(pattern: ThreatPattern) -> None:
    """Reject patterns that could never be evaluated meaningfully."""
    if not pattern.pattern_key:
        raise ValidationError("pattern_key is required")
    if not pattern.clauses:
        raise ValidationError("A pattern needs at least one clause")
    if sum(c.weight for c in pattern.clauses) <= 0:
        raise ValidationError("Clause weights must sum to a positive value")
    if not 0 < pattern.threshold <= 1:
        raise ValidationError("threshold must be within (0, 1]")
    for clause in pattern.clauses:
        if clause.operator == PatternOperator.REGEX:
            try:
                re.compile(clause.value)
            except re.error as exc:
                raise ValidationError(f"Invalid regex {clause.value!r}: {exc}")
    for action in pattern.actions:
        if action.type == PatternActionType.AUTO_RESOLVE:
            delay = action.parameters.get("delay_hours")
            if delay is not None and float(delay) < 0:
                raise ValidationError("auto_resolve delay_hours must be non-negative")


def _deactivate(pattern: ThreatPattern) -> None:
    pattern.is_active = False


class PatternEngine:
    """Evaluates, applies and manages threat patterns."""

    def __init__(self, store: ThreatStore):
        self.store = store

    # ---- Evaluation ------------------------------------------------------

    def evaluate(self, record: ThreatRecord) -> List[PatternMatch]:
        """Score every active pattern against ``record``.

        The record is not modified.  Confidence seen by clauses excludes
        pattern adjustments so a pattern never feeds on its own output.

        Returns:
            Fired patterns in application order.
        """
        snapshot = copy.deepcopy(record)
        snapshot.confidence = compute_confidence(
            snapshot.sources or [snapshot.source], {}, snapshot.votes
        )
        fired = []
        for pattern in self.store.list_patterns(active_only=True):
            match = score_pattern(pattern, snapshot)
            if match.score >= pattern.threshold:
                fired.append(match)
        return fired

    def apply(self, record: ThreatRecord, now: Optional[datetime] = None) -> PatternOutcome:
        """Evaluate patterns and apply fired actions to ``record`` in place.

        Pattern trigger counters are not touched; call ``record_triggers``
        once the record write has committed.
        """
        now = now or utcnow()
        outcome = PatternOutcome(matches=self.evaluate(record))
        for match in outcome.matches:
            pattern = match.pattern
            record.pattern_matches.append(
                PatternMatchEntry(
                    pattern_id=pattern.id,
                    pattern_version=pattern.version,
                    score=round(match.score, 4),
                    matched_at=now,
                )
            )
            outcome.applied.append(match)
            stop = self._apply_actions(record, match, outcome, now)
            if stop:
                break
        record.severity = effective_severity(
            record.reported_severity, record.pattern_severity_floor
        )
        return outcome

    def _apply_actions(
        self,
        record: ThreatRecord,
        match: PatternMatch,
        outcome: PatternOutcome,
        now: datetime,
    ) -> bool:
        """Apply one pattern's actions. Returns True when evaluation stops."""
        pattern = match.pattern
        for action in pattern.actions:
            params = action.parameters
            if action.type == PatternActionType.INCREASE_SEVERITY:
                target = params.get("target_severity")
                if target:
                    target_sev = Severity(target)
                    floor = record.pattern_severity_floor
                    if floor is None or target_sev > floor:
                        record.pattern_severity_floor = target_sev
                record.pattern_adjustments[pattern.id] = int(
                    params.get("confidence_delta", DEFAULT_CONFIDENCE_DELTA)
                )
            elif action.type == PatternActionType.ADD_TAG:
                tag = str(params["tag"])
                if tag not in record.context.tags:
                    record.context.tags.append(tag)
                    outcome.tags_added.append(tag)
            elif action.type == PatternActionType.CORRELATE:
                hint = params.get("search_field")
                if hint and hint not in outcome.correlation_hints:
                    outcome.correlation_hints.append(str(hint))
            elif action.type == PatternActionType.NOTIFY:
                if str(params.get("urgency", "")).lower() in URGENT_LEVELS:
                    outcome.urgent = True
            elif action.type == PatternActionType.AUTO_RESOLVE:
                if self._auto_resolve(record, params, outcome, now):
                    return True
        return False

    def _auto_resolve(
        self,
        record: ThreatRecord,
        params: Dict[str, Any],
        outcome: PatternOutcome,
        now: datetime,
    ) -> bool:
        max_conf = params.get("max_confidence")
        if max_conf is not None:
            base = compute_confidence(record.sources or [record.source], {}, record.votes)
            if base >= int(max_conf):
                return False
        if record.status != RecordStatus.ACTIVE:
            return False
        delay = params.get("delay_hours")
        if delay:
            when = now + timedelta(hours=float(delay))
            current = record.timeline.scheduled_resolution_at
            if current is None or when < current:
                record.timeline.scheduled_resolution_at = when
            outcome.resolution_scheduled = record.timeline.scheduled_resolution_at
        else:
            record.status = RecordStatus.RESOLVED
            record.timeline.resolved_at = now
            outcome.resolved = True
        return True

    def record_triggers(self, outcome: PatternOutcome, now: Optional[datetime] = None) -> None:
        """Persist trigger counters for patterns applied in a committed write."""
        now = now or utcnow()

        def fired(pattern: ThreatPattern) -> None:
            pattern.times_triggered += 1
            pattern.last_triggered = now

        for match in outcome.applied:
            self.store.modify_pattern(match.pattern.id, fired)

    # ---- Management ------------------------------------------------------

    def initialize_defaults(self) -> int:
        """Insert the default pattern set. Idempotent by ``pattern_key``."""
        created = 0
        for entry in DEFAULT_PATTERNS:
            if self.store.latest_pattern_by_key(entry["pattern_key"]) is not None:
                continue
            pattern = ThreatPattern.from_dict(entry)
            validate_pattern(pattern)
            self.store.insert_pattern(pattern)
            created += 1
        if created:
            logger.info("Initialized %d default patterns", created)
        return created

    def create_pattern(self, data: Dict[str, Any], actor: Optional[str] = None) -> ThreatPattern:
        if not data.get("pattern_key"):
            raise ValidationError("pattern_key is required")
        if self.store.latest_pattern_by_key(data["pattern_key"]) is not None:
            raise ConflictError(f"Pattern {data['pattern_key']} already exists")
        pattern = ThreatPattern.from_dict(
            {k: v for k, v in data.items() if k not in ("id", "seq", "times_triggered", "last_triggered")}
        )
        pattern.version = 1
        pattern.supersedes = None
        validate_pattern(pattern)
        self.store.insert_pattern(pattern)
        self._audit("created", pattern, actor)
        return pattern

    def get_pattern(self, pattern_id: str) -> ThreatPattern:
        pattern = self.store.get_pattern(pattern_id)
        if pattern is None:
            raise NotFoundError(f"Pattern {pattern_id} not found")
        return pattern

    def list_patterns(self, active_only: bool = False) -> List[ThreatPattern]:
        return self.store.list_patterns(active_only=active_only)

    def update_pattern(
        self, pattern_id: str, changes: Dict[str, Any], actor: Optional[str] = None
    ) -> ThreatPattern:
        """Edit a pattern in place.

        Raises:
            ConflictError: if the pattern has fired; use ``revise_pattern``.
        """
        self.get_pattern(pattern_id)
        unknown = set(changes) - set(_MUTABLE_FIELDS) - {"is_active"}
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        rule_changes = {k: v for k, v in changes.items() if k != "is_active"}

        def edit(pattern: ThreatPattern) -> ThreatPattern:
            # has_fired is read from the locked row
            if rule_changes and pattern.has_fired:
                raise ConflictError(
                    f"Pattern {pattern.pattern_key} has fired; create a revision instead",
                    {"pattern_id": pattern.id, "times_triggered": pattern.times_triggered},
                )
            updated = self._with_changes(pattern, rule_changes)
            if "is_active" in changes:
                updated.is_active = bool(changes["is_active"])
            validate_pattern(updated)
            return updated

        updated = self.store.modify_pattern(pattern_id, edit)
        self._audit("updated", updated, actor)
        return updated

    def revise_pattern(
        self, pattern_id: str, changes: Dict[str, Any], actor: Optional[str] = None
    ) -> ThreatPattern:
        """Create a new version of a pattern and deactivate the old one."""
        old = self.get_pattern(pattern_id)
        unknown = set(changes) - set(_MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot revise fields: {', '.join(sorted(unknown))}")
        latest = self.store.latest_pattern_by_key(old.pattern_key)
        revised = self._with_changes(old, changes)
        revised.id = new_id()
        revised.version = (latest.version if latest else old.version) + 1
        revised.supersedes = old.id
        revised.times_triggered = 0
        revised.last_triggered = None
        revised.is_active = True
        revised.created_at = revised.updated_at = utcnow()
        validate_pattern(revised)
        self.store.insert_pattern(revised)
        self.store.modify_pattern(old.id, _deactivate)
        self._audit("revised", revised, actor)
        return revised

    def set_active(
        self, pattern_id: str, active: bool, actor: Optional[str] = None
    ) -> ThreatPattern:
        self.get_pattern(pattern_id)

        def toggle(pattern: ThreatPattern) -> None:
            pattern.is_active = bool(active)

        pattern = self.store.modify_pattern(pattern_id, toggle)
        self._audit("activated" if active else "deactivated", pattern, actor)
        return pattern

    @staticmethod
    def _with_changes(pattern: ThreatPattern, changes: Dict[str, Any]) -> ThreatPattern:
        updated = copy.deepcopy(pattern)
        for key, value in changes.items():
            if key == "clauses":
                updated.clauses = [
                    PatternClause.from_dict(c) for c in require_list(value, "clauses")
                ]
            elif key == "actions":
                updated.actions = [
                    PatternAction.from_dict(a) for a in require_list(value, "actions")
                ]
            elif key == "category":
                updated.category = parse_enum(ThreatCategory, value, "category") if value else None
            elif key == "threshold":
                updated.threshold = float(value)
            elif key == "priority":
                updated.priority = int(value)
            else:
                setattr(updated, key, value)
        return updated

    def _audit(self, verb: str, pattern: ThreatPattern, actor: Optional[str]) -> None:
        logger.info(
            "Pattern %s %s (v%d, id=%s)", pattern.pattern_key, verb, pattern.version, pattern.id
        )
        get_audit_logger().log_event(
            AuditEventType.PATTERN_CHANGED,
            AuditSeverity.NOTICE,
            f"Pattern {pattern.pattern_key} {verb}",
            details={
                "pattern_id": pattern.id,
                "pattern_key": pattern.pattern_key,
                "version": pattern.version,
                "is_active": pattern.is_active,
            },
            actor=actor,
        )

# Feed Module - Threat Feed Data Models
#
# Defines the closed vocabularies (str Enums) and the entities of the
# threat feed:
#   ThreatRecord      - canonical, deduplicated threat observation
#   RawObservation    - producer input, validated at the boundary
#   ThreatCorrelation - typed, confidence-scored edge between records
#   ThreatPattern     - weighted indicator rule with actions
#   ThreatSubscription / ThreatWatchlist - subscriber predicates
#   Delivery, SourceConfig, StatsRollup - bookkeeping entities
#
# String vocabularies are parsed exactly once, in ``parse_enum``; every
# other module works with the Enum members.

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Type, TypeVar
from uuid import uuid4

from .errors import ValidationError

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def parse_datetime(value: Any, field_name: str = "timestamp") -> Optional[datetime]:
    """Parse an ISO 8601 string (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid {field_name}: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Validate ``value`` against a closed vocabulary.

    Raises:
        ValidationError: when the value is not a member of ``enum_cls``.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower() if value is not None else value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field_name}: {value!r} (allowed: {allowed})",
            {"field": field_name},
        )


def require_object(data: Any, field_name: str, optional: bool = False) -> Dict[str, Any]:
    """Return ``data`` if it is a JSON object, else raise ValidationError.

    With ``optional``, None and empty values become ``{}``.
    """
    if optional and not data:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"{field_name} must be an object", {"field": field_name})
    return data


def require_list(value: Any, field_name: str) -> List[Any]:
    """Return ``value`` as a list; None means empty, scalars are rejected."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{field_name} must be a list", {"field": field_name})
    return list(value)


def encode(value: Any) -> Any:
    """Recursively convert dataclasses/Enums/datetimes to JSON-ready data."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: encode(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------


class SourceKind(str, Enum):
    """Kind of producer that reported an observation."""

    COMMUNITY = "community"
    EXTERNAL_API = "external_api"
    ON_CHAIN = "on_chain"
    MANUAL = "manual"
    AI_DETECTED = "ai_detected"
    HONEYPOT = "honeypot"


class ThreatType(str, Enum):
    SCAM = "scam"
    PHISHING = "phishing"
    RUGPULL = "rugpull"
    HONEYPOT = "honeypot"
    EXPLOIT = "exploit"
    MALWARE = "malware"
    DRAINER = "drainer"
    PUMP_DUMP = "pump_dump"
    FAKE_TOKEN = "fake_token"
    IMPERSONATION = "impersonation"
    RANSOMWARE = "ransomware"
    MIXER = "mixer"
    SANCTIONED = "sanctioned"
    FRAUD = "fraud"
    SPAM = "spam"
    BOTNET = "botnet"


class ThreatCategory(str, Enum):
    FINANCIAL = "financial"
    IDENTITY_THEFT = "identity_theft"
    DATA_BREACH = "data_breach"
    INFRASTRUCTURE = "infrastructure"
    SOCIAL_ENGINEERING = "social_engineering"
    TECHNICAL = "technical"
    COMPLIANCE = "compliance"


class Severity(str, Enum):
    """Ordered severity: info < low < medium < high < critical."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __ge__(self, other):
        if isinstance(other, Severity):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Severity):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Severity):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Severity):
            return self.rank < other.rank
        return NotImplemented


_SEVERITY_ORDER = [
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class RecordStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"
    UNDER_REVIEW = "under_review"

    @property
    def is_open(self) -> bool:
        """Open records take part in deduplication and watchlist matching."""
        return self in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]

    def can_transition_to(self, target: "RecordStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


OPEN_STATUSES: FrozenSet[RecordStatus] = frozenset(
    {RecordStatus.ACTIVE, RecordStatus.UNDER_REVIEW}
)

ALLOWED_TRANSITIONS: Dict[RecordStatus, FrozenSet[RecordStatus]] = {
    RecordStatus.ACTIVE: frozenset({
        RecordStatus.EXPIRED,
        RecordStatus.RESOLVED,
        RecordStatus.FALSE_POSITIVE,
        RecordStatus.UNDER_REVIEW,
    }),
    RecordStatus.UNDER_REVIEW: frozenset({
        RecordStatus.ACTIVE,
        RecordStatus.FALSE_POSITIVE,
    }),
    RecordStatus.EXPIRED: frozenset(),
    RecordStatus.RESOLVED: frozenset(),
    RecordStatus.FALSE_POSITIVE: frozenset(),
}


class TargetType(str, Enum):
    WALLET = "wallet"
    CONTRACT = "contract"
    URL = "url"
    IP = "ip"
    DOMAIN = "domain"
    EMAIL = "email"
    TOKEN = "token"
    OTHER = "other"


class IndicatorType(str, Enum):
    HASH = "hash"
    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    EMAIL = "email"
    WALLET = "wallet"
    CONTRACT = "contract"
    SIGNATURE = "signature"


class EvidenceType(str, Enum):
    TRANSACTION = "transaction"
    SCREENSHOT = "screenshot"
    URL = "url"
    CONTRACT_CODE = "contract_code"
    EMAIL = "email"
    SOCIAL_POST = "social_post"


class CorrelationType(str, Enum):
    DUPLICATE = "duplicate"
    RELATED = "related"
    CAMPAIGN = "campaign"
    ATTRIBUTION = "attribution"
    TARGET_OVERLAP = "target_overlap"


class CorrelationStatus(str, Enum):
    ACTIVE = "active"
    DISPUTED = "disputed"
    CONFIRMED = "confirmed"


class PatternOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    REGEX = "regex"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class PatternActionType(str, Enum):
    INCREASE_SEVERITY = "increase_severity"
    ADD_TAG = "add_tag"
    CORRELATE = "correlate"
    NOTIFY = "notify"
    AUTO_RESOLVE = "auto_resolve"


class DeliveryFrequency(str, Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    QUEUED = "queued"


class SubscriberKind(str, Enum):
    SUBSCRIPTION = "subscription"
    WATCHLIST = "watchlist"


class StatsPeriod(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class MutationKind(str, Enum):
    """What happened to a record in a ``RecordMutated`` event."""

    CREATED = "created"
    MERGED = "merged"
    UPDATED = "updated"
    CORRELATED = "correlated"
    STATUS_CHANGED = "status_changed"
    RESOLVED = "resolved"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Record value objects
# ---------------------------------------------------------------------------


@dataclass
class ThreatSource:
    id: str
    name: str = ""
    kind: SourceKind = SourceKind.COMMUNITY
    reliability: int = 50  # 0-100

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatSource":
        if not isinstance(data, dict):
            raise ValidationError("source must be an object")
        source_id = str(data.get("id") or "").strip()
        if not source_id:
            raise ValidationError("source.id is required", {"field": "source.id"})
        reliability = data.get("reliability", 50)
        try:
            reliability = int(reliability)
        except (TypeError, ValueError):
            raise ValidationError("source.reliability must be an integer")
        if not 0 <= reliability <= 100:
            raise ValidationError(
                "source.reliability must be within 0-100",
                {"field": "source.reliability"},
            )
        return cls(
            id=source_id,
            name=str(data.get("name") or source_id),
            kind=parse_enum(SourceKind, data.get("kind", data.get("type", "community")), "source.kind"),
            reliability=reliability,
        )


@dataclass
class Target:
    type: TargetType
    value: str
    network: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Target":
        if not isinstance(data, dict):
            raise ValidationError("target must be an object")
        value = str(data.get("value") or "").strip()
        if not value:
            raise ValidationError("target.value must not be empty", {"field": "target.value"})
        return cls(
            type=parse_enum(TargetType, data.get("type"), "target.type"),
            value=value,
            network=data.get("network") or None,
        )


@dataclass
class Indicator:
    type: IndicatorType
    value: str
    context: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.value}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Indicator":
        data = require_object(data, "indicator")
        value = str(data.get("value") or "").strip()
        if not value:
            raise ValidationError("indicator.value must not be empty")
        return cls(
            type=parse_enum(IndicatorType, data.get("type"), "indicator.type"),
            value=value,
            context=data.get("context") or None,
        )


@dataclass
class Evidence:
    type: EvidenceType
    value: str
    description: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.value}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        data = require_object(data, "evidence")
        value = str(data.get("value") or "").strip()
        if not value:
            raise ValidationError("evidence.value must not be empty")
        return cls(
            type=parse_enum(EvidenceType, data.get("type"), "evidence.type"),
            value=value,
            description=data.get("description") or None,
            timestamp=parse_datetime(data.get("timestamp"), "evidence.timestamp"),
        )


@dataclass
class ThreatContext:
    title: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    evidence: List[Evidence] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ThreatContext":
        data = require_object(data, "context", optional=True)
        return cls(
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            tags=[str(t) for t in require_list(data.get("tags"), "context.tags")],
            references=[str(r) for r in require_list(data.get("references"), "context.references")],
            evidence=[Evidence.from_dict(e) for e in require_list(data.get("evidence"), "context.evidence")],
        )


@dataclass
class Attribution:
    actor: Optional[str] = None
    campaign: Optional[str] = None
    malware_family: Optional[str] = None
    techniques: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.actor or self.campaign or self.malware_family or self.techniques)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Attribution":
        data = require_object(data, "attribution", optional=True)
        return cls(
            actor=data.get("actor") or None,
            campaign=data.get("campaign") or None,
            malware_family=data.get("malware_family") or data.get("malwareFamily") or None,
            techniques=[str(t) for t in require_list(data.get("techniques"), "attribution.techniques")],
        )


@dataclass
class Impact:
    financial_loss: Optional[float] = None
    affected_users: Optional[int] = None
    estimated_reach: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Impact":
        data = require_object(data, "impact", optional=True)
        return cls(
            financial_loss=data.get("financial_loss"),
            affected_users=data.get("affected_users"),
            estimated_reach=data.get("estimated_reach"),
        )


@dataclass
class Timeline:
    first_seen: datetime
    last_seen: datetime
    discovered_at: datetime
    reported_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    scheduled_resolution_at: Optional[datetime] = None

    @property
    def ttl_anchor(self) -> datetime:
        """Start of the aging clock: last sighting or re-verification."""
        if self.verified_at and self.verified_at > self.last_seen:
            return self.verified_at
        return self.last_seen

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Timeline":
        return cls(
            first_seen=parse_datetime(data["first_seen"]),
            last_seen=parse_datetime(data["last_seen"]),
            discovered_at=parse_datetime(data["discovered_at"]),
            reported_at=parse_datetime(data.get("reported_at")),
            verified_at=parse_datetime(data.get("verified_at")),
            resolved_at=parse_datetime(data.get("resolved_at")),
            scheduled_resolution_at=parse_datetime(data.get("scheduled_resolution_at")),
        )


@dataclass
class Votes:
    upvotes: int = 0
    downvotes: int = 0

    @property
    def total(self) -> int:
        return self.upvotes + self.downvotes

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes


@dataclass
class PatternMatchEntry:
    pattern_id: str
    pattern_version: int
    score: float
    matched_at: datetime


# ---------------------------------------------------------------------------
# ThreatRecord
# ---------------------------------------------------------------------------


@dataclass
class ThreatRecord:
    """Canonical deduplicated threat observation.

    ``confidence`` is derived (see ``scoring.compute_confidence``) and
    ``version`` is the optimistic-concurrency counter maintained by the
    store.
    """

    identity_hash: str
    source: ThreatSource
    type: ThreatType
    category: ThreatCategory
    severity: Severity
    target: Target
    timeline: Timeline
    reported_severity: Severity = Severity.MEDIUM
    confidence: int = 0
    sources: List[ThreatSource] = field(default_factory=list)
    indicators: List[Indicator] = field(default_factory=list)
    context: ThreatContext = field(default_factory=ThreatContext)
    attribution: Attribution = field(default_factory=Attribution)
    impact: Impact = field(default_factory=Impact)
    status: RecordStatus = RecordStatus.ACTIVE
    expires_at: Optional[datetime] = None
    correlated_threats: List[str] = field(default_factory=list)
    votes: Votes = field(default_factory=Votes)
    pattern_adjustments: Dict[str, int] = field(default_factory=dict)
    pattern_matches: List[PatternMatchEntry] = field(default_factory=list)
    pattern_severity_floor: Optional[Severity] = None
    pending_analysis: bool = True
    id: str = field(default_factory=new_id)
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def indicator_values(self) -> List[str]:
        return [i.value for i in self.indicators]

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatRecord":
        votes = data.get("votes") or {}
        floor = data.get("pattern_severity_floor")
        return cls(
            id=data["id"],
            identity_hash=data["identity_hash"],
            source=ThreatSource.from_dict(data["source"]),
            sources=[ThreatSource.from_dict(s) for s in data.get("sources") or []],
            type=ThreatType(data["type"]),
            category=ThreatCategory(data["category"]),
            severity=Severity(data["severity"]),
            reported_severity=Severity(data.get("reported_severity", data["severity"])),
            confidence=int(data.get("confidence", 0)),
            target=Target(
                type=TargetType(data["target"]["type"]),
                value=data["target"]["value"],
                network=data["target"].get("network"),
            ),
            indicators=[
                Indicator(IndicatorType(i["type"]), i["value"], i.get("context"))
                for i in data.get("indicators") or []
            ],
            context=ThreatContext.from_dict(data.get("context")),
            attribution=Attribution.from_dict(data.get("attribution")),
            impact=Impact.from_dict(data.get("impact")),
            timeline=Timeline.from_dict(data["timeline"]),
            status=RecordStatus(data.get("status", "active")),
            expires_at=parse_datetime(data.get("expires_at")),
            correlated_threats=list(data.get("correlated_threats") or []),
            votes=Votes(
                upvotes=int(votes.get("upvotes", 0)),
                downvotes=int(votes.get("downvotes", 0)),
            ),
            pattern_adjustments={
                k: int(v) for k, v in (data.get("pattern_adjustments") or {}).items()
            },
            pattern_matches=[
                PatternMatchEntry(
                    pattern_id=m["pattern_id"],
                    pattern_version=int(m.get("pattern_version", 1)),
                    score=float(m["score"]),
                    matched_at=parse_datetime(m["matched_at"]),
                )
                for m in data.get("pattern_matches") or []
            ],
            pattern_severity_floor=Severity(floor) if floor else None,
            pending_analysis=bool(data.get("pending_analysis", False)),
            version=int(data.get("version", 0)),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


# ---------------------------------------------------------------------------
# Producer input
# ---------------------------------------------------------------------------


@dataclass
class RawObservation:
    """A single producer observation, validated but not yet normalized."""

    source: ThreatSource
    type: ThreatType
    category: ThreatCategory
    severity: Severity
    target: Target
    indicators: List[Indicator] = field(default_factory=list)
    context: ThreatContext = field(default_factory=ThreatContext)
    attribution: Attribution = field(default_factory=Attribution)
    impact: Impact = field(default_factory=Impact)
    reported_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawObservation":
        """Validate a producer payload.

        Raises:
            ValidationError: on missing/empty target, unknown enum values,
                or out-of-range reliability.
        """
        if not isinstance(data, dict):
            raise ValidationError("observation must be an object")
        for required in ("source", "type", "category", "severity", "target"):
            if data.get(required) in (None, ""):
                raise ValidationError(f"{required} is required", {"field": required})
        context = data.get("context") or {}
        if not isinstance(context, dict):
            raise ValidationError("context must be an object")
        return cls(
            source=ThreatSource.from_dict(data["source"]),
            type=parse_enum(ThreatType, data["type"], "type"),
            category=parse_enum(ThreatCategory, data["category"], "category"),
            severity=parse_enum(Severity, data["severity"], "severity"),
            target=Target.from_dict(data["target"]),
            indicators=[Indicator.from_dict(i) for i in require_list(data.get("indicators"), "indicators")],
            context=ThreatContext.from_dict(context),
            attribution=Attribution.from_dict(data.get("attribution")),
            impact=Impact.from_dict(data.get("impact")),
            reported_at=parse_datetime(data.get("reported_at"), "reported_at"),
            expires_at=parse_datetime(data.get("expires_at"), "expires_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)


# ---------------------------------------------------------------------------
# Correlation edges
# ---------------------------------------------------------------------------


@dataclass
class CorrelationEvidence:
    common_indicators: List[str] = field(default_factory=list)
    timeline_similarity: float = 0.0
    attribution_similarity: float = 0.0
    target_similarity: float = 0.0


@dataclass
class ThreatCorrelation:
    """Edge between two records; stored once, visible from both ends."""

    parent_id: str
    child_id: str
    correlation_type: CorrelationType
    confidence: int
    evidence: CorrelationEvidence = field(default_factory=CorrelationEvidence)
    status: CorrelationStatus = CorrelationStatus.ACTIVE
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def other_end(self, record_id: str) -> str:
        return self.child_id if record_id == self.parent_id else self.parent_id

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatCorrelation":
        ev = data.get("evidence") or {}
        return cls(
            id=data["id"],
            parent_id=data["parent_id"],
            child_id=data["child_id"],
            correlation_type=CorrelationType(data["correlation_type"]),
            confidence=int(data["confidence"]),
            evidence=CorrelationEvidence(
                common_indicators=list(ev.get("common_indicators") or []),
                timeline_similarity=float(ev.get("timeline_similarity", 0.0)),
                attribution_similarity=float(ev.get("attribution_similarity", 0.0)),
                target_similarity=float(ev.get("target_similarity", 0.0)),
            ),
            status=CorrelationStatus(data.get("status", "active")),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------


@dataclass
class PatternClause:
    field: str  # dotted path, e.g. "target.value"
    operator: PatternOperator
    value: str
    weight: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternClause":
        data = require_object(data, "clause")
        path = str(data.get("field") or "").strip()
        if not path:
            raise ValidationError("clause.field is required")
        try:
            weight = float(data.get("weight", 0))
        except (TypeError, ValueError):
            raise ValidationError("clause.weight must be numeric")
        if weight < 0:
            raise ValidationError("clause.weight must be non-negative")
        return cls(
            field=path,
            operator=parse_enum(PatternOperator, data.get("operator"), "clause.operator"),
            value=str(data.get("value", "")),
            weight=weight,
        )


@dataclass
class PatternAction:
    type: PatternActionType
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternAction":
        data = require_object(data, "action")
        action_type = parse_enum(PatternActionType, data.get("type"), "action.type")
        params = dict(require_object(data.get("parameters"), "action.parameters", optional=True))
        if action_type == PatternActionType.INCREASE_SEVERITY:
            target = params.get("target_severity", params.get("targetSeverity"))
            if target is not None:
                params["target_severity"] = parse_enum(
                    Severity, target, "action.target_severity"
                ).value
                params.pop("targetSeverity", None)
        if action_type == PatternActionType.ADD_TAG and not params.get("tag"):
            raise ValidationError("add_tag action requires a tag parameter")
        return cls(type=action_type, parameters=params)


@dataclass
class ThreatPattern:
    """Declarative weighted rule.

    Clauses, threshold and actions are frozen once ``times_triggered``
    is positive; changes go through a new version (``supersedes``).
    """

    pattern_key: str
    name: str
    clauses: List[PatternClause]
    threshold: float
    actions: List[PatternAction]
    description: str = ""
    category: Optional[ThreatCategory] = None
    priority: int = 0
    version: int = 1
    supersedes: Optional[str] = None
    times_triggered: int = 0
    last_triggered: Optional[datetime] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    seq: int = 0  # creation order, assigned by the store
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_fired(self) -> bool:
        return self.times_triggered > 0

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatPattern":
        category = data.get("category")
        return cls(
            id=data.get("id") or new_id(),
            pattern_key=data["pattern_key"],
            name=data.get("name", data["pattern_key"]),
            description=data.get("description", ""),
            category=ThreatCategory(category) if category else None,
            clauses=[
                PatternClause.from_dict(c) for c in require_list(data.get("clauses"), "clauses")
            ],
            threshold=float(data.get("threshold", 1.0)),
            actions=[
                PatternAction.from_dict(a) for a in require_list(data.get("actions"), "actions")
            ],
            priority=int(data.get("priority", 0)),
            version=int(data.get("version", 1)),
            supersedes=data.get("supersedes"),
            times_triggered=int(data.get("times_triggered", 0)),
            last_triggered=parse_datetime(data.get("last_triggered")),
            is_active=bool(data.get("is_active", True)),
            seq=int(data.get("seq", 0)),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# Subscriptions & watchlists
# ---------------------------------------------------------------------------


@dataclass
class SubscriptionFilter:
    """AND-combination of optional predicates; empty filter matches all."""

    types: List[ThreatType] = field(default_factory=list)
    categories: List[ThreatCategory] = field(default_factory=list)
    severities: List[Severity] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    targets: List[str] = field(default_factory=list)
    minimum_confidence: Optional[int] = None
    minimum_severity: Optional[Severity] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SubscriptionFilter":
        data = require_object(data, "filters", optional=True)
        min_conf = data.get("minimum_confidence")
        if min_conf is not None:
            try:
                min_conf = int(min_conf)
            except (TypeError, ValueError):
                raise ValidationError("filters.minimum_confidence must be an integer")
            if not 0 <= min_conf <= 100:
                raise ValidationError("filters.minimum_confidence must be within 0-100")
        min_sev = data.get("minimum_severity")
        return cls(
            types=[
                parse_enum(ThreatType, t, "filters.types")
                for t in require_list(data.get("types"), "filters.types")
            ],
            categories=[
                parse_enum(ThreatCategory, c, "filters.categories")
                for c in require_list(data.get("categories"), "filters.categories")
            ],
            severities=[
                parse_enum(Severity, s, "filters.severities")
                for s in require_list(data.get("severities"), "filters.severities")
            ],
            sources=[str(s) for s in require_list(data.get("sources"), "filters.sources")],
            targets=[str(t) for t in require_list(data.get("targets"), "filters.targets")],
            minimum_confidence=min_conf,
            minimum_severity=(
                parse_enum(Severity, min_sev, "filters.minimum_severity") if min_sev else None
            ),
            tags=[str(t) for t in require_list(data.get("tags"), "filters.tags")],
        )


@dataclass
class DeliveryPreferences:
    real_time: bool = True
    in_app: bool = True
    email_enabled: bool = False
    webhook_enabled: bool = False
    frequency: DeliveryFrequency = DeliveryFrequency.REALTIME

    @property
    def channels(self) -> List[str]:
        names = []
        if self.in_app:
            names.append("in_app")
        if self.email_enabled:
            names.append("email")
        if self.webhook_enabled:
            names.append("webhook")
        return names

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeliveryPreferences":
        data = require_object(data, "delivery", optional=True)
        real_time = bool(data.get("real_time", True))
        default_freq = "realtime" if real_time else "daily"
        return cls(
            real_time=real_time,
            in_app=bool(data.get("in_app", True)),
            email_enabled=bool(data.get("email_enabled", False)),
            webhook_enabled=bool(data.get("webhook_enabled", False)),
            frequency=parse_enum(
                DeliveryFrequency, data.get("frequency", default_freq), "delivery.frequency"
            ),
        )


@dataclass
class SubscriberStats:
    threats_received: int = 0
    failed_deliveries: int = 0
    last_delivery: Optional[datetime] = None


@dataclass
class ThreatSubscription:
    filters: SubscriptionFilter = field(default_factory=SubscriptionFilter)
    delivery: DeliveryPreferences = field(default_factory=DeliveryPreferences)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    statistics: SubscriberStats = field(default_factory=SubscriberStats)
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatSubscription":
        stats = data.get("statistics") or {}
        return cls(
            id=data.get("id") or new_id(),
            user_id=data.get("user_id"),
            session_id=data.get("session_id"),
            filters=SubscriptionFilter.from_dict(data.get("filters")),
            delivery=DeliveryPreferences.from_dict(data.get("delivery")),
            statistics=SubscriberStats(
                threats_received=int(stats.get("threats_received", 0)),
                failed_deliveries=int(stats.get("failed_deliveries", 0)),
                last_delivery=parse_datetime(stats.get("last_delivery")),
            ),
            is_active=bool(data.get("is_active", True)),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class WatchlistTarget:
    value: str
    type: TargetType = TargetType.OTHER
    network: Optional[str] = None
    added_at: datetime = field(default_factory=utcnow)


@dataclass
class AlertSettings:
    real_time: bool = True
    minimum_severity: Severity = Severity.LOW
    notification_channels: List[str] = field(default_factory=lambda: ["in_app"])

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AlertSettings":
        data = require_object(data, "alert_settings", optional=True)
        return cls(
            real_time=bool(data.get("real_time", True)),
            minimum_severity=parse_enum(
                Severity, data.get("minimum_severity", "low"), "alert_settings.minimum_severity"
            ),
            notification_channels=[
                str(c)
                for c in require_list(
                    data.get("notification_channels"), "alert_settings.notification_channels"
                ) or ["in_app"]
            ],
        )


@dataclass
class ThreatWatchlist:
    """Named set of targets; an implicit ``target ∈ targets`` filter."""

    user_id: str
    name: str
    targets: List[WatchlistTarget] = field(default_factory=list)
    alert_settings: AlertSettings = field(default_factory=AlertSettings)
    description: str = ""
    statistics: SubscriberStats = field(default_factory=SubscriberStats)
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def target_values(self) -> List[str]:
        return [t.value for t in self.targets]

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatWatchlist":
        stats = data.get("statistics") or {}
        return cls(
            id=data.get("id") or new_id(),
            user_id=data["user_id"],
            name=data["name"],
            description=data.get("description", ""),
            targets=[
                WatchlistTarget(
                    value=t["value"],
                    type=TargetType(t.get("type", "other")),
                    network=t.get("network"),
                    added_at=parse_datetime(t.get("added_at")) or utcnow(),
                )
                for t in data.get("targets") or []
            ],
            alert_settings=AlertSettings.from_dict(data.get("alert_settings")),
            statistics=SubscriberStats(
                threats_received=int(stats.get("threats_received", 0)),
                failed_deliveries=int(stats.get("failed_deliveries", 0)),
                last_delivery=parse_datetime(stats.get("last_delivery")),
            ),
            is_active=bool(data.get("is_active", True)),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class Delivery:
    """One delivery decision for one subscriber and one mutation event."""

    event_id: str
    record_id: str
    subscriber_kind: SubscriberKind
    subscriber_id: str
    mutation_kind: MutationKind
    status: DeliveryStatus
    channels: List[str] = field(default_factory=list)
    user_id: Optional[str] = None
    frequency: DeliveryFrequency = DeliveryFrequency.REALTIME
    error: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Delivery":
        return cls(
            id=data["id"],
            event_id=data["event_id"],
            record_id=data["record_id"],
            subscriber_kind=SubscriberKind(data["subscriber_kind"]),
            subscriber_id=data["subscriber_id"],
            mutation_kind=MutationKind(data["mutation_kind"]),
            status=DeliveryStatus(data["status"]),
            channels=list(data.get("channels") or []),
            user_id=data.get("user_id"),
            frequency=DeliveryFrequency(data.get("frequency", "realtime")),
            error=data.get("error"),
            created_at=parse_datetime(data["created_at"]),
        )


# ---------------------------------------------------------------------------
# Sources & stats
# ---------------------------------------------------------------------------


@dataclass
class SourceStats:
    total_fetched: int = 0
    successful_fetches: int = 0
    failed_fetches: int = 0
    consecutive_failures: int = 0
    last_fetch: Optional[datetime] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    average_latency_ms: float = 0.0


@dataclass
class SourceConfig:
    """Configuration + health of one source adapter."""

    source_id: str
    name: str
    kind: SourceKind = SourceKind.EXTERNAL_API
    url: Optional[str] = None
    reliability: int = 50
    interval_seconds: int = 600
    timeout_seconds: float = 30.0
    backoff_seconds: float = 60.0
    mapping: Dict[str, str] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    suspended: bool = False
    cursor: Optional[str] = None
    statistics: SourceStats = field(default_factory=SourceStats)

    def as_source(self) -> ThreatSource:
        return ThreatSource(
            id=self.source_id, name=self.name, kind=self.kind, reliability=self.reliability
        )

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        stats = data.get("statistics") or {}
        return cls(
            source_id=data["source_id"],
            name=data.get("name", data["source_id"]),
            kind=SourceKind(data.get("kind", "external_api")),
            url=data.get("url"),
            reliability=int(data.get("reliability", 50)),
            interval_seconds=int(data.get("interval_seconds", 600)),
            timeout_seconds=float(data.get("timeout_seconds", 30.0)),
            backoff_seconds=float(data.get("backoff_seconds", 60.0)),
            mapping=dict(data.get("mapping") or {}),
            defaults=dict(data.get("defaults") or {}),
            is_active=bool(data.get("is_active", True)),
            suspended=bool(data.get("suspended", False)),
            cursor=data.get("cursor"),
            statistics=SourceStats(
                total_fetched=int(stats.get("total_fetched", 0)),
                successful_fetches=int(stats.get("successful_fetches", 0)),
                failed_fetches=int(stats.get("failed_fetches", 0)),
                consecutive_failures=int(stats.get("consecutive_failures", 0)),
                last_fetch=parse_datetime(stats.get("last_fetch")),
                last_error=stats.get("last_error"),
                next_attempt_at=parse_datetime(stats.get("next_attempt_at")),
                average_latency_ms=float(stats.get("average_latency_ms", 0.0)),
            ),
        )


@dataclass
class StatsRollup:
    period: StatsPeriod
    period_start: datetime
    period_end: datetime
    metrics: Dict[str, Any] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatsRollup":
        return cls(
            period=StatsPeriod(data["period"]),
            period_start=parse_datetime(data["period_start"]),
            period_end=parse_datetime(data["period_end"]),
            metrics=dict(data.get("metrics") or {}),
            generated_at=parse_datetime(data["generated_at"]),
        )

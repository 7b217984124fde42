# Feed Module - Threat Records, Rules and Fan-out
#
# Canonical threat records with deduplication, scoring, correlation,
# pattern rules, lifecycle aging, source adapters and subscriber
# delivery.  ThreatFeedService is the entry point.

from .errors import (
    ThreatFeedError,
    ValidationError,
    NotFoundError,
    ConflictError,
    AdapterError,
    DeliveryError,
    InternalError,
)
from .models import (
    ThreatRecord,
    RawObservation,
    RecordStatus,
    Severity,
    ThreatType,
    ThreatCategory,
    TargetType,
    ThreatCorrelation,
    CorrelationType,
    ThreatPattern,
    ThreatSubscription,
    ThreatWatchlist,
    SourceConfig,
    StatsPeriod,
    DeliveryFrequency,
)
from .store import ThreatStore
from .events import EventBus, RecordMutated
from .ingestion import IngestionEngine, IngestResult, BatchIngestReport
from .patterns import PatternEngine, DEFAULT_PATTERNS
from .correlation import CorrelationEngine
from .aging import AgingEngine, SweepReport
from .subscriptions import SubscriptionEngine, DeliveryChannel, InAppChannel
from .adapters import (
    AdapterRegistry,
    SourceAdapter,
    HttpJsonAdapter,
    StaticAdapter,
    FetchBatch,
    FetchReport,
)
from .stats import StatsAggregator
from .service import ThreatFeedService, get_feed_service, set_feed_service

__all__ = [
    # Errors
    "ThreatFeedError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AdapterError",
    "DeliveryError",
    "InternalError",
    # Models
    "ThreatRecord",
    "RawObservation",
    "RecordStatus",
    "Severity",
    "ThreatType",
    "ThreatCategory",
    "TargetType",
    "ThreatCorrelation",
    "CorrelationType",
    "ThreatPattern",
    "ThreatSubscription",
    "ThreatWatchlist",
    "SourceConfig",
    "StatsPeriod",
    "DeliveryFrequency",
    # Engines
    "ThreatStore",
    "EventBus",
    "RecordMutated",
    "IngestionEngine",
    "IngestResult",
    "BatchIngestReport",
    "PatternEngine",
    "DEFAULT_PATTERNS",
    "CorrelationEngine",
    "AgingEngine",
    "SweepReport",
    "SubscriptionEngine",
    "DeliveryChannel",
    "InAppChannel",
    "AdapterRegistry",
    "SourceAdapter",
    "HttpJsonAdapter",
    "StaticAdapter",
    "FetchBatch",
    "FetchReport",
    "StatsAggregator",
    # Service
    "ThreatFeedService",
    "get_feed_service",
    "set_feed_service",
]

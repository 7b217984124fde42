# Feed Module - Source Adapters
#
# Pull-based producers of raw observations.  Each adapter implements
# ``fetch(cursor)`` and is driven by the AdapterRegistry, which owns
# scheduling and health:
#
#   - every source runs on its own APScheduler IntervalTrigger
#   - a fetch runs under ``timeout_seconds``; a timeout is a failure
#   - failure N sets next_attempt_at = now + backoff * 2^(N-1); runs
#     before that instant are skipped
#   - adapter_max_failures consecutive failures suspend the source
#     until it is reactivated
#
# Adapter errors never reach ingestion callers; they are counted on the
# source and surfaced only by the admin fetch action.

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from apscheduler.triggers.interval import IntervalTrigger

from ..core.audit_log import AuditEventType, AuditSeverity, get_audit_logger
from ..core.config import FeedSettings, get_settings
from .errors import AdapterError, NotFoundError, ValidationError
from .ingestion import BatchIngestReport, IngestionEngine
from .models import Severity, SourceConfig, ThreatType, encode, utcnow
from .store import ThreatStore

logger = logging.getLogger(__name__)

# Retry configuration for HTTP sources
MAX_RETRIES = 3
INITIAL_BACKOFF_SEC = 1.0
BACKOFF_MULTIPLIER = 2.0

USER_AGENT = "threatfeed/0.4"

_THREAT_TYPES = {t.value for t in ThreatType}

# Free-text severities seen in third-party feeds
_SEVERITY_ALIASES: Dict[str, Severity] = {
    "very_high": Severity.CRITICAL,
    "severe": Severity.CRITICAL,
    "moderate": Severity.MEDIUM,
    "minimal": Severity.INFO,
    "informational": Severity.INFO,
}

# Built-in external sources.  URLs are placeholders until an operator
# points them at a real endpoint with ``update_source``.
DEFAULT_SOURCES: List[Dict[str, Any]] = [
    {
        "source_id": "phishing_tracker",
        "name": "Phishing Tracker API",
        "url": "https://api.phishingtracker.com/threats",
        "reliability": 80,
        "interval_seconds": 600,
        "mapping": {
            "type": "category",
            "severity": "risk_level",
            "target": "url",
            "description": "description",
            "tags": "tags",
            "timestamp": "discovered_at",
        },
        "defaults": {"type": "phishing", "target_type": "url", "category": "identity_theft"},
    },
    {
        "source_id": "scam_database",
        "name": "Crypto Scam Database",
        "url": "https://api.cryptoscamdb.org/v1/addresses",
        "reliability": 75,
        "interval_seconds": 1800,
        "mapping": {
            "type": "category",
            "severity": "risk",
            "target": "address",
            "description": "description",
            "timestamp": "reported_at",
        },
        "defaults": {"type": "scam", "target_type": "wallet", "category": "financial"},
    },
    {
        "source_id": "malware_bazaar",
        "name": "Malware Bazaar Feed",
        "url": "https://mb-api.abuse.ch/api/v1/samples/recent/",
        "reliability": 85,
        "interval_seconds": 900,
        "mapping": {
            "severity": "confidence",
            "target": "file_name",
            "description": "signature",
            "hash": "sha256_hash",
            "timestamp": "first_seen",
        },
        "defaults": {"type": "malware", "target_type": "other", "category": "technical"},
    },
    {
        "source_id": "blockchain_monitor",
        "name": "Blockchain Threat Monitor",
        "kind": "on_chain",
        "url": "https://api.blockchainmonitor.com/threats",
        "reliability": 70,
        "interval_seconds": 300,
        "mapping": {
            "type": "threat_type",
            "severity": "severity",
            "target": "wallet_address",
            "description": "details",
            "timestamp": "detected_at",
        },
        "defaults": {"type": "exploit", "target_type": "contract", "category": "financial"},
    },
]


@dataclass
class FetchBatch:
    """What one ``fetch`` call produced."""

    observations: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    success: bool = True
    error: Optional[str] = None


@dataclass
class FetchReport:
    """Outcome of one registry run for a single source."""

    source_id: str
    fetched: int = 0
    created: int = 0
    merged: int = 0
    rejected: int = 0
    skipped: Optional[str] = None  # reason the run did not happen
    error: Optional[str] = None
    timed_out: bool = False
    suspended: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.skipped is None

    def to_dict(self) -> Dict[str, Any]:
        return encode(self) | {"ok": self.ok}


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class SourceAdapter(ABC):
    """Contract every source adapter implements.

    Lifecycle:
        1. the registry persists ``config`` and schedules the adapter
        2. ``fetch(cursor)`` returns raw observation dicts
        3. ``next_cursor`` is stored and passed to the following fetch
    """

    def __init__(self, config: SourceConfig):
        self.config = config

    @property
    def source_id(self) -> str:
        return self.config.source_id

    @abstractmethod
    def fetch(self, cursor: Optional[str] = None) -> FetchBatch:
        """Pull new observations.

        Raises:
            AdapterError: the source could not be read.
        """

    def health_check(self) -> bool:
        return True


class StaticAdapter(SourceAdapter):
    """Serves observations pushed into it (internal detectors, tests).

    The cursor is the index of the next unread observation.
    """

    def __init__(self, config: SourceConfig, observations: Optional[Iterable[Dict[str, Any]]] = None):
        super().__init__(config)
        self._items: List[Dict[str, Any]] = list(observations or [])
        self._lock = threading.Lock()

    def push(self, *observations: Dict[str, Any]) -> None:
        with self._lock:
            self._items.extend(observations)

    def fetch(self, cursor: Optional[str] = None) -> FetchBatch:
        start = int(cursor) if cursor else 0
        with self._lock:
            items = self._items[start:]
            end = len(self._items)
        return FetchBatch(observations=list(items), next_cursor=str(end))


def _lookup(item: Dict[str, Any], path: Optional[str]) -> Any:
    if not path:
        return None
    value: Any = item
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def map_severity(raw: Any, default: Severity = Severity.MEDIUM) -> Severity:
    """Map a feed's severity (name or 0-100 score) onto ``Severity``."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        if raw >= 90:
            return Severity.CRITICAL
        if raw >= 70:
            return Severity.HIGH
        if raw >= 40:
            return Severity.MEDIUM
        if raw >= 20:
            return Severity.LOW
        return Severity.INFO
    text = str(raw).strip().lower().replace(" ", "_")
    if text.isdigit():
        return map_severity(int(text), default)
    if text in _SEVERITY_ALIASES:
        return _SEVERITY_ALIASES[text]
    try:
        return Severity(text)
    except ValueError:
        return default


def map_item(item: Dict[str, Any], config: SourceConfig) -> Optional[Dict[str, Any]]:
    """Translate one feed item into an observation payload.

    Returns None if the item has no target value.
    """
    mapping = config.mapping
    defaults = config.defaults
    target = _lookup(item, mapping.get("target"))
    if target in (None, ""):
        return None

    default_type = defaults.get("type", ThreatType.SCAM.value)
    raw_type = str(_lookup(item, mapping.get("type")) or default_type).strip().lower()
    threat_type = raw_type if raw_type in _THREAT_TYPES else default_type

    tags = _lookup(item, mapping.get("tags")) or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    indicators = []
    digest = _lookup(item, mapping.get("hash"))
    if digest:
        indicators.append({"type": "hash", "value": str(digest)})

    description = str(_lookup(item, mapping.get("description")) or "")
    return {
        "source": encode(config.as_source()),
        "type": threat_type,
        "category": defaults.get("category", "financial"),
        "severity": map_severity(
            _lookup(item, mapping.get("severity")),
            Severity(defaults.get("severity", Severity.MEDIUM.value)),
        ).value,
        "target": {
            "type": defaults.get("target_type", "other"),
            "value": str(target),
            "network": _lookup(item, mapping.get("network")) or defaults.get("network"),
        },
        "indicators": indicators,
        "context": {
            "title": str(_lookup(item, mapping.get("title")) or f"{threat_type}: {target}"),
            "description": description,
            "tags": [str(t) for t in tags],
        },
        "reported_at": _lookup(item, mapping.get("timestamp")),
    }


class HttpJsonAdapter(SourceAdapter):
    """Polls a JSON endpoint and maps its items through ``config.mapping``.

    The response may be a bare list or an object holding the list under
    ``results``, ``data`` or ``items``.  A ``next_cursor`` key in the
    response is kept as the cursor; the cursor is sent back as
    ``?since=``.
    """

    def __init__(
        self,
        config: SourceConfig,
        client: Optional[httpx.Client] = None,
        api_key: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(config)
        self._client = client
        self._api_key = api_key
        self._sleep = sleep

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _request(self, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        """GET with retry + exponential backoff.

        Retries on network errors, 429 and 5xx.  Other 4xx fail at once.
        """
        if not self.config.url:
            raise AdapterError(self.source_id, "source has no url configured")
        backoff = INITIAL_BACKOFF_SEC
        last_error = ""

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                kwargs = dict(
                    headers=self._build_headers(),
                    params=params,
                    timeout=self.config.timeout_seconds,
                )
                if self._client is not None:
                    resp = self._client.get(self.config.url, **kwargs)
                else:
                    resp = httpx.get(self.config.url, **kwargs)
            except httpx.HTTPError as exc:
                last_error = str(exc) or exc.__class__.__name__
            else:
                if resp.status_code < 400:
                    return resp
                if resp.status_code != 429 and resp.status_code < 500:
                    raise AdapterError(self.source_id, f"HTTP {resp.status_code} from source")
                last_error = f"HTTP {resp.status_code}"
                retry_after = resp.headers.get("Retry-After")
                if resp.status_code == 429 and retry_after:
                    try:
                        backoff = float(retry_after)
                    except ValueError:
                        pass

            if attempt < MAX_RETRIES:
                logger.warning(
                    "%s request failed (%s), retrying in %.1fs (attempt %d/%d)",
                    self.source_id, last_error, backoff, attempt, MAX_RETRIES,
                )
                self._sleep(backoff)
                backoff *= BACKOFF_MULTIPLIER

        raise AdapterError(
            self.source_id, f"request failed after {MAX_RETRIES} attempts: {last_error}"
        )

    def fetch(self, cursor: Optional[str] = None) -> FetchBatch:
        resp = self._request({"since": cursor} if cursor else None)
        try:
            body = resp.json()
        except ValueError as exc:
            raise AdapterError(self.source_id, f"invalid JSON: {exc}")

        next_cursor = cursor
        if isinstance(body, dict):
            next_cursor = body.get("next_cursor") or cursor
            items = body.get("results") or body.get("data") or body.get("items") or []
        else:
            items = body
        if not isinstance(items, list):
            raise AdapterError(self.source_id, "response holds no item list")

        observations = []
        for item in items:
            if not isinstance(item, dict):
                continue
            mapped = map_item(item, self.config)
            if mapped is None:
                logger.debug("%s: item without target skipped", self.source_id)
                continue
            observations.append(mapped)
        return FetchBatch(observations=observations, next_cursor=next_cursor)

    def health_check(self) -> bool:
        try:
            self._request()
            return True
        except AdapterError:
            return False


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_UPDATABLE = {
    "name",
    "url",
    "reliability",
    "interval_seconds",
    "timeout_seconds",
    "backoff_seconds",
    "mapping",
    "defaults",
    "is_active",
}


class AdapterRegistry:
    """Owns adapter configs, health bookkeeping and schedules."""

    def __init__(
        self,
        store: ThreatStore,
        ingestion: IngestionEngine,
        settings: Optional[FeedSettings] = None,
        on_ingested: Optional[Callable[[BatchIngestReport], None]] = None,
    ):
        self.store = store
        self.ingestion = ingestion
        # Called with every adapter batch report; the service hands
        # fresh records to correlation here
        self.on_ingested = on_ingested
        self.settings = settings or get_settings()
        self._adapters: Dict[str, SourceAdapter] = {}
        self._run_locks: Dict[str, threading.Lock] = {}
        # Last fetch future per source; a hung fetch holds its worker until it returns
        self._fetches: Dict[str, Future] = {}
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="threatfeed-adapter")
        self._scheduler = None

    # ---- Registration ----------------------------------------------------

    def register(self, adapter: SourceAdapter) -> SourceConfig:
        """Add an adapter; a config already persisted for its id wins."""
        stored = self.store.get_source(adapter.source_id)
        if stored is not None:
            adapter.config = stored
        else:
            self.store.save_source(adapter.config)
        self._adapters[adapter.source_id] = adapter
        self._run_locks.setdefault(adapter.source_id, threading.Lock())
        self._schedule(adapter.config)
        logger.info("Registered source %s (%s)", adapter.source_id, adapter.config.name)
        return adapter.config

    def initialize_defaults(self) -> List[str]:
        """Register the built-in HTTP sources that are not yet present."""
        added = []
        for raw in DEFAULT_SOURCES:
            if raw["source_id"] in self._adapters:
                continue
            config = SourceConfig.from_dict(
                {
                    **raw,
                    "timeout_seconds": self.settings.adapter_default_timeout_seconds,
                    "backoff_seconds": self.settings.adapter_default_backoff_seconds,
                }
            )
            self.register(HttpJsonAdapter(config))
            added.append(config.source_id)
        return added

    def get_adapter(self, source_id: str) -> SourceAdapter:
        adapter = self._adapters.get(source_id)
        if adapter is None:
            raise NotFoundError(f"Source {source_id} not found")
        return adapter

    def get_source(self, source_id: str) -> SourceConfig:
        self.get_adapter(source_id)
        config = self.store.get_source(source_id)
        if config is None:
            raise NotFoundError(f"Source {source_id} not found")
        return config

    def list_sources(self) -> List[SourceConfig]:
        return [c for c in self.store.list_sources() if c.source_id in self._adapters]

    # ---- Running ---------------------------------------------------------

    def run_source(
        self, source_id: str, now: Optional[datetime] = None, force: bool = False
    ) -> FetchReport:
        """Fetch from one source and ingest what it returns.

        ``force`` ignores the backoff window and the active flag, but a
        suspended source still needs ``reactivate``.
        """
        adapter = self.get_adapter(source_id)
        lock = self._run_locks[source_id]
        if not lock.acquire(blocking=False):
            return FetchReport(source_id=source_id, skipped="already running")
        try:
            return self._run_locked(adapter, now or utcnow(), force)
        finally:
            lock.release()

    def _run_locked(self, adapter: SourceAdapter, now: datetime, force: bool) -> FetchReport:
        config = self.store.get_source(adapter.source_id) or adapter.config
        adapter.config = config
        report = FetchReport(source_id=config.source_id)
        if config.suspended:
            report.skipped = "suspended"
            report.suspended = True
            return report
        if not force:
            if not config.is_active:
                report.skipped = "inactive"
                return report
            next_attempt = config.statistics.next_attempt_at
            if next_attempt is not None and now < next_attempt:
                report.skipped = "backoff"
                return report

        previous = self._fetches.get(config.source_id)
        if previous is not None and not previous.done():
            self._record_failure(config, now, "previous fetch still running", report)
            report.timed_out = True
            return report

        started = time.monotonic()
        future = self._executor.submit(adapter.fetch, config.cursor)
        self._fetches[config.source_id] = future
        try:
            batch = future.result(timeout=config.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            self._record_failure(config, now, "fetch timed out", report)
            report.timed_out = True
            return report
        except AdapterError as exc:
            self._record_failure(config, now, exc.message, report)
            return report
        except Exception as exc:
            logger.exception("Adapter %s crashed", config.source_id)
            self._record_failure(config, now, str(exc) or exc.__class__.__name__, report)
            return report
        if not batch.success:
            self._record_failure(config, now, batch.error or "fetch failed", report)
            return report

        latency_ms = (time.monotonic() - started) * 1000.0
        observations = [self._with_source(obs, config) for obs in batch.observations]
        ingest = self.ingestion.ingest_batch(observations, now=now, actor=config.source_id)
        if self.on_ingested is not None:
            try:
                self.on_ingested(ingest)
            except Exception:
                logger.exception("Post-ingest hook failed for source %s", config.source_id)
        report.fetched = len(observations)
        report.created = ingest.created
        report.merged = ingest.merged
        report.rejected = len(ingest.errors)

        stats = config.statistics
        stats.total_fetched += len(observations)
        stats.successful_fetches += 1
        stats.consecutive_failures = 0
        stats.last_fetch = now
        stats.last_error = None
        stats.next_attempt_at = None
        done = stats.successful_fetches
        stats.average_latency_ms = ((done - 1) * stats.average_latency_ms + latency_ms) / done
        config.cursor = batch.next_cursor
        self.store.save_source(config)
        logger.info(
            "Source %s: fetched=%d created=%d merged=%d rejected=%d",
            config.source_id, report.fetched, report.created, report.merged, report.rejected,
        )
        return report

    @staticmethod
    def _with_source(obs: Dict[str, Any], config: SourceConfig) -> Dict[str, Any]:
        if isinstance(obs, dict) and not obs.get("source"):
            return {**obs, "source": encode(config.as_source())}
        return obs

    def _record_failure(
        self, config: SourceConfig, now: datetime, error: str, report: FetchReport
    ) -> None:
        stats = config.statistics
        stats.failed_fetches += 1
        stats.consecutive_failures += 1
        stats.last_error = error
        stats.next_attempt_at = now + timedelta(
            seconds=config.backoff_seconds * 2 ** (stats.consecutive_failures - 1)
        )
        report.error = error
        if stats.consecutive_failures >= self.settings.adapter_max_failures:
            config.suspended = True
            report.suspended = True
            self._unschedule(config.source_id)
            logger.error(
                "Source %s suspended after %d consecutive failures: %s",
                config.source_id, stats.consecutive_failures, error,
            )
            get_audit_logger().log_event(
                AuditEventType.SOURCE_SUSPENDED,
                AuditSeverity.ALERT,
                f"Source {config.source_id} suspended",
                details={"source_id": config.source_id, "last_error": error},
            )
        else:
            logger.warning(
                "Source %s fetch failed (%d/%d): %s",
                config.source_id,
                stats.consecutive_failures,
                self.settings.adapter_max_failures,
                error,
            )
        self.store.save_source(config)

    def run_due(self, now: Optional[datetime] = None) -> List[FetchReport]:
        """Run every active source whose backoff window has passed."""
        return [self.run_source(source_id, now=now) for source_id in list(self._adapters)]

    def fetch_external(self, source_id: str, actor: Optional[str] = None) -> FetchReport:
        """Admin-triggered fetch.

        Raises:
            AdapterError: the source is suspended or the fetch failed.
        """
        report = self.run_source(source_id, force=True)
        get_audit_logger().log_event(
            AuditEventType.ADMIN_ACTION,
            AuditSeverity.INFO,
            f"Manual fetch from {source_id}",
            details=report.to_dict(),
            actor=actor,
        )
        if report.error is not None:
            raise AdapterError(source_id, report.error, timed_out=report.timed_out)
        if report.skipped is not None:
            raise AdapterError(source_id, f"source not fetched: {report.skipped}")
        return report

    # ---- Administration --------------------------------------------------

    def reactivate(self, source_id: str, actor: Optional[str] = None) -> SourceConfig:
        config = self.get_source(source_id)
        config.suspended = False
        config.is_active = True
        config.statistics.consecutive_failures = 0
        config.statistics.next_attempt_at = None
        self._save_and_reschedule(config, actor, "reactivated")
        return config

    def update_source(
        self, source_id: str, changes: Dict[str, Any], actor: Optional[str] = None
    ) -> SourceConfig:
        """Apply an admin edit to a source config.

        Setting ``is_active`` to true also lifts a suspension.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                {"fields": sorted(unknown)},
            )
        config = self.get_source(source_id)
        if "reliability" in changes:
            reliability = int(changes["reliability"])
            if not 0 <= reliability <= 100:
                raise ValidationError("reliability must be within 0-100")
            config.reliability = reliability
        for name in ("interval_seconds", "timeout_seconds", "backoff_seconds"):
            if name in changes:
                value = float(changes[name])
                if value <= 0:
                    raise ValidationError(f"{name} must be positive")
                setattr(config, name, int(value) if name == "interval_seconds" else value)
        for name in ("name", "url"):
            if name in changes:
                setattr(config, name, changes[name])
        for name in ("mapping", "defaults"):
            if name in changes:
                if not isinstance(changes[name], dict):
                    raise ValidationError(f"{name} must be an object")
                setattr(config, name, dict(changes[name]))
        if "is_active" in changes:
            config.is_active = bool(changes["is_active"])
            if config.is_active:
                config.suspended = False
                config.statistics.consecutive_failures = 0
                config.statistics.next_attempt_at = None
        self._save_and_reschedule(config, actor, "updated")
        return config

    def _save_and_reschedule(self, config: SourceConfig, actor: Optional[str], what: str) -> None:
        self.store.save_source(config)
        self._adapters[config.source_id].config = config
        self._schedule(config)
        logger.info("Source %s %s", config.source_id, what)
        get_audit_logger().log_event(
            AuditEventType.SOURCE_UPDATED,
            AuditSeverity.INFO,
            f"Source {config.source_id} {what}",
            details={
                "source_id": config.source_id,
                "is_active": config.is_active,
                "suspended": config.suspended,
                "reliability": config.reliability,
            },
            actor=actor,
        )

    # ---- Scheduling ------------------------------------------------------

    def attach_scheduler(self, scheduler) -> None:
        """Schedule every registered source on ``scheduler``."""
        self._scheduler = scheduler
        for adapter in self._adapters.values():
            self._schedule(adapter.config)

    def _schedule(self, config: SourceConfig) -> None:
        if self._scheduler is None:
            return
        self._unschedule(config.source_id)
        if not config.is_active or config.suspended:
            return
        self._scheduler.add_job(
            self.run_source,
            trigger=IntervalTrigger(seconds=config.interval_seconds),
            args=[config.source_id],
            id=f"source:{config.source_id}",
            name=f"fetch {config.source_id}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def _unschedule(self, source_id: str) -> None:
        if self._scheduler is None:
            return
        job = self._scheduler.get_job(f"source:{source_id}")
        if job is not None:
            job.remove()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def stats(self) -> Dict[str, Any]:
        sources = self.list_sources()
        return {
            "total": len(sources),
            "active": sum(1 for s in sources if s.is_active and not s.suspended),
            "suspended": [s.source_id for s in sources if s.suspended],
            "total_fetched": sum(s.statistics.total_fetched for s in sources),
            "failed_fetches": sum(s.statistics.failed_fetches for s in sources),
        }

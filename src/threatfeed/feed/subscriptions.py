# Feed Module - Subscription & Watchlist Matching
#
# Every committed record mutation is matched against all active
# subscriptions and watchlists.  Predicates are pure AND-combinations,
# evaluated in a single pass per subscriber.
#
# Delivery rules:
#   - one Delivery row per (event, subscriber); the unique index makes
#     a repeated dispatch of the same event a no-op
#   - real-time subscribers are sent immediately on a thread pool, each
#     send bounded by the delivery timeout; failures are counted and
#     recorded, never raised into the mutation path
#   - other subscribers get a queued row, flushed as a digest on their
#     cadence by ``flush_digests``
#   - closed records (expired / resolved / false_positive) are only
#     delivered on the event that closed them
#   - per-subscriber hourly rate limit, held in a bounded LRU cache;
#     urgent events bypass it

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..core.cache import LRUCache
from ..core.config import FeedSettings, get_settings
from .errors import DeliveryError, NotFoundError, ValidationError
from .events import EventBus, RecordMutated
from .models import (
    AlertSettings,
    Delivery,
    DeliveryFrequency,
    DeliveryPreferences,
    DeliveryStatus,
    SubscriberKind,
    SubscriptionFilter,
    TargetType,
    ThreatRecord,
    ThreatSubscription,
    ThreatWatchlist,
    WatchlistTarget,
    parse_enum,
    utcnow,
)
from .normalize import normalize_value
from .store import ThreatStore

logger = logging.getLogger(__name__)

RATE_WINDOW = timedelta(hours=1)

DIGEST_PERIODS = {
    DeliveryFrequency.HOURLY: timedelta(hours=1),
    DeliveryFrequency.DAILY: timedelta(days=1),
    DeliveryFrequency.WEEKLY: timedelta(weeks=1),
}

# Target types tried when a watched value carries no explicit type
_GUESS_TYPES = (
    TargetType.URL,
    TargetType.DOMAIN,
    TargetType.WALLET,
    TargetType.IP,
    TargetType.EMAIL,
    TargetType.OTHER,
)

Subscriber = Union[ThreatSubscription, ThreatWatchlist]


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def record_match_keys(record: ThreatRecord) -> Set[str]:
    """Values a watched target can match: target, its host, indicators."""
    keys = {record.target.value}
    if record.target.type == TargetType.URL:
        keys.add(record.target.value.split("/", 1)[0])
    keys.update(i.value for i in record.indicators)
    return keys


def watch_keys(value: str, target_type: TargetType = TargetType.OTHER) -> Set[str]:
    if target_type != TargetType.OTHER:
        return {normalize_value(target_type, value)}
    return {normalize_value(t, value) for t in _GUESS_TYPES}


def matches(filters: SubscriptionFilter, record: ThreatRecord) -> bool:
    """AND of every present predicate; tags match if any tag is present."""
    if filters.types and record.type not in filters.types:
        return False
    if filters.categories and record.category not in filters.categories:
        return False
    if filters.severities and record.severity not in filters.severities:
        return False
    if filters.minimum_severity is not None and record.severity < filters.minimum_severity:
        return False
    if filters.minimum_confidence is not None and record.confidence < filters.minimum_confidence:
        return False
    if filters.sources:
        source_ids = {s.id for s in (record.sources or [record.source])}
        if not source_ids.intersection(filters.sources):
            return False
    if filters.targets:
        keys = record_match_keys(record)
        if not any(keys & watch_keys(t) for t in filters.targets):
            return False
    if filters.tags and not set(filters.tags).intersection(record.context.tags):
        return False
    return True


def watchlist_matches(watchlist: ThreatWatchlist, record: ThreatRecord) -> bool:
    """Implicit filter: target in targets AND severity >= minimum."""
    if record.severity < watchlist.alert_settings.minimum_severity:
        return False
    keys = record_match_keys(record)
    return any(keys & watch_keys(t.value, t.type) for t in watchlist.targets)


def subscription_cadence(prefs: DeliveryPreferences) -> DeliveryFrequency:
    """Realtime only when both flags agree; otherwise the digest cadence."""
    if prefs.real_time and prefs.frequency == DeliveryFrequency.REALTIME:
        return DeliveryFrequency.REALTIME
    if prefs.frequency == DeliveryFrequency.REALTIME:
        return DeliveryFrequency.DAILY
    return prefs.frequency


def deliverable(event: RecordMutated) -> bool:
    """Open records always; closed ones only on their closing event."""
    return event.record.is_open or event.is_transition


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class DeliveryChannel(ABC):
    """Transport for a delivery decision. Raise DeliveryError on failure."""

    name: str = ""

    @abstractmethod
    def send(self, delivery: Delivery, payload: Dict[str, Any]) -> None:
        ...


class InAppChannel(DeliveryChannel):
    """Writes deliveries to the in-app inbox table."""

    name = "in_app"

    def __init__(self, store: ThreatStore):
        self.store = store

    def send(self, delivery: Delivery, payload: Dict[str, Any]) -> None:
        self.store.add_inbox_item(
            user_id=delivery.user_id,
            subscriber_id=delivery.subscriber_id,
            record_id=delivery.record_id,
            payload=payload,
            event_id=delivery.event_id,
        )


def alert_payload(event: RecordMutated, subscriber_name: str = "") -> Dict[str, Any]:
    record = event.record
    return {
        "event_id": event.event_id,
        "mutation": event.kind.value,
        "urgent": event.urgent,
        "subscriber": subscriber_name,
        "record": {
            "id": record.id,
            "type": record.type.value,
            "severity": record.severity.value,
            "confidence": record.confidence,
            "status": record.status.value,
            "target": {"type": record.target.type.value, "value": record.target.value},
            "title": record.context.title,
        },
        "previous_status": event.previous_status.value if event.previous_status else None,
        "occurred_at": event.occurred_at.isoformat(),
    }


@dataclass
class DigestReport:
    frequency: DeliveryFrequency
    subscribers: int = 0
    delivered: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "subscribers": self.subscribers,
            "delivered": self.delivered,
            "failed": self.failed,
        }


@dataclass
class _Pending:
    subscriber: Optional[Subscriber]
    delivery: Delivery
    payload: Dict[str, Any] = field(default_factory=dict)
    abandoned: threading.Event = field(default_factory=threading.Event)


class SubscriptionEngine:
    """Matches mutation events to subscribers and records deliveries."""

    def __init__(
        self,
        store: ThreatStore,
        settings: Optional[FeedSettings] = None,
        channels: Optional[Iterable[DeliveryChannel]] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.channels: Dict[str, DeliveryChannel] = {}
        for channel in channels or [InAppChannel(store)]:
            self.register_channel(channel)
        self._rate = LRUCache(self.settings.rate_limit_cache_size)
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.delivery_workers, thread_name_prefix="threatfeed-delivery"
        )
        self._stats_lock = threading.Lock()
        self._last_flush: Dict[DeliveryFrequency, datetime] = {}
        self._counters = {
            "dispatched_events": 0,
            "delivered": 0,
            "failed": 0,
            "queued": 0,
            "rate_limited": 0,
            "late_delivered": 0,
        }

    def register_channel(self, channel: DeliveryChannel) -> None:
        self.channels[channel.name] = channel

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.dispatch)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # ---- Dispatch --------------------------------------------------------

    def dispatch(self, event: RecordMutated) -> List[Delivery]:
        """Match ``event`` against every active subscriber.

        Returns:
            Delivery rows written for this event (empty if none matched
            or the event was already dispatched).
        """
        if not deliverable(event):
            return []
        record = event.record
        claimed: List[_Pending] = []

        for sub in self.store.list_subscriptions(active_only=True):
            if not matches(sub.filters, record):
                continue
            user_key = sub.user_id or (f"session:{sub.session_id}" if sub.session_id else None)
            item = self._claim(
                event, sub, SubscriberKind.SUBSCRIPTION, user_key,
                sub.delivery.channels, subscription_cadence(sub.delivery),
            )
            if item is not None:
                claimed.append(item)
        for wl in self.store.list_watchlists(active_only=True):
            if not watchlist_matches(wl, record):
                continue
            cadence = DeliveryFrequency.REALTIME if wl.alert_settings.real_time else DeliveryFrequency.DAILY
            item = self._claim(
                event, wl, SubscriberKind.WATCHLIST, wl.user_id,
                wl.alert_settings.notification_channels, cadence,
            )
            if item is not None:
                claimed.append(item)

        with self._stats_lock:
            self._counters["dispatched_events"] += 1
        sends: List[_Pending] = []
        for item in claimed:
            if item.delivery.frequency != DeliveryFrequency.REALTIME:
                with self._stats_lock:
                    self._counters["queued"] += 1
                continue
            if not event.urgent and not self._within_rate(item.delivery):
                item.delivery.status = DeliveryStatus.FAILED
                item.delivery.error = "rate_limited"
                self.store.update_delivery(item.delivery)
                with self._stats_lock:
                    self._counters["rate_limited"] += 1
                continue
            sends.append(item)

        self._send_all(sends)
        return [p.delivery for p in claimed]

    def _claim(
        self,
        event: RecordMutated,
        subscriber: Subscriber,
        kind: SubscriberKind,
        user_id: Optional[str],
        channels: List[str],
        frequency: DeliveryFrequency,
    ) -> Optional[_Pending]:
        """Write the (event, subscriber) row; None if it already exists."""
        delivery = Delivery(
            event_id=event.event_id,
            record_id=event.record.id,
            subscriber_kind=kind,
            subscriber_id=subscriber.id,
            mutation_kind=event.kind,
            status=DeliveryStatus.QUEUED,
            channels=self._resolve_channels(channels),
            user_id=user_id,
            frequency=frequency,
        )
        if not self.store.insert_delivery(delivery):
            return None
        name = getattr(subscriber, "name", "") or subscriber.id
        return _Pending(subscriber=subscriber, delivery=delivery, payload=alert_payload(event, name))

    def _resolve_channels(self, requested: Iterable[str]) -> List[str]:
        names = [c for c in requested if c in self.channels]
        if not names:
            names = ["in_app"] if "in_app" in self.channels else list(self.channels)[:1]
        return names

    def _within_rate(self, delivery: Delivery) -> bool:
        key = f"{delivery.subscriber_kind.value}:{delivery.subscriber_id}"
        now = utcnow()
        limit = self.settings.rate_limit_per_hour
        allowed = {"ok": True}

        def bump(current: Optional[Tuple[datetime, int]]) -> Tuple[datetime, int]:
            if current is None or now - current[0] >= RATE_WINDOW:
                return (now, 1)
            if current[1] >= limit:
                allowed["ok"] = False
                return current
            return (current[0], current[1] + 1)

        self._rate.update(key, bump)
        return allowed["ok"]

    def _send(self, item: _Pending) -> List[str]:
        """Push one delivery through its channels; returns the channels reached."""
        errors = []
        sent: List[str] = []
        for name in item.delivery.channels:
            if item.abandoned.is_set():
                errors.append(f"{name}: skipped after timeout")
                continue
            try:
                self.channels[name].send(item.delivery, item.payload)
                sent.append(name)
            except DeliveryError as exc:
                errors.append(f"{name}: {exc.message}")
            except Exception as exc:
                logger.exception("Channel %s crashed delivering %s", name, item.delivery.id)
                errors.append(f"{name}: {exc}")
        if errors:
            raise DeliveryError("; ".join(errors), {"sent": sent})
        return sent

    def _send_all(self, items: List[_Pending]) -> None:
        if not items:
            return
        futures = {self._executor.submit(self._send, item): item for item in items}
        _, not_done = wait(futures, timeout=self.settings.delivery_timeout_seconds)
        for future, item in futures.items():
            if future in not_done:
                # Channels not yet reached are skipped from here on
                item.abandoned.set()
                self._finish(item, "timeout")
                if not future.cancel():
                    future.add_done_callback(lambda f, item=item: self._finish_late(item, f))
                continue
            exc = future.exception()
            if exc is None:
                self._finish(item, None)
            elif isinstance(exc, DeliveryError):
                self._finish(item, exc.message)
            else:
                self._finish(item, str(exc))

    def _finish_late(self, item: _Pending, future: Future) -> None:
        """Reconcile the row of a timed-out send once it actually returns."""
        delivery = item.delivery
        exc = future.exception()
        if exc is not None:
            # Still failed; keep what the channels reported
            delivery.error = f"timeout; {exc.message if isinstance(exc, DeliveryError) else exc}"
            self.store.update_delivery(delivery)
            return
        sent = future.result()
        delivery.status = DeliveryStatus.DELIVERED
        delivery.error = None
        self.store.update_delivery(delivery)
        self._bump_subscriber_stats(delivery.subscriber_kind, delivery.subscriber_id, ok=1, failed=0)
        with self._stats_lock:
            self._counters["late_delivered"] += 1
        logger.warning(
            "Delivery %s completed after timeout via %s", delivery.id, ", ".join(sent)
        )

    def _finish(self, item: _Pending, error: Optional[str]) -> None:
        delivery = item.delivery
        delivery.status = DeliveryStatus.FAILED if error else DeliveryStatus.DELIVERED
        delivery.error = error
        self.store.update_delivery(delivery)
        self._bump_subscriber_stats(
            delivery.subscriber_kind,
            delivery.subscriber_id,
            ok=0 if error else 1,
            failed=1 if error else 0,
        )
        with self._stats_lock:
            self._counters["failed" if error else "delivered"] += 1
        if error:
            logger.warning(
                "Delivery %s to %s %s failed: %s",
                delivery.id,
                delivery.subscriber_kind.value,
                delivery.subscriber_id,
                error,
            )

    def _bump_subscriber_stats(self, kind: SubscriberKind, subscriber_id: str, ok: int, failed: int) -> None:
        def bump(subscriber) -> None:
            stats = subscriber.statistics
            stats.threats_received += ok
            stats.failed_deliveries += failed
            if ok:
                stats.last_delivery = utcnow()

        if kind == SubscriberKind.SUBSCRIPTION:
            self.store.modify_subscription(subscriber_id, bump)
        else:
            self.store.modify_watchlist(subscriber_id, bump)

    # ---- Digests ---------------------------------------------------------

    def flush_digests(self, frequency: DeliveryFrequency, now: Optional[datetime] = None) -> DigestReport:
        """Send queued deliveries of ``frequency`` as one digest per subscriber."""
        if frequency == DeliveryFrequency.REALTIME:
            raise ValidationError("Realtime deliveries are not digested")
        now = now or utcnow()
        report = DigestReport(frequency=frequency)
        groups: Dict[Tuple[SubscriberKind, str], List[Delivery]] = {}
        for delivery in self.store.queued_deliveries(frequency, before=now):
            groups.setdefault((delivery.subscriber_kind, delivery.subscriber_id), []).append(delivery)

        for (kind, subscriber_id), rows in groups.items():
            report.subscribers += 1
            first = rows[0]
            digest = Delivery(
                event_id=f"digest:{frequency.value}:{now.isoformat()}",
                record_id=first.record_id,
                subscriber_kind=kind,
                subscriber_id=subscriber_id,
                mutation_kind=first.mutation_kind,
                status=DeliveryStatus.QUEUED,
                channels=first.channels,
                user_id=first.user_id,
                frequency=frequency,
            )
            payload = {
                "digest": frequency.value,
                "generated_at": now.isoformat(),
                "items": [{"record_id": r.record_id, "mutation": r.mutation_kind.value, "event_id": r.event_id} for r in rows],
            }
            error = None
            try:
                self._send(_Pending(subscriber=None, delivery=digest, payload=payload))
            except DeliveryError as exc:
                error = exc.message
            for row in rows:
                row.status = DeliveryStatus.FAILED if error else DeliveryStatus.DELIVERED
                row.error = error
                self.store.update_delivery(row)
            if error:
                report.failed += len(rows)
                self._bump_subscriber_stats(kind, subscriber_id, 0, len(rows))
            else:
                report.delivered += len(rows)
                self._bump_subscriber_stats(kind, subscriber_id, len(rows), 0)
        self._last_flush[frequency] = now
        if report.subscribers:
            logger.info(
                "Flushed %s digests: %d subscriber(s), %d item(s)",
                frequency.value,
                report.subscribers,
                report.delivered + report.failed,
            )
        return report

    def flush_due_digests(self, now: Optional[datetime] = None) -> List[DigestReport]:
        """Flush every digest cadence whose period has elapsed."""
        now = now or utcnow()
        reports = []
        for frequency, period in DIGEST_PERIODS.items():
            last = self._last_flush.get(frequency)
            if last is None or now - last >= period:
                reports.append(self.flush_digests(frequency, now))
        return reports

    # ---- Subscriptions ---------------------------------------------------

    def create_subscription(
        self,
        data: Dict[str, Any],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ThreatSubscription:
        if not user_id and not session_id:
            raise ValidationError("A subscription needs a user_id or session_id")
        if user_id and self.store.count_active_subscriptions(user_id) >= self.settings.max_subscriptions_per_user:
            raise ValidationError(
                f"Maximum of {self.settings.max_subscriptions_per_user} active subscriptions reached",
                {"user_id": user_id},
            )
        sub = ThreatSubscription(
            user_id=user_id,
            session_id=session_id,
            filters=SubscriptionFilter.from_dict(data.get("filters")),
            delivery=DeliveryPreferences.from_dict(data.get("delivery")),
        )
        self.store.save_subscription(sub)
        logger.info("Subscription %s created (user=%s)", sub.id, user_id or "-")
        return sub

    def get_subscription(self, subscription_id: str, user_id: Optional[str] = None) -> ThreatSubscription:
        sub = self.store.get_subscription(subscription_id)
        if sub is None or (user_id is not None and sub.user_id not in (None, user_id)):
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return sub

    def update_subscription(
        self, subscription_id: str, data: Dict[str, Any], user_id: Optional[str] = None
    ) -> ThreatSubscription:
        self.get_subscription(subscription_id, user_id)
        filters = SubscriptionFilter.from_dict(data["filters"]) if "filters" in data else None
        delivery = DeliveryPreferences.from_dict(data["delivery"]) if "delivery" in data else None

        def edit(sub: ThreatSubscription) -> None:
            if filters is not None:
                sub.filters = filters
            if delivery is not None:
                sub.delivery = delivery
            if "is_active" in data:
                if data["is_active"] and not sub.is_active and sub.user_id:
                    if self.store.count_active_subscriptions(sub.user_id) >= self.settings.max_subscriptions_per_user:
                        raise ValidationError("Maximum active subscriptions reached")
                sub.is_active = bool(data["is_active"])
            sub.updated_at = utcnow()

        return self._modified_subscription(subscription_id, edit)

    def deactivate_subscription(self, subscription_id: str, user_id: Optional[str] = None) -> ThreatSubscription:
        sub = self.update_subscription(subscription_id, {"is_active": False}, user_id)
        logger.info("Subscription %s deactivated", sub.id)
        return sub

    def _modified_subscription(self, subscription_id: str, fn) -> ThreatSubscription:
        sub = self.store.modify_subscription(subscription_id, fn)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return sub

    def list_subscriptions(self, user_id: str, active_only: bool = False) -> List[ThreatSubscription]:
        return self.store.list_subscriptions(user_id=user_id, active_only=active_only)

    # ---- Watchlists ------------------------------------------------------

    @staticmethod
    def _parse_targets(raw_targets: Any) -> List[WatchlistTarget]:
        if not isinstance(raw_targets, list) or not raw_targets:
            raise ValidationError("targets must be a non-empty list")
        targets = []
        for item in raw_targets:
            if isinstance(item, str):
                item = {"value": item}
            if not isinstance(item, dict):
                raise ValidationError("Each target must be a string or an object")
            value = str(item.get("value") or "").strip()
            if not value:
                raise ValidationError("Watchlist target value must not be empty")
            target_type = parse_enum(TargetType, item.get("type", "other"), "targets.type")
            if target_type != TargetType.OTHER:
                value = normalize_value(target_type, value)
            targets.append(WatchlistTarget(value=value, type=target_type, network=item.get("network")))
        return targets

    def create_watchlist(self, user_id: str, data: Dict[str, Any]) -> ThreatWatchlist:
        if not user_id:
            raise ValidationError("user_id is required")
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required")
        watchlist = ThreatWatchlist(
            user_id=user_id,
            name=name,
            description=str(data.get("description") or ""),
            targets=self._parse_targets(data.get("targets")),
            alert_settings=AlertSettings.from_dict(data.get("alert_settings")),
        )
        self.store.save_watchlist(watchlist)
        logger.info("Watchlist %s created for %s (%d targets)", watchlist.id, user_id, len(watchlist.targets))
        return watchlist

    def get_watchlist(self, watchlist_id: str, user_id: Optional[str] = None) -> ThreatWatchlist:
        watchlist = self.store.get_watchlist(watchlist_id)
        if watchlist is None or (user_id is not None and watchlist.user_id != user_id):
            raise NotFoundError(f"Watchlist {watchlist_id} not found")
        return watchlist

    def update_watchlist(
        self, watchlist_id: str, data: Dict[str, Any], user_id: Optional[str] = None
    ) -> ThreatWatchlist:
        self.get_watchlist(watchlist_id, user_id)
        name = None
        if "name" in data:
            name = str(data["name"] or "").strip()
            if not name:
                raise ValidationError("name must not be empty")
        targets = self._parse_targets(data["targets"]) if "targets" in data else None
        alert_settings = (
            AlertSettings.from_dict(data["alert_settings"]) if "alert_settings" in data else None
        )

        def edit(watchlist: ThreatWatchlist) -> None:
            if name is not None:
                watchlist.name = name
            if "description" in data:
                watchlist.description = str(data["description"] or "")
            if targets is not None:
                watchlist.targets = targets
            if alert_settings is not None:
                watchlist.alert_settings = alert_settings
            if "is_active" in data:
                watchlist.is_active = bool(data["is_active"])
            watchlist.updated_at = utcnow()

        watchlist = self.store.modify_watchlist(watchlist_id, edit)
        if watchlist is None:
            raise NotFoundError(f"Watchlist {watchlist_id} not found")
        return watchlist

    def deactivate_watchlist(self, watchlist_id: str, user_id: Optional[str] = None) -> ThreatWatchlist:
        return self.update_watchlist(watchlist_id, {"is_active": False}, user_id)

    def list_watchlists(self, user_id: str, active_only: bool = False) -> List[ThreatWatchlist]:
        return self.store.list_watchlists(user_id=user_id, active_only=active_only)

    # ---- Inbox & stats ---------------------------------------------------

    def inbox(self, user_id: str, limit: int = 50, unread_only: bool = False) -> List[Dict[str, Any]]:
        return self.store.inbox(user_id, limit=limit, unread_only=unread_only)

    def mark_read(self, user_id: str, item_ids: Iterable[str]) -> int:
        return self.store.mark_inbox_read(user_id, item_ids)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            counters = dict(self._counters)
        return {
            **counters,
            "channels": sorted(self.channels),
            "rate_limit_per_hour": self.settings.rate_limit_per_hour,
            "rate_cache": self._rate.stats(),
            "last_digest_flush": {f.value: t.isoformat() for f, t in self._last_flush.items()},
        }

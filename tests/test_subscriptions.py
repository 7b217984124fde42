"""Tests for subscriptions, watchlists, deliveries and the inbox."""

import threading
import time
from datetime import timedelta

import pytest

from threatfeed.core import FeedSettings
from threatfeed.feed.errors import DeliveryError, NotFoundError, ValidationError
from threatfeed.feed.events import RecordMutated
from threatfeed.feed.models import (
    DeliveryFrequency,
    DeliveryStatus,
    MutationKind,
    SubscriberKind,
    utcnow,
)
from threatfeed.feed.service import ThreatFeedService
from threatfeed.feed.subscriptions import DeliveryChannel, InAppChannel, watch_keys

from conftest import observation


class FailingChannel(DeliveryChannel):
    name = "webhook"

    def send(self, delivery, payload):
        raise DeliveryError("endpoint returned 500")


class StallingInbox(InAppChannel):
    """In-app channel that holds every send until released."""

    def __init__(self, store):
        super().__init__(store)
        self.release = threading.Event()

    def send(self, delivery, payload):
        self.release.wait(5)
        super().send(delivery, payload)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def _domain(value, severity="high", **overrides):
    return observation(
        severity=severity, target={"type": "domain", "value": value}, **overrides
    )


class TestSubscriptions:
    def test_matching_subscription_gets_realtime_delivery(self, service):
        sub = service.subscriptions.create_subscription(
            {"filters": {"types": ["phishing"], "minimum_severity": "medium"}}, user_id="alice"
        )
        record = service.ingest(_domain("evil.example")).record

        rows = service.store.list_deliveries(subscriber_id=sub.id)
        assert len(rows) == 1
        assert rows[0].record_id == record.id
        assert rows[0].status == DeliveryStatus.DELIVERED
        assert rows[0].mutation_kind == MutationKind.CREATED

        inbox = service.subscriptions.inbox("alice")
        assert len(inbox) == 1
        assert inbox[0]["payload"]["mutation"] == "created"
        assert service.subscriptions.get_subscription(sub.id).statistics.threats_received == 1

    def test_non_matching_filters_get_nothing(self, service):
        sub = service.subscriptions.create_subscription(
            {"filters": {"types": ["rugpull"]}}, user_id="alice"
        )
        service.ingest(_domain("evil.example"))
        assert service.store.list_deliveries(subscriber_id=sub.id) == []

    def test_below_minimum_severity_is_ignored(self, service):
        sub = service.subscriptions.create_subscription(
            {"filters": {"minimum_severity": "critical"}}, user_id="alice"
        )
        service.ingest(_domain("evil.example", severity="high"))
        assert service.store.list_deliveries(subscriber_id=sub.id) == []

    def test_dispatch_is_idempotent_per_event(self, service):
        service.subscriptions.create_subscription({}, user_id="alice")
        record = service.ingest(_domain("evil.example")).record
        event = service.store.list_deliveries(record_id=record.id)[0].event_id

        replay = RecordMutated(kind=MutationKind.CREATED, record=record, event_id=event)
        assert service.subscriptions.dispatch(replay) == []
        assert len(service.store.list_deliveries(record_id=record.id)) == 1

    def test_session_subscription_inbox_key(self, service):
        service.subscriptions.create_subscription({}, session_id="abc123")
        service.ingest(_domain("evil.example"))
        assert len(service.subscriptions.inbox("session:abc123")) == 1

    def test_subscription_needs_an_owner(self, service):
        with pytest.raises(ValidationError):
            service.subscriptions.create_subscription({})

    def test_per_user_cap(self, service):
        for _ in range(service.settings.max_subscriptions_per_user):
            service.subscriptions.create_subscription({}, user_id="alice")
        with pytest.raises(ValidationError):
            service.subscriptions.create_subscription({}, user_id="alice")
        # other users are unaffected
        service.subscriptions.create_subscription({}, user_id="bob")

    def test_deactivated_subscription_stops_matching(self, service):
        sub = service.subscriptions.create_subscription({}, user_id="alice")
        service.subscriptions.deactivate_subscription(sub.id, "alice")
        service.ingest(_domain("evil.example"))
        assert service.store.list_deliveries(subscriber_id=sub.id) == []

    def test_other_users_cannot_read_subscription(self, service):
        sub = service.subscriptions.create_subscription({}, user_id="alice")
        with pytest.raises(NotFoundError):
            service.subscriptions.get_subscription(sub.id, "mallory")

    def test_invalid_filter_value_rejected(self, service):
        with pytest.raises(ValidationError):
            service.subscriptions.create_subscription(
                {"filters": {"types": ["not-a-type"]}}, user_id="alice"
            )


class TestClosedRecords:
    def test_closed_records_only_on_transition(self, service):
        sub = service.subscriptions.create_subscription({}, user_id="alice")
        record = service.ingest(_domain("evil.example")).record
        service.resolve(record.id)

        kinds = {d.mutation_kind for d in service.store.list_deliveries(subscriber_id=sub.id)}
        assert kinds == {MutationKind.CREATED, MutationKind.RESOLVED}

        # A later vote on the resolved record is not delivered
        service.vote(record.id, "up")
        assert len(service.store.list_deliveries(subscriber_id=sub.id)) == 2


class TestWatchlists:
    def test_watchlist_alerts_on_create_and_resolve(self, service):
        watchlist = service.subscriptions.create_watchlist(
            "alice",
            {
                "name": "My domains",
                "targets": ["evil.com"],
                "alert_settings": {"real_time": True, "minimum_severity": "medium"},
            },
        )
        record = service.ingest(_domain("evil.com", severity="high")).record

        rows = service.store.list_deliveries(subscriber_id=watchlist.id)
        assert len(rows) == 1
        assert rows[0].subscriber_kind == SubscriberKind.WATCHLIST
        assert rows[0].mutation_kind == MutationKind.CREATED

        service.resolve(record.id)
        rows = service.store.list_deliveries(subscriber_id=watchlist.id)
        assert len(rows) == 2
        assert {r.mutation_kind for r in rows} == {MutationKind.CREATED, MutationKind.RESOLVED}

    def test_watchlist_ignores_low_severity(self, service):
        watchlist = service.subscriptions.create_watchlist(
            "alice",
            {"name": "w", "targets": ["evil.com"], "alert_settings": {"minimum_severity": "high"}},
        )
        service.ingest(_domain("evil.com", severity="low"))
        assert service.store.list_deliveries(subscriber_id=watchlist.id) == []

    def test_url_record_matches_watched_host(self, service):
        watchlist = service.subscriptions.create_watchlist(
            "alice", {"name": "w", "targets": ["Evil.COM"]}
        )
        service.ingest(observation(target={"type": "url", "value": "https://evil.com/login"}))
        assert len(service.store.list_deliveries(subscriber_id=watchlist.id)) == 1

    def test_typed_wallet_target(self, service):
        wallet = "0x" + "AB" * 20
        watchlist = service.subscriptions.create_watchlist(
            "alice", {"name": "w", "targets": [{"type": "wallet", "value": wallet}]}
        )
        service.ingest(
            observation(type="drainer", target={"type": "wallet", "value": wallet.lower()})
        )
        assert len(service.store.list_deliveries(subscriber_id=watchlist.id)) == 1

    def test_watch_keys_guess_every_type(self):
        keys = watch_keys("EVIL.com")
        assert "evil.com" in keys

    def test_empty_targets_rejected(self, service):
        with pytest.raises(ValidationError):
            service.subscriptions.create_watchlist("alice", {"name": "w", "targets": []})

    def test_watchlist_requires_user(self, service):
        with pytest.raises(ValidationError):
            service.subscriptions.create_watchlist("", {"name": "w", "targets": ["x"]})


class TestDigests:
    def test_daily_subscription_waits_for_flush(self, service):
        sub = service.subscriptions.create_subscription(
            {"delivery": {"real_time": False, "frequency": "daily"}}, user_id="alice"
        )
        service.ingest(_domain("one.example"))
        service.ingest(_domain("two.example"))

        rows = service.store.list_deliveries(subscriber_id=sub.id)
        assert {r.status for r in rows} == {DeliveryStatus.QUEUED}
        assert service.subscriptions.inbox("alice") == []

        report = service.subscriptions.flush_digests(
            DeliveryFrequency.DAILY, now=utcnow() + timedelta(minutes=1)
        )
        assert report.subscribers == 1
        assert report.delivered == 2

        rows = service.store.list_deliveries(subscriber_id=sub.id)
        assert {r.status for r in rows} == {DeliveryStatus.DELIVERED}
        inbox = service.subscriptions.inbox("alice")
        assert len(inbox) == 1
        assert len(inbox[0]["payload"]["items"]) == 2

    def test_realtime_frequency_cannot_be_flushed(self, service):
        with pytest.raises(ValidationError):
            service.subscriptions.flush_digests(DeliveryFrequency.REALTIME)

    def test_due_digests_respect_period(self, service):
        now = utcnow()
        first = service.subscriptions.flush_due_digests(now)
        assert len(first) == 3
        assert service.subscriptions.flush_due_digests(now + timedelta(minutes=5)) == []
        later = service.subscriptions.flush_due_digests(now + timedelta(hours=2))
        assert [r.frequency for r in later] == [DeliveryFrequency.HOURLY]


class TestDeliveryFailures:
    def test_rate_limit_marks_failed(self):
        settings = FeedSettings(correlation_inline=True, rate_limit_per_hour=1)
        service = ThreatFeedService(settings)
        try:
            sub = service.subscriptions.create_subscription({}, user_id="alice")
            service.ingest(_domain("one.example"))
            service.ingest(_domain("two.example"))

            rows = service.store.list_deliveries(subscriber_id=sub.id)
            statuses = sorted(r.status.value for r in rows)
            assert statuses == ["delivered", "failed"]
            assert [r.error for r in rows if r.status == DeliveryStatus.FAILED] == ["rate_limited"]
            assert service.subscriptions.stats()["rate_limited"] == 1
        finally:
            service.shutdown()

    def test_urgent_events_bypass_rate_limit(self):
        settings = FeedSettings(correlation_inline=True, rate_limit_per_hour=1)
        service = ThreatFeedService(settings)
        try:
            service.subscriptions.create_subscription({}, user_id="alice")
            service.ingest(_domain("one.example"))
            result = service.emergency_alert("Exchange hacked", "Withdraw funds", "critical")
            assert result["deliveries"] == 1
            assert len(service.subscriptions.inbox("alice")) == 2
        finally:
            service.shutdown()

    def test_failing_channel_records_error(self, settings):
        service = ThreatFeedService(settings, channels=[FailingChannel()])
        try:
            sub = service.subscriptions.create_subscription(
                {"delivery": {"in_app": False, "webhook_enabled": True}}, user_id="alice"
            )
            service.ingest(_domain("evil.example"))

            (row,) = service.store.list_deliveries(subscriber_id=sub.id)
            assert row.status == DeliveryStatus.FAILED
            assert "endpoint returned 500" in row.error
            stats = service.subscriptions.get_subscription(sub.id).statistics
            assert stats.failed_deliveries == 1
            assert stats.threats_received == 0
        finally:
            service.shutdown()

    def test_partial_channel_failure_fails_delivery(self, service):
        service.subscriptions.register_channel(FailingChannel())
        sub = service.subscriptions.create_subscription(
            {"delivery": {"in_app": True, "webhook_enabled": True}}, user_id="alice"
        )
        service.ingest(_domain("evil.example"))
        (row,) = service.store.list_deliveries(subscriber_id=sub.id)
        assert row.status == DeliveryStatus.FAILED
        # in-app copy still landed
        assert len(service.subscriptions.inbox("alice")) == 1

    def test_send_finishing_after_timeout_is_reconciled(self):
        settings = FeedSettings(correlation_inline=True, delivery_timeout_seconds=0.1)
        service = ThreatFeedService(settings)
        stalling = StallingInbox(service.store)
        service.subscriptions.register_channel(stalling)
        try:
            sub = service.subscriptions.create_subscription({}, user_id="alice")
            service.ingest(_domain("evil.example"))

            (row,) = service.store.list_deliveries(subscriber_id=sub.id)
            assert row.status == DeliveryStatus.FAILED
            assert row.error == "timeout"
            assert service.subscriptions.inbox("alice") == []

            stalling.release.set()
            assert _wait_for(lambda: service.subscriptions.stats()["late_delivered"] == 1)
            (row,) = service.store.list_deliveries(subscriber_id=sub.id)
            assert row.status == DeliveryStatus.DELIVERED
            assert row.error is None
            assert len(service.subscriptions.inbox("alice")) == 1
            stats = service.subscriptions.get_subscription(sub.id).statistics
            assert stats.threats_received == 1
            assert stats.failed_deliveries == 1
        finally:
            stalling.release.set()
            service.shutdown()


class TestInbox:
    def test_mark_read(self, service):
        service.subscriptions.create_subscription({}, user_id="alice")
        service.ingest(_domain("one.example"))
        service.ingest(_domain("two.example"))

        items = service.subscriptions.inbox("alice")
        assert len(items) == 2
        assert service.subscriptions.mark_read("alice", [items[0]["id"]]) == 1
        unread = service.subscriptions.inbox("alice", unread_only=True)
        assert [i["id"] for i in unread] == [items[1]["id"]]

    def test_cannot_mark_someone_elses_items(self, service):
        service.subscriptions.create_subscription({}, user_id="alice")
        service.ingest(_domain("one.example"))
        item = service.subscriptions.inbox("alice")[0]
        assert service.subscriptions.mark_read("bob", [item["id"]]) == 0

    def test_in_app_channel_name(self, service):
        assert isinstance(service.subscriptions.channels["in_app"], InAppChannel)

"""Tests for source adapters and the adapter registry."""

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import pytest

from threatfeed.feed.adapters import (
    DEFAULT_SOURCES,
    MAX_RETRIES,
    FetchBatch,
    HttpJsonAdapter,
    SourceAdapter,
    StaticAdapter,
    map_item,
    map_severity,
)
from threatfeed.feed.errors import AdapterError, NotFoundError, ValidationError
from threatfeed.feed.models import Severity, SourceConfig, utcnow

from conftest import observation


def _config(source_id="detector", **overrides):
    values = dict(
        source_id=source_id,
        name="Internal detector",
        reliability=70,
        timeout_seconds=2.0,
        backoff_seconds=60.0,
    )
    values.update(overrides)
    return SourceConfig(**values)


def _without_source(**overrides):
    obs = observation(**overrides)
    obs.pop("source")
    return obs


class BrokenAdapter(SourceAdapter):
    def __init__(self, config):
        super().__init__(config)
        self.calls = 0

    def fetch(self, cursor=None):
        self.calls += 1
        raise AdapterError(self.source_id, "connection refused")


class SlowAdapter(SourceAdapter):
    def fetch(self, cursor=None):
        time.sleep(0.5)
        return StaticAdapter(self.config).fetch(cursor)


class HangingAdapter(SourceAdapter):
    """Blocks in fetch until released."""

    def __init__(self, config):
        super().__init__(config)
        self.release = threading.Event()
        self.calls = 0

    def fetch(self, cursor=None):
        self.calls += 1
        self.release.wait(5)
        return FetchBatch(next_cursor=cursor)


def _http_adapter(handler, **overrides):
    config = _config(
        "phishing_tracker",
        url="https://feed.example/threats",
        mapping={
            "type": "category",
            "severity": "risk_level",
            "target": "url",
            "tags": "tags",
            "hash": "sha256",
        },
        defaults={"type": "phishing", "target_type": "url", "category": "identity_theft"},
        **overrides,
    )
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpJsonAdapter(config, client=client, sleep=lambda s: None)


class TestStaticAdapter:
    def test_run_ingests_and_advances_cursor(self, service):
        adapter = StaticAdapter(
            _config(),
            [
                _without_source(target={"type": "domain", "value": "one.example"}),
                _without_source(target={"type": "domain", "value": "two.example"}),
            ],
        )
        service.adapters.register(adapter)

        report = service.adapters.run_source("detector")
        assert report.ok
        assert (report.fetched, report.created, report.merged) == (2, 2, 0)
        assert service.adapters.get_source("detector").cursor == "2"

        # Nothing new: the cursor stops a re-read
        again = service.adapters.run_source("detector")
        assert again.fetched == 0

        adapter.push(_without_source(target={"type": "domain", "value": "one.example"}))
        third = service.adapters.run_source("detector")
        assert (third.fetched, third.merged) == (1, 1)

    def test_records_carry_adapter_source(self, service):
        service.adapters.register(StaticAdapter(_config(reliability=85), [_without_source()]))
        service.adapters.run_source("detector")
        records, _ = service.list_records()
        assert records[0].source.id == "detector"
        assert records[0].source.reliability == 85

    def test_invalid_items_are_counted_as_rejected(self, service):
        service.adapters.register(
            StaticAdapter(_config(), [_without_source(), _without_source(type="nope")])
        )
        report = service.adapters.run_source("detector")
        assert report.created == 1
        assert report.rejected == 1

    def test_run_due_visits_every_source(self, service):
        service.adapters.register(StaticAdapter(_config("first"), [_without_source()]))
        service.adapters.register(StaticAdapter(_config("second")))
        reports = service.adapters.run_due()
        assert sorted(r.source_id for r in reports) == ["first", "second"]
        assert sum(r.created for r in reports) == 1

    def test_unknown_source(self, service):
        with pytest.raises(NotFoundError):
            service.adapters.run_source("missing")


class TestFailureHandling:
    def test_backoff_doubles_and_suspends(self, service):
        adapter = BrokenAdapter(_config())
        service.adapters.register(adapter)
        now = utcnow()

        first = service.adapters.run_source("detector", now=now)
        assert first.error == "connection refused"
        config = service.adapters.get_source("detector")
        assert config.statistics.next_attempt_at == now + timedelta(seconds=60)

        skipped = service.adapters.run_source("detector", now=now + timedelta(seconds=30))
        assert skipped.skipped == "backoff"
        assert adapter.calls == 1

        second_at = now + timedelta(seconds=61)
        service.adapters.run_source("detector", now=second_at)
        config = service.adapters.get_source("detector")
        assert config.statistics.next_attempt_at == second_at + timedelta(seconds=120)

        third = service.adapters.run_source("detector", now=second_at + timedelta(seconds=121))
        assert third.suspended is True
        assert service.adapters.get_source("detector").suspended is True

        later = service.adapters.run_source("detector", now=second_at + timedelta(days=1))
        assert later.skipped == "suspended"
        assert adapter.calls == 3

    def test_reactivate_clears_suspension(self, service):
        service.adapters.register(BrokenAdapter(_config()))
        now = utcnow()
        for i in range(3):
            service.adapters.run_source("detector", now=now + timedelta(days=i))
        config = service.adapters.reactivate("detector")
        assert config.suspended is False
        assert config.statistics.consecutive_failures == 0
        assert config.statistics.next_attempt_at is None

    def test_timeout_counts_as_failure(self, service):
        service.adapters.register(SlowAdapter(_config(timeout_seconds=0.05)))
        report = service.adapters.run_source("detector")
        assert report.timed_out is True
        assert report.error == "fetch timed out"
        assert service.adapters.get_source("detector").statistics.consecutive_failures == 1

    def test_hung_fetch_holds_off_the_next_run(self, service):
        adapter = HangingAdapter(_config(timeout_seconds=0.05))
        service.adapters.register(adapter)
        try:
            first = service.adapters.run_source("detector")
            assert first.timed_out is True

            second = service.adapters.run_source("detector", now=utcnow() + timedelta(days=1))
            assert second.error == "previous fetch still running"
            assert adapter.calls == 1
            stats = service.adapters.get_source("detector").statistics
            assert stats.consecutive_failures == 2
        finally:
            adapter.release.set()

    def test_fetch_external_raises(self, service):
        service.adapters.register(BrokenAdapter(_config()))
        with pytest.raises(AdapterError):
            service.fetch_external("detector")

    def test_fetch_external_ignores_backoff(self, service):
        adapter = StaticAdapter(_config(), [_without_source()])
        service.adapters.register(adapter)
        service.adapters.update_source("detector", {"is_active": False})
        report = service.fetch_external("detector")
        assert report.created == 1


class TestUpdateSource:
    def test_update_reliability(self, service):
        service.adapters.register(StaticAdapter(_config()))
        config = service.adapters.update_source("detector", {"reliability": 95})
        assert config.reliability == 95
        assert service.adapters.get_source("detector").reliability == 95

    @pytest.mark.parametrize(
        "changes",
        [
            {"reliability": 120},
            {"interval_seconds": 0},
            {"mapping": "not-a-dict"},
            {"cursor": "5"},
        ],
    )
    def test_rejects_bad_updates(self, service, changes):
        service.adapters.register(StaticAdapter(_config()))
        with pytest.raises(ValidationError):
            service.adapters.update_source("detector", changes)

    def test_enable_lifts_suspension(self, service):
        service.adapters.register(BrokenAdapter(_config()))
        now = utcnow()
        for i in range(3):
            service.adapters.run_source("detector", now=now + timedelta(days=i))
        config = service.adapters.update_source("detector", {"is_active": True})
        assert config.suspended is False

    def test_persisted_config_wins_on_register(self, service):
        service.adapters.register(StaticAdapter(_config()))
        service.adapters.update_source("detector", {"reliability": 20})
        config = service.adapters.register(StaticAdapter(_config(reliability=99)))
        assert config.reliability == 20


class TestDefaults:
    def test_initialize_defaults_registers_builtin_sources(self, service):
        added = service.adapters.initialize_defaults()
        assert sorted(added) == sorted(s["source_id"] for s in DEFAULT_SOURCES)
        assert len(added) == 4
        assert service.adapters.initialize_defaults() == []


class TestMapping:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (95, Severity.CRITICAL),
            (75, Severity.HIGH),
            (45, Severity.MEDIUM),
            (25, Severity.LOW),
            (5, Severity.INFO),
            ("moderate", Severity.MEDIUM),
            ("HIGH", Severity.HIGH),
            ("80", Severity.HIGH),
            ("unheard-of", Severity.MEDIUM),
            (None, Severity.MEDIUM),
        ],
    )
    def test_map_severity(self, raw, expected):
        assert map_severity(raw) == expected

    def test_map_item_uses_mapping_and_defaults(self):
        config = _config(
            mapping={"target": "address", "severity": "risk", "type": "kind"},
            defaults={"type": "scam", "target_type": "wallet", "category": "financial"},
        )
        obs = map_item({"address": "0xABC", "risk": "severe", "kind": "unknown"}, config)
        assert obs["type"] == "scam"
        assert obs["severity"] == "critical"
        assert obs["target"] == {"type": "wallet", "value": "0xABC", "network": None}
        assert obs["source"]["id"] == "detector"

    def test_item_without_target_is_dropped(self):
        config = _config(mapping={"target": "address"})
        assert map_item({"risk": 90}, config) is None


class TestHttpJsonAdapter:
    def test_fetch_maps_results_and_cursor(self):
        def handler(request):
            assert request.headers["Accept"] == "application/json"
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"url": "https://phish.example/login", "risk_level": 95, "tags": "wallet,kyc"},
                        {"risk_level": 10},
                    ],
                    "next_cursor": "c2",
                },
            )

        batch = _http_adapter(handler).fetch()
        assert batch.next_cursor == "c2"
        assert len(batch.observations) == 1
        obs = batch.observations[0]
        assert obs["severity"] == "critical"
        assert obs["type"] == "phishing"
        assert obs["context"]["tags"] == ["wallet", "kyc"]

    def test_cursor_is_sent_as_since(self):
        seen = {}

        def handler(request):
            seen["since"] = request.url.params.get("since")
            return httpx.Response(200, json=[])

        batch = _http_adapter(handler).fetch("c1")
        assert seen["since"] == "c1"
        assert batch.next_cursor == "c1"

    def test_retries_server_errors(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] < MAX_RETRIES:
                return httpx.Response(503)
            return httpx.Response(200, json={"data": [{"url": "x.example/a"}]})

        batch = _http_adapter(handler).fetch()
        assert calls["n"] == MAX_RETRIES
        assert len(batch.observations) == 1

    def test_gives_up_after_max_retries(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(429)

        with pytest.raises(AdapterError):
            _http_adapter(handler).fetch()
        assert calls["n"] == MAX_RETRIES

    def test_client_error_is_not_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(403)

        with pytest.raises(AdapterError):
            _http_adapter(handler).fetch()
        assert calls["n"] == 1

    def test_invalid_json(self):
        adapter = _http_adapter(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(AdapterError):
            adapter.fetch()

    def test_registry_run_with_http_source(self, service):
        def handler(request):
            return httpx.Response(
                200, json={"items": [{"url": "https://drain.example/claim", "risk_level": 80}]}
            )

        service.adapters.register(_http_adapter(handler))
        report = service.adapters.run_source("phishing_tracker")
        assert report.created == 1
        records, _ = service.list_records(source="phishing_tracker")
        assert records[0].target.value == "drain.example/claim"


class TestScheduling:
    def test_registered_sources_are_scheduled(self, service):
        scheduler = MagicMock()
        scheduler.get_job.return_value = None
        service.adapters.attach_scheduler(scheduler)

        service.adapters.register(StaticAdapter(_config(interval_seconds=120)))
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "source:detector"
        assert kwargs["args"] == ["detector"]
        assert kwargs["max_instances"] == 1

    def test_suspension_removes_job(self, service):
        scheduler = MagicMock()
        job = MagicMock()
        scheduler.get_job.return_value = job
        service.adapters.attach_scheduler(scheduler)
        service.adapters.register(BrokenAdapter(_config()))

        job.remove.reset_mock()
        now = utcnow()
        for i in range(3):
            service.adapters.run_source("detector", now=now + timedelta(days=i))
        job.remove.assert_called()


class TestCorrelationHandOff:
    def test_adapter_records_are_correlated(self, service):
        wallet = {"type": "wallet", "value": "0x" + "a" * 40}
        adapter = StaticAdapter(
            _config(),
            [
                _without_source(
                    target={"type": "domain", "value": domain},
                    indicators=[wallet],
                    attribution={"actor": "Lazarus"},
                )
                for domain in ("one.example", "two.example")
            ],
        )
        service.adapters.register(adapter)

        report = service.adapters.run_source("detector")
        assert report.created == 2

        records = service.store.query_records(limit=10)
        assert len(records) == 2
        for record in records:
            assert record.pending_analysis is False
            assert len(record.correlated_threats) == 1

    def test_hook_failure_does_not_fail_the_source(self, service):
        service.adapters.on_ingested = MagicMock(side_effect=RuntimeError("queue closed"))
        service.adapters.register(StaticAdapter(_config(), [_without_source()]))

        report = service.adapters.run_source("detector")
        assert report.created == 1
        assert report.error is None
        assert service.adapters.get_source("detector").statistics.consecutive_failures == 0
        service.adapters.on_ingested.assert_called_once()

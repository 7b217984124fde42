"""Tests for statistics rollups and analytics."""

from datetime import datetime, timedelta, timezone

import pytest

from threatfeed.feed.models import RecordStatus, StatsPeriod
from threatfeed.feed.stats import period_bounds

from conftest import observation

NOW = datetime(2026, 3, 11, 14, 37, 12, tzinfo=timezone.utc)  # a Wednesday


def _at(service, when, **overrides):
    result = service.ingestion.ingest(observation(**overrides), now=when)
    service.correlation.correlate(result.record.id)
    return result.record


class TestPeriodBounds:
    @pytest.mark.parametrize(
        "period,start,end",
        [
            (StatsPeriod.HOURLY, datetime(2026, 3, 11, 14), datetime(2026, 3, 11, 15)),
            (StatsPeriod.DAILY, datetime(2026, 3, 11), datetime(2026, 3, 12)),
            (StatsPeriod.WEEKLY, datetime(2026, 3, 9), datetime(2026, 3, 16)),
            (StatsPeriod.MONTHLY, datetime(2026, 3, 1), datetime(2026, 4, 1)),
        ],
    )
    def test_calendar_buckets(self, period, start, end):
        got = period_bounds(period, NOW)
        assert got == (start.replace(tzinfo=timezone.utc), end.replace(tzinfo=timezone.utc))

    def test_december_rolls_into_next_year(self):
        start, end = period_bounds(StatsPeriod.MONTHLY, datetime(2026, 12, 20, tzinfo=timezone.utc))
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)


class TestRollups:
    def test_generate_counts_bucket(self, service):
        _at(service, NOW - timedelta(minutes=10), severity="high",
            target={"type": "domain", "value": "one.example"})
        _at(service, NOW - timedelta(minutes=5), type="drainer", severity="critical",
            target={"type": "domain", "value": "two.example"})
        # previous hour, outside the hourly bucket
        _at(service, NOW - timedelta(hours=2), target={"type": "domain", "value": "old.example"})

        rollup = service.stats.generate(StatsPeriod.HOURLY, now=NOW)
        m = rollup.metrics
        assert m["total_threats"] == 2
        assert m["new_threats"] == 2
        assert m["top_threat_types"] == [{"type": "drainer", "count": 1}, {"type": "phishing", "count": 1}]
        assert m["top_severities"] == [{"type": "critical", "count": 1}, {"type": "high", "count": 1}]
        assert m["top_sources"] == [{"type": "community", "count": 2}]
        assert m["unique_targets"] == 2
        assert m["correlation_rate"] == 0.0

        daily = service.stats.generate(StatsPeriod.DAILY, now=NOW)
        assert daily.metrics["total_threats"] == 3

    def test_status_breakdown(self, service):
        kept = _at(service, NOW - timedelta(minutes=4), target={"type": "domain", "value": "kept.example"})
        gone = _at(service, NOW - timedelta(minutes=3), target={"type": "domain", "value": "gone.example"})
        fp = _at(service, NOW - timedelta(minutes=2), target={"type": "domain", "value": "fp.example"})
        service.aging.transition(gone.id, RecordStatus.RESOLVED, reason="taken down")
        service.aging.transition(fp.id, RecordStatus.FALSE_POSITIVE, reason="benign")

        m = service.stats.generate(StatsPeriod.HOURLY, now=NOW).metrics
        assert m["total_threats"] == 3
        assert m["new_threats"] == 1
        assert m["resolved_threats"] == 1
        assert m["false_positives"] == 1
        assert m["expired_threats"] == 0
        assert service.get_record(kept.id).status == RecordStatus.ACTIVE

    def test_top_lists_are_capped_and_ranked(self, service):
        for i in range(12):
            _at(
                service,
                NOW - timedelta(minutes=1),
                target={"type": "domain", "value": f"t{i}.example"},
                source={"id": f"src-{i % 11}", "name": "s", "reliability": 60},
            )

        top = service.stats.generate(StatsPeriod.HOURLY, now=NOW).metrics["top_sources"]
        assert len(top) == 10
        assert top[0] == {"type": "src-0", "count": 2}

    def test_empty_bucket(self, service):
        rollup = service.stats.generate(StatsPeriod.DAILY, now=NOW)
        assert rollup.metrics["total_threats"] == 0
        assert rollup.metrics["average_confidence"] == 0.0

    def test_regenerating_upserts(self, service):
        service.stats.generate(StatsPeriod.DAILY, now=NOW)
        _at(service, NOW - timedelta(minutes=1))
        service.stats.generate(StatsPeriod.DAILY, now=NOW + timedelta(minutes=1))

        assert service.store.count_rollups(StatsPeriod.DAILY) == 1
        latest = service.stats.latest(StatsPeriod.DAILY)
        assert latest.metrics["total_threats"] == 1

    def test_latest_none_before_generation(self, service):
        assert service.stats.latest(StatsPeriod.WEEKLY) is None

    def test_correlated_records_counted(self, service):
        wallet = {"type": "wallet", "value": "0x" + "c" * 40}
        _at(service, NOW - timedelta(minutes=3), indicators=[wallet],
            attribution={"actor": "Lazarus"}, target={"type": "domain", "value": "a.example"})
        _at(service, NOW - timedelta(minutes=2), indicators=[wallet],
            attribution={"actor": "Lazarus"}, target={"type": "domain", "value": "b.example"})

        rollup = service.stats.generate(StatsPeriod.HOURLY, now=NOW)
        assert rollup.metrics["correlation_rate"] == 1.0


class TestAnalytics:
    def test_daily_buckets_and_top_targets(self, service):
        _at(service, NOW - timedelta(days=1), target={"type": "domain", "value": "one.example"})
        _at(service, NOW - timedelta(hours=1), severity="high",
            target={"type": "domain", "value": "two.example"})

        view = service.stats.analytics(days=3, now=NOW)
        assert view["days"] == 3
        assert [d["date"] for d in view["daily"]] == ["2026-03-09", "2026-03-10", "2026-03-11"]
        assert [d["total"] for d in view["daily"]] == [0, 1, 1]
        assert view["daily"][2]["by_severity"] == {"high": 1}
        assert {t["target"] for t in view["top_targets"]} == {"one.example", "two.example"}

    def test_records_outside_window_ignored(self, service):
        _at(service, NOW - timedelta(days=10))
        view = service.stats.analytics(days=3, now=NOW)
        assert sum(d["total"] for d in view["daily"]) == 0
        assert view["top_targets"] == []

"""Tests for the ThreatFeedService facade."""

import pytest

from threatfeed.core import FeedSettings
from threatfeed.feed.errors import ConflictError, NotFoundError, ValidationError
from threatfeed.feed.models import MutationKind, RecordStatus
from threatfeed.feed.service import (
    ThreatFeedService,
    get_feed_service,
    set_feed_service,
)

from conftest import observation


def _domain(value, **overrides):
    return observation(target={"type": "domain", "value": value}, **overrides)


class TestQueries:
    def test_list_filters_and_total(self, service):
        service.ingest(_domain("one.example", severity="high"))
        service.ingest(_domain("two.example", severity="low"))
        service.ingest(_domain("three.example", type="drainer", severity="high"))

        records, total = service.list_records(severity="high")
        assert total == 2
        assert {r.target.value for r in records} == {"one.example", "three.example"}

        records, total = service.list_records(threat_type="drainer")
        assert total == 1

        page, total = service.list_records(limit=1, offset=1)
        assert len(page) == 1
        assert total == 3

    def test_target_filter_normalizes(self, service):
        service.ingest(_domain("evil.example"))
        records, total = service.list_records(target="WWW.Evil.Example")
        assert total == 1

    @pytest.mark.parametrize("limit", [0, 201])
    def test_limit_bounds(self, service, limit):
        with pytest.raises(ValidationError):
            service.list_records(limit=limit)

    def test_bad_enum_filter(self, service):
        with pytest.raises(ValidationError):
            service.list_records(severity="apocalyptic")

    def test_get_unknown_record(self, service):
        with pytest.raises(NotFoundError):
            service.get_record("missing")


class TestModeration:
    def test_update_requires_expected_version(self, service):
        record = service.ingest(_domain("evil.example")).record
        with pytest.raises(ValidationError):
            service.update_record(record.id, {"title": "x"}, None)

    @pytest.mark.parametrize("field", ["confidence", "severity", "identity_hash", "version"])
    def test_computed_fields_rejected(self, service, field):
        record = service.ingest(_domain("evil.example")).record
        with pytest.raises(ValidationError):
            service.update_record(record.id, {field: 1}, record.version)

    def test_stale_version_conflicts(self, service):
        record = service.ingest(_domain("evil.example")).record
        service.vote(record.id, "up")
        with pytest.raises(ConflictError):
            service.update_record(record.id, {"title": "late edit"}, record.version)

    def test_content_update_bumps_version(self, service):
        record = service.ingest(_domain("evil.example")).record
        current = service.get_record(record.id)
        updated = service.update_record(
            record.id, {"title": "Confirmed clone", "tags": ["kyc", "kyc", " "]}, current.version
        )
        assert updated.context.title == "Confirmed clone"
        assert updated.context.tags == ["kyc"]
        assert updated.version == current.version + 1

    def test_status_change_goes_through_lifecycle(self, service):
        record = service.ingest(_domain("evil.example")).record
        current = service.get_record(record.id)
        updated = service.update_record(record.id, {"status": "false_positive"}, current.version)
        assert updated.status == RecordStatus.FALSE_POSITIVE

        with pytest.raises(ValidationError):
            service.update_record(record.id, {"status": "active"}, updated.version)

    def test_content_and_status_in_one_update(self, service):
        record = service.ingest(_domain("evil.example")).record
        current = service.get_record(record.id)
        updated = service.update_record(
            record.id, {"description": "Taken down", "status": "resolved"}, current.version
        )
        assert updated.status == RecordStatus.RESOLVED
        assert updated.context.description == "Taken down"

    def test_attribution_change_recorrelates(self, service):
        wallet = {"type": "wallet", "value": "0x" + "d" * 40}
        first = service.ingest(_domain("a.example", indicators=[wallet])).record
        second = service.ingest(_domain("b.example", indicators=[wallet])).record
        current = service.get_record(second.id)
        service.update_record(second.id, {"attribution": {"actor": "Lazarus"}}, current.version)
        assert service.get_record(second.id).pending_analysis is False
        assert first.id in service.get_record(second.id).correlated_threats


class TestVotes:
    def test_votes_move_confidence(self, service):
        record = service.ingest(_domain("evil.example")).record
        before = service.get_record(record.id).confidence
        for _ in range(5):
            service.vote(record.id, "down")
        after = service.get_record(record.id)
        assert after.votes.downvotes == 5
        assert after.confidence < before

    def test_invalid_direction(self, service):
        record = service.ingest(_domain("evil.example")).record
        with pytest.raises(ValidationError):
            service.vote(record.id, "sideways")

    def test_vote_publishes_update(self, service):
        seen = []
        service.bus.subscribe(seen.append)
        record = service.ingest(_domain("evil.example")).record
        service.vote(record.id, "up")
        assert seen[-1].kind == MutationKind.UPDATED


class TestJobs:
    def test_run_aging_job_reports_every_step(self, service):
        service.ingestion.ingest(_domain("pending.example"))
        result = service.run_aging_job()
        assert set(result) >= {"pending_correlation", "sweep", "stats", "digests", "started_at", "finished_at"}
        assert result["pending_correlation"]["processed"] == 1
        assert len(result["stats"]) == 2

    def test_process_pending_clears_flag(self, service):
        record = service.ingestion.ingest(_domain("pending.example")).record
        assert record.pending_analysis is True
        service.process_pending()
        assert service.get_record(record.id).pending_analysis is False

    def test_initialize_is_idempotent(self, service):
        first = service.initialize()
        assert first["patterns_created"] > 0
        assert len(first["sources_added"]) == 4
        again = service.initialize()
        assert again == {"patterns_created": 0, "sources_added": []}

    def test_admin_status(self, service):
        service.ingest(_domain("evil.example"))
        status = service.admin_status()
        assert status["scheduler_running"] is False
        assert status["correlation"]["inline"] is True
        assert "aging" in status and "subscriptions" in status

    def test_start_and_shutdown_scheduler(self):
        service = ThreatFeedService(FeedSettings(correlation_inline=True))
        try:
            service.start()
            assert service.scheduler_running
            service.start()  # second call is a no-op
        finally:
            service.shutdown()
        assert service.scheduler_running is False


class TestBackgroundCorrelation:
    def test_pool_correlates_after_ingest(self):
        service = ThreatFeedService(FeedSettings(correlation_inline=False, correlation_workers=2))
        try:
            wallet = {"type": "wallet", "value": "0x" + "e" * 40}
            attribution = {"actor": "Lazarus"}
            a = service.ingest(_domain("a.example", indicators=[wallet], attribution=attribution)).record
            assert service.wait_for_correlation(timeout=5)
            b = service.ingest(_domain("b.example", indicators=[wallet], attribution=attribution)).record
            assert service.wait_for_correlation(timeout=5)
            assert a.id in service.get_record(b.id).correlated_threats
            assert service.admin_status()["correlation"]["inline"] is False
        finally:
            service.shutdown()


class TestSingleton:
    def test_get_creates_once(self):
        first = get_feed_service()
        try:
            assert get_feed_service() is first
        finally:
            first.shutdown()

    def test_set_replaces(self, service):
        set_feed_service(service)
        assert get_feed_service() is service

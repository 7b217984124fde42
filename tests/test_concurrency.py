"""Threaded tests: concurrent ingestion, pattern counters, subscriber stats."""

from concurrent.futures import ThreadPoolExecutor
from functools import partial

import pytest

from threatfeed.feed.errors import ConflictError
from threatfeed.feed.models import SubscriberKind

from conftest import observation

WORKERS = 16


def _drainer_pattern():
    return {
        "pattern_key": "drainer-domains",
        "name": "Drainer domains",
        "clauses": [
            {"field": "target.value", "operator": "contains", "value": "drain", "weight": 0.6},
            {"field": "type", "operator": "equals", "value": "drainer", "weight": 0.4},
        ],
        "threshold": 0.5,
        "actions": [{"type": "add_tag", "parameters": {"tag": "drainer-kit"}}],
    }


def _run_all(fn, items):
    """Run ``fn`` over ``items`` on a thread pool; returns (results, errors)."""
    results, errors = [], []
    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        futures = [pool.submit(fn, item) for item in items]
        for future in futures:
            exc = future.exception()
            if exc is None:
                results.append(future.result())
            else:
                errors.append(exc)
    return results, errors


class TestConcurrentIngest:
    def test_same_identity_yields_one_record(self, service):
        def report(i):
            return service.ingest(
                observation(source={"id": f"reporter-{i}", "reliability": 50 + i})
            )

        results, errors = _run_all(report, range(40))

        # Losing every version retry is allowed; anything else is a bug
        assert all(isinstance(e, ConflictError) for e in errors)
        assert results
        assert service.store.count_records() == 1
        assert sum(1 for r in results if r.is_new) == 1

        record = service.get_record(results[0].record.id)
        merged = {s.id for s in record.sources}
        assert {r.merged_from for r in results if not r.is_new} <= merged
        assert len(merged) == len(results)

    def test_pattern_trigger_count_is_exact(self, service):
        pattern = service.patterns.create_pattern(_drainer_pattern())
        n = 120

        def report(i):
            return service.ingest(
                observation(
                    type="drainer",
                    category="technical",
                    target={"type": "domain", "value": f"wallet-drain-{i}.example"},
                )
            )

        results, errors = _run_all(report, range(n))

        assert errors == []
        assert all(r.is_new for r in results)
        stored = service.patterns.get_pattern(pattern.id)
        assert stored.times_triggered == n
        assert stored.last_triggered is not None

    def test_admin_toggles_do_not_clobber_trigger_count(self, service):
        pattern = service.patterns.create_pattern(_drainer_pattern())
        n = 60

        def work(i):
            if i % 3 == 0:
                return service.patterns.set_active(pattern.id, True)
            return service.ingest(
                observation(
                    type="drainer",
                    category="technical",
                    target={"type": "domain", "value": f"wallet-drain-{i}.example"},
                )
            )

        _, errors = _run_all(work, range(3 * n))

        assert errors == []
        stored = service.patterns.get_pattern(pattern.id)
        assert stored.is_active is True
        assert stored.times_triggered == 2 * n


class TestSubscriberStats:
    @pytest.mark.parametrize("kind", [SubscriberKind.SUBSCRIPTION, SubscriberKind.WATCHLIST])
    def test_deactivation_survives_concurrent_bumps(self, service, kind):
        engine = service.subscriptions
        if kind == SubscriberKind.SUBSCRIPTION:
            subscriber = engine.create_subscription({}, user_id="alice")
            deactivate = partial(engine.deactivate_subscription, subscriber.id, "alice")
            reload = partial(engine.get_subscription, subscriber.id)
        else:
            subscriber = engine.create_watchlist(
                "alice", {"name": "mine", "targets": ["evil.example"]}
            )
            deactivate = partial(engine.deactivate_watchlist, subscriber.id, "alice")
            reload = partial(engine.get_watchlist, subscriber.id)

        bumps = 200

        def bump(i):
            if i == bumps // 2:
                deactivate()
            engine._bump_subscriber_stats(kind, subscriber.id, ok=1, failed=0)

        _, errors = _run_all(bump, range(bumps))

        assert errors == []
        final = reload()
        assert final.is_active is False
        assert final.statistics.threats_received == bumps

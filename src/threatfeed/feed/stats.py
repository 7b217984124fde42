# Feed Module - Statistics Aggregator
#
# Materializes periodic rollups of the record store.  A rollup covers
# the calendar bucket containing ``now`` (hour, day, ISO week or month)
# and is upserted by (period, period_start), so regenerating inside the
# same bucket replaces the earlier figures.

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .models import RecordStatus, StatsPeriod, StatsRollup, ThreatRecord, utcnow
from .store import ThreatStore

logger = logging.getLogger(__name__)

PAGE_SIZE = 500
TOP_N = 10


def period_bounds(period: StatsPeriod, now: datetime) -> Tuple[datetime, datetime]:
    """Start and end of the bucket of ``period`` that contains ``now``."""
    hour = now.replace(minute=0, second=0, microsecond=0)
    if period == StatsPeriod.HOURLY:
        return hour, hour + timedelta(hours=1)
    day = hour.replace(hour=0)
    if period == StatsPeriod.DAILY:
        return day, day + timedelta(days=1)
    if period == StatsPeriod.WEEKLY:
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(weeks=1)
    start = day.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def top_counts(counts: Counter, limit: int = TOP_N) -> List[Dict[str, Any]]:
    """Most frequent keys as ``[{"type", "count"}]``, ties broken by key."""
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{"type": key, "count": count} for key, count in ranked[:limit]]


class StatsAggregator:
    """Builds and serves rollups and the analytics view."""

    def __init__(self, store: ThreatStore):
        self.store = store

    def _records_between(self, start: datetime, end: datetime) -> Iterator[ThreatRecord]:
        offset = 0
        while True:
            page = self.store.query_records(
                limit=PAGE_SIZE, offset=offset, created_after=start, created_before=end
            )
            yield from page
            if len(page) < PAGE_SIZE:
                return
            offset += PAGE_SIZE

    def generate(self, period: StatsPeriod, now: Optional[datetime] = None) -> StatsRollup:
        """Compute and upsert the rollup for the bucket containing ``now``."""
        now = now or utcnow()
        start, end = period_bounds(period, now)
        records = list(self._records_between(start, end))

        by_type: Counter = Counter()
        by_severity: Counter = Counter()
        by_source: Counter = Counter()
        by_status: Counter = Counter()
        targets = set()
        confidence_total = 0
        for record in records:
            by_type[record.type.value] += 1
            by_severity[record.severity.value] += 1
            by_status[record.status] += 1
            for source in record.sources or [record.source]:
                by_source[source.id] += 1
            targets.add((record.target.type.value, record.target.value))
            confidence_total += record.confidence

        total = len(records)
        correlated = self.store.count_correlated_records(r.id for r in records)
        rollup = StatsRollup(
            period=period,
            period_start=start,
            period_end=end,
            generated_at=now,
            metrics={
                "total_threats": total,
                # created in the bucket and still active
                "new_threats": by_status[RecordStatus.ACTIVE],
                "expired_threats": by_status[RecordStatus.EXPIRED],
                "resolved_threats": by_status[RecordStatus.RESOLVED],
                "false_positives": by_status[RecordStatus.FALSE_POSITIVE],
                "unique_targets": len(targets),
                "top_threat_types": top_counts(by_type),
                "top_severities": top_counts(by_severity),
                "top_sources": top_counts(by_source),
                "average_confidence": round(confidence_total / total, 2) if total else 0.0,
                "correlation_rate": round(correlated / total, 4) if total else 0.0,
            },
        )
        self.store.upsert_rollup(rollup)
        logger.info(
            "Stats rollup %s@%s: %d threats", period.value, start.isoformat(), total
        )
        return rollup

    def latest(self, period: StatsPeriod) -> Optional[StatsRollup]:
        return self.store.latest_rollup(period)

    def analytics(self, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Trend, top-target and correlation-strength view over ``days``.

        Returns:
            Dict with ``daily`` buckets (count and severity split per
            day, oldest first), ``top_targets`` (most reported targets
            with their severity distribution) and ``correlation_types``
            (edge types ordered by average confidence).
        """
        if days <= 0:
            days = 1
        now = now or utcnow()
        end = now
        start = (now - timedelta(days=days - 1)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )

        daily: Dict[str, Dict[str, Any]] = {}
        cursor = start
        while cursor <= end:
            daily[cursor.date().isoformat()] = {"total": 0, "by_severity": Counter()}
            cursor += timedelta(days=1)

        target_counts: Counter = Counter()
        target_severity: Dict[Tuple[str, str], Counter] = defaultdict(Counter)
        for record in self._records_between(start, end + timedelta(microseconds=1)):
            bucket = daily.get(record.created_at.date().isoformat())
            if bucket is not None:
                bucket["total"] += 1
                bucket["by_severity"][record.severity.value] += 1
            key = (record.target.type.value, record.target.value)
            target_counts[key] += 1
            target_severity[key][record.severity.value] += 1

        edges: Dict[str, List[int]] = defaultdict(list)
        for edge in self.store.correlations_created_since(start):
            if edge.status.value != "disputed":
                edges[edge.correlation_type.value].append(edge.confidence)
        correlation_types = sorted(
            (
                {
                    "type": kind,
                    "count": len(values),
                    "average_confidence": round(sum(values) / len(values), 2),
                }
                for kind, values in edges.items()
            ),
            key=lambda item: (-item["average_confidence"], -item["count"], item["type"]),
        )

        return {
            "days": days,
            "from": start.isoformat(),
            "to": end.isoformat(),
            "daily": [
                {"date": day, "total": b["total"], "by_severity": dict(b["by_severity"])}
                for day, b in daily.items()
            ],
            "top_targets": [
                {
                    "target_type": key[0],
                    "target": key[1],
                    "count": count,
                    "by_severity": dict(target_severity[key]),
                }
                for key, count in target_counts.most_common(TOP_N)
            ],
            "correlation_types": correlation_types,
        }

# Feed Module - SQLite Storage
#
# Persistent storage for the threat feed.  Every entity is kept as a
# JSON document plus the indexed columns needed for lookup.  Two
# constraints carry the feed's concurrency model:
#
#   - a partial UNIQUE index on ``identity_hash`` over open records
#     (active, under_review) makes ``insert_if_absent`` atomic
#   - a per-record ``version`` column makes updates conditional
#     (optimistic concurrency; no lock is held across records)

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.db import MEMORY_PATH, connect as db_connect
from .errors import ConflictError
from .models import (
    Delivery,
    DeliveryFrequency,
    DeliveryStatus,
    RecordStatus,
    Severity,
    SourceConfig,
    StatsPeriod,
    StatsRollup,
    ThreatCorrelation,
    ThreatPattern,
    ThreatRecord,
    ThreatSubscription,
    ThreatType,
    ThreatWatchlist,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

_OPEN_SQL = "('active', 'under_review')"


def ts(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so column comparisons sort correctly."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def pair_key(a: str, b: str) -> str:
    """Order-independent key for an unordered record pair."""
    return "|".join(sorted((a, b)))


def record_terms(record: ThreatRecord) -> List[Tuple[str, str]]:
    """Searchable (kind, value) terms for a record."""
    terms = {("target", record.target.value)}
    terms.update(("indicator", i.value) for i in record.indicators)
    terms.update(("tag", t) for t in record.context.tags)
    terms.update(("source", s.id) for s in (record.sources or [record.source]))
    attr = record.attribution
    if attr.actor:
        terms.add(("actor", attr.actor.lower()))
    if attr.campaign:
        terms.add(("campaign", attr.campaign.lower()))
    if attr.malware_family:
        terms.add(("malware_family", attr.malware_family.lower()))
    return sorted(terms)


class ThreatStore:
    """SQLite-backed storage for records, edges, rules and subscribers.

    Thread-safe via a reentrant lock around every statement on the
    shared connection.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = MEMORY_PATH):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = db_connect(db_path, check_same_thread=False, row_factory=True)
        self._create_tables()

    def _create_tables(self) -> None:
        """Create the schema if it doesn't already exist."""
        with self._lock:
            self._conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS threat_records (
                    id               TEXT PRIMARY KEY,
                    identity_hash    TEXT NOT NULL,
                    status           TEXT NOT NULL,
                    threat_type      TEXT NOT NULL,
                    category         TEXT NOT NULL,
                    severity         TEXT NOT NULL,
                    confidence       INTEGER NOT NULL,
                    source_id        TEXT NOT NULL,
                    target_type      TEXT NOT NULL,
                    target_value     TEXT NOT NULL,
                    last_seen        TEXT NOT NULL,
                    expires_at       TEXT,
                    pending_analysis INTEGER NOT NULL DEFAULT 0,
                    version          INTEGER NOT NULL,
                    created_at       TEXT NOT NULL,
                    updated_at       TEXT NOT NULL,
                    document         TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_records_open_identity
                    ON threat_records(identity_hash)
                    WHERE status IN {_OPEN_SQL};
                CREATE INDEX IF NOT EXISTS idx_records_hash
                    ON threat_records(identity_hash);
                CREATE INDEX IF NOT EXISTS idx_records_status
                    ON threat_records(status);
                CREATE INDEX IF NOT EXISTS idx_records_target
                    ON threat_records(target_value);
                CREATE INDEX IF NOT EXISTS idx_records_created
                    ON threat_records(created_at);

                CREATE TABLE IF NOT EXISTS record_terms (
                    record_id TEXT NOT NULL
                        REFERENCES threat_records(id) ON DELETE CASCADE,
                    kind      TEXT NOT NULL,
                    value     TEXT NOT NULL,
                    PRIMARY KEY (record_id, kind, value)
                );
                CREATE INDEX IF NOT EXISTS idx_terms_lookup
                    ON record_terms(kind, value);

                CREATE TABLE IF NOT EXISTS correlations (
                    id               TEXT PRIMARY KEY,
                    parent_id        TEXT NOT NULL,
                    child_id         TEXT NOT NULL,
                    pair_key         TEXT NOT NULL,
                    correlation_type TEXT NOT NULL,
                    status           TEXT NOT NULL,
                    confidence       INTEGER NOT NULL,
                    created_at       TEXT NOT NULL,
                    document         TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_correlations_live_pair
                    ON correlations(pair_key) WHERE status != 'disputed';
                CREATE INDEX IF NOT EXISTS idx_correlations_parent
                    ON correlations(parent_id);
                CREATE INDEX IF NOT EXISTS idx_correlations_child
                    ON correlations(child_id);

                CREATE TABLE IF NOT EXISTS patterns (
                    id          TEXT PRIMARY KEY,
                    pattern_key TEXT NOT NULL,
                    version     INTEGER NOT NULL,
                    is_active   INTEGER NOT NULL,
                    priority    INTEGER NOT NULL,
                    seq         INTEGER NOT NULL,
                    document    TEXT NOT NULL,
                    UNIQUE (pattern_key, version)
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    id        TEXT PRIMARY KEY,
                    user_id   TEXT,
                    is_active INTEGER NOT NULL,
                    document  TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_subscriptions_user
                    ON subscriptions(user_id);

                CREATE TABLE IF NOT EXISTS watchlists (
                    id        TEXT PRIMARY KEY,
                    user_id   TEXT NOT NULL,
                    is_active INTEGER NOT NULL,
                    document  TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_watchlists_user
                    ON watchlists(user_id);

                CREATE TABLE IF NOT EXISTS deliveries (
                    id              TEXT PRIMARY KEY,
                    event_id        TEXT NOT NULL,
                    record_id       TEXT NOT NULL,
                    subscriber_kind TEXT NOT NULL,
                    subscriber_id   TEXT NOT NULL,
                    user_id         TEXT,
                    status          TEXT NOT NULL,
                    frequency       TEXT NOT NULL,
                    created_at      TEXT NOT NULL,
                    document        TEXT NOT NULL,
                    UNIQUE (event_id, subscriber_kind, subscriber_id)
                );
                CREATE INDEX IF NOT EXISTS idx_deliveries_queue
                    ON deliveries(status, frequency);

                CREATE TABLE IF NOT EXISTS inbox (
                    id            TEXT PRIMARY KEY,
                    user_id       TEXT,
                    subscriber_id TEXT NOT NULL,
                    record_id     TEXT NOT NULL,
                    event_id      TEXT,
                    payload       TEXT NOT NULL,
                    is_read       INTEGER NOT NULL DEFAULT 0,
                    created_at    TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_inbox_user
                    ON inbox(user_id, created_at);

                CREATE TABLE IF NOT EXISTS sources (
                    source_id TEXT PRIMARY KEY,
                    document  TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS stats_rollups (
                    period       TEXT NOT NULL,
                    period_start TEXT NOT NULL,
                    generated_at TEXT NOT NULL,
                    document     TEXT NOT NULL,
                    PRIMARY KEY (period, period_start)
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );
                """
            )
            self._conn.execute("PRAGMA foreign_keys=ON")
            row = self._conn.execute(
                "SELECT version FROM schema_version LIMIT 1"
            ).fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Threat records
    # ------------------------------------------------------------------

    @staticmethod
    def _record_row(record: ThreatRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "identity_hash": record.identity_hash,
            "status": record.status.value,
            "threat_type": record.type.value,
            "category": record.category.value,
            "severity": record.severity.value,
            "confidence": record.confidence,
            "source_id": record.source.id,
            "target_type": record.target.type.value,
            "target_value": record.target.value,
            "last_seen": ts(record.timeline.last_seen),
            "expires_at": ts(record.expires_at),
            "pending_analysis": 1 if record.pending_analysis else 0,
            "version": record.version,
            "created_at": ts(record.created_at),
            "updated_at": ts(record.updated_at),
            "document": json.dumps(record.to_dict()),
        }

    @staticmethod
    def _load_record(row: sqlite3.Row) -> ThreatRecord:
        record = ThreatRecord.from_dict(json.loads(row["document"]))
        record.version = row["version"]
        return record

    def _write_terms(self, record: ThreatRecord) -> None:
        self._conn.execute("DELETE FROM record_terms WHERE record_id = ?", (record.id,))
        self._conn.executemany(
            "INSERT INTO record_terms (record_id, kind, value) VALUES (?, ?, ?)",
            [(record.id, kind, value) for kind, value in record_terms(record)],
        )

    def insert_if_absent(self, record: ThreatRecord) -> bool:
        """Insert a new open record.

        Returns False (and writes nothing) when an open record with the
        same ``identity_hash`` already exists.
        """
        record.version = 1
        row = self._record_row(record)
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT INTO threat_records ({cols}) VALUES ({marks})",
                    tuple(row.values()),
                )
                self._write_terms(record)
                self._conn.commit()
                return True
            except sqlite3.IntegrityError:
                self._conn.rollback()
                record.version = 0
                return False

    def update_record(
        self,
        record: ThreatRecord,
        expected_version: int,
        expected_last_seen: Optional[datetime] = None,
    ) -> bool:
        """Conditionally replace a record.

        The write only happens when the stored ``version`` (and, if
        given, ``last_seen``) still match.  On success ``record.version``
        is advanced.

        Returns:
            bool: False on a version mismatch.

        Raises:
            ConflictError: if the write would create a second open record
                for the same identity hash.
        """
        record.version = expected_version + 1
        record.updated_at = utcnow()
        row = self._record_row(record)
        assignments = ", ".join(f"{c} = ?" for c in row if c != "id")
        params: List[Any] = [v for c, v in row.items() if c != "id"]
        sql = f"UPDATE threat_records SET {assignments} WHERE id = ? AND version = ?"
        params.extend([record.id, expected_version])
        if expected_last_seen is not None:
            sql += " AND last_seen = ?"
            params.append(ts(expected_last_seen))
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                if cursor.rowcount == 0:
                    self._conn.rollback()
                    record.version = expected_version
                    return False
                self._write_terms(record)
                self._conn.commit()
                return True
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                record.version = expected_version
                logger.warning("Open identity collision on update (record=%s)", record.id)
                raise ConflictError(
                    "An open record with this identity already exists",
                    {"record_id": record.id, "identity_hash": record.identity_hash},
                ) from exc

    def modify_record(
        self,
        record_id: str,
        fn: Callable[[ThreatRecord], bool],
        attempts: int = 3,
    ) -> Optional[ThreatRecord]:
        """Read-modify-write with optimistic retry.

        ``fn`` mutates the record in place and returns False when no
        write is needed.

        Returns:
            The stored record, or None if it does not exist.

        Raises:
            ConflictError: every attempt lost the version race.
        """
        for _ in range(max(1, attempts)):
            record = self.get_record(record_id)
            if record is None:
                return None
            expected = record.version
            if not fn(record):
                return record
            if self.update_record(record, expected):
                return record
        raise ConflictError(
            "Record kept changing; update abandoned", {"record_id": record_id}
        )

    def get_record(self, record_id: str) -> Optional[ThreatRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document, version FROM threat_records WHERE id = ?",
                (record_id,),
            ).fetchone()
        return self._load_record(row) if row else None

    def get_records(self, record_ids: Iterable[str]) -> List[ThreatRecord]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT document, version FROM threat_records WHERE id IN ({marks})",
                ids,
            ).fetchall()
        return [self._load_record(r) for r in rows]

    def find_open_by_hash(self, identity_hash: str) -> Optional[ThreatRecord]:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT document, version FROM threat_records
                WHERE identity_hash = ? AND status IN {_OPEN_SQL}
                """,
                (identity_hash,),
            ).fetchone()
        return self._load_record(row) if row else None

    def _record_filters(
        self,
        threat_type: Optional[ThreatType] = None,
        severity: Optional[Severity] = None,
        status: Optional[RecordStatus] = None,
        source_id: Optional[str] = None,
        targets: Optional[Sequence[str]] = None,
        tag: Optional[str] = None,
        min_confidence: Optional[int] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if threat_type is not None:
            clauses.append("threat_type = ?")
            params.append(threat_type.value)
        if severity is not None:
            clauses.append("severity = ?")
            params.append(severity.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if source_id is not None:
            clauses.append(
                "id IN (SELECT record_id FROM record_terms WHERE kind = 'source' AND value = ?)"
            )
            params.append(source_id)
        if targets:
            clauses.append(f"target_value IN ({', '.join('?' for _ in targets)})")
            params.extend(targets)
        if tag is not None:
            clauses.append(
                "id IN (SELECT record_id FROM record_terms WHERE kind = 'tag' AND value = ?)"
            )
            params.append(tag)
        if min_confidence is not None:
            clauses.append("confidence >= ?")
            params.append(min_confidence)
        if created_after is not None:
            clauses.append("created_at >= ?")
            params.append(ts(created_after))
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(ts(created_before))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    def query_records(self, limit: int = 50, offset: int = 0, **filters) -> List[ThreatRecord]:
        """Query records with optional filters, newest first."""
        where, params = self._record_filters(**filters)
        sql = (
            f"SELECT document, version FROM threat_records{where} "
            "ORDER BY created_at DESC, id LIMIT ? OFFSET ?"
        )
        params.extend([limit, offset])
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._load_record(r) for r in rows]

    def count_records(self, **filters) -> int:
        where, params = self._record_filters(**filters)
        with self._lock:
            row = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM threat_records{where}", params
            ).fetchone()
        return row["n"]

    def records_with_status(
        self,
        statuses: Iterable[RecordStatus],
        pending_analysis: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[ThreatRecord]:
        status_values = [s.value for s in statuses]
        sql = (
            "SELECT document, version FROM threat_records WHERE status IN "
            f"({', '.join('?' for _ in status_values)})"
        )
        params: List[Any] = list(status_values)
        if pending_analysis is not None:
            sql += " AND pending_analysis = ?"
            params.append(1 if pending_analysis else 0)
        sql += " ORDER BY created_at, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._load_record(r) for r in rows]

    def find_record_ids_by_terms(
        self,
        kind: str,
        values: Iterable[str],
        exclude_id: Optional[str] = None,
        open_only: bool = True,
    ) -> List[str]:
        """Ids of records carrying any of ``values`` under term ``kind``."""
        vals = list(dict.fromkeys(v for v in values if v))
        if not vals:
            return []
        sql = f"""
            SELECT DISTINCT t.record_id FROM record_terms t
            JOIN threat_records r ON r.id = t.record_id
            WHERE t.kind = ? AND t.value IN ({', '.join('?' for _ in vals)})
        """
        params: List[Any] = [kind, *vals]
        if open_only:
            sql += f" AND r.status IN {_OPEN_SQL}"
        if exclude_id is not None:
            sql += " AND r.id != ?"
            params.append(exclude_id)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [r["record_id"] for r in rows]

    def find_open_ids_created_between(
        self, start: datetime, end: datetime, exclude_id: Optional[str] = None
    ) -> List[str]:
        sql = f"""
            SELECT id FROM threat_records
            WHERE status IN {_OPEN_SQL} AND created_at >= ? AND created_at <= ?
        """
        params: List[Any] = [ts(start), ts(end)]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [r["id"] for r in rows]

    def record_status_counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM threat_records GROUP BY status"
            ).fetchall()
        return {r["status"]: r["n"] for r in rows}

    # ------------------------------------------------------------------
    # Correlation edges
    # ------------------------------------------------------------------

    def insert_correlation(self, edge: ThreatCorrelation) -> bool:
        """Insert an edge; False if a live edge for the pair exists."""
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO correlations
                        (id, parent_id, child_id, pair_key, correlation_type,
                         status, confidence, created_at, document)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        edge.id,
                        edge.parent_id,
                        edge.child_id,
                        pair_key(edge.parent_id, edge.child_id),
                        edge.correlation_type.value,
                        edge.status.value,
                        edge.confidence,
                        ts(edge.created_at),
                        json.dumps(edge.to_dict()),
                    ),
                )
                self._conn.commit()
                return True
            except sqlite3.IntegrityError:
                self._conn.rollback()
                return False

    def update_correlation(self, edge: ThreatCorrelation) -> None:
        edge.updated_at = utcnow()
        with self._lock:
            self._conn.execute(
                """
                UPDATE correlations
                SET correlation_type = ?, status = ?, confidence = ?, document = ?
                WHERE id = ?
                """,
                (
                    edge.correlation_type.value,
                    edge.status.value,
                    edge.confidence,
                    json.dumps(edge.to_dict()),
                    edge.id,
                ),
            )
            self._conn.commit()

    def get_correlation(self, edge_id: str) -> Optional[ThreatCorrelation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM correlations WHERE id = ?", (edge_id,)
            ).fetchone()
        return ThreatCorrelation.from_dict(json.loads(row["document"])) if row else None

    def live_correlation_for_pair(self, a: str, b: str) -> Optional[ThreatCorrelation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM correlations WHERE pair_key = ? AND status != 'disputed'",
                (pair_key(a, b),),
            ).fetchone()
        return ThreatCorrelation.from_dict(json.loads(row["document"])) if row else None

    def correlations_for(
        self, record_id: str, include_disputed: bool = True
    ) -> List[ThreatCorrelation]:
        sql = "SELECT document FROM correlations WHERE (parent_id = ? OR child_id = ?)"
        if not include_disputed:
            sql += " AND status != 'disputed'"
        sql += " ORDER BY confidence DESC, created_at"
        with self._lock:
            rows = self._conn.execute(sql, (record_id, record_id)).fetchall()
        return [ThreatCorrelation.from_dict(json.loads(r["document"])) for r in rows]

    def correlations_created_since(self, since: datetime) -> List[ThreatCorrelation]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT document FROM correlations WHERE created_at >= ?",
                (ts(since),),
            ).fetchall()
        return [ThreatCorrelation.from_dict(json.loads(r["document"])) for r in rows]

    def count_correlated_records(self, record_ids: Iterable[str]) -> int:
        """How many of ``record_ids`` are an endpoint of a live edge."""
        ids = list(record_ids)
        if not ids:
            return 0
        marks = ", ".join("?" for _ in ids)
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT COUNT(*) AS n FROM threat_records r
                WHERE r.id IN ({marks}) AND EXISTS (
                    SELECT 1 FROM correlations c
                    WHERE c.status != 'disputed'
                      AND (c.parent_id = r.id OR c.child_id = r.id)
                )
                """,
                ids,
            ).fetchone()
        return row["n"]

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def insert_pattern(self, pattern: ThreatPattern) -> None:
        """Insert a pattern, assigning its creation ``seq``.

        Raises:
            ConflictError: when (pattern_key, version) already exists.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM patterns"
            ).fetchone()
            pattern.seq = row["next_seq"]
            try:
                self._conn.execute(
                    """
                    INSERT INTO patterns
                        (id, pattern_key, version, is_active, priority, seq, document)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pattern.id,
                        pattern.pattern_key,
                        pattern.version,
                        1 if pattern.is_active else 0,
                        pattern.priority,
                        pattern.seq,
                        json.dumps(pattern.to_dict()),
                    ),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ConflictError(
                    f"Pattern {pattern.pattern_key} v{pattern.version} already exists"
                ) from exc

    def update_pattern(self, pattern: ThreatPattern) -> None:
        pattern.updated_at = utcnow()
        with self._lock:
            self._conn.execute(
                "UPDATE patterns SET is_active = ?, priority = ?, document = ? WHERE id = ?",
                (
                    1 if pattern.is_active else 0,
                    pattern.priority,
                    json.dumps(pattern.to_dict()),
                    pattern.id,
                ),
            )
            self._conn.commit()

    def get_pattern(self, pattern_id: str) -> Optional[ThreatPattern]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM patterns WHERE id = ?", (pattern_id,)
            ).fetchone()
        return ThreatPattern.from_dict(json.loads(row["document"])) if row else None

    def modify_pattern(
        self, pattern_id: str, fn: Callable[[ThreatPattern], Optional[ThreatPattern]]
    ) -> Optional[ThreatPattern]:
        """Read, change and write one pattern under the store lock.

        ``fn`` mutates the pattern in place or returns a replacement; an
        exception from ``fn`` leaves the stored row untouched.
        """
        with self._lock:
            pattern = self.get_pattern(pattern_id)
            if pattern is None:
                return None
            pattern = fn(pattern) or pattern
            self.update_pattern(pattern)
            return pattern

    def latest_pattern_by_key(self, pattern_key: str) -> Optional[ThreatPattern]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM patterns WHERE pattern_key = ? ORDER BY version DESC LIMIT 1",
                (pattern_key,),
            ).fetchone()
        return ThreatPattern.from_dict(json.loads(row["document"])) if row else None

    def list_patterns(self, active_only: bool = False) -> List[ThreatPattern]:
        """Patterns in evaluation order: priority desc, then creation order."""
        sql = "SELECT document FROM patterns"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY priority DESC, seq ASC"
        with self._lock:
            rows = self._conn.execute(sql).fetchall()
        return [ThreatPattern.from_dict(json.loads(r["document"])) for r in rows]

    # ------------------------------------------------------------------
    # Subscriptions & watchlists
    # ------------------------------------------------------------------

    def save_subscription(self, sub: ThreatSubscription) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO subscriptions (id, user_id, is_active, document)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    is_active = excluded.is_active,
                    document = excluded.document
                """,
                (sub.id, sub.user_id, 1 if sub.is_active else 0, json.dumps(sub.to_dict())),
            )
            self._conn.commit()

    def get_subscription(self, subscription_id: str) -> Optional[ThreatSubscription]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        return ThreatSubscription.from_dict(json.loads(row["document"])) if row else None

    def modify_subscription(
        self, subscription_id: str, fn: Callable[[ThreatSubscription], None]
    ) -> Optional[ThreatSubscription]:
        """Read-modify-write of one subscription under the store lock."""
        with self._lock:
            sub = self.get_subscription(subscription_id)
            if sub is None:
                return None
            fn(sub)
            self.save_subscription(sub)
            return sub

    def list_subscriptions(
        self, user_id: Optional[str] = None, active_only: bool = False
    ) -> List[ThreatSubscription]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if active_only:
            clauses.append("is_active = 1")
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT document FROM subscriptions{where} ORDER BY rowid", params
            ).fetchall()
        return [ThreatSubscription.from_dict(json.loads(r["document"])) for r in rows]

    def count_active_subscriptions(self, user_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM subscriptions WHERE user_id = ? AND is_active = 1",
                (user_id,),
            ).fetchone()
        return row["n"]

    def save_watchlist(self, watchlist: ThreatWatchlist) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO watchlists (id, user_id, is_active, document)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    is_active = excluded.is_active,
                    document = excluded.document
                """,
                (
                    watchlist.id,
                    watchlist.user_id,
                    1 if watchlist.is_active else 0,
                    json.dumps(watchlist.to_dict()),
                ),
            )
            self._conn.commit()

    def get_watchlist(self, watchlist_id: str) -> Optional[ThreatWatchlist]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM watchlists WHERE id = ?", (watchlist_id,)
            ).fetchone()
        return ThreatWatchlist.from_dict(json.loads(row["document"])) if row else None

    def modify_watchlist(
        self, watchlist_id: str, fn: Callable[[ThreatWatchlist], None]
    ) -> Optional[ThreatWatchlist]:
        with self._lock:
            watchlist = self.get_watchlist(watchlist_id)
            if watchlist is None:
                return None
            fn(watchlist)
            self.save_watchlist(watchlist)
            return watchlist

    def list_watchlists(
        self, user_id: Optional[str] = None, active_only: bool = False
    ) -> List[ThreatWatchlist]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if active_only:
            clauses.append("is_active = 1")
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT document FROM watchlists{where} ORDER BY rowid", params
            ).fetchall()
        return [ThreatWatchlist.from_dict(json.loads(r["document"])) for r in rows]

    # ------------------------------------------------------------------
    # Deliveries & inbox
    # ------------------------------------------------------------------

    def insert_delivery(self, delivery: Delivery) -> bool:
        """Record a delivery decision; False if one exists for (event, subscriber)."""
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO deliveries
                        (id, event_id, record_id, subscriber_kind, subscriber_id,
                         user_id, status, frequency, created_at, document)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        delivery.id,
                        delivery.event_id,
                        delivery.record_id,
                        delivery.subscriber_kind.value,
                        delivery.subscriber_id,
                        delivery.user_id,
                        delivery.status.value,
                        delivery.frequency.value,
                        ts(delivery.created_at),
                        json.dumps(delivery.to_dict()),
                    ),
                )
                self._conn.commit()
                return True
            except sqlite3.IntegrityError:
                self._conn.rollback()
                return False

    def update_delivery(self, delivery: Delivery) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE deliveries SET status = ?, document = ? WHERE id = ?",
                (delivery.status.value, json.dumps(delivery.to_dict()), delivery.id),
            )
            self._conn.commit()

    def queued_deliveries(
        self, frequency: DeliveryFrequency, before: Optional[datetime] = None
    ) -> List[Delivery]:
        sql = "SELECT document FROM deliveries WHERE status = ? AND frequency = ?"
        params: List[Any] = [DeliveryStatus.QUEUED.value, frequency.value]
        if before is not None:
            sql += " AND created_at <= ?"
            params.append(ts(before))
        sql += " ORDER BY created_at, id"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Delivery.from_dict(json.loads(r["document"])) for r in rows]

    def list_deliveries(
        self,
        event_id: Optional[str] = None,
        subscriber_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> List[Delivery]:
        clauses: List[str] = []
        params: List[Any] = []
        if event_id is not None:
            clauses.append("event_id = ?")
            params.append(event_id)
        if subscriber_id is not None:
            clauses.append("subscriber_id = ?")
            params.append(subscriber_id)
        if record_id is not None:
            clauses.append("record_id = ?")
            params.append(record_id)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT document FROM deliveries{where} ORDER BY created_at, id", params
            ).fetchall()
        return [Delivery.from_dict(json.loads(r["document"])) for r in rows]

    def delivery_status_counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM deliveries GROUP BY status"
            ).fetchall()
        return {r["status"]: r["n"] for r in rows}

    def add_inbox_item(
        self,
        user_id: Optional[str],
        subscriber_id: str,
        record_id: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> str:
        item_id = new_id()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO inbox
                    (id, user_id, subscriber_id, record_id, event_id, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    user_id,
                    subscriber_id,
                    record_id,
                    event_id,
                    json.dumps(payload),
                    ts(utcnow()),
                ),
            )
            self._conn.commit()
        return item_id

    def inbox(self, user_id: str, limit: int = 50, unread_only: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM inbox WHERE user_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._lock:
            rows = self._conn.execute(sql, (user_id, limit)).fetchall()
        return [
            {
                "id": r["id"],
                "subscriber_id": r["subscriber_id"],
                "record_id": r["record_id"],
                "event_id": r["event_id"],
                "payload": json.loads(r["payload"]),
                "is_read": bool(r["is_read"]),
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    def mark_inbox_read(self, user_id: str, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        marks = ", ".join("?" for _ in ids)
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE inbox SET is_read = 1 WHERE user_id = ? AND id IN ({marks})",
                [user_id, *ids],
            )
            self._conn.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Source configs
    # ------------------------------------------------------------------

    def save_source(self, config: SourceConfig) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sources (source_id, document) VALUES (?, ?)
                ON CONFLICT(source_id) DO UPDATE SET document = excluded.document
                """,
                (config.source_id, json.dumps(config.to_dict())),
            )
            self._conn.commit()

    def get_source(self, source_id: str) -> Optional[SourceConfig]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM sources WHERE source_id = ?", (source_id,)
            ).fetchone()
        return SourceConfig.from_dict(json.loads(row["document"])) if row else None

    def list_sources(self) -> List[SourceConfig]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT document FROM sources ORDER BY source_id"
            ).fetchall()
        return [SourceConfig.from_dict(json.loads(r["document"])) for r in rows]

    # ------------------------------------------------------------------
    # Stats rollups
    # ------------------------------------------------------------------

    def upsert_rollup(self, rollup: StatsRollup) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO stats_rollups (period, period_start, generated_at, document)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(period, period_start) DO UPDATE SET
                    generated_at = excluded.generated_at,
                    document = excluded.document
                """,
                (
                    rollup.period.value,
                    ts(rollup.period_start),
                    ts(rollup.generated_at),
                    json.dumps(rollup.to_dict()),
                ),
            )
            self._conn.commit()

    def latest_rollup(self, period: StatsPeriod) -> Optional[StatsRollup]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT document FROM stats_rollups WHERE period = ?
                ORDER BY period_start DESC, generated_at DESC LIMIT 1
                """,
                (period.value,),
            ).fetchone()
        return StatsRollup.from_dict(json.loads(row["document"])) if row else None

    def count_rollups(self, period: Optional[StatsPeriod] = None) -> int:
        sql = "SELECT COUNT(*) AS n FROM stats_rollups"
        params: List[Any] = []
        if period is not None:
            sql += " WHERE period = ?"
            params.append(period.value)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return row["n"]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Table sizes and record status breakdown."""
        with self._lock:
            counts = {}
            for table in (
                "threat_records",
                "correlations",
                "patterns",
                "subscriptions",
                "watchlists",
                "deliveries",
                "sources",
            ):
                counts[table] = self._conn.execute(
                    f"SELECT COUNT(*) AS n FROM {table}"
                ).fetchone()["n"]
            pending = self._conn.execute(
                "SELECT COUNT(*) AS n FROM threat_records WHERE pending_analysis = 1"
            ).fetchone()["n"]
        return {
            "tables": counts,
            "records_by_status": self.record_status_counts(),
            "pending_analysis": pending,
            "deliveries_by_status": self.delivery_status_counts(),
        }

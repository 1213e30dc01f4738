# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""
Append-only audit sink.

Persists scan runs, retained matches, resolution decisions, threat events,
rate-limit events and persistent blocks in sqlite. Every write is idempotent
to retry. Any sqlite failure surfaces as `PersistenceUnavailable`; callers
on non-critical paths log and swallow it.
"""

import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Generator, List, Optional

from coreason_dataguard.exceptions import PersistenceUnavailable
from coreason_dataguard.models import (
    BlockedIdentity,
    EntityType,
    QualitySnapshot,
    RateLimitEvent,
    ResolutionDecision,
    ScanRun,
    SimilarityMatch,
    ThreatCategory,
    ThreatEvent,
    utc_now,
)
from coreason_dataguard.utils.logger import logger

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scan_runs (
    scan_id TEXT PRIMARY KEY,
    entity_type_filter TEXT,
    threshold REAL NOT NULL,
    limit_value INTEGER NOT NULL,
    started_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    match_count INTEGER NOT NULL,
    truncated INTEGER NOT NULL DEFAULT 0,
    top_score REAL
);
CREATE TABLE IF NOT EXISTS scan_matches (
    scan_id TEXT NOT NULL,
    match_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (scan_id, match_id)
);
CREATE TABLE IF NOT EXISTS resolutions (
    content_hash TEXT PRIMARY KEY,
    match_id TEXT NOT NULL,
    action TEXT NOT NULL CHECK (action IN ('merge', 'dismiss')),
    record_id_a TEXT NOT NULL,
    record_id_b TEXT NOT NULL,
    survivor_id TEXT,
    resolved_by TEXT NOT NULL,
    resolved_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS threat_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern TEXT NOT NULL,
    category TEXT NOT NULL,
    severity TEXT NOT NULL,
    field_name TEXT NOT NULL,
    truncated_input TEXT,
    ip TEXT,
    user_agent TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS rate_limit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ip TEXT NOT NULL,
    endpoint TEXT NOT NULL,
    request_count INTEGER NOT NULL,
    blocked INTEGER NOT NULL DEFAULT 0,
    blocked_until TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS blocked_identities (
    ip TEXT PRIMARY KEY,
    reason TEXT NOT NULL,
    blocked_by TEXT NOT NULL,
    blocked_at TEXT NOT NULL,
    expires_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS quality_snapshots (
    snapshot_date TEXT PRIMARY KEY,
    total_scans INTEGER NOT NULL,
    total_matches INTEGER NOT NULL,
    merged INTEGER NOT NULL,
    dismissed INTEGER NOT NULL,
    average_top_score REAL NOT NULL,
    threat_events_24h INTEGER NOT NULL,
    blocked_events_24h INTEGER NOT NULL,
    recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scan_runs_started_at ON scan_runs(started_at);
CREATE INDEX IF NOT EXISTS idx_scan_matches_match_id ON scan_matches(match_id);
CREATE INDEX IF NOT EXISTS idx_threat_events_created_at ON threat_events(created_at);
CREATE INDEX IF NOT EXISTS idx_threat_events_category ON threat_events(category);
CREATE INDEX IF NOT EXISTS idx_rate_limit_events_created_at ON rate_limit_events(created_at);
"""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class AuditSink:
    """sqlite-backed audit log shared by every component."""

    def __init__(
        self, database_path: str = "dataguard.db", timeout: float = 30.0, max_pending_writes: int = 10_000
    ) -> None:
        """
        Args:
            database_path: sqlite file, or ":memory:".
            timeout: Seconds to wait on a locked database.
            max_pending_writes: Deferred writes allowed in flight. Further writes are dropped with a warning.
        """
        self.database_path = database_path
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dataguard-audit")
        self.max_pending_writes = max_pending_writes
        self._pending = 0
        self._pending_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self.database_path, timeout=self.timeout, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")
            if self.database_path != ":memory:":
                # WAL mode allows concurrent readers while one writer is active
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
            self._conn = conn
        return self._conn

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            try:
                conn = self._connect()
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                if self._conn is not None:
                    try:
                        self._conn.rollback()
                    except sqlite3.Error:
                        pass
                raise PersistenceUnavailable(f"Audit sink unavailable: {e}") from e

    def ping(self) -> bool:
        """Returns True when the database answers a trivial query."""
        try:
            with self._transaction() as conn:
                conn.execute("SELECT 1")
            return True
        except PersistenceUnavailable:
            return False

    def defer(self, fn: Callable[..., Any], *args: Any) -> "Future[None]":
        """
        Runs a write on the background executor without waiting for it.

        Failures are logged and swallowed: deferred writes are audit
        records, never decisions. When `max_pending_writes` are already
        queued the write is dropped and an already completed future is
        returned.
        """
        name = getattr(fn, "__name__", fn)
        with self._pending_lock:
            if self._pending >= self.max_pending_writes:
                logger.warning(f"Audit write queue full ({self._pending} pending); dropping {name}")
                dropped: "Future[None]" = Future()
                dropped.set_result(None)
                return dropped
            self._pending += 1

        def _run() -> None:
            try:
                fn(*args)
            except PersistenceUnavailable as e:
                logger.error(f"Deferred audit write {name} failed: {e}")
            finally:
                with self._pending_lock:
                    self._pending -= 1

        try:
            return self._executor.submit(_run)
        except RuntimeError:
            with self._pending_lock:
                self._pending -= 1
            raise

    @property
    def pending_writes(self) -> int:
        with self._pending_lock:
            return self._pending

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # --- duplicate detection ---

    def record_scan(self, run: ScanRun, matches: List[SimilarityMatch]) -> None:
        top_score = max((m.score for m in matches), default=None)
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO scan_runs
                   (scan_id, entity_type_filter, threshold, limit_value, started_at, duration_ms,
                    match_count, truncated, top_score)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.scan_id,
                    run.entity_type_filter.value if run.entity_type_filter else None,
                    run.threshold,
                    run.limit,
                    _iso(run.started_at),
                    run.duration_ms,
                    run.match_count,
                    int(run.truncated),
                    top_score,
                ),
            )
            conn.executemany(
                "INSERT OR REPLACE INTO scan_matches (scan_id, match_id, payload, created_at) VALUES (?, ?, ?, ?)",
                [(run.scan_id, m.match_id, m.model_dump_json(), _iso(utc_now())) for m in matches],
            )

    def get_match(self, match_id: str) -> Optional[SimilarityMatch]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT payload FROM scan_matches WHERE match_id = ? ORDER BY created_at DESC LIMIT 1",
                (match_id,),
            ).fetchone()
        if row is None:
            return None
        return SimilarityMatch.model_validate_json(row["payload"])

    def list_scans(self, entity_type: Optional[EntityType] = None, limit: int = 50) -> List[ScanRun]:
        sql = "SELECT * FROM scan_runs"
        params: List[Any] = []
        if entity_type is not None:
            sql += " WHERE entity_type_filter = ?"
            params.append(entity_type.value)
        sql += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ScanRun(
                scan_id=row["scan_id"],
                entity_type_filter=row["entity_type_filter"],
                threshold=row["threshold"],
                limit=row["limit_value"],
                started_at=datetime.fromisoformat(row["started_at"]),
                duration_ms=row["duration_ms"],
                match_count=row["match_count"],
                truncated=bool(row["truncated"]),
            )
            for row in rows
        ]

    def record_resolution(self, decision: ResolutionDecision) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO resolutions
                   (content_hash, match_id, action, record_id_a, record_id_b, survivor_id, resolved_by, resolved_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    decision.content_hash,
                    decision.match_id,
                    decision.action.value,
                    decision.record_id_a,
                    decision.record_id_b,
                    decision.survivor_id,
                    decision.resolved_by,
                    _iso(decision.resolved_at),
                ),
            )

    def load_resolutions(self) -> List[ResolutionDecision]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM resolutions").fetchall()
        return [
            ResolutionDecision(
                match_id=row["match_id"],
                content_hash=row["content_hash"],
                action=row["action"],
                record_id_a=row["record_id_a"],
                record_id_b=row["record_id_b"],
                survivor_id=row["survivor_id"],
                resolved_by=row["resolved_by"],
                resolved_at=datetime.fromisoformat(row["resolved_at"]),
            )
            for row in rows
        ]

    def duplicate_stats(self) -> Dict[str, Any]:
        with self._transaction() as conn:
            scans = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(match_count), 0) AS matches, AVG(top_score) AS avg_top "
                "FROM scan_runs"
            ).fetchone()
            resolved = conn.execute(
                "SELECT "
                "COALESCE(SUM(CASE WHEN action = 'merge' THEN 1 ELSE 0 END), 0) AS merged, "
                "COALESCE(SUM(CASE WHEN action = 'dismiss' THEN 1 ELSE 0 END), 0) AS dismissed "
                "FROM resolutions"
            ).fetchone()
        return {
            "total_scans": scans["total"],
            "total_matches": scans["matches"],
            "merged": resolved["merged"],
            "dismissed": resolved["dismissed"],
            "average_top_score": scans["avg_top"] or 0.0,
        }

    # --- threats ---

    def record_threats(self, events: List[ThreatEvent]) -> None:
        if not events:
            return
        with self._transaction() as conn:
            conn.executemany(
                """INSERT INTO threat_events
                   (pattern, category, severity, field_name, truncated_input, ip, user_agent, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        e.pattern,
                        e.category.value,
                        e.severity.value,
                        e.field_name,
                        e.truncated_input,
                        e.ip,
                        e.user_agent,
                        _iso(e.timestamp),
                    )
                    for e in events
                ],
            )

    def list_threats(self, limit: int = 100, category: Optional[ThreatCategory] = None) -> List[ThreatEvent]:
        """Most recent threat findings first, optionally restricted to one category."""
        query = "SELECT * FROM threat_events"
        params: List[Any] = []
        if category is not None:
            query += " WHERE category = ?"
            params.append(category.value)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ThreatEvent(
                pattern=row["pattern"],
                category=row["category"],
                severity=row["severity"],
                field_name=row["field_name"],
                truncated_input=row["truncated_input"] or "",
                ip=row["ip"],
                user_agent=row["user_agent"],
                timestamp=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def count_threats(self, window: timedelta = timedelta(hours=24)) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM threat_events WHERE created_at > ?", (_iso(utc_now() - window),)
            ).fetchone()
        return int(row["total"])

    # --- quality snapshots ---

    def upsert_snapshot(self, snapshot: QualitySnapshot) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO quality_snapshots
                   (snapshot_date, total_scans, total_matches, merged, dismissed, average_top_score,
                    threat_events_24h, blocked_events_24h, recorded_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    snapshot.snapshot_date.isoformat(),
                    snapshot.total_scans,
                    snapshot.total_matches,
                    snapshot.merged,
                    snapshot.dismissed,
                    snapshot.average_top_score,
                    snapshot.threat_events_24h,
                    snapshot.blocked_events_24h,
                    _iso(snapshot.recorded_at),
                ),
            )

    def list_snapshots(self, since: date) -> List[QualitySnapshot]:
        """Snapshots dated strictly after `since`, newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM quality_snapshots WHERE snapshot_date > ? ORDER BY snapshot_date DESC",
                (since.isoformat(),),
            ).fetchall()
        return [
            QualitySnapshot(
                snapshot_date=date.fromisoformat(row["snapshot_date"]),
                total_scans=row["total_scans"],
                total_matches=row["total_matches"],
                merged=row["merged"],
                dismissed=row["dismissed"],
                average_top_score=row["average_top_score"],
                threat_events_24h=row["threat_events_24h"],
                blocked_events_24h=row["blocked_events_24h"],
                recorded_at=datetime.fromisoformat(row["recorded_at"]),
            )
            for row in rows
        ]

    # --- rate limiting ---

    def record_rate_limit_event(self, event: RateLimitEvent) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO rate_limit_events (ip, endpoint, request_count, blocked, blocked_until, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    event.ip,
                    event.endpoint,
                    event.request_count,
                    int(event.blocked),
                    _iso(event.blocked_until),
                    _iso(event.created_at),
                ),
            )

    def rate_limit_stats(self, window: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        since = _iso(utc_now() - window)
        with self._transaction() as conn:
            totals = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(blocked), 0) AS blocked "
                "FROM rate_limit_events WHERE created_at > ?",
                (since,),
            ).fetchone()
            top = conn.execute(
                "SELECT endpoint, SUM(request_count) AS count FROM rate_limit_events "
                "WHERE created_at > ? GROUP BY endpoint ORDER BY count DESC LIMIT 10",
                (since,),
            ).fetchall()
        return {
            "events_24h": totals["total"],
            "blocked_events_24h": totals["blocked"],
            "top_endpoints": [{"endpoint": row["endpoint"], "count": row["count"]} for row in top],
        }

    def upsert_block(self, identity: BlockedIdentity) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO blocked_identities (ip, reason, blocked_by, blocked_at, expires_at, is_active)
                   VALUES (?, ?, ?, ?, ?, 1)""",
                (
                    identity.ip,
                    identity.reason,
                    identity.blocked_by,
                    _iso(identity.blocked_at),
                    _iso(identity.expires_at),
                ),
            )

    def deactivate_block(self, ip: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("UPDATE blocked_identities SET is_active = 0 WHERE ip = ? AND is_active = 1", (ip,))
            return cursor.rowcount > 0

    def load_active_blocks(self) -> List[BlockedIdentity]:
        """Active blocks, expired ones included; expiry is evaluated at check time."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM blocked_identities WHERE is_active = 1 ORDER BY blocked_at DESC"
            ).fetchall()
        return [
            BlockedIdentity(
                ip=row["ip"],
                reason=row["reason"],
                blocked_by=row["blocked_by"],
                blocked_at=datetime.fromisoformat(row["blocked_at"]),
                expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
            )
            for row in rows
        ]

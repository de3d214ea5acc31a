"""SQLite durability store for validation results, jobs and audit logs.

All store operations catch ``aiosqlite.Error`` internally and degrade
gracefully: read failures return an empty value (treated as "no history" by
callers), write failures are logged and ignored. The in-memory cache stays
authoritative for freshness, so a missing write only costs historical
metrics. Errors are still logged with ``exc_info=True`` so they remain
observable via stderr.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from linkaudit.models.invalidation import InvalidationRecord

if TYPE_CHECKING:
    from datetime import date

    from linkaudit.models.jobs import AuditJob
    from linkaudit.models.links import ValidationResult

log = structlog.get_logger()

_CREATE_RESULTS_TABLE = """
CREATE TABLE IF NOT EXISTS validation_results (
    url             TEXT PRIMARY KEY,
    status          TEXT NOT NULL,
    status_code     INTEGER,
    redirect_target TEXT,
    error_detail    TEXT,
    latency_ms      REAL NOT NULL DEFAULT 0,
    checked_at      TEXT NOT NULL
)
"""

_CREATE_METRICS_TABLE = """
CREATE TABLE IF NOT EXISTS link_health_metrics (
    day                TEXT PRIMARY KEY,
    total_links        INTEGER NOT NULL,
    broken_links       INTEGER NOT NULL,
    health_score       REAL NOT NULL,
    average_latency_ms REAL NOT NULL DEFAULT 0
)
"""

_CREATE_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS audit_jobs (
    id           TEXT PRIMARY KEY,
    kind         TEXT NOT NULL,
    state        TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    started_at   TEXT,
    completed_at TEXT,
    priority     INTEGER NOT NULL,
    error        TEXT,
    metadata     TEXT NOT NULL DEFAULT '{}'
)
"""

_CREATE_SNAPSHOT_TABLE = """
CREATE TABLE IF NOT EXISTS cache_snapshots (
    id         TEXT PRIMARY KEY,
    data       TEXT NOT NULL,
    created_at TEXT NOT NULL
)
"""

_CREATE_INVALIDATION_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS cache_invalidation_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    event_kind          TEXT NOT NULL,
    source              TEXT NOT NULL,
    occurred_at         TEXT NOT NULL,
    affected_urls       TEXT NOT NULL DEFAULT '[]',
    rules_applied       TEXT NOT NULL DEFAULT '[]',
    entries_invalidated INTEGER NOT NULL DEFAULT 0,
    metadata            TEXT NOT NULL DEFAULT '{}'
)
"""

_CREATE_RESULTS_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_results_status ON validation_results(status, checked_at)"
)
_CREATE_LOG_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_invalidation_occurred ON cache_invalidation_log(occurred_at)"
)

_SNAPSHOT_ID = "current"


class SqliteStore:
    """aiosqlite-backed store implementing StoreProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_RESULTS_TABLE)
        await self._db.execute(_CREATE_METRICS_TABLE)
        await self._db.execute(_CREATE_JOBS_TABLE)
        await self._db.execute(_CREATE_SNAPSHOT_TABLE)
        await self._db.execute(_CREATE_INVALIDATION_LOG_TABLE)
        await self._db.execute(_CREATE_RESULTS_INDEX)
        await self._db.execute(_CREATE_LOG_INDEX)
        await self._db.commit()

    # ------------------------------------------------------------------
    # Validation results
    # ------------------------------------------------------------------

    async def upsert_validation_results(self, results: list[ValidationResult]) -> None:
        """Persist the latest result per URL. Non-fatal on failure."""
        if not results:
            return
        try:
            await self._db.executemany(
                "INSERT OR REPLACE INTO validation_results "
                "(url, status, status_code, redirect_target, error_detail, latency_ms, checked_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        r.url,
                        r.status.value,
                        r.status_code,
                        r.redirect_target,
                        r.error_detail,
                        r.latency_ms,
                        r.checked_at.isoformat(),
                    )
                    for r in results
                ],
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("store_write_error", table="validation_results", exc_info=True)

    async def list_broken_urls(self, limit: int) -> list[str]:
        """Most recently checked broken URLs. Empty on read failure."""
        try:
            cursor = await self._db.execute(
                "SELECT url FROM validation_results WHERE status = 'broken' "
                "ORDER BY checked_at DESC LIMIT ?",
                (limit,),
            )
            return [row[0] for row in await cursor.fetchall()]
        except aiosqlite.Error:
            log.warning("store_read_error", table="validation_results", exc_info=True)
            return []

    # ------------------------------------------------------------------
    # Health metrics
    # ------------------------------------------------------------------

    async def record_health_metrics(
        self,
        day: date,
        *,
        total_links: int,
        broken_links: int,
        health_score: float,
        average_latency_ms: float,
    ) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO link_health_metrics "
                "(day, total_links, broken_links, health_score, average_latency_ms) "
                "VALUES (?, ?, ?, ?, ?)",
                (day.isoformat(), total_links, broken_links, health_score, average_latency_ms),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("store_write_error", table="link_health_metrics", exc_info=True)

    async def latest_health_metrics(self, limit: int = 7) -> list[dict[str, Any]]:
        """Newest first. Empty on read failure."""
        try:
            cursor = await self._db.execute(
                "SELECT day, total_links, broken_links, health_score, average_latency_ms "
                "FROM link_health_metrics ORDER BY day DESC LIMIT ?",
                (limit,),
            )
            return [
                {
                    "day": row[0],
                    "total_links": row[1],
                    "broken_links": row[2],
                    "health_score": row[3],
                    "average_latency_ms": row[4],
                }
                for row in await cursor.fetchall()
            ]
        except aiosqlite.Error:
            log.warning("store_read_error", table="link_health_metrics", exc_info=True)
            return []

    # ------------------------------------------------------------------
    # Audit jobs
    # ------------------------------------------------------------------

    async def upsert_job(self, job: AuditJob) -> None:
        record = job.to_record()
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO audit_jobs "
                "(id, kind, state, scheduled_at, started_at, completed_at, priority, error, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record["id"],
                    record["kind"],
                    record["state"],
                    record["scheduled_at"],
                    record["started_at"],
                    record["completed_at"],
                    record["priority"],
                    record["error"],
                    json.dumps(record["metadata"], default=str),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("store_write_error", table="audit_jobs", job_id=job.id, exc_info=True)

    async def get_job_record(self, job_id: str) -> dict[str, Any] | None:
        try:
            cursor = await self._db.execute(
                "SELECT id, kind, state, error FROM audit_jobs WHERE id = ?", (job_id,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error:
            log.warning("store_read_error", table="audit_jobs", job_id=job_id, exc_info=True)
            return None
        if row is None:
            return None
        return {"id": row[0], "kind": row[1], "state": row[2], "error": row[3]}

    # ------------------------------------------------------------------
    # Cache snapshots
    # ------------------------------------------------------------------

    async def save_cache_snapshot(self, blob: str) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO cache_snapshots (id, data, created_at) VALUES (?, ?, ?)",
                (_SNAPSHOT_ID, blob, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("store_write_error", table="cache_snapshots", exc_info=True)

    async def load_cache_snapshot(self) -> str | None:
        try:
            cursor = await self._db.execute(
                "SELECT data FROM cache_snapshots WHERE id = ?", (_SNAPSHOT_ID,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error:
            log.warning("store_read_error", table="cache_snapshots", exc_info=True)
            return None
        return row[0] if row is not None else None

    # ------------------------------------------------------------------
    # Invalidation audit log
    # ------------------------------------------------------------------

    async def append_invalidation_record(self, record: InvalidationRecord) -> None:
        try:
            await self._db.execute(
                "INSERT INTO cache_invalidation_log "
                "(event_kind, source, occurred_at, affected_urls, rules_applied, "
                "entries_invalidated, metadata) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.event_kind.value,
                    record.source,
                    record.occurred_at.isoformat(),
                    json.dumps(record.affected_urls),
                    json.dumps(record.rules_applied),
                    record.entries_invalidated,
                    json.dumps(record.metadata, default=str),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("store_write_error", table="cache_invalidation_log", exc_info=True)

    async def list_invalidation_records(self, since: datetime) -> list[InvalidationRecord]:
        try:
            cursor = await self._db.execute(
                "SELECT event_kind, source, occurred_at, affected_urls, rules_applied, "
                "entries_invalidated, metadata FROM cache_invalidation_log "
                "WHERE occurred_at >= ? ORDER BY id",
                (since.isoformat(),),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error:
            log.warning("store_read_error", table="cache_invalidation_log", exc_info=True)
            return []

        return [
            InvalidationRecord(
                event_kind=row[0],
                source=row[1],
                occurred_at=datetime.fromisoformat(row[2]),
                affected_urls=json.loads(row[3]),
                rules_applied=json.loads(row[4]),
                entries_invalidated=row[5],
                metadata=json.loads(row[6]),
            )
            for row in rows
        ]

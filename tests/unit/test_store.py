"""Unit tests for linkaudit.store.SqliteStore."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import aiosqlite

from linkaudit.models.invalidation import EventKind, InvalidationRecord
from linkaudit.models.jobs import AuditJob, JobKind, JobState
from linkaudit.models.links import LinkStatus, ValidationResult
from linkaudit.store import SqliteStore

if TYPE_CHECKING:
    from conftest import FakeClock

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


def _result(url: str, status: LinkStatus, checked_at: datetime = T0) -> ValidationResult:
    return ValidationResult(url=url, status=status, checked_at=checked_at)


def _broken_db() -> MagicMock:
    db = MagicMock()
    db.execute = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))
    db.executemany = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))
    db.commit = AsyncMock()
    return db


class TestValidationResults:
    async def test_latest_result_per_url_wins(self, store: SqliteStore) -> None:
        await store.upsert_validation_results([_result("https://a.example/", LinkStatus.BROKEN)])
        await store.upsert_validation_results(
            [_result("https://a.example/", LinkStatus.VALID, T0 + timedelta(hours=1))]
        )

        assert await store.list_broken_urls(10) == []

    async def test_broken_urls_newest_first_and_limited(self, store: SqliteStore) -> None:
        await store.upsert_validation_results(
            [
                _result("https://old.example/", LinkStatus.BROKEN, T0),
                _result("https://new.example/", LinkStatus.BROKEN, T0 + timedelta(hours=2)),
                _result("https://mid.example/", LinkStatus.BROKEN, T0 + timedelta(hours=1)),
                _result("https://ok.example/", LinkStatus.VALID, T0 + timedelta(hours=3)),
            ]
        )

        assert await store.list_broken_urls(2) == ["https://new.example/", "https://mid.example/"]

    async def test_empty_upsert_is_a_no_op(self, store: SqliteStore) -> None:
        await store.upsert_validation_results([])
        assert await store.list_broken_urls(10) == []


class TestHealthMetrics:
    async def test_one_row_per_day_newest_first(self, store: SqliteStore) -> None:
        for day, score in ((date(2026, 1, 3), 90.0), (date(2026, 1, 4), 95.0)):
            await store.record_health_metrics(
                day, total_links=10, broken_links=1, health_score=score, average_latency_ms=50.0
            )
        await store.record_health_metrics(
            date(2026, 1, 4), total_links=12, broken_links=0, health_score=100.0, average_latency_ms=40.0
        )

        rows = await store.latest_health_metrics(7)

        assert [row["day"] for row in rows] == ["2026-01-04", "2026-01-03"]
        assert rows[0]["health_score"] == 100.0
        assert rows[0]["total_links"] == 12


class TestJobs:
    async def test_upsert_tracks_state_changes(self, store: SqliteStore) -> None:
        job = AuditJob(id="audit-1", kind=JobKind.FULL_AUDIT, scheduled_at=T0, priority=5)
        await store.upsert_job(job)
        assert (await store.get_job_record("audit-1"))["state"] == "pending"

        job.state = JobState.FAILED
        job.error = "Timeout exceeded"
        job.metadata["result"] = {"at": T0}
        await store.upsert_job(job)

        assert await store.get_job_record("audit-1") == {
            "id": "audit-1",
            "kind": "full_audit",
            "state": "failed",
            "error": "Timeout exceeded",
        }

    async def test_unknown_job(self, store: SqliteStore) -> None:
        assert await store.get_job_record("nope") is None


class TestCacheSnapshots:
    async def test_save_overwrites_single_snapshot(self, store: SqliteStore) -> None:
        assert await store.load_cache_snapshot() is None
        await store.save_cache_snapshot('{"v": 1}')
        await store.save_cache_snapshot('{"v": 2}')
        assert await store.load_cache_snapshot() == '{"v": 2}'


class TestInvalidationLog:
    async def test_append_and_list_since(self, store: SqliteStore, clock: FakeClock) -> None:
        old = InvalidationRecord(
            event_kind=EventKind.MANUAL,
            source="api",
            occurred_at=clock() - timedelta(days=10),
            affected_urls=["https://a.example/"],
            entries_invalidated=1,
        )
        recent = InvalidationRecord(
            event_kind=EventKind.DEPLOYMENT,
            source="deployment",
            occurred_at=clock(),
            rules_applied=[r"/sitemap.*\.xml$"],
            entries_invalidated=3,
            metadata={"trigger": "deployment_hook"},
        )
        await store.append_invalidation_record(old)
        await store.append_invalidation_record(recent)

        records = await store.list_invalidation_records(clock() - timedelta(days=7))

        assert records == [recent]


class TestErrorsAreSwallowed:
    async def test_reads_return_empty(self) -> None:
        store = SqliteStore(_broken_db())

        assert await store.list_broken_urls(10) == []
        assert await store.latest_health_metrics() == []
        assert await store.get_job_record("audit-1") is None
        assert await store.load_cache_snapshot() is None
        assert await store.list_invalidation_records(T0) == []

    async def test_writes_do_not_raise(self) -> None:
        store = SqliteStore(_broken_db())

        await store.upsert_validation_results([_result("https://a.example/", LinkStatus.VALID)])
        await store.record_health_metrics(
            date(2026, 1, 5), total_links=1, broken_links=0, health_score=100, average_latency_ms=1
        )
        await store.upsert_job(
            AuditJob(id="audit-1", kind=JobKind.FULL_AUDIT, scheduled_at=T0, priority=5)
        )
        await store.save_cache_snapshot("{}")
        await store.append_invalidation_record(
            InvalidationRecord(event_kind=EventKind.MANUAL, source="api", occurred_at=T0)
        )

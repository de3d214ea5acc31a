"""Shared test fixtures for the linkaudit test suite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import aiosqlite
import pytest

from linkaudit.cache import TTLCache
from linkaudit.config import Settings
from linkaudit.models.links import LinkKind, LinkStatus, ValidationResult
from linkaudit.store import SqliteStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

# Monday 12:00 UTC
START = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingProber:
    """Prober double that records calls and answers from a status table.

    ``events`` may be shared with other doubles to assert interleaving.
    ``report_url`` rewrites the URL carried on the returned result.
    """

    def __init__(
        self,
        statuses: dict[str, LinkStatus] | None = None,
        *,
        failing: set[str] | None = None,
        events: list[tuple[str, object]] | None = None,
        report_url: Callable[[str], str] | None = None,
    ) -> None:
        self.statuses = statuses or {}
        self.failing = failing or set()
        self.calls: list[tuple[str, LinkKind]] = []
        self.events = events if events is not None else []
        self.report_url = report_url

    async def probe(self, url: str, kind: LinkKind = LinkKind.EXTERNAL) -> ValidationResult:
        self.calls.append((url, kind))
        self.events.append(("probe", url))
        if url in self.failing:
            raise RuntimeError(f"prober exploded on {url}")
        status = self.statuses.get(url, LinkStatus.VALID)
        return ValidationResult(
            url=self.report_url(url) if self.report_url else url,
            status=status,
            status_code=200 if status is LinkStatus.VALID else 404,
            error_detail=None if status is LinkStatus.VALID else "HTTP 404",
            latency_ms=12.5,
            checked_at=START,
        )

    @property
    def urls(self) -> list[str]:
        return [url for url, _ in self.calls]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        cache={"db_path": ":memory:"},
        validation={"batch_size": 2, "rate_limit_delay": 0.5, "retry_attempts": 3},
        site={"base_url": "https://example.com", "routes": ["/", "/about"]},
    )


@pytest.fixture()
async def db() -> AsyncGenerator[aiosqlite.Connection, None]:
    async with aiosqlite.connect(":memory:") as conn:
        yield conn


@pytest.fixture()
async def store(db: aiosqlite.Connection) -> SqliteStore:
    sqlite_store = SqliteStore(db)
    await sqlite_store.init_db()
    return sqlite_store


@pytest.fixture()
def cache(settings: Settings, clock: FakeClock) -> TTLCache:
    return TTLCache(settings.cache, clock=clock)


@pytest.fixture()
def prober_factory() -> type[RecordingProber]:
    return RecordingProber

"""Protocol interfaces for swappable collaborators.

Components and AppState reference these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight in-memory probers and reporters
- Other backends (e.g. a Postgres store) to be swapped without changing the core
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import date, datetime

    from linkaudit.models.cache import SitemapSnapshot
    from linkaudit.models.invalidation import InvalidationRecord
    from linkaudit.models.jobs import AuditJob, JobOutcome
    from linkaudit.models.links import LinkKind, ScannedLink, ValidationResult

    Clock = Callable[[], datetime]


class ProberProtocol(Protocol):
    """Decides whether one link is healthy. Retries are the prober's job."""

    async def probe(self, url: str, kind: LinkKind = ...) -> ValidationResult: ...


class StoreProtocol(Protocol):
    """Durable storage for results, jobs, snapshots and the invalidation log.

    Used for crash recovery and reporting only. The cache decides freshness.
    """

    async def upsert_validation_results(self, results: list[ValidationResult]) -> None: ...

    async def list_broken_urls(self, limit: int) -> list[str]: ...

    async def record_health_metrics(
        self,
        day: date,
        *,
        total_links: int,
        broken_links: int,
        health_score: float,
        average_latency_ms: float,
    ) -> None: ...

    async def latest_health_metrics(self, limit: int = 7) -> list[dict[str, Any]]: ...

    async def upsert_job(self, job: AuditJob) -> None: ...

    async def save_cache_snapshot(self, blob: str) -> None: ...

    async def load_cache_snapshot(self) -> str | None: ...

    async def append_invalidation_record(self, record: InvalidationRecord) -> None: ...

    async def list_invalidation_records(self, since: datetime) -> list[InvalidationRecord]: ...


class SitemapFetcherProtocol(Protocol):
    async def fetch(self, sitemap_url: str, *, force: bool = False) -> SitemapSnapshot: ...


class LinkSourceProtocol(Protocol):
    """Supplies the links a full audit should check."""

    async def collect(self) -> list[ScannedLink]: ...


class ReporterProtocol(Protocol):
    """Alerting and reporting collaborator invoked by scheduled jobs."""

    async def analyze_alerts(self, job: AuditJob) -> JobOutcome: ...

    async def weekly_report(self, job: AuditJob) -> JobOutcome: ...

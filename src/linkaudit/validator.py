"""Batch validation: cache-first, kind-routed, rate-limited link checking.

A batch is resolved in four steps:

1. Fresh results in the ``links`` cache namespace are returned as-is.
2. The rest are split into external links and local links (internal routes,
   downloads, anchors).
3. Local links are probed in bounded parallel batches; they are cheap and
   have no remote rate limit.
4. External links go through one FIFO RateLimitedQueue that runs
   ``batch_size`` probes at a time and sleeps ``rate_limit_delay`` between
   batches.

Every fresh result is written back to the cache and persisted through the
store. A probe failure never aborts the batch; it becomes a ``broken``
result. Store failures are logged and swallowed.
"""

from __future__ import annotations

import asyncio
from collections import deque
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Generic, TypeVar
from urllib.parse import urlparse

import structlog

from linkaudit.cache import link_key
from linkaudit.clock import utc_now
from linkaudit.errors import ProbeError
from linkaudit.models.cache import AuditReport, CacheNamespace
from linkaudit.models.links import (
    PRIORITY_RANK,
    LinkKind,
    LinkPriority,
    LinkStatus,
    ScannedLink,
    ValidationResult,
    ValidationStats,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from linkaudit.cache import TTLCache
    from linkaudit.config import ValidationSettings
    from linkaudit.protocols import Clock, ProberProtocol, StoreProtocol

log = structlog.get_logger()

T = TypeVar("T")

DOWNLOAD_SUFFIXES = frozenset(
    {".pdf", ".zip", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".csv", ".epub"}
)

_URGENT_PRIORITIES = frozenset({LinkPriority.CRITICAL, LinkPriority.HIGH})


def infer_link_kind(url: str, site_host: str | None = None) -> LinkKind:
    """Best-effort kind for a bare URL, used when re-checking stored results."""
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https") and parsed.hostname != site_host:
        return LinkKind.EXTERNAL
    if parsed.fragment:
        return LinkKind.ANCHOR
    if PurePosixPath(parsed.path).suffix.lower() in DOWNLOAD_SUFFIXES:
        return LinkKind.DOWNLOAD
    return LinkKind.INTERNAL


def summarize_results(
    results: list[ValidationResult], kind: str, clock: Clock = utc_now
) -> AuditReport:
    """Aggregate results into an AuditReport (health score 0-100)."""
    counts = {status: 0 for status in LinkStatus}
    critical: list[ValidationResult] = []
    for result in results:
        counts[result.status] += 1
        if result.status in (LinkStatus.BROKEN, LinkStatus.TIMEOUT):
            critical.append(result)

    total = len(results)
    return AuditReport(
        kind=kind,
        generated_at=clock(),
        total=total,
        valid=counts[LinkStatus.VALID],
        broken=counts[LinkStatus.BROKEN],
        redirects=counts[LinkStatus.REDIRECT],
        timeouts=counts[LinkStatus.TIMEOUT],
        health_score=round(counts[LinkStatus.VALID] / total * 100) if total else 100,
        critical_issues=critical,
    )


class RateLimitedQueue(Generic[T]):
    """FIFO work queue drained in fixed-size parallel batches.

    One drainer runs at a time. Each drain step pops up to ``batch_size``
    tasks in submission order, awaits them all, then sleeps ``delay``
    seconds if more work is waiting.
    """

    def __init__(self, batch_size: int, delay_seconds: float) -> None:
        self._batch_size = batch_size
        self._delay = delay_seconds
        self._pending: deque[tuple[Callable[[], Awaitable[T]], asyncio.Future[T]]] = deque()
        self._drainer: asyncio.Task[None] | None = None
        self.batches_drained = 0

    def __len__(self) -> int:
        return len(self._pending)

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        results = await self.submit_many([task])
        return results[0]

    async def submit_many(self, tasks: list[Callable[[], Awaitable[T]]]) -> list[T]:
        """Enqueue ``tasks`` together and wait for all of their results."""
        loop = asyncio.get_running_loop()
        futures: list[asyncio.Future[T]] = []
        for task in tasks:
            future: asyncio.Future[T] = loop.create_future()
            self._pending.append((task, future))
            futures.append(future)

        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.create_task(self._drain())
        return list(await asyncio.gather(*futures))

    async def _drain(self) -> None:
        while self._pending:
            size = min(self._batch_size, len(self._pending))
            batch = [self._pending.popleft() for _ in range(size)]
            self.batches_drained += 1
            log.debug("rate_limit_batch_started", size=size, remaining=len(self._pending))
            await asyncio.gather(*(self._run(task, future) for task, future in batch))

            if self._pending:
                await asyncio.sleep(self._delay)

    @staticmethod
    async def _run(task: Callable[[], Awaitable[T]], future: asyncio.Future[T]) -> None:
        try:
            result = await task()
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
            return
        if not future.done():
            future.set_result(result)


class BatchValidator:
    """Turns a list of ScannedLinks into ValidationResults."""

    def __init__(
        self,
        cache: TTLCache,
        external_prober: ProberProtocol,
        local_prober: ProberProtocol,
        store: StoreProtocol,
        settings: ValidationSettings,
        *,
        site_host: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._cache = cache
        self._external_prober = external_prober
        self._local_prober = local_prober
        self._store = store
        self._settings = settings
        self._site_host = site_host
        self._clock = clock
        self._queue: RateLimitedQueue[ValidationResult] = RateLimitedQueue(
            batch_size=settings.batch_size,
            delay_seconds=settings.rate_limit_delay.total_seconds(),
        )
        self._stats = ValidationStats()

    @property
    def external_queue(self) -> RateLimitedQueue[ValidationResult]:
        return self._queue

    def get_stats(self) -> ValidationStats:
        return self._stats.model_copy()

    async def validate_batch(self, links: list[ScannedLink]) -> list[ValidationResult]:
        """Validate ``links``; returns one result per input link, in input order."""
        self._stats = ValidationStats()
        cached, external, local = self._categorize(links)
        log.info(
            "batch_validation_started",
            total=len(links),
            cached=len(cached),
            external=len(external),
            local=len(local),
        )

        # Keyed by the requested URL; a prober may report a normalised one.
        fresh: dict[str, ValidationResult] = {}
        if local:
            local_results = await self._process_local(local)
            fresh.update(zip((link.url for link in local), local_results, strict=True))
        if external:
            external_results = await self._process_external(external)
            fresh.update(zip((link.url for link in external), external_results, strict=True))

        results = {**cached, **fresh}
        await self._write_back(fresh)
        await self._save_metrics()

        log.info("batch_validation_completed", **self._stats.model_dump())
        return [results[link.url] for link in links]

    async def validate_with_priority(self, links: list[ScannedLink]) -> list[ValidationResult]:
        """Fully validate critical/high links before starting medium/low ones."""
        ordered = sorted(links, key=lambda link: PRIORITY_RANK[link.priority])
        urgent = [link for link in ordered if link.priority in _URGENT_PRIORITIES]
        normal = [link for link in ordered if link.priority not in _URGENT_PRIORITIES]

        results: list[ValidationResult] = []
        if urgent:
            log.info("priority_validation_started", tier="critical_high", count=len(urgent))
            results.extend(await self.validate_batch(urgent))
        if normal:
            log.info("priority_validation_started", tier="medium_low", count=len(normal))
            results.extend(await self.validate_batch(normal))
        return results

    async def refresh_url(self, url: str, kind: LinkKind | None = None) -> ValidationResult:
        """Re-probe one URL, bypassing the cache, and write the result back.

        Raises ProbeError if the prober itself fails, so callers can retry.
        """
        kind = kind or infer_link_kind(url, self._site_host)
        self._cache.invalidate(CacheNamespace.LINKS, link_key(url))
        prober = self._external_prober if kind is LinkKind.EXTERNAL else self._local_prober
        try:
            result = await prober.probe(url, kind)
        except Exception as exc:
            raise ProbeError(url, str(exc) or type(exc).__name__) from exc
        await self._write_back({url: result})
        return result

    async def recheck_broken(self, limit: int = 10) -> list[ValidationResult]:
        """Re-validate the URLs most recently recorded as broken."""
        try:
            urls = await self._store.list_broken_urls(limit)
        except Exception:
            log.warning("store_read_failed", operation="list_broken_urls", exc_info=True)
            return []
        if not urls:
            return []

        for url in urls:
            self._cache.invalidate(CacheNamespace.LINKS, link_key(url))
        links = [
            ScannedLink(
                url=url,
                source_location="store:broken",
                link_kind=infer_link_kind(url, self._site_host),
                priority=LinkPriority.HIGH,
                context="quick_check",
            )
            for url in urls
        ]
        return await self.validate_batch(links)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _categorize(
        self, links: list[ScannedLink]
    ) -> tuple[dict[str, ValidationResult], list[ScannedLink], list[ScannedLink]]:
        cached: dict[str, ValidationResult] = {}
        external: list[ScannedLink] = []
        local: list[ScannedLink] = []
        seen: set[str] = set()

        for link in links:
            if link.url in seen:
                continue
            seen.add(link.url)

            hit = self._cache.get(CacheNamespace.LINKS, link_key(link.url))
            if hit is not None:
                cached[link.url] = hit
                self._stats.cache_hits += 1
                continue

            if link.link_kind is LinkKind.EXTERNAL:
                external.append(link)
            else:
                local.append(link)

        return cached, external, local

    async def _process_local(self, links: list[ScannedLink]) -> list[ValidationResult]:
        batch_size = self._settings.local_batch_size
        results: list[ValidationResult] = []
        for start in range(0, len(links), batch_size):
            batch = links[start : start + batch_size]
            results.extend(
                await asyncio.gather(*(self._probe(self._local_prober, link) for link in batch))
            )
            log.debug("local_links_processed", done=len(results), total=len(links))
        return results

    async def _process_external(self, links: list[ScannedLink]) -> list[ValidationResult]:
        return await self._queue.submit_many(
            [self._probe_task(self._external_prober, link) for link in links]
        )

    def _probe_task(
        self, prober: ProberProtocol, link: ScannedLink
    ) -> Callable[[], Awaitable[ValidationResult]]:
        async def task() -> ValidationResult:
            return await self._probe(prober, link)

        return task

    async def _probe(self, prober: ProberProtocol, link: ScannedLink) -> ValidationResult:
        try:
            result = await prober.probe(link.url, link.link_kind)
        except Exception as exc:
            log.warning("probe_error", url=link.url, kind=link.link_kind, error=str(exc))
            self._stats.errors += 1
            result = ValidationResult(
                url=link.url,
                status=LinkStatus.BROKEN,
                error_detail=str(exc) or type(exc).__name__,
                latency_ms=0.0,
                checked_at=self._clock(),
            )
        self._stats.record(result)
        return result

    async def _write_back(self, results: dict[str, ValidationResult]) -> None:
        if not results:
            return
        await self._cache.set_many(
            CacheNamespace.LINKS, {link_key(url): result for url, result in results.items()}
        )
        try:
            await self._store.upsert_validation_results(list(results.values()))
        except Exception:
            log.warning("store_write_failed", operation="upsert_validation_results", exc_info=True)

    async def _save_metrics(self) -> None:
        stats = self._stats
        if stats.total_processed == 0:
            return
        metrics: dict[str, Any] = {
            "total_links": stats.total_processed,
            "broken_links": stats.broken,
            "health_score": stats.health_score,
            "average_latency_ms": stats.average_latency_ms,
        }
        try:
            await self._store.record_health_metrics(self._clock().date(), **metrics)
        except Exception:
            log.warning("store_write_failed", operation="record_health_metrics", exc_info=True)

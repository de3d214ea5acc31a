"""Rule-driven cache invalidation with a prioritized refresh queue.

An InvalidationEvent is matched against the rule table (by its ``source``
and by each affected URL). Matched rules are grouped by namespace and every
matched pattern is applied to that namespace. A failure in one namespace is
recorded in the outcome and the remaining namespaces are still processed.

Affected URLs are then queued for refresh with a strategy chosen by event
kind. The queue drains in batches of ``REFRESH_BATCH_SIZE`` with a pause
between batches. Each URL is retried with ``2 ** attempt`` second backoff
before being logged as a permanent failure.

Every event and manual action is appended to the store's invalidation log.
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import structlog

from linkaudit.clock import utc_now
from linkaudit.models.cache import CacheNamespace
from linkaudit.models.invalidation import (
    REFRESH_PRIORITY_RANK,
    EventKind,
    InvalidationEvent,
    InvalidationOutcome,
    InvalidationRecord,
    InvalidationRule,
    InvalidationStats,
    RefreshPriority,
    RefreshStrategy,
)
from linkaudit.models.links import PRIORITY_RANK, LinkPriority

if TYPE_CHECKING:
    from linkaudit.cache import TTLCache
    from linkaudit.protocols import Clock, SitemapFetcherProtocol, StoreProtocol
    from linkaudit.validator import BatchValidator

log = structlog.get_logger()

REFRESH_BATCH_SIZE = 10
REFRESH_BATCH_PAUSE_SECONDS = 1.0

_ALL_NAMESPACES = frozenset(CacheNamespace)

REFRESH_STRATEGIES: dict[EventKind, RefreshStrategy] = {
    EventKind.DEPLOYMENT: RefreshStrategy(
        immediate=True, batch_size=10, priority=RefreshPriority.URGENT, retry_attempts=3
    ),
    EventKind.CONTENT_CHANGE: RefreshStrategy(
        immediate=False, batch_size=5, priority=RefreshPriority.NORMAL, retry_attempts=2
    ),
    EventKind.ERROR_RECOVERY: RefreshStrategy(
        immediate=True, batch_size=3, priority=RefreshPriority.URGENT, retry_attempts=5
    ),
}
DEFAULT_REFRESH_STRATEGY = RefreshStrategy(
    immediate=False, batch_size=10, priority=RefreshPriority.BACKGROUND, retry_attempts=1
)
FORCE_REFRESH_STRATEGY = RefreshStrategy(
    immediate=True, batch_size=5, priority=RefreshPriority.URGENT, retry_attempts=2
)


def refresh_strategy_for(kind: EventKind) -> RefreshStrategy:
    return REFRESH_STRATEGIES.get(kind, DEFAULT_REFRESH_STRATEGY)


def default_rules(base_url: str) -> list[InvalidationRule]:
    """Built-in rules, most urgent first. The homepage rule follows ``base_url``."""
    host = urlparse(base_url).hostname or base_url
    return [
        InvalidationRule(
            url_pattern=re.compile(rf"^https?://{re.escape(host)}(:\d+)?/?$"),
            namespaces=_ALL_NAMESPACES,
            reason="Homepage content change",
            priority=LinkPriority.CRITICAL,
        ),
        InvalidationRule(
            url_pattern=re.compile(r"/sitemap.*\.xml$"),
            namespaces=frozenset({CacheNamespace.SITEMAP}),
            reason="Sitemap file change",
            priority=LinkPriority.HIGH,
        ),
        InvalidationRule(
            url_pattern=re.compile(r"\.(html|tsx?|jsx?|md)$"),
            namespaces=frozenset({CacheNamespace.LINKS}),
            reason="Page content change",
            priority=LinkPriority.MEDIUM,
        ),
        InvalidationRule(
            url_pattern=re.compile(r"/api/(audit|admin)"),
            namespaces=frozenset({CacheNamespace.REPORTS}),
            reason="Audit data change",
            priority=LinkPriority.MEDIUM,
        ),
    ]


class InvalidationManager:
    def __init__(
        self,
        cache: TTLCache,
        validator: BatchValidator,
        sitemap_fetcher: SitemapFetcherProtocol,
        store: StoreProtocol,
        *,
        base_url: str,
        clock: Clock = utc_now,
    ) -> None:
        self._cache = cache
        self._validator = validator
        self._sitemap_fetcher = sitemap_fetcher
        self._store = store
        self._clock = clock
        self._rules: list[InvalidationRule] = default_rules(base_url)
        self._refresh_queue: list[tuple[str, RefreshStrategy]] = []
        self._refreshing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._drain_task: asyncio.Task[None] | None = None
        self.refreshed = 0
        self.refresh_failures = 0

    # ------------------------------------------------------------------
    # Rule table
    # ------------------------------------------------------------------

    @property
    def rules(self) -> list[InvalidationRule]:
        return list(self._rules)

    def add_rule(self, rule: InvalidationRule) -> None:
        self._rules.append(rule)
        self._rules.sort(key=lambda r: PRIORITY_RANK[r.priority])

    def remove_rule(self, pattern: re.Pattern[str] | str) -> bool:
        source = pattern if isinstance(pattern, str) else pattern.pattern
        before = len(self._rules)
        self._rules = [rule for rule in self._rules if rule.url_pattern.pattern != source]
        return len(self._rules) < before

    @property
    def pending_refreshes(self) -> int:
        return len(self._refresh_queue)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def process_event(self, event: InvalidationEvent) -> InvalidationOutcome:
        log.info("invalidation_event_received", kind=event.kind, source=event.source)
        rules = self._applicable_rules(event)
        outcome = InvalidationOutcome(
            event=event, rules_applied=[rule.url_pattern.pattern for rule in rules]
        )
        if not rules:
            log.info("invalidation_no_rules_matched", kind=event.kind, source=event.source)
            return outcome

        for namespace, patterns in self._group_by_namespace(rules).items():
            try:
                count = sum(
                    self._cache.invalidate_by_pattern(pattern, namespace) for pattern in patterns
                )
            except Exception as exc:
                log.warning(
                    "invalidation_namespace_failed",
                    namespace=namespace,
                    error=str(exc),
                    exc_info=True,
                )
                outcome.errors_by_namespace[namespace] = str(exc) or type(exc).__name__
                continue
            outcome.invalidated_by_namespace[namespace] = count

        await self._record(
            event, entries_invalidated=outcome.total_invalidated, rules=outcome.rules_applied
        )

        if event.affected_urls:
            await self.schedule_refresh(list(event.affected_urls), refresh_strategy_for(event.kind))

        log.info(
            "invalidation_complete",
            kind=event.kind,
            invalidated=outcome.total_invalidated,
            failed_namespaces=sorted(outcome.errors_by_namespace),
        )
        return outcome

    async def invalidate_url(
        self, url: str, namespaces: list[CacheNamespace] | None = None
    ) -> bool:
        """Drop ``url`` from the given namespaces (all by default)."""
        removed = sum(
            self._cache.invalidate(namespace, url)
            for namespace in namespaces or list(CacheNamespace)
        )

        if removed:
            event = InvalidationEvent(
                kind=EventKind.MANUAL,
                source="api",
                occurred_at=self._clock(),
                affected_urls=(url,),
            )
            await self._record(event, entries_invalidated=removed)
        return removed > 0

    async def invalidate_domain(self, domain: str) -> int:
        pattern = re.compile(rf"^https?://{re.escape(domain)}")
        invalidated = self._cache.invalidate_by_pattern(pattern)
        event = InvalidationEvent(
            kind=EventKind.MANUAL,
            source="admin",
            occurred_at=self._clock(),
            metadata={"domain": domain},
        )
        await self._record(event, entries_invalidated=invalidated)
        log.info("domain_invalidated", domain=domain, invalidated=invalidated)
        return invalidated

    async def invalidate_manually(
        self, patterns: list[str], namespaces: list[CacheNamespace], reason: str
    ) -> int:
        """Apply raw regex ``patterns`` to each of ``namespaces``.

        Raises ``re.error`` for an invalid pattern before anything is dropped.
        """
        compiled = [re.compile(pattern) for pattern in patterns]
        invalidated = sum(
            self._cache.invalidate_by_pattern(pattern, namespace)
            for namespace in namespaces
            for pattern in compiled
        )
        event = InvalidationEvent(
            kind=EventKind.MANUAL,
            source="admin",
            occurred_at=self._clock(),
            metadata={"reason": reason, "patterns": patterns},
        )
        await self._record(event, entries_invalidated=invalidated)
        return invalidated

    async def refresh_expired(self) -> int:
        """Sweep expired entries and log the sweep when anything was cleared."""
        cleared = self._cache.clear_expired()
        if cleared:
            log.info("cache_expired_cleared", cleared=cleared)
            event = InvalidationEvent(
                kind=EventKind.SCHEDULED,
                source="system",
                occurred_at=self._clock(),
                metadata={"cleared_count": cleared, "reason": "TTL expiration"},
            )
            await self._record(event, entries_invalidated=cleared)
        return cleared

    async def get_invalidation_stats(self, days: int = 7) -> InvalidationStats:
        since = self._clock() - timedelta(days=days)
        try:
            records = await self._store.list_invalidation_records(since)
        except Exception:
            log.warning("store_read_failed", operation="list_invalidation_records", exc_info=True)
            records = []

        by_kind: dict[str, int] = {}
        total_entries = 0
        for record in records:
            by_kind[record.event_kind.value] = by_kind.get(record.event_kind.value, 0) + 1
            total_entries += record.entries_invalidated

        return InvalidationStats(
            days=days,
            total_events=len(records),
            total_entries_invalidated=total_entries,
            events_by_kind=by_kind,
            average_entries_per_event=round(total_entries / len(records)) if records else 0,
        )

    # ------------------------------------------------------------------
    # Refresh queue
    # ------------------------------------------------------------------

    async def schedule_refresh(self, urls: list[str], strategy: RefreshStrategy) -> None:
        """Queue ``urls`` for refresh.

        Immediate strategies drain the queue before returning. Deferred ones
        drain in a background task; ``wait_for_refresh`` joins it.
        """
        self._refresh_queue.extend((url, strategy) for url in urls)
        self._refresh_queue.sort(key=lambda item: REFRESH_PRIORITY_RANK[item[1].priority])
        log.debug(
            "refresh_scheduled",
            count=len(urls),
            priority=strategy.priority,
            queued=len(self._refresh_queue),
        )

        if self._refreshing:
            return
        if strategy.immediate:
            await self._drain_refresh_queue()
        elif self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_refresh_queue())

    async def force_refresh(self, urls: list[str]) -> None:
        await self.schedule_refresh(urls, FORCE_REFRESH_STRATEGY)

    async def wait_for_refresh(self) -> None:
        """Return once the refresh queue is empty and no drain is running."""
        while True:
            if self._drain_task is not None and not self._drain_task.done():
                await self._drain_task
            elif self._refresh_queue and not self._refreshing:
                self._drain_task = asyncio.create_task(self._drain_refresh_queue())
            elif self._refreshing:
                # An inline drain owned by another caller.
                await self._idle.wait()
            else:
                return

    async def _drain_refresh_queue(self) -> None:
        if self._refreshing or not self._refresh_queue:
            return
        self._refreshing = True
        self._idle.clear()
        log.info("refresh_queue_started", queued=len(self._refresh_queue))
        try:
            while self._refresh_queue:
                batch = self._refresh_queue[:REFRESH_BATCH_SIZE]
                del self._refresh_queue[:REFRESH_BATCH_SIZE]
                await asyncio.gather(
                    *(self._refresh_with_retry(url, strategy) for url, strategy in batch)
                )
                if self._refresh_queue:
                    await asyncio.sleep(REFRESH_BATCH_PAUSE_SECONDS)
        finally:
            self._refreshing = False
            self._idle.set()
        log.info("refresh_queue_complete", refreshed=self.refreshed, failed=self.refresh_failures)

    async def _refresh_with_retry(self, url: str, strategy: RefreshStrategy) -> bool:
        attempts = strategy.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                if "sitemap" in url:
                    await self._sitemap_fetcher.fetch(url, force=True)
                else:
                    await self._validator.refresh_url(url)
            except Exception as exc:
                log.warning("refresh_attempt_failed", url=url, attempt=attempt, error=str(exc))
                if attempt < attempts:
                    await asyncio.sleep(2**attempt)
                continue
            self.refreshed += 1
            log.debug("url_refreshed", url=url, attempt=attempt)
            return True

        self.refresh_failures += 1
        log.error("refresh_failed_permanently", url=url, attempts=attempts)
        return False

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def on_deployment(self, affected_urls: list[str]) -> InvalidationOutcome:
        return await self.process_event(
            InvalidationEvent(
                kind=EventKind.DEPLOYMENT,
                source="deployment",
                occurred_at=self._clock(),
                affected_urls=tuple(affected_urls),
                metadata={"trigger": "deployment_hook"},
            )
        )

    async def on_content_change(self, changed_files: list[str]) -> InvalidationOutcome:
        return await self.process_event(
            InvalidationEvent(
                kind=EventKind.CONTENT_CHANGE,
                source="cms",
                occurred_at=self._clock(),
                affected_urls=tuple(changed_files),
                metadata={"trigger": "content_update"},
            )
        )

    async def on_error_recovery(self, failed_urls: list[str]) -> InvalidationOutcome:
        return await self.process_event(
            InvalidationEvent(
                kind=EventKind.ERROR_RECOVERY,
                source="audit_system",
                occurred_at=self._clock(),
                affected_urls=tuple(failed_urls),
                metadata={"trigger": "error_recovery"},
            )
        )

    async def scheduled_maintenance(self) -> int:
        """Run the scheduled event through the rules, then sweep expired entries."""
        outcome = await self.process_event(
            InvalidationEvent(
                kind=EventKind.SCHEDULED,
                source="cron",
                occurred_at=self._clock(),
                metadata={"trigger": "scheduled_maintenance"},
            )
        )
        return outcome.total_invalidated + await self.refresh_expired()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _applicable_rules(self, event: InvalidationEvent) -> list[InvalidationRule]:
        candidates = (event.source, *event.affected_urls)
        return [
            rule for rule in self._rules if any(rule.matches(value) for value in candidates)
        ]

    @staticmethod
    def _group_by_namespace(
        rules: list[InvalidationRule],
    ) -> dict[CacheNamespace, list[re.Pattern[str]]]:
        groups: dict[CacheNamespace, list[re.Pattern[str]]] = {}
        for rule in rules:
            for namespace in sorted(rule.namespaces):
                groups.setdefault(namespace, []).append(rule.url_pattern)
        return groups

    async def _record(
        self,
        event: InvalidationEvent,
        *,
        entries_invalidated: int,
        rules: list[str] | None = None,
    ) -> None:
        metadata: dict[str, Any] = dict(event.metadata)
        record = InvalidationRecord(
            event_kind=event.kind,
            source=event.source,
            occurred_at=event.occurred_at,
            affected_urls=list(event.affected_urls),
            rules_applied=rules or [],
            entries_invalidated=entries_invalidated,
            metadata=metadata,
        )
        try:
            await self._store.append_invalidation_record(record)
        except Exception:
            log.warning("store_write_failed", operation="append_invalidation_record", exc_info=True)

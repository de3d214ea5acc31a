"""Namespaced in-memory TTL cache for link results, sitemaps and reports.

Three namespaces share one accounting and eviction mechanism:

* ``links``:   ValidationResult per URL     (default TTL 6h)
* ``sitemap``: SitemapSnapshot per domain   (default TTL 24h)
* ``reports``: AuditReport per report key   (default TTL 7d)

Expiry is observed lazily on ``get`` and eagerly by ``clear_expired``, which
the maintenance loop in schedulers.py runs on ``cleanup_interval``. Memory
usage is estimated from fixed per-entry sizes per namespace rather than by
measuring payloads. When the estimate exceeds the budget, the globally least
recently accessed entries are evicted in small batches.

The cache can be dumped to a single JSON blob and restored from it; restore
always sweeps expired entries before returning.
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ValidationError

from linkaudit.clock import utc_now
from linkaudit.models.cache import (
    AuditReport,
    CacheEntry,
    CacheNamespace,
    CacheSnapshot,
    CacheStats,
    SerializedEntry,
    SitemapSnapshot,
)
from linkaudit.models.links import ValidationResult

if TYPE_CHECKING:
    from linkaudit.config import CacheSettings
    from linkaudit.protocols import Clock, StoreProtocol

log = structlog.get_logger()

# Rough per-entry footprint; sitemaps and reports carry larger payloads.
ENTRY_SIZE_BYTES: dict[CacheNamespace, int] = {
    CacheNamespace.LINKS: 1024,
    CacheNamespace.SITEMAP: 2048,
    CacheNamespace.REPORTS: 5120,
}

EVICTION_BATCH_SIZE = 10

_VALUE_MODELS: dict[CacheNamespace, type[BaseModel]] = {
    CacheNamespace.LINKS: ValidationResult,
    CacheNamespace.SITEMAP: SitemapSnapshot,
    CacheNamespace.REPORTS: AuditReport,
}


def link_key(url: str) -> str:
    return url


def sitemap_key(domain: str) -> str:
    return domain.lower()


def report_key(day: str, kind: str) -> str:
    return f"{day}:{kind}"


class TTLCache:
    """Memory-bounded TTL cache shared by the validator and invalidation manager."""

    def __init__(self, settings: CacheSettings, clock: Clock = utc_now) -> None:
        self._settings = settings
        self._clock = clock
        self._entries: dict[CacheNamespace, dict[str, CacheEntry[Any]]] = {
            namespace: {} for namespace in CacheNamespace
        }
        self._default_ttl: dict[CacheNamespace, timedelta] = {
            CacheNamespace.LINKS: settings.link_results_ttl,
            CacheNamespace.SITEMAP: settings.sitemap_data_ttl,
            CacheNamespace.REPORTS: settings.report_data_ttl,
        }
        self._hits = 0
        self._misses = 0

    @property
    def max_memory_bytes(self) -> int:
        return int(self._settings.max_memory_mb * 1024 * 1024)

    def default_ttl(self, namespace: CacheNamespace) -> timedelta:
        return self._default_ttl[namespace]

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    async def set(
        self,
        namespace: CacheNamespace,
        key: str,
        value: Any,
        ttl: timedelta | None = None,
    ) -> None:
        """Store ``value``, replacing any previous entry, then enforce the budget."""
        now = self._clock()
        self._entries[namespace][key] = CacheEntry(
            data=value,
            created_at=now,
            ttl=ttl if ttl is not None else self._default_ttl[namespace],
            last_accessed_at=now,
        )
        await self.enforce_memory_limit()

    async def set_many(
        self,
        namespace: CacheNamespace,
        items: dict[str, Any],
        ttl: timedelta | None = None,
    ) -> None:
        now = self._clock()
        entry_ttl = ttl if ttl is not None else self._default_ttl[namespace]
        for key, value in items.items():
            self._entries[namespace][key] = CacheEntry(
                data=value, created_at=now, ttl=entry_ttl, last_accessed_at=now
            )
        await self.enforce_memory_limit()

    def get(self, namespace: CacheNamespace, key: str) -> Any | None:
        """Return the cached value, or ``None`` if absent or expired."""
        bucket = self._entries[namespace]
        entry = bucket.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if entry.is_expired(now):
            del bucket[key]
            self._misses += 1
            return None

        entry.hit_count += 1
        entry.last_accessed_at = now
        self._hits += 1
        return entry.data

    def get_many(
        self, namespace: CacheNamespace, keys: list[str]
    ) -> tuple[dict[str, Any], list[str]]:
        """Split ``keys`` into cached values and keys that need fetching."""
        cached: dict[str, Any] = {}
        missing: list[str] = []
        for key in keys:
            value = self.get(namespace, key)
            if value is None:
                missing.append(key)
            else:
                cached[key] = value
        return cached, missing

    def keys(self, namespace: CacheNamespace) -> list[str]:
        return list(self._entries[namespace])

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, namespace: CacheNamespace | None, key: str) -> bool:
        """Drop ``key`` from one namespace, or from all when ``namespace`` is None."""
        found = False
        for ns in self._namespaces(namespace):
            if self._entries[ns].pop(key, None) is not None:
                found = True
        return found

    def invalidate_by_pattern(
        self, pattern: re.Pattern[str] | str, namespace: CacheNamespace | None = None
    ) -> int:
        """Drop every key that ``pattern`` matches anywhere (``re.search``)."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        invalidated = 0
        for ns in self._namespaces(namespace):
            bucket = self._entries[ns]
            for key in [k for k in bucket if regex.search(k)]:
                del bucket[key]
                invalidated += 1
        return invalidated

    def clear_expired(self) -> int:
        now = self._clock()
        cleared = 0
        for bucket in self._entries.values():
            for key in [k for k, entry in bucket.items() if entry.is_expired(now)]:
                del bucket[key]
                cleared += 1
        return cleared

    def clear_all(self) -> None:
        for bucket in self._entries.values():
            bucket.clear()
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Memory accounting
    # ------------------------------------------------------------------

    def estimate_memory_bytes(self) -> int:
        return sum(
            len(bucket) * ENTRY_SIZE_BYTES[namespace]
            for namespace, bucket in self._entries.items()
        )

    async def enforce_memory_limit(self) -> int:
        """Evict least recently accessed entries until under the memory budget.

        Candidates are ranked once across all namespaces. Entries that
        disappear while the pass is suspended are skipped, so concurrent or
        repeated passes never over-evict.
        """
        if self.estimate_memory_bytes() <= self.max_memory_bytes:
            return 0

        candidates = sorted(
            (
                (entry.last_accessed_at or entry.created_at, namespace, key)
                for namespace, bucket in self._entries.items()
                for key, entry in bucket.items()
            ),
            key=lambda item: item[0],
        )

        removed = 0
        for start in range(0, len(candidates), EVICTION_BATCH_SIZE):
            for _, namespace, key in candidates[start : start + EVICTION_BATCH_SIZE]:
                if self.estimate_memory_bytes() <= self.max_memory_bytes:
                    break
                if self._entries[namespace].pop(key, None) is not None:
                    removed += 1
            if self.estimate_memory_bytes() <= self.max_memory_bytes:
                break
            await asyncio.sleep(0)

        if removed:
            log.info(
                "cache_eviction_complete",
                removed=removed,
                estimated_memory_bytes=self.estimate_memory_bytes(),
                max_memory_bytes=self.max_memory_bytes,
            )
        return removed

    def stats(self) -> CacheStats:
        created = [
            entry.created_at for bucket in self._entries.values() for entry in bucket.values()
        ]
        total_requests = self._hits + self._misses
        return CacheStats(
            entries=len(created),
            estimated_memory_bytes=self.estimate_memory_bytes(),
            hit_rate=self._hits / total_requests if total_requests else 0.0,
            miss_rate=self._misses / total_requests if total_requests else 0.0,
            total_hits=self._hits,
            total_misses=self._misses,
            oldest_entry=min(created, default=None),
            newest_entry=max(created, default=None),
            entries_by_namespace={ns: len(bucket) for ns, bucket in self._entries.items()},
        )

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self) -> str:
        """Serialise every namespace plus hit/miss counters to a JSON blob."""
        snapshot = CacheSnapshot(
            taken_at=self._clock(),
            hits=self._hits,
            misses=self._misses,
            namespaces={
                namespace: {
                    key: SerializedEntry(
                        data=_dump_value(entry.data),
                        created_at=entry.created_at,
                        ttl_seconds=entry.ttl.total_seconds(),
                        hit_count=entry.hit_count,
                        last_accessed_at=entry.last_accessed_at,
                    )
                    for key, entry in bucket.items()
                }
                for namespace, bucket in self._entries.items()
            },
        )
        return snapshot.model_dump_json()

    def restore(self, blob: str) -> int:
        """Replace the cache contents with a snapshot. Returns entries kept.

        Expired entries are swept before returning. Entries whose payload no
        longer validates are dropped.
        """
        snapshot = CacheSnapshot.model_validate_json(blob)

        entries: dict[CacheNamespace, dict[str, CacheEntry[Any]]] = {
            namespace: {} for namespace in CacheNamespace
        }
        dropped = 0
        for namespace, serialized in snapshot.namespaces.items():
            model = _VALUE_MODELS[namespace]
            for key, item in serialized.items():
                try:
                    value = model.model_validate(item.data)
                except ValidationError:
                    dropped += 1
                    continue
                entries[namespace][key] = CacheEntry(
                    data=value,
                    created_at=item.created_at,
                    ttl=timedelta(seconds=item.ttl_seconds),
                    hit_count=item.hit_count,
                    last_accessed_at=item.last_accessed_at,
                )

        self._entries = entries
        self._hits = snapshot.hits
        self._misses = snapshot.misses
        expired = self.clear_expired()
        kept = sum(len(bucket) for bucket in self._entries.values())

        log.info(
            "cache_restored",
            taken_at=snapshot.taken_at.isoformat(),
            kept=kept,
            expired=expired,
            dropped=dropped,
        )
        return kept

    async def persist(self, store: StoreProtocol) -> None:
        """Write the current snapshot through the store. Non-fatal on failure."""
        try:
            await store.save_cache_snapshot(self.snapshot())
        except Exception:
            log.warning("cache_persist_error", exc_info=True)

    async def load(self, store: StoreProtocol) -> bool:
        """Restore from the store's latest snapshot. Returns False if none usable."""
        try:
            blob = await store.load_cache_snapshot()
            if blob is None:
                return False
            self.restore(blob)
        except Exception:
            log.warning("cache_load_error", exc_info=True)
            return False
        return True

    def _namespaces(self, namespace: CacheNamespace | None) -> tuple[CacheNamespace, ...]:
        return tuple(CacheNamespace) if namespace is None else (namespace,)


def _dump_value(value: Any) -> dict[str, Any]:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return dict(value)

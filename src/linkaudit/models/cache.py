from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict

from linkaudit.models.links import ValidationResult

T = TypeVar("T")


class CacheNamespace(StrEnum):
    LINKS = "links"
    SITEMAP = "sitemap"
    REPORTS = "reports"


@dataclass
class CacheEntry(Generic[T]):
    """Envelope around a cached value. Mutated only by the cache on access."""

    data: T
    created_at: datetime
    ttl: timedelta
    hit_count: int = 0
    last_accessed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now - self.created_at > self.ttl


class SitemapSnapshot(BaseModel):
    """All page URLs listed by one domain's sitemap at fetch time."""

    model_config = ConfigDict(frozen=True)

    urls: frozenset[str] = frozenset()
    fetched_at: datetime
    page_count: int = 0
    metadata: dict[str, Any] = {}


class AuditReport(BaseModel):
    """Aggregated health figures for a set of validation results."""

    kind: str
    generated_at: datetime
    total: int = 0
    valid: int = 0
    broken: int = 0
    redirects: int = 0
    timeouts: int = 0
    health_score: float = 100.0
    critical_issues: list[ValidationResult] = []
    metadata: dict[str, Any] = {}


class CacheStats(BaseModel):
    entries: int
    estimated_memory_bytes: int
    hit_rate: float
    miss_rate: float
    total_hits: int
    total_misses: int
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    entries_by_namespace: dict[CacheNamespace, int] = {}


class SerializedEntry(BaseModel):
    data: dict[str, Any]
    created_at: datetime
    ttl_seconds: float
    hit_count: int = 0
    last_accessed_at: datetime | None = None


class CacheSnapshot(BaseModel):
    """Persisted form of the whole cache. New fields must stay optional."""

    version: int = 1
    taken_at: datetime
    hits: int = 0
    misses: int = 0
    namespaces: dict[CacheNamespace, dict[str, SerializedEntry]] = {}

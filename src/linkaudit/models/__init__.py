from __future__ import annotations

from linkaudit.models.cache import (
    AuditReport,
    CacheEntry,
    CacheNamespace,
    CacheStats,
    SitemapSnapshot,
)
from linkaudit.models.invalidation import (
    EventKind,
    InvalidationEvent,
    InvalidationOutcome,
    InvalidationRule,
    RefreshPriority,
    RefreshStrategy,
)
from linkaudit.models.jobs import AuditJob, JobKind, JobOutcome, JobState, QueueStatus
from linkaudit.models.links import (
    LinkKind,
    LinkPriority,
    LinkStatus,
    ScannedLink,
    ValidationResult,
    ValidationStats,
)

__all__ = [
    # links
    "LinkKind",
    "LinkPriority",
    "LinkStatus",
    "ScannedLink",
    "ValidationResult",
    "ValidationStats",
    # cache
    "AuditReport",
    "CacheEntry",
    "CacheNamespace",
    "CacheStats",
    "SitemapSnapshot",
    # invalidation
    "EventKind",
    "InvalidationEvent",
    "InvalidationOutcome",
    "InvalidationRule",
    "RefreshPriority",
    "RefreshStrategy",
    # jobs
    "AuditJob",
    "JobKind",
    "JobOutcome",
    "JobState",
    "QueueStatus",
]

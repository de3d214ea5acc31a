from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from linkaudit.models.cache import CacheNamespace
from linkaudit.models.links import LinkPriority


class EventKind(StrEnum):
    CONTENT_CHANGE = "content_change"
    DEPLOYMENT = "deployment"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    ERROR_RECOVERY = "error_recovery"


class RefreshPriority(StrEnum):
    URGENT = "urgent"
    NORMAL = "normal"
    BACKGROUND = "background"


REFRESH_PRIORITY_RANK: dict[RefreshPriority, int] = {
    RefreshPriority.URGENT: 0,
    RefreshPriority.NORMAL: 1,
    RefreshPriority.BACKGROUND: 2,
}


class InvalidationRule(BaseModel):
    """Maps a URL pattern to the cache namespaces it should purge."""

    model_config = ConfigDict(frozen=True)

    url_pattern: re.Pattern[str]
    namespaces: frozenset[CacheNamespace]
    reason: str
    priority: LinkPriority = LinkPriority.MEDIUM

    def matches(self, value: str) -> bool:
        return self.url_pattern.search(value) is not None


class InvalidationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    source: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    affected_urls: tuple[str, ...] = ()
    metadata: dict[str, Any] = {}


class RefreshStrategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    immediate: bool = False
    batch_size: int = 10
    priority: RefreshPriority = RefreshPriority.BACKGROUND
    retry_attempts: int = 1


class InvalidationOutcome(BaseModel):
    """What one processed event did to the cache."""

    event: InvalidationEvent
    rules_applied: list[str] = []  # Pattern sources, in evaluation order
    invalidated_by_namespace: dict[CacheNamespace, int] = {}
    errors_by_namespace: dict[CacheNamespace, str] = {}

    @property
    def total_invalidated(self) -> int:
        return sum(self.invalidated_by_namespace.values())

    @property
    def ok(self) -> bool:
        return not self.errors_by_namespace


class InvalidationRecord(BaseModel):
    """Row of the append-only invalidation audit log."""

    event_kind: EventKind
    source: str
    occurred_at: datetime
    affected_urls: list[str] = []
    rules_applied: list[str] = []
    entries_invalidated: int = 0
    metadata: dict[str, Any] = {}


class InvalidationStats(BaseModel):
    days: int
    total_events: int = 0
    total_entries_invalidated: int = 0
    events_by_kind: dict[str, int] = {}
    average_entries_per_event: int = 0

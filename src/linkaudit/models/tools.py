from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from linkaudit.models.cache import CacheNamespace, CacheStats
from linkaudit.models.invalidation import EventKind, InvalidationStats
from linkaudit.models.jobs import JobKind, JobState
from linkaudit.models.links import ValidationStats

# ---------------------------------------------------------------------------
# schedule_job
# ---------------------------------------------------------------------------


class ScheduleJobInput(BaseModel):
    kind: JobKind
    priority: int | None = Field(default=None, ge=1, le=10)
    delay_seconds: int = Field(default=0, ge=0, le=7 * 24 * 3600)


class ScheduleJobOutput(BaseModel):
    job_id: str
    kind: JobKind
    state: JobState
    priority: int
    scheduled_at: datetime


# ---------------------------------------------------------------------------
# cancel_job
# ---------------------------------------------------------------------------


class CancelJobInput(BaseModel):
    job_id: str = Field(min_length=1, max_length=100)

    @field_validator("job_id")
    @classmethod
    def strip_job_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("job_id must not be blank")
        return v


class CancelJobOutput(BaseModel):
    job_id: str
    state: JobState


# ---------------------------------------------------------------------------
# invalidate_cache
# ---------------------------------------------------------------------------


class InvalidateCacheInput(BaseModel):
    """Exactly one target: a single URL, a whole domain, or an event."""

    url: str | None = None
    domain: str | None = None
    event: EventKind | None = None
    affected_urls: list[str] = Field(default_factory=list, max_length=500)
    namespaces: list[CacheNamespace] | None = None

    @model_validator(mode="after")
    def exactly_one_target(self) -> InvalidateCacheInput:
        targets = [t for t in (self.url, self.domain, self.event) if t]
        if len(targets) != 1:
            raise ValueError("Provide exactly one of url, domain or event")
        if self.affected_urls and self.event is None:
            raise ValueError("affected_urls is only valid together with event")
        return self


class InvalidateCacheOutput(BaseModel):
    target: str
    invalidated: int
    rules_applied: list[str] = []
    failed_namespaces: list[CacheNamespace] = []


# ---------------------------------------------------------------------------
# get_cache_stats
# ---------------------------------------------------------------------------


class GetCacheStatsInput(BaseModel):
    days: int = Field(default=7, ge=1, le=90)


class GetCacheStatsOutput(BaseModel):
    cache: CacheStats
    last_batch: ValidationStats
    invalidations: InvalidationStats
    refresh: dict[str, Any]

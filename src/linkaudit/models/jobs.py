from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class JobKind(StrEnum):
    FULL_AUDIT = "full_audit"
    QUICK_CHECK = "quick_check"
    ALERT_ANALYSIS = "alert_analysis"
    WEEKLY_REPORT = "weekly_report"


class JobState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

DEFAULT_JOB_PRIORITY: dict[JobKind, int] = {
    JobKind.FULL_AUDIT: 5,
    JobKind.QUICK_CHECK: 3,
    JobKind.ALERT_ANALYSIS: 7,
    JobKind.WEEKLY_REPORT: 4,
}


@dataclass
class AuditJob:
    """A unit of scheduled work. State transitions belong to AuditScheduler."""

    id: str
    kind: JobKind
    scheduled_at: datetime
    priority: int  # 1-10, 10 = highest
    state: JobState = JobState.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state.value,
            "scheduled_at": self.scheduled_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "priority": self.priority,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class JobOutcome:
    """Result value returned by every job handler."""

    ok: bool
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **detail: Any) -> JobOutcome:
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, error: str, **detail: Any) -> JobOutcome:
        return cls(ok=False, error=error, detail=detail)


class QueueStatus(BaseModel):
    pending_count: int
    running_count: int
    queue: list[dict[str, Any]]
    running_jobs: list[dict[str, Any]]

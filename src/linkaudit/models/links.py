from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class LinkKind(StrEnum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    DOWNLOAD = "download"
    ANCHOR = "anchor"


class LinkPriority(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LinkStatus(StrEnum):
    VALID = "valid"
    BROKEN = "broken"
    REDIRECT = "redirect"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Lower rank is processed first.
PRIORITY_RANK: dict[LinkPriority, int] = {
    LinkPriority.CRITICAL: 0,
    LinkPriority.HIGH: 1,
    LinkPriority.MEDIUM: 2,
    LinkPriority.LOW: 3,
}


class ScannedLink(BaseModel):
    """A link found by the discovery process, waiting to be validated."""

    model_config = ConfigDict(frozen=True)

    url: str
    source_location: str = ""  # File or page the link was found in
    link_kind: LinkKind = LinkKind.EXTERNAL
    priority: LinkPriority = LinkPriority.MEDIUM
    context: str = ""


class ValidationResult(BaseModel):
    """Outcome of probing a single link. Replaced, never mutated."""

    model_config = ConfigDict(frozen=True)

    url: str
    status: LinkStatus
    status_code: int | None = None
    redirect_target: str | None = None
    error_detail: str | None = None
    latency_ms: float = 0.0
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_healthy(self) -> bool:
        return self.status in (LinkStatus.VALID, LinkStatus.REDIRECT)


class ValidationStats(BaseModel):
    """Running counters for one batch validation call."""

    total_processed: int = 0
    cache_hits: int = 0
    valid: int = 0
    broken: int = 0
    redirects: int = 0
    timeouts: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0

    def record(self, result: ValidationResult) -> None:
        self.total_processed += 1
        self.total_latency_ms += result.latency_ms
        match result.status:
            case LinkStatus.VALID:
                self.valid += 1
            case LinkStatus.BROKEN:
                self.broken += 1
            case LinkStatus.REDIRECT:
                self.redirects += 1
            case LinkStatus.TIMEOUT:
                self.timeouts += 1
            case _:
                self.errors += 1

    @property
    def health_score(self) -> float:
        if self.total_processed == 0:
            return 100.0
        return round(self.valid / self.total_processed * 100, 2)

    @property
    def average_latency_ms(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return round(self.total_latency_ms / self.total_processed, 2)

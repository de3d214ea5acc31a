"""Job handlers invoked by AuditScheduler, one per JobKind."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from linkaudit.cache import report_key
from linkaudit.clock import utc_now
from linkaudit.models.cache import CacheNamespace
from linkaudit.models.jobs import JobKind, JobOutcome
from linkaudit.models.links import LinkStatus
from linkaudit.validator import summarize_results

if TYPE_CHECKING:
    from linkaudit.cache import TTLCache
    from linkaudit.models.jobs import AuditJob
    from linkaudit.protocols import Clock, LinkSourceProtocol, ReporterProtocol
    from linkaudit.scheduler import JobHandler
    from linkaudit.validator import BatchValidator

log = structlog.get_logger()

QUICK_CHECK_LIMIT = 10


class AuditHandlers:
    def __init__(
        self,
        validator: BatchValidator,
        link_source: LinkSourceProtocol,
        reporter: ReporterProtocol,
        cache: TTLCache,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._validator = validator
        self._link_source = link_source
        self._reporter = reporter
        self._cache = cache
        self._clock = clock

    def as_mapping(self) -> dict[JobKind, JobHandler]:
        return {
            JobKind.FULL_AUDIT: self.full_audit,
            JobKind.QUICK_CHECK: self.quick_check,
            JobKind.ALERT_ANALYSIS: self._reporter.analyze_alerts,
            JobKind.WEEKLY_REPORT: self._reporter.weekly_report,
        }

    async def full_audit(self, job: AuditJob) -> JobOutcome:
        """Validate every collected link and cache the day's report."""
        links = await self._link_source.collect()
        results = await self._validator.validate_with_priority(links)

        report = summarize_results(results, JobKind.FULL_AUDIT.value, self._clock)
        report = report.model_copy(update={"metadata": {"job_id": job.id}})
        await self._cache.set(
            CacheNamespace.REPORTS,
            report_key(report.generated_at.date().isoformat(), JobKind.FULL_AUDIT.value),
            report,
        )
        log.info(
            "full_audit_complete",
            job_id=job.id,
            total=report.total,
            broken=report.broken,
            health_score=report.health_score,
        )
        return JobOutcome.success(
            total=report.total, broken=report.broken, health_score=report.health_score
        )

    async def quick_check(self, job: AuditJob) -> JobOutcome:
        results = await self._validator.recheck_broken(QUICK_CHECK_LIMIT)
        still_broken = sum(1 for result in results if result.status is LinkStatus.BROKEN)
        log.info(
            "quick_check_complete",
            job_id=job.id,
            rechecked=len(results),
            still_broken=still_broken,
        )
        return JobOutcome.success(rechecked=len(results), still_broken=still_broken)

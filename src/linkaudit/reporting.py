"""Default Reporter: alert analysis and weekly reports from stored health metrics.

Both operations read the daily rows written by the batch validator. Alerts
are emitted as structured log events; notification delivery is left to
whatever consumes the log stream.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from linkaudit.cache import report_key
from linkaudit.clock import utc_now
from linkaudit.models.cache import AuditReport, CacheNamespace
from linkaudit.models.jobs import JobKind, JobOutcome

if TYPE_CHECKING:
    from linkaudit.cache import TTLCache
    from linkaudit.config import SiteSettings
    from linkaudit.models.jobs import AuditJob
    from linkaudit.protocols import Clock, StoreProtocol

log = structlog.get_logger()

BROKEN_INCREASE_THRESHOLD = 10
SLOW_RESPONSE_THRESHOLD_MS = 5000.0

WEEKLY_WINDOW_DAYS = 7


class MetricsReporter:
    def __init__(
        self,
        store: StoreProtocol,
        cache: TTLCache,
        settings: SiteSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._cache = cache
        self._settings = settings
        self._clock = clock

    async def analyze_alerts(self, job: AuditJob) -> JobOutcome:
        """Compare the latest day against thresholds and the day before."""
        metrics = await self._store.latest_health_metrics(2)
        if not metrics:
            log.info("alert_analysis_skipped", job_id=job.id, reason="no_metrics")
            return JobOutcome.success(alerts=[])

        latest = metrics[0]
        alerts: list[dict[str, Any]] = []

        if latest["health_score"] < self._settings.alert_health_threshold:
            alerts.append(
                {
                    "type": "low_health_score",
                    "health_score": latest["health_score"],
                    "threshold": self._settings.alert_health_threshold,
                }
            )

        if len(metrics) > 1:
            increase = latest["broken_links"] - metrics[1]["broken_links"]
            if increase >= BROKEN_INCREASE_THRESHOLD:
                alerts.append({"type": "broken_links_increase", "increase": increase})

        if latest["average_latency_ms"] > SLOW_RESPONSE_THRESHOLD_MS:
            alerts.append(
                {"type": "slow_responses", "average_latency_ms": latest["average_latency_ms"]}
            )

        for alert in alerts:
            log.warning("link_health_alert", job_id=job.id, day=latest["day"], **alert)

        return JobOutcome.success(day=latest["day"], alerts=alerts)

    async def weekly_report(self, job: AuditJob) -> JobOutcome:
        metrics = await self._store.latest_health_metrics(WEEKLY_WINDOW_DAYS)
        if not metrics:
            return JobOutcome.failure("No health metrics recorded in the last week")

        latest = metrics[0]
        average_score = round(sum(m["health_score"] for m in metrics) / len(metrics), 2)
        now = self._clock()
        report = AuditReport(
            kind=JobKind.WEEKLY_REPORT.value,
            generated_at=now,
            total=latest["total_links"],
            broken=latest["broken_links"],
            valid=latest["total_links"] - latest["broken_links"],
            health_score=average_score,
            metadata={
                "job_id": job.id,
                "days": [m["day"] for m in metrics],
                "trend": round(latest["health_score"] - metrics[-1]["health_score"], 2),
            },
        )
        await self._cache.set(
            CacheNamespace.REPORTS,
            report_key(now.date().isoformat(), JobKind.WEEKLY_REPORT.value),
            report,
        )
        log.info("weekly_report_generated", job_id=job.id, health_score=average_score)
        return JobOutcome.success(health_score=average_score, days=len(metrics))

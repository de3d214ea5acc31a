"""Tool handler for schedule_job.

Validates the request, enqueues the job on the AuditScheduler and returns
the queued job. No MCP or FastMCP imports; server.py handles the wiring.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from linkaudit.errors import ErrorCode, LinkAuditError
from linkaudit.models.tools import ScheduleJobInput, ScheduleJobOutput

if TYPE_CHECKING:
    from linkaudit.state import AppState


async def handle(kind: str, priority: int | None, delay_seconds: int, state: AppState) -> dict:
    """Handle a schedule_job tool call."""
    log = structlog.get_logger().bind(tool="schedule_job", kind=kind)
    log.info("handler_called")

    try:
        validated = ScheduleJobInput(kind=kind, priority=priority, delay_seconds=delay_seconds)
    except ValueError as exc:
        raise LinkAuditError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion=(
                "kind must be one of full_audit, quick_check, alert_analysis, weekly_report; "
                "priority 1-10; delay_seconds between 0 and one week."
            ),
            recoverable=False,
        ) from exc

    scheduler = state.scheduler
    if not scheduler.is_enabled:
        raise LinkAuditError(
            code=ErrorCode.SCHEDULER_DISABLED,
            message="The audit scheduler is disabled; queued jobs would never run.",
            suggestion="Set scheduler.enabled to true (LINKAUDIT__SCHEDULER__ENABLED=true).",
            recoverable=False,
        )

    scheduled_at = None
    if validated.delay_seconds:
        scheduled_at = state.clock() + timedelta(seconds=validated.delay_seconds)

    job_id = await scheduler.schedule_job(
        validated.kind,
        validated.priority,
        scheduled_at,
        {"triggered_by": "tool"},
    )
    job = scheduler.get_job(job_id)
    if job is None:
        raise RuntimeError(f"Scheduled job {job_id} is not tracked by the scheduler")

    log.info("job_queued", job_id=job_id)
    return ScheduleJobOutput(
        job_id=job.id,
        kind=job.kind,
        state=job.state,
        priority=job.priority,
        scheduled_at=job.scheduled_at,
    ).model_dump(mode="json")

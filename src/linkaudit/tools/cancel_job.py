"""Tool handler for cancel_job."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from linkaudit.errors import ErrorCode, LinkAuditError
from linkaudit.models.tools import CancelJobInput, CancelJobOutput

if TYPE_CHECKING:
    from linkaudit.state import AppState


async def handle(job_id: str, state: AppState) -> dict:
    """Handle a cancel_job tool call."""
    log = structlog.get_logger().bind(tool="cancel_job", job_id=job_id)
    log.info("handler_called")

    try:
        validated = CancelJobInput(job_id=job_id)
    except ValueError as exc:
        raise LinkAuditError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion="Pass a job id returned by schedule_job or get_queue_status.",
            recoverable=False,
        ) from exc

    if not await state.scheduler.cancel_job(validated.job_id):
        raise LinkAuditError(
            code=ErrorCode.JOB_NOT_FOUND,
            message=f"No pending or running job with id '{validated.job_id}'.",
            suggestion="Call get_queue_status to list cancellable jobs.",
            recoverable=False,
        )

    job = state.scheduler.get_job(validated.job_id)
    if job is None:
        raise RuntimeError(f"Cancelled job {validated.job_id} is not tracked by the scheduler")
    return CancelJobOutput(job_id=job.id, state=job.state).model_dump(mode="json")

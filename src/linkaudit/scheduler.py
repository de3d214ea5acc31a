"""Priority job queue with a concurrency cap and timeout reclamation.

``process_queue`` is the pump; ``run_scheduler_pump`` in schedulers.py calls
it every ``pump_interval``. Each call:

1. Reclaims running jobs older than ``audit_timeout``: the job is marked
   failed with ``"Timeout exceeded"``, its handler task is cancelled and
   the slot is freed.
2. Cancels pending jobs older than ``max_pending_age`` (``"Job expired"``).
3. Starts due jobs, highest priority first, while slots are free.

Handlers run as asyncio tasks so the pump never blocks on a job. Handler
exceptions and failing outcomes land on ``job.error``; nothing propagates.
Every state transition is persisted through the store.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from linkaudit.clock import utc_now
from linkaudit.models.jobs import (
    DEFAULT_JOB_PRIORITY,
    TERMINAL_STATES,
    AuditJob,
    JobKind,
    JobOutcome,
    JobState,
    QueueStatus,
)

if TYPE_CHECKING:
    from linkaudit.config import SchedulerSettings
    from linkaudit.protocols import Clock, StoreProtocol

log = structlog.get_logger()

JobHandler = Callable[[AuditJob], Awaitable[JobOutcome]]

DEDUP_WINDOW = timedelta(seconds=60)
MIN_PRIORITY = 1
MAX_PRIORITY = 10

_HISTORY_LIMIT = 200

_ID_PREFIX: dict[JobKind, str] = {
    JobKind.FULL_AUDIT: "audit",
    JobKind.QUICK_CHECK: "quick",
    JobKind.ALERT_ANALYSIS: "alert",
    JobKind.WEEKLY_REPORT: "report",
}


class AuditScheduler:
    def __init__(
        self,
        settings: SchedulerSettings,
        store: StoreProtocol,
        handlers: dict[JobKind, JobHandler],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings
        self._store = store
        self._handlers = handlers
        self._clock = clock
        self._queue: list[AuditJob] = []
        self._running: dict[str, AuditJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._finished: OrderedDict[str, AuditJob] = OrderedDict()

    @property
    def is_enabled(self) -> bool:
        return self._settings.enabled

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_job(
        self,
        kind: JobKind,
        priority: int | None = None,
        scheduled_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Enqueue a job and return its id.

        If a pending job of the same kind is already scheduled within a
        minute of ``scheduled_at``, nothing is enqueued and that job's id is
        returned instead.
        """
        if priority is None:
            priority = DEFAULT_JOB_PRIORITY[kind]
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")

        when = scheduled_at or self._clock()
        for existing in self._queue:
            if (
                existing.kind is kind
                and existing.state is JobState.PENDING
                and abs(existing.scheduled_at - when) < DEDUP_WINDOW
            ):
                log.info("job_deduplicated", kind=kind, existing_job_id=existing.id)
                return existing.id

        job = AuditJob(
            id=f"{_ID_PREFIX[kind]}-{uuid.uuid4().hex[:12]}",
            kind=kind,
            scheduled_at=when,
            priority=priority,
            metadata={"triggered_by": "scheduler", **(metadata or {})},
        )

        index = next(
            (i for i, queued in enumerate(self._queue) if queued.priority < job.priority),
            len(self._queue),
        )
        self._queue.insert(index, job)
        await self._persist(job)

        log.info(
            "job_scheduled",
            job_id=job.id,
            kind=kind,
            priority=priority,
            scheduled_at=when.isoformat(),
        )
        return job.id

    async def schedule_full_audit(
        self, scheduled_at: datetime | None = None, priority: int | None = None
    ) -> str:
        return await self.schedule_job(
            JobKind.FULL_AUDIT, priority, scheduled_at, {"audit_type": "full"}
        )

    async def schedule_quick_check(self, priority: int | None = None) -> str:
        return await self.schedule_job(JobKind.QUICK_CHECK, priority, None, {"audit_type": "quick"})

    async def schedule_alert_analysis(self, priority: int | None = None) -> str:
        return await self.schedule_job(JobKind.ALERT_ANALYSIS, priority)

    async def schedule_weekly_report(self) -> str:
        return await self.schedule_job(
            JobKind.WEEKLY_REPORT, None, None, {"report_type": "weekly"}
        )

    # ------------------------------------------------------------------
    # Pump
    # ------------------------------------------------------------------

    async def process_queue(self) -> None:
        if not self.is_enabled:
            log.debug("scheduler_disabled")
            return

        await self._reclaim_timed_out()
        await self._expire_pending()

        while len(self._running) < self._settings.max_concurrent_audits:
            job = self._next_due()
            if job is None:
                break
            await self._start(job)

        if self._queue and len(self._running) >= self._settings.max_concurrent_audits:
            log.debug(
                "scheduler_at_capacity",
                running=len(self._running),
                limit=self._settings.max_concurrent_audits,
            )

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or running job.

        A running handler is not interrupted. The job keeps the ``cancelled``
        state when the handler finishes, and holds its slot until then or
        until timeout reclamation.
        """
        for index, job in enumerate(self._queue):
            if job.id == job_id:
                del self._queue[index]
                job.state = JobState.CANCELLED
                job.completed_at = self._clock()
                self._remember(job)
                await self._persist(job)
                log.info("job_cancelled", job_id=job_id, was="pending")
                return True

        job = self._running.get(job_id)
        if job is None or job.state in TERMINAL_STATES:
            return False
        job.state = JobState.CANCELLED
        job.completed_at = self._clock()
        await self._persist(job)
        log.info("job_cancelled", job_id=job_id, was="running")
        return True

    def get_queue_status(self) -> QueueStatus:
        return QueueStatus(
            pending_count=sum(1 for job in self._queue if job.state is JobState.PENDING),
            running_count=len(self._running),
            queue=[job.to_record() for job in self._queue],
            running_jobs=[job.to_record() for job in self._running.values()],
        )

    def get_job(self, job_id: str) -> AuditJob | None:
        if job_id in self._running:
            return self._running[job_id]
        for job in self._queue:
            if job.id == job_id:
                return job
        return self._finished.get(job_id)

    async def wait_for_running(self) -> None:
        """Wait until every started handler task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight handlers. Their jobs stay ``running`` in the store."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_due(self) -> AuditJob | None:
        now = self._clock()
        for job in self._queue:
            if job.state is JobState.PENDING and job.scheduled_at <= now:
                return job
        return None

    async def _start(self, job: AuditJob) -> None:
        self._queue.remove(job)
        job.state = JobState.RUNNING
        job.started_at = self._clock()
        self._running[job.id] = job
        await self._persist(job)

        log.info("job_started", job_id=job.id, kind=job.kind, priority=job.priority)
        task = asyncio.create_task(self._execute(job), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

    async def _execute(self, job: AuditJob) -> None:
        handler = self._handlers.get(job.kind)
        try:
            if handler is None:
                outcome = JobOutcome.failure(f"No handler registered for {job.kind}")
            else:
                outcome = await handler(job)
        except Exception as exc:
            log.error("job_handler_error", job_id=job.id, kind=job.kind, exc_info=True)
            outcome = JobOutcome.failure(str(exc) or type(exc).__name__)
        await self._finish(job, outcome)

    async def _finish(self, job: AuditJob, outcome: JobOutcome) -> None:
        if self._running.pop(job.id, None) is None:
            # Already reclaimed by the timeout sweep.
            return

        if job.state is JobState.CANCELLED:
            log.info("cancelled_job_finished", job_id=job.id, ok=outcome.ok)
        else:
            job.state = JobState.COMPLETED if outcome.ok else JobState.FAILED
            job.error = outcome.error
            job.completed_at = self._clock()
        if outcome.detail:
            job.metadata["result"] = outcome.detail

        self._remember(job)
        await self._persist(job)
        if job.state is JobState.FAILED:
            log.warning("job_failed", job_id=job.id, kind=job.kind, error=job.error)
        else:
            log.info("job_finished", job_id=job.id, kind=job.kind, state=job.state)

    async def _reclaim_timed_out(self) -> None:
        now = self._clock()
        timeout = self._settings.audit_timeout
        for job in list(self._running.values()):
            if job.started_at is None or now - job.started_at <= timeout:
                continue

            del self._running[job.id]
            if job.state is not JobState.CANCELLED:
                job.state = JobState.FAILED
                job.error = "Timeout exceeded"
                job.completed_at = now
            task = self._tasks.pop(job.id, None)
            if task is not None:
                task.cancel()

            self._remember(job)
            await self._persist(job)
            log.warning(
                "job_timeout",
                job_id=job.id,
                kind=job.kind,
                timeout_seconds=timeout.total_seconds(),
            )

    async def _expire_pending(self) -> None:
        now = self._clock()
        max_age = self._settings.max_pending_age
        expired = [job for job in self._queue if now - job.scheduled_at > max_age]
        for job in expired:
            self._queue.remove(job)
            job.state = JobState.CANCELLED
            job.error = "Job expired"
            job.completed_at = now
            self._remember(job)
            await self._persist(job)
            log.info("job_expired", job_id=job.id, kind=job.kind)

    def _remember(self, job: AuditJob) -> None:
        self._finished[job.id] = job
        while len(self._finished) > _HISTORY_LIMIT:
            self._finished.popitem(last=False)

    async def _persist(self, job: AuditJob) -> None:
        try:
            await self._store.upsert_job(job)
        except Exception:
            log.warning("store_write_failed", operation="upsert_job", job_id=job.id, exc_info=True)

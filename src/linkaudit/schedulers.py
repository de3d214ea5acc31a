"""Background loops for the scheduler pump, cache maintenance and audit calendar.

Each loop is started once from the server lifespan and cancelled on
shutdown. A failing iteration is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from linkaudit.clock import next_occurrence, utc_now

if TYPE_CHECKING:
    from datetime import datetime

    from linkaudit.protocols import Clock
    from linkaudit.state import AppState

log = structlog.get_logger()


async def run_scheduler_pump(state: AppState) -> None:
    """Call ``process_queue`` every ``pump_interval``."""
    interval = state.settings.scheduler.pump_interval.total_seconds()
    while True:
        try:
            await state.scheduler.process_queue()
        except Exception:
            log.warning("scheduler_pump_error", exc_info=True)
        await asyncio.sleep(interval)


async def run_cache_maintenance(state: AppState) -> None:
    """Sweep expired entries and persist a snapshot every ``cleanup_interval``."""
    interval = state.settings.cache.cleanup_interval.total_seconds()
    while True:
        await asyncio.sleep(interval)
        try:
            cleared = await state.invalidation.refresh_expired()
            await state.cache.persist(state.store)
        except Exception:
            log.warning("cache_maintenance_error", exc_info=True)
            continue
        log.debug("cache_maintenance_complete", cleared=cleared)


def next_calendar_event(
    now: datetime,
    *,
    daily_audit_time: str,
    weekly_report_day: int,
    weekly_report_time: str,
    next_alert_at: datetime,
) -> tuple[str, datetime]:
    """Return the earliest upcoming calendar trigger as ``(name, when)``.

    Ties go to the daily audit, then the weekly report.
    """
    candidates = [
        ("full_audit", next_occurrence(now, daily_audit_time)),
        ("weekly_report", next_occurrence(now, weekly_report_time, weekly_report_day)),
        ("alert_analysis", next_alert_at),
    ]
    return min(candidates, key=lambda item: item[1])


async def run_audit_calendar(state: AppState, *, clock: Clock = utc_now) -> None:
    """Enqueue the daily audit, weekly report and periodic alert analysis."""
    settings = state.settings.scheduler
    if not settings.enabled:
        log.info("audit_calendar_disabled")
        return

    alert_interval: timedelta = settings.alert_check_interval
    next_alert_at = clock() + alert_interval

    while True:
        now = clock()
        name, when = next_calendar_event(
            now,
            daily_audit_time=settings.daily_audit_time,
            weekly_report_day=settings.weekly_report_day,
            weekly_report_time=settings.weekly_report_time,
            next_alert_at=next_alert_at,
        )
        delay = max((when - now).total_seconds(), 0.0)
        log.debug("audit_calendar_waiting", next_event=name, at=when.isoformat(), seconds=delay)
        await asyncio.sleep(delay)

        try:
            match name:
                case "full_audit":
                    await state.scheduler.schedule_full_audit()
                case "weekly_report":
                    await state.scheduler.schedule_weekly_report()
                case _:
                    await state.scheduler.schedule_alert_analysis()
        except Exception:
            log.warning("audit_calendar_error", event=name, exc_info=True)

        if name == "alert_analysis":
            next_alert_at = when + alert_interval

"""Unit tests for the background loops in linkaudit.schedulers."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from linkaudit.config import Settings
from linkaudit.schedulers import (
    next_calendar_event,
    run_audit_calendar,
    run_cache_maintenance,
    run_scheduler_pump,
)

# Monday
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


def _state(settings: Settings | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        settings=settings or Settings(),
        scheduler=AsyncMock(),
        invalidation=AsyncMock(),
        cache=MagicMock(persist=AsyncMock()),
        store=MagicMock(),
    )


class TestSchedulerPump:
    async def test_calls_process_queue_then_sleeps(self) -> None:
        state = _state()
        with patch(
            "linkaudit.schedulers.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, asyncio.CancelledError],
        ) as mock_sleep:
            with pytest.raises(asyncio.CancelledError):
                await run_scheduler_pump(state)

        assert state.scheduler.process_queue.await_count == 2
        mock_sleep.assert_awaited_with(30.0)

    async def test_survives_a_failing_iteration(self) -> None:
        state = _state()
        state.scheduler.process_queue.side_effect = [RuntimeError("db gone"), None]
        with patch(
            "linkaudit.schedulers.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, asyncio.CancelledError],
        ):
            with pytest.raises(asyncio.CancelledError):
                await run_scheduler_pump(state)

        assert state.scheduler.process_queue.await_count == 2


class TestCacheMaintenance:
    async def test_sleeps_first_then_sweeps_and_persists(self) -> None:
        state = _state()
        state.invalidation.refresh_expired.return_value = 4
        with patch(
            "linkaudit.schedulers.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, asyncio.CancelledError],
        ) as mock_sleep:
            with pytest.raises(asyncio.CancelledError):
                await run_cache_maintenance(state)

        mock_sleep.assert_awaited_with(1800.0)
        state.invalidation.refresh_expired.assert_awaited_once()
        state.cache.persist.assert_awaited_once_with(state.store)

    async def test_error_does_not_stop_the_loop(self) -> None:
        state = _state()
        state.invalidation.refresh_expired.side_effect = [RuntimeError("boom"), 0]
        with patch(
            "linkaudit.schedulers.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, None, asyncio.CancelledError],
        ):
            with pytest.raises(asyncio.CancelledError):
                await run_cache_maintenance(state)

        assert state.invalidation.refresh_expired.await_count == 2
        state.cache.persist.assert_awaited_once()


class TestNextCalendarEvent:
    def _next(self, now: datetime, next_alert_at: datetime) -> tuple[str, datetime]:
        return next_calendar_event(
            now,
            daily_audit_time="02:00",
            weekly_report_day=1,
            weekly_report_time="09:00",
            next_alert_at=next_alert_at,
        )

    def test_alert_due_first(self) -> None:
        assert self._next(NOW, NOW + timedelta(hours=6)) == (
            "alert_analysis",
            NOW + timedelta(hours=6),
        )

    def test_daily_audit_beats_distant_alert(self) -> None:
        assert self._next(NOW, NOW + timedelta(days=1)) == (
            "full_audit",
            datetime(2026, 1, 6, 2, 0, tzinfo=UTC),
        )

    def test_weekly_report(self) -> None:
        # Monday 03:00, after the daily audit and before the Monday report
        now = datetime(2026, 1, 12, 3, 0, tzinfo=UTC)
        assert self._next(now, now + timedelta(hours=12)) == (
            "weekly_report",
            datetime(2026, 1, 12, 9, 0, tzinfo=UTC),
        )

    def test_tie_goes_to_daily_audit(self) -> None:
        tie = datetime(2026, 1, 6, 2, 0, tzinfo=UTC)
        assert self._next(NOW, tie)[0] == "full_audit"


class TestAuditCalendar:
    async def test_schedules_alert_analysis_on_interval(self) -> None:
        state = _state()
        with patch(
            "linkaudit.schedulers.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, asyncio.CancelledError],
        ) as mock_sleep:
            with pytest.raises(asyncio.CancelledError):
                await run_audit_calendar(state, clock=lambda: NOW)

        assert mock_sleep.await_args_list[0].args[0] == 6 * 3600
        state.scheduler.schedule_alert_analysis.assert_awaited_once()
        state.scheduler.schedule_full_audit.assert_not_awaited()
        # Next alert moved forward by one interval, still ahead of the 02:00 audit
        assert mock_sleep.await_args_list[1].args[0] == 12 * 3600

    async def test_walks_through_events_as_time_passes(self) -> None:
        state = _state()
        times = iter(
            [
                NOW,  # next_alert_at seed
                NOW,  # alert at 18:00
                NOW + timedelta(hours=6),  # alert at 00:00
                NOW + timedelta(hours=12),  # daily audit at 02:00
                NOW + timedelta(hours=14),
            ]
        )
        with patch(
            "linkaudit.schedulers.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, None, None, asyncio.CancelledError],
        ) as mock_sleep:
            with pytest.raises(asyncio.CancelledError):
                await run_audit_calendar(state, clock=lambda: next(times))

        assert [call.args[0] for call in mock_sleep.await_args_list] == [
            6 * 3600,
            6 * 3600,
            2 * 3600,
            4 * 3600,
        ]
        assert state.scheduler.schedule_alert_analysis.await_count == 2
        state.scheduler.schedule_full_audit.assert_awaited_once()

    async def test_scheduling_error_is_logged_not_raised(self) -> None:
        state = _state()
        state.scheduler.schedule_alert_analysis.side_effect = RuntimeError("queue broken")
        with patch(
            "linkaudit.schedulers.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, asyncio.CancelledError],
        ):
            with pytest.raises(asyncio.CancelledError):
                await run_audit_calendar(state, clock=lambda: NOW)

        state.scheduler.schedule_alert_analysis.assert_awaited_once()

    async def test_disabled_scheduler_returns_immediately(self) -> None:
        state = _state(Settings(scheduler={"enabled": False}))
        with patch("linkaudit.schedulers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await run_audit_calendar(state, clock=lambda: NOW)

        mock_sleep.assert_not_awaited()

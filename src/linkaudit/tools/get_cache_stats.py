"""Tool handler for get_cache_stats."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from linkaudit.errors import ErrorCode, LinkAuditError
from linkaudit.models.tools import GetCacheStatsInput, GetCacheStatsOutput

if TYPE_CHECKING:
    from linkaudit.state import AppState


async def handle(days: int, state: AppState) -> dict:
    """Handle a get_cache_stats tool call."""
    log = structlog.get_logger().bind(tool="get_cache_stats")
    log.info("handler_called", days=days)

    try:
        validated = GetCacheStatsInput(days=days)
    except ValueError as exc:
        raise LinkAuditError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion="days must be between 1 and 90.",
            recoverable=False,
        ) from exc

    manager = state.invalidation
    output = GetCacheStatsOutput(
        cache=state.cache.stats(),
        last_batch=state.validator.get_stats(),
        invalidations=await manager.get_invalidation_stats(validated.days),
        refresh={
            "pending": manager.pending_refreshes,
            "refreshed": manager.refreshed,
            "failed": manager.refresh_failures,
        },
    )
    return output.model_dump(mode="json")

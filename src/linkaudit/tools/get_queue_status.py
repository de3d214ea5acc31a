"""Tool handler for get_queue_status."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from linkaudit.state import AppState


async def handle(state: AppState) -> dict:
    log = structlog.get_logger().bind(tool="get_queue_status")
    status = state.scheduler.get_queue_status()
    log.info("handler_called", pending=status.pending_count, running=status.running_count)
    return {
        "enabled": state.scheduler.is_enabled,
        **status.model_dump(mode="json"),
    }

"""MCP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState via the FastMCP lifespan context manager
- Start and stop the background loops
- Register tools
- Start the correct transport (stdio or HTTP)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

import structlog
from mcp.server.fastmcp import Context, FastMCP
from mcp.types import CallToolResult, TextContent
from pydantic import ValidationError

import linkaudit.tools.cancel_job as t_cancel
import linkaudit.tools.get_cache_stats as t_cache_stats
import linkaudit.tools.get_queue_status as t_queue_status
import linkaudit.tools.invalidate_cache as t_invalidate
import linkaudit.tools.schedule_job as t_schedule
from linkaudit import __version__
from linkaudit.config import Settings
from linkaudit.errors import LinkAuditError
from linkaudit.schedulers import run_audit_calendar, run_cache_maintenance, run_scheduler_pump
from linkaudit.state import build_state
from linkaudit.transport import run_http_server

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from linkaudit.state import AppState

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stdout carries the MCP JSON-RPC stream in stdio mode
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _start_background_loops(state: AppState) -> list[asyncio.Task[None]]:
    return [
        asyncio.create_task(run_scheduler_pump(state), name="scheduler-pump"),
        asyncio.create_task(run_cache_maintenance(state), name="cache-maintenance"),
        asyncio.create_task(run_audit_calendar(state), name="audit-calendar"),
    ]


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    settings = Settings()
    _setup_logging(settings)
    log.info("server_starting", version=__version__, transport=settings.server.transport)

    state = await build_state(settings)
    restored = await state.cache.load(state.store)
    tasks = _start_background_loops(state)

    log.info(
        "server_started",
        version=__version__,
        transport=settings.server.transport,
        cache_restored=restored,
        cache_entries=state.cache.stats().entries,
        scheduler_enabled=state.scheduler.is_enabled,
    )

    try:
        yield state
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        await state.cache.persist(state.store)
        await state.aclose()
        log.info("server_stopping")


# ---------------------------------------------------------------------------
# FastMCP instance and tool registration
# ---------------------------------------------------------------------------

mcp = FastMCP("linkaudit", lifespan=lifespan)
# FastMCP has no version kwarg; set it on the underlying Server so the
# initialize handshake reports ours.
mcp._mcp_server.version = __version__  # pyright: ignore[reportPrivateUsage]


def _serialise_tool_error(error: LinkAuditError) -> CallToolResult:
    """Convert a LinkAuditError to the MCP tool error result envelope."""
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(error.to_dict()))],
        isError=True,
    )


def _log_tool_error(tool: str, exc: LinkAuditError) -> None:
    log.warning(
        "tool_error",
        tool=tool,
        code=exc.code,
        message=exc.message,
        recoverable=exc.recoverable,
    )


@mcp.tool()
async def schedule_job(
    kind: str, ctx: Context, priority: int | None = None, delay_seconds: int = 0
) -> object:
    """Queue an audit job: full_audit, quick_check, alert_analysis or weekly_report.

    A pending job of the same kind within a minute of the requested time is
    reused rather than duplicated. Priority runs 1-10, highest first.
    """
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_schedule.handle(kind, priority, delay_seconds, state)
    except LinkAuditError as exc:
        _log_tool_error("schedule_job", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="schedule_job", exc_info=True)
        raise


@mcp.tool()
async def cancel_job(job_id: str, ctx: Context) -> object:
    """Cancel a pending or running audit job by id."""
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_cancel.handle(job_id, state)
    except LinkAuditError as exc:
        _log_tool_error("cancel_job", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="cancel_job", exc_info=True)
        raise


@mcp.tool()
async def get_queue_status(ctx: Context) -> object:
    """List pending and running audit jobs."""
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_queue_status.handle(state)
    except Exception:
        log.error("tool_unexpected_error", tool="get_queue_status", exc_info=True)
        raise


@mcp.tool()
async def invalidate_cache(
    ctx: Context,
    url: str | None = None,
    domain: str | None = None,
    event: str | None = None,
    affected_urls: list[str] | None = None,
    namespaces: list[str] | None = None,
) -> object:
    """Invalidate cached results for one URL, a whole domain, or an event.

    Events (content_change, deployment, error_recovery, ...) are matched
    against the invalidation rules and queue the affected URLs for refresh.
    """
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_invalidate.handle(url, domain, event, affected_urls, namespaces, state)
    except LinkAuditError as exc:
        _log_tool_error("invalidate_cache", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="invalidate_cache", exc_info=True)
        raise


@mcp.tool()
async def get_cache_stats(ctx: Context, days: int = 7) -> object:
    """Cache size and hit rate, last batch statistics and recent invalidations."""
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_cache_stats.handle(days, state)
    except LinkAuditError as exc:
        _log_tool_error("get_cache_stats", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="get_cache_stats", exc_info=True)
        raise


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    try:
        settings = Settings()
    except ValidationError as exc:
        structlog.get_logger().error("config_invalid", errors=exc.errors(include_url=False))
        sys.exit(1)

    if settings.server.transport == "http":
        _setup_logging(settings)
        run_http_server(mcp, settings)
        return

    mcp.run()


if __name__ == "__main__":
    main()

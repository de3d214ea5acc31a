"""Streamable HTTP transport and request guard for the MCP server."""

from __future__ import annotations

import re
import secrets
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.datastructures import Headers
from starlette.responses import Response

if TYPE_CHECKING:
    from mcp.server.fastmcp import FastMCP
    from starlette.types import ASGIApp, Receive, Scope, Send

    from linkaudit.config import Settings

log = structlog.get_logger()

_LOCAL_ORIGIN = re.compile(r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$")


class RequestGuard:
    """Pure ASGI middleware in front of the MCP app.

    Rejects requests with a wrong bearer key (when auth is enabled) and
    requests whose Origin header is not a loopback address. Pure ASGI keeps
    streamed responses unbuffered.
    """

    def __init__(self, app: ASGIApp, *, auth_key: str | None = None) -> None:
        self.app = app
        self.auth_key = auth_key

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            headers = Headers(scope=scope)

            if self.auth_key is not None:
                scheme, _, token = headers.get("authorization", "").partition(" ")
                if scheme != "Bearer" or not secrets.compare_digest(token, self.auth_key):
                    await Response("Unauthorized", status_code=401)(scope, receive, send)
                    return

            origin = headers.get("origin", "")
            if origin and not _LOCAL_ORIGIN.match(origin):
                log.info("http_origin_rejected", origin=origin)
                await Response("Forbidden", status_code=403)(scope, receive, send)
                return

        await self.app(scope, receive, send)


def resolve_auth_key(settings: Settings) -> str | None:
    """Configured key, a generated one when auth is on without a key, else None."""
    if not settings.server.auth_enabled:
        log.warning("http_auth_disabled")
        return None
    if settings.server.auth_key:
        return settings.server.auth_key
    key = secrets.token_urlsafe(32)
    log.warning("http_auth_key_auto_generated", auth_key=key)
    return key


def run_http_server(mcp: FastMCP, settings: Settings) -> None:
    app = RequestGuard(mcp.streamable_http_app(), auth_key=resolve_auth_key(settings))
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # structlog owns logging
    )

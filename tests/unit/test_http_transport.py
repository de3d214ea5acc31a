"""Tests for RequestGuard and auth key resolution.

The guard is exercised directly through httpx's ASGI transport so no real
server is started. The inner app is a trivial 200-OK responder that never
runs if the guard short-circuits.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

from linkaudit.config import Settings
from linkaudit.transport import RequestGuard, resolve_auth_key

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


async def _ok_app(scope: Scope, receive: Receive, send: Send) -> None:
    await send({"type": "http.response.start", "status": 200, "headers": []})
    await send({"type": "http.response.body", "body": b"ok"})


def _client(app: ASGIApp) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://localhost",
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


async def test_no_key_allows_any_request() -> None:
    async with _client(RequestGuard(_ok_app)) as client:
        response = await client.post("/mcp", headers={"Authorization": "Bearer whatever"})
    assert response.status_code == 200


async def test_correct_key_passes() -> None:
    async with _client(RequestGuard(_ok_app, auth_key="secret-key")) as client:
        response = await client.post("/mcp", headers={"Authorization": "Bearer secret-key"})
    assert response.status_code == 200


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Bearer wrong-key"},
        {"Authorization": "secret-key"},
        {"Authorization": "Basic secret-key"},
    ],
)
async def test_bad_or_missing_key_returns_401(headers: dict[str, str]) -> None:
    async with _client(RequestGuard(_ok_app, auth_key="secret-key")) as client:
        response = await client.post("/mcp", headers=headers)
    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Origin
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "origin",
    [
        "http://localhost",
        "http://localhost:8080",
        "https://localhost:9000",
        "http://127.0.0.1:3000",
        "http://[::1]:8080",
    ],
)
async def test_loopback_origin_allowed(origin: str) -> None:
    async with _client(RequestGuard(_ok_app)) as client:
        response = await client.post("/mcp", headers={"Origin": origin})
    assert response.status_code == 200


@pytest.mark.parametrize(
    "origin",
    ["https://evil.example", "http://localhost.evil.example", "http://192.168.1.10"],
)
async def test_foreign_origin_rejected(origin: str) -> None:
    async with _client(RequestGuard(_ok_app)) as client:
        response = await client.post("/mcp", headers={"Origin": origin})
    assert response.status_code == 403


async def test_auth_checked_before_origin() -> None:
    async with _client(RequestGuard(_ok_app, auth_key="k")) as client:
        response = await client.post("/mcp", headers={"Origin": "https://evil.example"})
    assert response.status_code == 401


# ---------------------------------------------------------------------------
# resolve_auth_key
# ---------------------------------------------------------------------------


class TestResolveAuthKey:
    def test_disabled(self) -> None:
        assert resolve_auth_key(Settings(server={"auth_enabled": False, "auth_key": "x"})) is None

    def test_configured_key(self) -> None:
        settings = Settings(server={"auth_enabled": True, "auth_key": "configured"})
        assert resolve_auth_key(settings) == "configured"

    def test_generated_key(self) -> None:
        settings = Settings(server={"auth_enabled": True})
        first = resolve_auth_key(settings)
        second = resolve_auth_key(settings)
        assert first and second
        assert first != second
        assert len(first) >= 32

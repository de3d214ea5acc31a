"""Integration test fixtures.

Provides a fully wired AppState over an in-memory SQLite store and a real
httpx client (mocked per test with respx). Clock, store and cache fixtures
come from tests/conftest.py.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import httpx
import pytest

from linkaudit.config import Settings
from linkaudit.state import wire_state

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from linkaudit.state import AppState
    from linkaudit.store import SqliteStore

BASE_URL = "https://example.com"
SITEMAP_URL = f"{BASE_URL}/sitemap.xml"


@pytest.fixture()
def public_dir(tmp_path: Path) -> Path:
    site = tmp_path / "public"
    site.mkdir()
    (site / "index.html").write_text('<main id="content">Home</main>', encoding="utf-8")
    (site / "pricing.html").write_text('<section id="plans">Plans</section>', encoding="utf-8")
    return site


@pytest.fixture()
def integration_settings(public_dir: Path) -> Settings:
    return Settings(
        cache={"db_path": ":memory:"},
        validation={"retry_attempts": 1, "rate_limit_delay": 0, "batch_size": 5},
        site={
            "base_url": BASE_URL,
            "public_dir": str(public_dir),
            "routes": ["/"],
            "sitemap_urls": [SITEMAP_URL],
        },
    )


@pytest.fixture()
async def app_state(
    integration_settings: Settings, store: SqliteStore, clock
) -> AsyncGenerator[AppState, None]:
    """Full AppState wired around the shared in-memory store."""
    async with httpx.AsyncClient(follow_redirects=True) as client:
        state = wire_state(integration_settings, store, client, clock=clock)
        yield state
        await state.scheduler.shutdown()


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Baseline env for subprocess MCP tests.

    Forces stdio transport, isolates the database in tmp_path and points the
    site at an unroutable address so no background work reaches the network.
    """
    env = os.environ.copy()
    env["LINKAUDIT__SERVER__TRANSPORT"] = "stdio"
    env["LINKAUDIT__CACHE__DB_PATH"] = str(tmp_path / "linkaudit.db")
    env["LINKAUDIT__SITE__BASE_URL"] = "http://127.0.0.1:1"
    env["LINKAUDIT__SITE__PUBLIC_DIR"] = str(tmp_path)
    return env

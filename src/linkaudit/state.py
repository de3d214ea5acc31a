"""Application state container.

AppState is created once at server startup (inside the FastMCP lifespan
context manager, see ``build_state``) and injected into every tool handler
and background loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import aiosqlite

from linkaudit.cache import TTLCache
from linkaudit.clock import utc_now
from linkaudit.handlers import AuditHandlers
from linkaudit.invalidation import InvalidationManager
from linkaudit.prober import HttpProber, LocalProber, build_http_client
from linkaudit.reporting import MetricsReporter
from linkaudit.scheduler import AuditScheduler
from linkaudit.sitemap import SitemapFetcher, SitemapLinkSource
from linkaudit.store import SqliteStore
from linkaudit.validator import BatchValidator

if TYPE_CHECKING:
    import httpx

    from linkaudit.config import Settings
    from linkaudit.protocols import Clock, LinkSourceProtocol, ReporterProtocol, StoreProtocol


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every tool handler."""

    settings: Settings
    cache: TTLCache
    store: StoreProtocol
    validator: BatchValidator
    invalidation: InvalidationManager
    scheduler: AuditScheduler
    sitemap_fetcher: SitemapFetcher
    link_source: LinkSourceProtocol
    reporter: ReporterProtocol
    http_client: httpx.AsyncClient | None = None
    db: aiosqlite.Connection | None = None
    clock: Clock = utc_now

    async def aclose(self) -> None:
        await self.scheduler.shutdown()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.db is not None:
            await self.db.close()


def wire_state(
    settings: Settings,
    store: StoreProtocol,
    http_client: httpx.AsyncClient,
    *,
    clock: Clock = utc_now,
) -> AppState:
    """Construct every component around an existing store and HTTP client."""
    site_host = urlparse(settings.site.base_url).hostname

    cache = TTLCache(settings.cache, clock=clock)
    validator = BatchValidator(
        cache,
        HttpProber(http_client, settings.validation),
        LocalProber(settings.site),
        store,
        settings.validation,
        site_host=site_host,
        clock=clock,
    )
    sitemap_fetcher = SitemapFetcher(http_client, cache)
    link_source = SitemapLinkSource(sitemap_fetcher, settings.site)
    reporter = MetricsReporter(store, cache, settings.site, clock=clock)
    invalidation = InvalidationManager(
        cache,
        validator,
        sitemap_fetcher,
        store,
        base_url=settings.site.base_url,
        clock=clock,
    )
    handlers = AuditHandlers(validator, link_source, reporter, cache, clock=clock)
    scheduler = AuditScheduler(settings.scheduler, store, handlers.as_mapping(), clock=clock)

    return AppState(
        settings=settings,
        cache=cache,
        store=store,
        validator=validator,
        invalidation=invalidation,
        scheduler=scheduler,
        sitemap_fetcher=sitemap_fetcher,
        link_source=link_source,
        reporter=reporter,
        http_client=http_client,
        clock=clock,
    )


async def build_state(settings: Settings) -> AppState:
    """Open the database and HTTP client, then wire the components."""
    db_path = Path(settings.cache.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    store = SqliteStore(db)
    await store.init_db()

    state = wire_state(settings, store, build_http_client(settings.validation))
    state.db = db
    return state

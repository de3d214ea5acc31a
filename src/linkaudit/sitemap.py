"""Sitemap fetching and the sitemap-backed link source.

Snapshots are cached in the ``sitemap`` namespace keyed by hostname, so a
full audit reuses the last fetch until its TTL lapses or an invalidation
event purges it.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import httpx
import structlog

from linkaudit.cache import sitemap_key
from linkaudit.clock import utc_now
from linkaudit.models.cache import CacheNamespace, SitemapSnapshot
from linkaudit.models.links import LinkKind, LinkPriority, ScannedLink

if TYPE_CHECKING:
    from linkaudit.cache import TTLCache
    from linkaudit.config import SiteSettings
    from linkaudit.protocols import SitemapFetcherProtocol

log = structlog.get_logger()

_SITEMAP_BLOCK_RE = re.compile(r"<sitemap>(.*?)</sitemap>", re.DOTALL)
_URL_BLOCK_RE = re.compile(r"<url>(.*?)</url>", re.DOTALL)
_LOC_RE = re.compile(r"<loc>\s*(.*?)\s*</loc>", re.DOTALL)

# An index may point at further indexes; deeper nesting is ignored.
MAX_INDEX_DEPTH = 2


def parse_sitemap(xml: str) -> list[str]:
    """Extract ``<loc>`` values from a sitemap or sitemap index.

    For an index, the child sitemap URLs are returned; for a regular sitemap,
    the page URLs. Order is preserved, duplicates removed.
    """
    blocks = _SITEMAP_BLOCK_RE.findall(xml) or _URL_BLOCK_RE.findall(xml)
    urls: list[str] = []
    for block in blocks:
        match = _LOC_RE.search(block)
        if match:
            urls.append(match.group(1))
    return list(dict.fromkeys(urls))


def is_sitemap_index(xml: str) -> bool:
    return _SITEMAP_BLOCK_RE.search(xml) is not None


class SitemapFetcher:
    """Fetch and cache sitemap snapshots."""

    def __init__(self, client: httpx.AsyncClient, cache: TTLCache) -> None:
        self._client = client
        self._cache = cache

    async def fetch(self, sitemap_url: str, *, force: bool = False) -> SitemapSnapshot:
        """Return the domain's snapshot, from cache unless ``force`` is set.

        A sitemap index is resolved here: its child sitemaps are fetched (up
        to ``MAX_INDEX_DEPTH`` levels) and their pages merged into the one
        snapshot cached for the host. A failing child is logged and skipped.

        Raises ``httpx.HTTPError`` on network failure or a non-2xx response
        for ``sitemap_url`` itself; callers decide whether that is retried.
        """
        key = sitemap_key(urlparse(sitemap_url).hostname or sitemap_url)

        if not force:
            cached = self._cache.get(CacheNamespace.SITEMAP, key)
            if cached is not None:
                log.debug("sitemap_cache_hit", key=key)
                return cached

        response = await self._get(sitemap_url)
        children: list[str] = []
        if is_sitemap_index(response.text):
            urls = await self._resolve_index(
                response.text, depth=1, seen={sitemap_url}, found=children
            )
        else:
            urls = parse_sitemap(response.text)

        snapshot = SitemapSnapshot(
            urls=frozenset(urls),
            fetched_at=utc_now(),
            page_count=len(urls),
            metadata={
                "source": sitemap_url,
                "content_type": response.headers.get("content-type"),
                "child_sitemaps": children,
            },
        )
        await self._cache.set(CacheNamespace.SITEMAP, key, snapshot)
        log.info(
            "sitemap_fetched",
            url=sitemap_url,
            page_count=snapshot.page_count,
            child_sitemaps=len(children),
        )
        return snapshot

    async def _get(self, url: str) -> httpx.Response:
        response = await self._client.get(url, follow_redirects=True)
        response.raise_for_status()
        return response

    async def _resolve_index(
        self, xml: str, *, depth: int, seen: set[str], found: list[str]
    ) -> list[str]:
        pages: list[str] = []
        for child_url in parse_sitemap(xml):
            if child_url in seen:
                continue
            seen.add(child_url)
            try:
                response = await self._get(child_url)
            except httpx.HTTPError:
                log.warning("child_sitemap_fetch_failed", url=child_url, exc_info=True)
                continue
            found.append(child_url)

            if not is_sitemap_index(response.text):
                pages.extend(parse_sitemap(response.text))
            elif depth < MAX_INDEX_DEPTH:
                nested = await self._resolve_index(
                    response.text, depth=depth + 1, seen=seen, found=found
                )
                pages.extend(nested)
            else:
                log.warning("sitemap_index_too_deep", url=child_url, max_depth=MAX_INDEX_DEPTH)
        return list(dict.fromkeys(pages))


class SitemapLinkSource:
    """Turn the configured sitemaps into links for a full audit.

    Pages on the site's own host are internal routes; everything else is
    external. The site root is critical so it is always checked first.
    """

    def __init__(self, fetcher: SitemapFetcherProtocol, settings: SiteSettings) -> None:
        self._fetcher = fetcher
        self._settings = settings
        self._site_host = urlparse(settings.base_url).hostname

    async def collect(self) -> list[ScannedLink]:
        links: dict[str, ScannedLink] = {}
        for sitemap_url in self._settings.sitemap_urls:
            try:
                snapshot = await self._fetcher.fetch(sitemap_url)
            except httpx.HTTPError:
                log.warning("sitemap_fetch_failed", url=sitemap_url, exc_info=True)
                continue
            for url in sorted(snapshot.urls):
                links.setdefault(url, self._to_link(url, sitemap_url))

        for route in self._settings.routes:
            url = self._settings.base_url.rstrip("/") + route
            links.setdefault(url, self._to_link(url, "config:routes"))

        log.info("links_collected", count=len(links))
        return list(links.values())

    def _to_link(self, url: str, source: str) -> ScannedLink:
        parsed = urlparse(url)
        internal = parsed.hostname == self._site_host
        is_root = internal and parsed.path in ("", "/")
        return ScannedLink(
            url=url,
            source_location=source,
            link_kind=LinkKind.INTERNAL if internal else LinkKind.EXTERNAL,
            priority=LinkPriority.CRITICAL if is_root else LinkPriority.MEDIUM,
            context="sitemap",
        )

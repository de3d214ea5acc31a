"""Unit tests for linkaudit.sitemap."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from linkaudit.config import SiteSettings
from linkaudit.models.cache import CacheNamespace, SitemapSnapshot
from linkaudit.models.links import LinkKind, LinkPriority
from linkaudit.sitemap import SitemapFetcher, SitemapLinkSource, parse_sitemap

if TYPE_CHECKING:
    from conftest import FakeClock

    from linkaudit.cache import TTLCache

SITEMAP_URL = "https://example.com/sitemap.xml"

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url>
    <loc>https://example.com/</loc>
    <lastmod>2026-01-01</lastmod>
  </url>
  <url><loc> https://example.com/pricing </loc></url>
  <url><loc>https://docs.partner.example/guide</loc></url>
  <url><loc>https://example.com/pricing</loc></url>
</urlset>
"""

SITEMAP_INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/sitemap-pages.xml</loc></sitemap>
  <sitemap><loc>https://example.com/sitemap-blog.xml</loc></sitemap>
</sitemapindex>
"""


# ---------------------------------------------------------------------------
# parse_sitemap
# ---------------------------------------------------------------------------


class TestParseSitemap:
    def test_urlset(self) -> None:
        assert parse_sitemap(URLSET) == [
            "https://example.com/",
            "https://example.com/pricing",
            "https://docs.partner.example/guide",
        ]

    def test_sitemap_index_returns_child_sitemaps(self) -> None:
        assert parse_sitemap(SITEMAP_INDEX) == [
            "https://example.com/sitemap-pages.xml",
            "https://example.com/sitemap-blog.xml",
        ]

    def test_not_a_sitemap(self) -> None:
        assert parse_sitemap("<html><body>404</body></html>") == []


# ---------------------------------------------------------------------------
# SitemapFetcher
# ---------------------------------------------------------------------------


class TestSitemapFetcher:
    async def test_fetch_caches_by_hostname(self, cache: TTLCache) -> None:
        with respx.mock:
            route = respx.get(SITEMAP_URL).mock(return_value=httpx.Response(200, text=URLSET))
            async with httpx.AsyncClient() as client:
                fetcher = SitemapFetcher(client, cache)
                first = await fetcher.fetch(SITEMAP_URL)
                second = await fetcher.fetch(SITEMAP_URL)

        assert route.call_count == 1
        assert second is first
        assert first.page_count == 3
        assert "https://example.com/pricing" in first.urls
        assert first.metadata["source"] == SITEMAP_URL
        assert cache.get(CacheNamespace.SITEMAP, "example.com") is first

    async def test_force_bypasses_cache(self, cache: TTLCache) -> None:
        with respx.mock:
            route = respx.get(SITEMAP_URL).mock(return_value=httpx.Response(200, text=URLSET))
            async with httpx.AsyncClient() as client:
                fetcher = SitemapFetcher(client, cache)
                await fetcher.fetch(SITEMAP_URL)
                await fetcher.fetch(SITEMAP_URL, force=True)

        assert route.call_count == 2

    async def test_http_error_propagates(self, cache: TTLCache) -> None:
        with respx.mock:
            respx.get(SITEMAP_URL).mock(return_value=httpx.Response(500))
            async with httpx.AsyncClient() as client:
                fetcher = SitemapFetcher(client, cache)
                with pytest.raises(httpx.HTTPStatusError):
                    await fetcher.fetch(SITEMAP_URL)

        assert cache.keys(CacheNamespace.SITEMAP) == []


# ---------------------------------------------------------------------------
# SitemapLinkSource
# ---------------------------------------------------------------------------


class TestSitemapLinkSource:
    async def test_collects_sitemap_pages_and_routes(self, clock: FakeClock) -> None:
        fetcher = AsyncMock()
        fetcher.fetch.return_value = SitemapSnapshot(
            urls=frozenset(
                {
                    "https://example.com/",
                    "https://example.com/pricing",
                    "https://docs.partner.example/guide",
                }
            ),
            fetched_at=clock(),
        )
        settings = SiteSettings(
            base_url="https://example.com",
            routes=["/", "/about"],
            sitemap_urls=[SITEMAP_URL],
        )

        links = await SitemapLinkSource(fetcher, settings).collect()

        by_url = {link.url: link for link in links}
        assert sorted(by_url) == [
            "https://docs.partner.example/guide",
            "https://example.com/",
            "https://example.com/about",
            "https://example.com/pricing",
        ]
        assert by_url["https://example.com/"].priority is LinkPriority.CRITICAL
        assert by_url["https://example.com/"].source_location == SITEMAP_URL
        assert by_url["https://example.com/about"].source_location == "config:routes"
        assert by_url["https://example.com/pricing"].link_kind is LinkKind.INTERNAL
        assert by_url["https://docs.partner.example/guide"].link_kind is LinkKind.EXTERNAL
        fetcher.fetch.assert_awaited_once_with(SITEMAP_URL)

    async def test_unreachable_sitemap_falls_back_to_routes(self) -> None:
        fetcher = AsyncMock()
        fetcher.fetch.side_effect = httpx.ConnectError("refused")
        settings = SiteSettings(
            base_url="https://example.com/",
            routes=["/"],
            sitemap_urls=[SITEMAP_URL],
        )

        links = await SitemapLinkSource(fetcher, settings).collect()

        assert [link.url for link in links] == ["https://example.com/"]
        assert links[0].priority is LinkPriority.CRITICAL


# ---------------------------------------------------------------------------
# Sitemap indexes
# ---------------------------------------------------------------------------


def _urlset(*locs: str) -> str:
    entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
    return f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'


def _index(*locs: str) -> str:
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    xmlns = "http://www.sitemaps.org/schemas/sitemap/0.9"
    return f'<sitemapindex xmlns="{xmlns}">{entries}</sitemapindex>'


class TestSitemapIndex:
    async def test_index_children_are_resolved_into_pages(self, cache: TTLCache) -> None:
        settings = SiteSettings(
            base_url="https://example.com", routes=[], sitemap_urls=[SITEMAP_URL]
        )
        with respx.mock:
            respx.get(SITEMAP_URL).mock(return_value=httpx.Response(200, text=SITEMAP_INDEX))
            respx.get("https://example.com/sitemap-pages.xml").mock(
                return_value=httpx.Response(200, text=_urlset("https://example.com/pricing"))
            )
            respx.get("https://example.com/sitemap-blog.xml").mock(
                return_value=httpx.Response(
                    200,
                    text=_urlset("https://example.com/blog/launch", "https://example.com/pricing"),
                )
            )
            async with httpx.AsyncClient() as client:
                fetcher = SitemapFetcher(client, cache)
                links = await SitemapLinkSource(fetcher, settings).collect()

        assert sorted(link.url for link in links) == [
            "https://example.com/blog/launch",
            "https://example.com/pricing",
        ]
        snapshot = cache.get(CacheNamespace.SITEMAP, "example.com")
        assert snapshot.page_count == 2
        assert snapshot.metadata["child_sitemaps"] == [
            "https://example.com/sitemap-pages.xml",
            "https://example.com/sitemap-blog.xml",
        ]

    async def test_failing_child_is_skipped(self, cache: TTLCache) -> None:
        with respx.mock:
            respx.get(SITEMAP_URL).mock(return_value=httpx.Response(200, text=SITEMAP_INDEX))
            respx.get("https://example.com/sitemap-pages.xml").mock(
                return_value=httpx.Response(200, text=_urlset("https://example.com/pricing"))
            )
            respx.get("https://example.com/sitemap-blog.xml").mock(
                return_value=httpx.Response(404)
            )
            async with httpx.AsyncClient() as client:
                snapshot = await SitemapFetcher(client, cache).fetch(SITEMAP_URL)

        assert snapshot.urls == frozenset({"https://example.com/pricing"})
        assert snapshot.metadata["child_sitemaps"] == ["https://example.com/sitemap-pages.xml"]

    async def test_nesting_is_bounded(self, cache: TTLCache) -> None:
        level_1 = "https://example.com/sitemap-1.xml"
        level_2 = "https://example.com/sitemap-2.xml"
        level_3 = "https://example.com/sitemap-3.xml"
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(SITEMAP_URL).mock(
                return_value=httpx.Response(
                    200, text=_index(level_1, "https://example.com/sitemap-top.xml")
                )
            )
            respx_mock.get("https://example.com/sitemap-top.xml").mock(
                return_value=httpx.Response(200, text=_urlset("https://example.com/top"))
            )
            respx_mock.get(level_1).mock(
                return_value=httpx.Response(
                    200, text=_index(level_2, "https://example.com/sitemap-mid.xml")
                )
            )
            respx_mock.get("https://example.com/sitemap-mid.xml").mock(
                return_value=httpx.Response(200, text=_urlset("https://example.com/mid"))
            )
            respx_mock.get(level_2).mock(return_value=httpx.Response(200, text=_index(level_3)))
            deepest = respx_mock.get(level_3).mock(
                return_value=httpx.Response(200, text=_urlset("https://example.com/deep"))
            )
            async with httpx.AsyncClient() as client:
                snapshot = await SitemapFetcher(client, cache).fetch(SITEMAP_URL)

        assert snapshot.urls == frozenset({"https://example.com/top", "https://example.com/mid"})
        assert deepest.call_count == 0

    async def test_index_refers_back_to_itself(self, cache: TTLCache) -> None:
        with respx.mock:
            route = respx.get(SITEMAP_URL).mock(
                return_value=httpx.Response(200, text=_index(SITEMAP_URL))
            )
            async with httpx.AsyncClient() as client:
                snapshot = await SitemapFetcher(client, cache).fetch(SITEMAP_URL)

        assert route.call_count == 1
        assert snapshot.page_count == 0

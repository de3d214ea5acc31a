"""Single-link probers.

``HttpProber`` checks external URLs with a HEAD request (GET fallback for
hosts that reject HEAD) and owns the retry policy: transient failures are
retried with exponential backoff (``2 ** attempt`` seconds) before a terminal
``broken`` or ``timeout`` result is returned.

``LocalProber`` checks internal routes, downloads and anchors against the
site's public directory and known route table without touching the network.

Both return a ValidationResult for every input and never raise for a bad
link. Only programming errors escape.
"""

from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urljoin, urlparse

import httpx
import structlog

from linkaudit.clock import utc_now
from linkaudit.models.links import LinkKind, LinkStatus, ValidationResult

if TYPE_CHECKING:
    from linkaudit.config import SiteSettings, ValidationSettings

log = structlog.get_logger()

# Status codes worth another attempt; anything else is a final answer.
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

# Hosts that answer HEAD with these but serve GET fine.
_HEAD_REJECTED_STATUS = frozenset({403, 405, 501})

# Errors that will not improve on retry (DNS failure, refused, bad URL, TLS).
_NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    httpx.ConnectError,
    httpx.UnsupportedProtocol,
    httpx.InvalidURL,
)


def build_http_client(settings: ValidationSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=settings.follow_redirects,
        timeout=httpx.Timeout(settings.timeout.total_seconds()),
        headers={
            "User-Agent": settings.user_agent,
            "Accept": "*/*",
        },
        limits=httpx.Limits(
            max_connections=max(10, settings.batch_size * 2),
            max_keepalive_connections=5,
        ),
    )


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)


def _status_from_code(status_code: int) -> LinkStatus:
    if 200 <= status_code < 300:
        return LinkStatus.VALID
    if 300 <= status_code < 400:
        return LinkStatus.REDIRECT
    return LinkStatus.BROKEN


class HttpProber:
    """HTTP reachability check for external links with retry and backoff."""

    def __init__(self, client: httpx.AsyncClient, settings: ValidationSettings) -> None:
        self._client = client
        self._settings = settings

    async def probe(self, url: str, kind: LinkKind = LinkKind.EXTERNAL) -> ValidationResult:
        started = time.monotonic()
        attempts = self._settings.retry_attempts
        last_error = "unknown error"
        timed_out = False

        for attempt in range(1, attempts + 1):
            try:
                response = await self._request(url)
            except httpx.TimeoutException:
                timed_out = True
                last_error = "Request timeout"
                log.debug("probe_timeout", url=url, attempt=attempt)
            except _NON_RETRYABLE_ERRORS as exc:
                log.debug("probe_failed_permanently", url=url, error=str(exc))
                return ValidationResult(
                    url=url,
                    status=LinkStatus.BROKEN,
                    error_detail=str(exc) or type(exc).__name__,
                    latency_ms=_elapsed_ms(started),
                    checked_at=utc_now(),
                )
            except httpx.HTTPError as exc:
                timed_out = False
                last_error = str(exc) or type(exc).__name__
                log.debug("probe_http_error", url=url, attempt=attempt, error=last_error)
            else:
                if response.status_code not in _RETRYABLE_STATUS or attempt == attempts:
                    return self._result_from_response(url, response, started)
                timed_out = False
                last_error = f"HTTP {response.status_code}"
                log.debug("probe_retryable_status", url=url, status_code=response.status_code)

            if attempt < attempts:
                await asyncio.sleep(2**attempt)

        log.info("probe_exhausted", url=url, attempts=attempts, error=last_error)
        return ValidationResult(
            url=url,
            status=LinkStatus.TIMEOUT if timed_out else LinkStatus.BROKEN,
            error_detail=last_error,
            latency_ms=_elapsed_ms(started),
            checked_at=utc_now(),
        )

    async def _request(self, url: str) -> httpx.Response:
        timeout = self._settings.timeout.total_seconds()
        response = await self._client.head(url, timeout=timeout)
        if response.status_code in _HEAD_REJECTED_STATUS:
            log.debug("probe_head_rejected", url=url, status_code=response.status_code)
            response = await self._client.get(url, timeout=timeout)
        return response

    def _result_from_response(
        self, url: str, response: httpx.Response, started: float
    ) -> ValidationResult:
        status = _status_from_code(response.status_code)
        redirect_target: str | None = None

        if response.history and str(response.url) != url:
            status = LinkStatus.REDIRECT
            redirect_target = str(response.url)
        elif status is LinkStatus.REDIRECT and "location" in response.headers:
            redirect_target = urljoin(url, response.headers["location"])

        return ValidationResult(
            url=url,
            status=status,
            status_code=response.status_code,
            redirect_target=redirect_target,
            error_detail=None if status is not LinkStatus.BROKEN else f"HTTP {response.status_code}",
            latency_ms=_elapsed_ms(started),
            checked_at=utc_now(),
        )


class LocalProber:
    """Filesystem and route-table check for internal, download and anchor links."""

    def __init__(self, settings: SiteSettings) -> None:
        self._base_url = settings.base_url.rstrip("/")
        self._public_dir = Path(settings.public_dir)
        self._routes = frozenset(_normalise_route(route) for route in settings.routes)

    async def probe(self, url: str, kind: LinkKind = LinkKind.INTERNAL) -> ValidationResult:
        started = time.monotonic()
        try:
            match kind:
                case LinkKind.DOWNLOAD:
                    error = await self._check_download(url)
                case LinkKind.ANCHOR:
                    error = await self._check_anchor(url)
                case LinkKind.INTERNAL:
                    error = await self._check_route(url)
                case _:
                    error = f"Unsupported link kind for local check: {kind}"
        except OSError as exc:
            error = f"Filesystem error: {exc}"

        return ValidationResult(
            url=url,
            status=LinkStatus.BROKEN if error else LinkStatus.VALID,
            error_detail=error,
            latency_ms=_elapsed_ms(started),
            checked_at=utc_now(),
        )

    def _relative_path(self, url: str) -> str:
        if url.startswith(self._base_url):
            url = url[len(self._base_url) :]
        return urlparse(url).path

    async def _check_download(self, url: str) -> str | None:
        relative = self._relative_path(url).lstrip("/")
        if not relative:
            return f"Download file not found: {url}"
        name = Path(relative).name
        candidates = [
            self._public_dir / relative,
            self._public_dir / "downloads" / name,
            self._public_dir / "ressources" / "downloads" / name,
            self._public_dir / "assets" / name,
        ]
        for candidate in candidates:
            if await asyncio.to_thread(candidate.is_file):
                return None
        return f"Download file not found: {url}"

    async def _check_route(self, url: str) -> str | None:
        route = _normalise_route(self._relative_path(url))
        if route in self._routes:
            return None
        if await asyncio.to_thread(self._page_file, route) is not None:
            return None
        return f"Internal route not found: {url}"

    async def _check_anchor(self, url: str) -> str | None:
        page, _, fragment = url.partition("#")
        if not fragment:
            return f"Empty anchor: {url}"
        if page:
            route_error = await self._check_route(page)
            if route_error:
                return route_error
        route = _normalise_route(self._relative_path(page)) if page else "/"
        page_file = await asyncio.to_thread(self._page_file, route)
        if page_file is None:
            # Rendered route with no static HTML to inspect; trust the route.
            return None
        html = await asyncio.to_thread(page_file.read_text, encoding="utf-8", errors="replace")
        anchor_re = re.compile(rf"""(id|name)=["']{re.escape(fragment)}["']""", re.IGNORECASE)
        if anchor_re.search(html):
            return None
        return f"Anchor not found: #{fragment}"

    def _page_file(self, route: str) -> Path | None:
        relative = route.strip("/")
        candidates = (
            [self._public_dir / "index.html"]
            if not relative
            else [
                self._public_dir / relative,
                self._public_dir / f"{relative}.html",
                self._public_dir / relative / "index.html",
            ]
        )
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None


def _normalise_route(route: str) -> str:
    route = route.split("?", 1)[0].split("#", 1)[0]
    if not route.startswith("/"):
        route = "/" + route
    return route.rstrip("/") or "/"

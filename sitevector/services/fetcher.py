"""HTML fetching service.

Retrieves pages over HTTP with timeout and redirect handling. Network
failures are returned as unsuccessful results rather than raised.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

from sitevector.config import Settings

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class FetchResult:
    """Result of fetching a single URL."""
    success: bool
    url: str
    final_url: str | None = None  # After redirects
    html: str = ""
    status_code: int | None = None
    content_type: str | None = None
    content_length: int = 0
    response_time_ms: int = 0
    redirect_count: int = 0
    last_modified: str | None = None
    etag: str | None = None
    error: str | None = None

    @property
    def is_html(self) -> bool:
        content_type = (self.content_type or "").lower()
        return any(kind in content_type for kind in HTML_CONTENT_TYPES)


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the shared HTTP client used by every fetch in a process."""
    return httpx.AsyncClient(
        timeout=settings.fetch_timeout_seconds,
        follow_redirects=True,
        max_redirects=settings.max_redirects,
        headers={"User-Agent": settings.user_agent},
    )


class HtmlFetcher:
    """Fetches raw HTML for URLs using a shared httpx client."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client
        self.timeout = settings.fetch_timeout_seconds
        self.user_agent = settings.user_agent

    async def fetch(
        self,
        url: str,
        timeout: float | None = None,
        user_agent: str | None = None,
        require_html: bool = True,
    ) -> FetchResult:
        """Fetch a URL.

        Args:
            url: Absolute URL to fetch
            timeout: Per-request timeout in seconds (defaults to settings)
            user_agent: Overrides the client's User-Agent header
            require_html: Treat non-HTML responses as a soft failure

        Returns:
            FetchResult; ``success`` is False for network errors, HTTP errors
            and unsupported content types.
        """
        started = time.perf_counter()
        headers = {"User-Agent": user_agent} if user_agent else None

        try:
            response = await self.client.get(
                url,
                timeout=timeout if timeout is not None else self.timeout,
                headers=headers,
            )
        except httpx.TimeoutException:
            return self._failure(url, started, "Request timeout")
        except httpx.ConnectError as e:
            message = str(e).lower()
            if "name" in message or "resolve" in message or "getaddrinfo" in message:
                return self._failure(url, started, "Domain not found")
            return self._failure(url, started, "Connection refused")
        except httpx.TooManyRedirects:
            return self._failure(url, started, "Too many redirects")
        except (httpx.InvalidURL, httpx.UnsupportedProtocol, ValueError) as e:
            return self._failure(url, started, f"Invalid URL: {e}")
        except httpx.HTTPError as e:
            return self._failure(url, started, str(e) or type(e).__name__)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        content_type = response.headers.get("content-type", "")
        result = FetchResult(
            success=True,
            url=url,
            final_url=str(response.url),
            status_code=response.status_code,
            content_type=content_type,
            content_length=len(response.content),
            response_time_ms=elapsed_ms,
            redirect_count=len(response.history),
            last_modified=response.headers.get("last-modified"),
            etag=response.headers.get("etag"),
        )

        if response.status_code >= 400:
            result.success = False
            result.error = f"HTTP {response.status_code}: {response.reason_phrase}"
            return result

        if require_html and not result.is_html:
            result.success = False
            result.error = f"Unsupported content type: {content_type or 'unknown'}"
            return result

        result.html = response.text
        return result

    async def fetch_many(
        self,
        urls: list[str],
        concurrency: int = 5,
        delay: float = 0.5,
    ) -> list[FetchResult]:
        """Fetch several URLs with bounded concurrency.

        Results are returned in the same order as ``urls``.
        """
        semaphore = asyncio.Semaphore(concurrency)

        async def fetch_one(url: str) -> FetchResult:
            async with semaphore:
                result = await self.fetch(url)
                if delay:
                    await asyncio.sleep(delay)
                return result

        return list(await asyncio.gather(*(fetch_one(url) for url in urls)))

    def _failure(self, url: str, started: float, error: str) -> FetchResult:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.warning(f"Fetch failed for {url}: {error}")
        return FetchResult(
            success=False,
            url=url,
            response_time_ms=elapsed_ms,
            error=error,
        )

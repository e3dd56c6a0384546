"""
Async HTTP fetcher for supplier XML feeds.

Tries the feed URL directly, then through each configured proxy prefix
(some feed hosts refuse direct requests from browsers and cloud IPs).
Every attempt is retried with exponential backoff.

Usage:
    async with FeedFetcher() as fetcher:
        await registry.refresh(FeedKind.CRM, fetcher.for_kind(FeedKind.CRM))
"""
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx

from pricedesk.config import config
from pricedesk.exceptions import FeedConnectionError
from pricedesk.feeds import FeedFetch
from pricedesk.models import FeedKind
from pricedesk.observability import Timer, get_logger
from pricedesk.resilience import RetryConfig, retry_with_backoff

logger = get_logger(__name__)

RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    exponential_base=2.0
)


class FeedFetcher:
    """
    Feed downloader with proxy fallback.

    Usage:
        async with FeedFetcher(proxy_prefixes=["https://proxy.example/?url="]) as f:
            text = await f.fetch("https://shop.example/feed.xml")
    """

    def __init__(
        self,
        proxy_prefixes: Optional[List[str]] = None,
        timeout: float = None,
        retry_config: RetryConfig = RETRY_CONFIG,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        feed_urls: Optional[Dict[FeedKind, str]] = None,
    ):
        self.proxy_prefixes = config.feeds.proxy_prefixes if proxy_prefixes is None else proxy_prefixes
        self.feed_urls = feed_urls or {
            FeedKind.CRM: config.feeds.crm_url,
            FeedKind.PROM: config.feeds.marketplace_url,
        }
        self.timeout = timeout or config.feeds.request_timeout
        self.retry_config = retry_config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        """Create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"Accept": "application/xml, text/xml, */*"},
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FeedFetcher":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def candidate_urls(self, url: str) -> List[str]:
        """Direct URL first, then one URL per proxy prefix."""
        return [url] + [f"{prefix}{quote(url, safe='')}" for prefix in self.proxy_prefixes]

    async def fetch(self, url: str) -> str:
        """
        Download a feed document.

        Raises:
            FeedConnectionError: If the direct URL and every proxy failed
        """
        if not url:
            raise FeedConnectionError("Feed URL is not configured")

        failures = []
        for candidate in self.candidate_urls(url):
            try:
                return await retry_with_backoff(
                    self._get,
                    candidate,
                    config=self.retry_config,
                    retryable_exceptions=(FeedConnectionError,),
                )
            except FeedConnectionError as e:
                logger.warning(f"Feed source failed: {e}", extra={"url": candidate})
                failures.append(str(e))

        raise FeedConnectionError("All feed sources failed", "; ".join(failures))

    def for_url(self, url: str) -> FeedFetch:
        """Zero-argument fetch callable for ``FeedRegistry.refresh``."""
        async def fetch() -> str:
            return await self.fetch(url)
        return fetch

    def for_kind(self, kind: FeedKind) -> FeedFetch:
        """Fetch callable for the configured URL of a feed kind."""
        return self.for_url(self.feed_urls.get(FeedKind(kind), ""))

    async def _get(self, url: str) -> str:
        """Execute a single GET (called by retry wrapper)."""
        if not self._client:
            await self.connect()

        try:
            with Timer("feed_download", logger):
                response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise FeedConnectionError(
                f"Request timeout after {self.timeout}s",
                url,
                retry_after=5
            ) from e
        except httpx.RequestError as e:
            raise FeedConnectionError("Request failed", str(e)) from e

        if response.status_code >= 400:
            raise FeedConnectionError(
                f"Feed returned {response.status_code}",
                response.text[:200]
            )

        return response.text

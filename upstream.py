#!/usr/bin/env python3
"""
Upstream HTTP access for source adapters.

All adapters share one aiohttp ClientSession and go through a FetchStrategy
chosen once at startup: direct requests, or requests routed through the
configured HTTP proxy. Network errors, timeouts and non-2xx statuses are
retried with exponential backoff and finally raised as UpstreamFetchError.
"""

from asyncio import TimeoutError
import json
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import UpstreamFetchError
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("upstream")

HTTP_TOO_MANY_REQUESTS = 429


class FetchStrategy:
    """Direct upstream access over a shared aiohttp session."""

    label = "direct"

    def __init__(self, session_factory=None, timeout: Optional[int] = None, max_retries: Optional[int] = None, retry_delay: Optional[float] = None):
        self._session: Optional[ClientSession] = None
        self._session_factory = session_factory
        self.timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)
        self.max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        self.retry_helper = RetryHelper(max_retries=self.max_retries, base_delay=retry_delay or config.RETRY_DELAY_BASE)

    def _request_kwargs(self) -> Dict[str, Any]:
        return {}

    async def session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            if self._session_factory is not None:
                self._session = self._session_factory()
            else:
                self._session = ClientSession(timeout=self.timeout, headers={"User-Agent": config.USER_AGENT})
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @trace_span(
        "upstream.fetch",
        tracer_name="upstream",
        attr_from_args=lambda self, url, **kw: {"http.url": url, "fetch.strategy": self.label},
    )
    async def fetch_text(self, url: str, headers: Optional[Dict[str, str]] = None, source_id: Optional[str] = None) -> str:
        """GET ``url`` and return the body as text.

        Raises:
            UpstreamFetchError: after retries are exhausted.
        """
        session = await self.session()
        host = urlparse(url).netloc or url
        last_error = "unknown error"
        status = None
        for attempt in range(self.max_retries + 1):
            try:
                async with session.get(url, headers=headers, **self._request_kwargs()) as response:
                    status = response.status
                    if 200 <= response.status < 300:
                        return await response.text()
                    last_error = f"HTTP {response.status}"
                    if response.status < 500 and response.status != HTTP_TOO_MANY_REQUESTS:
                        break
            except TimeoutError:
                last_error = "Timed out"
            except ClientError as e:
                last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            if attempt < self.max_retries:
                logger.warning("Retry %d/%d for %s due to error: %s", attempt + 1, self.max_retries, host, last_error)
                await self.retry_helper.sleep_for_attempt(attempt)

        logger.error(f"Error fetching {url}: {last_error}")
        raise UpstreamFetchError(f"Failed to fetch {host}: {last_error}", source_id=source_id, url=url, status=status)

    async def fetch_json(self, url: str, headers: Optional[Dict[str, str]] = None, source_id: Optional[str] = None) -> Any:
        """GET ``url`` and decode it as JSON.

        Raises:
            UpstreamFetchError: on transport failure or an undecodable body.
        """
        text = await self.fetch_text(url, headers=headers, source_id=source_id)
        try:
            return json.loads(text)
        except ValueError as e:
            raise UpstreamFetchError(f"Invalid JSON from {urlparse(url).netloc}: {e}", source_id=source_id, url=url) from e

    async def fetch_feed(self, url: str, source_id: Optional[str] = None) -> List[Any]:
        """GET an RSS/Atom feed and return its feedparser entries.

        Raises:
            UpstreamFetchError: when the feed cannot be fetched or has no entries.
        """
        text = await self.fetch_text(url, source_id=source_id)
        parsed = feedparser.parse(text)
        if not parsed.entries:
            detail = getattr(parsed, "bozo_exception", None)
            raise UpstreamFetchError(f"Cannot fetch rss data from {urlparse(url).netloc}: {detail or 'no entries'}", source_id=source_id, url=url)
        return parsed.entries


class ProxyFetchStrategy(FetchStrategy):
    """Upstream access routed through an HTTP proxy."""

    label = "proxy"

    def __init__(self, proxy_url: str, **kwargs):
        super().__init__(**kwargs)
        self.proxy_url = proxy_url

    def _request_kwargs(self) -> Dict[str, Any]:
        return {"proxy": self.proxy_url}


def create_strategy(proxy_url: Optional[str] = None, **kwargs) -> FetchStrategy:
    """Pick the fetch strategy for this process from configuration."""
    proxy_url = proxy_url if proxy_url is not None else config.PROXY_URL
    if proxy_url:
        parsed = urlparse(proxy_url)
        logger.info("Upstream requests will use proxy %s://%s", parsed.scheme or "http", parsed.hostname or proxy_url)
        return ProxyFetchStrategy(proxy_url, **kwargs)
    return FetchStrategy(**kwargs)

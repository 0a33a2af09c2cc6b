"""
Page Fetching
=============

Downloads directory pages for the crawl pipeline. Each request passes
the source's URL filters, the host's robots.txt and a per-source token
bucket before it goes out; transport failures are retried with
exponential backoff. Bodies are hashed so a page whose content was
already seen in the run is reported as a duplicate.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import httpx

from booth_catalog.ingestion.extractors.base import PageContent

if TYPE_CHECKING:
    from booth_catalog.ingestion.registry import SourceConfig

logger = logging.getLogger(__name__)

# Content types handed to extractors; an absent header counts as markup.
MARKUP_TYPES = frozenset({"text/html", "application/xhtml+xml", "text/plain", ""})


async def _http_get(
    url: str,
    user_agent: str,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> httpx.Response:
    async with httpx.AsyncClient(
        timeout=timeout,
        transport=transport,
        headers={"User-Agent": user_agent},
        follow_redirects=True,
    ) as client:
        return await client.get(url)


@dataclass
class FetchResult:
    """Outcome of one GET, successful or not."""

    url: str
    content: bytes
    content_hash: str
    mime_type: str
    status_code: int
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    encoding: str = "utf-8"
    is_duplicate: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300

    @classmethod
    def failed(cls, url: str, error: str) -> FetchResult:
        return cls(url=url, content=b"", content_hash="", mime_type="", status_code=0, error=error)

    def to_page(self) -> PageContent:
        return PageContent(
            url=self.url,
            html=self.content.decode(self.encoding or "utf-8", errors="replace"),
        )


class TokenBucket:
    """
    Async token bucket.

    Holds up to ``burst_limit`` tokens and refills at
    ``requests_per_second``. ``acquire`` sleeps when the bucket is empty.
    """

    def __init__(self, requests_per_second: float, burst_limit: int) -> None:
        self.requests_per_second = requests_per_second
        self.burst_limit = burst_limit
        self.tokens = float(burst_limit)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        earned = (now - self.last_update) * self.requests_per_second
        self.tokens = min(float(self.burst_limit), self.tokens + earned)
        self.last_update = now

    async def acquire(self) -> None:
        async with self._lock:
            self._refill()
            if self.tokens < 1.0:
                deficit = 1.0 - self.tokens
                await asyncio.sleep(deficit / self.requests_per_second)
                self._refill()
            self.tokens = max(0.0, self.tokens - 1.0)


class RobotsChecker:
    """
    Caches one parsed robots.txt per host.

    Hosts whose robots.txt cannot be fetched, or answers with anything
    but 200, are crawlable without restriction.
    """

    def __init__(
        self,
        user_agent: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport = transport
        self._parsers: dict[str, RobotFileParser | None] = {}
        self._lock = asyncio.Lock()

    async def _load(self, scheme: str, host: str) -> RobotFileParser | None:
        try:
            response = await _http_get(
                f"{scheme}://{host}/robots.txt", self.user_agent, self.timeout, self.transport
            )
        except httpx.HTTPError as e:
            logger.warning(f"robots.txt unavailable for {host}: {e}")
            return None
        if response.status_code != 200:
            return None

        rules = RobotFileParser()
        rules.parse(response.text.splitlines())
        return rules

    async def is_allowed(self, url: str) -> bool:
        parts = urlparse(url)
        async with self._lock:
            if parts.netloc not in self._parsers:
                self._parsers[parts.netloc] = await self._load(parts.scheme or "https", parts.netloc)
        rules = self._parsers[parts.netloc]
        return rules is None or rules.can_fetch(self.user_agent, url)

    def clear_cache(self) -> None:
        self._parsers.clear()


class Crawler:
    """
    Polite page fetcher shared by every page of a crawl run.

    One token bucket is kept per source name. ``respect_robots=False``
    skips robots.txt entirely. ``transport`` is passed to httpx and lets
    tests serve canned responses.
    """

    def __init__(
        self,
        user_agent: str = "BoothCatalog/0.1",
        timeout: float = 30.0,
        max_retries: int = 3,
        respect_robots: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_retries = max_retries
        self.transport = transport

        self._buckets: dict[str, TokenBucket] = {}
        self._robots_checker = RobotsChecker(user_agent, transport=transport) if respect_robots else None
        self._seen_hashes: set[str] = set()

    def _get_rate_limiter(self, source: SourceConfig) -> TokenBucket:
        bucket = self._buckets.get(source.name)
        if bucket is None:
            pacing = source.rate_limit
            bucket = TokenBucket(pacing.requests_per_second, pacing.burst_limit)
            self._buckets[source.name] = bucket
        return bucket

    @staticmethod
    def compute_hash(content: bytes) -> str:
        """SHA-256 hex digest used to spot repeated page bodies."""
        return hashlib.sha256(content).hexdigest()

    def _to_result(self, url: str, response: httpx.Response) -> FetchResult:
        digest = self.compute_hash(response.content)
        repeated = digest in self._seen_hashes
        self._seen_hashes.add(digest)
        content_type = response.headers.get("content-type", "")
        return FetchResult(
            url=url,
            content=response.content,
            content_hash=digest,
            mime_type=content_type.partition(";")[0].strip(),
            status_code=response.status_code,
            encoding=response.encoding or "utf-8",
            is_duplicate=repeated,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    async def fetch(self, url: str, source: SourceConfig) -> FetchResult:
        """
        GET ``url`` on behalf of ``source``.

        Never raises for network problems; the returned result carries
        the error instead.
        """
        if not source.is_url_allowed(url):
            return FetchResult.failed(url, f"URL not allowed by source '{source.name}' configuration")
        if self._robots_checker is not None and not await self._robots_checker.is_allowed(url):
            return FetchResult.failed(url, "Disallowed by robots.txt")

        await self._get_rate_limiter(source).acquire()

        error = "no attempts made"
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await _http_get(url, self.user_agent, self.timeout, self.transport)
            except httpx.TimeoutException:
                error = f"Timeout after {self.timeout}s"
            except httpx.HTTPError as e:
                error = str(e)
            else:
                return self._to_result(url, response)

            logger.warning(f"{url}: {error} (try {attempt} of {self.max_retries})")
            if attempt < self.max_retries:
                await asyncio.sleep(2 ** (attempt - 1))

        return FetchResult.failed(url, error)

    async def fetch_page(self, url: str, source: SourceConfig) -> tuple[PageContent | None, str | None]:
        """
        Fetch ``url`` as extractor input.

        Returns ``(page, None)``, or ``(None, reason)`` when the fetch
        failed, the body is not markup, or the same body was already
        seen in this run.
        """
        result = await self.fetch(url, source)
        if not result.success:
            return None, result.error
        if result.is_duplicate:
            return None, "Duplicate content"
        if result.mime_type not in MARKUP_TYPES:
            return None, f"Unsupported content type {result.mime_type}"
        return result.to_page(), None

    def clear_seen_hashes(self) -> None:
        self._seen_hashes.clear()

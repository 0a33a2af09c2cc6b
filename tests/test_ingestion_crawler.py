"""Tests for the page-fetching crawler module."""

import asyncio
import time
from datetime import UTC, datetime

import httpx
import pytest

from booth_catalog.ingestion.crawler import Crawler, FetchResult, RobotsChecker, TokenBucket
from booth_catalog.ingestion.registry import RateLimitConfig, SourceConfig

LISTING_HTML = b"<html><body><article><h2>Photoautomat</h2></article></body></html>"


def html_transport(body: bytes = LISTING_HTML, content_type: str = "text/html; charset=utf-8",
                   robots: str = "") -> httpx.MockTransport:
    """Serve ``body`` for every page and ``robots`` for robots.txt."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/robots.txt":
            if not robots:
                return httpx.Response(404)
            return httpx.Response(200, text=robots)
        return httpx.Response(200, content=body, headers={"content-type": content_type})

    return httpx.MockTransport(handler)


@pytest.fixture
def source_config() -> SourceConfig:
    """Fast-paced source limited to its own host."""
    return SourceConfig(
        name="test",
        domain="test.example.com",
        rate_limit=RateLimitConfig(requests_per_second=50.0, burst_limit=10),
        allowlist=["^https://test\\.example\\.com/.*"],
    )


class TestTokenBucket:
    """Async token bucket pacing."""

    @pytest.mark.asyncio
    async def test_burst(self) -> None:
        """A full bucket serves a burst immediately."""
        bucket = TokenBucket(requests_per_second=1.0, burst_limit=5)

        start = time.monotonic()
        for _ in range(5):
            await bucket.acquire()
        elapsed = time.monotonic() - start

        assert elapsed < 0.1

    @pytest.mark.asyncio
    async def test_waits_when_empty(self) -> None:
        """An empty bucket waits for the next token."""
        bucket = TokenBucket(requests_per_second=10.0, burst_limit=1)
        await bucket.acquire()

        start = time.monotonic()
        await bucket.acquire()
        waited = time.monotonic() - start

        assert 0.05 < waited < 0.3

    @pytest.mark.asyncio
    async def test_refill(self) -> None:
        """Idle time earns tokens back."""
        bucket = TokenBucket(requests_per_second=10.0, burst_limit=2)
        await bucket.acquire()
        await bucket.acquire()

        await asyncio.sleep(0.2)

        start = time.monotonic()
        await bucket.acquire()
        assert time.monotonic() - start < 0.1


class TestFetchResult:
    """FetchResult helpers."""

    def test_ok_response(self) -> None:
        """Test success property for a 200 response."""
        result = FetchResult(
            url="https://example.com",
            content=b"test",
            content_hash="abc123",
            mime_type="text/html",
            status_code=200,
            fetched_at=datetime.now(UTC),
        )
        assert result.success is True

    def test_not_found_is_failure(self) -> None:
        """Test success property for non-2xx status codes."""
        result = FetchResult(
            url="https://example.com",
            content=b"",
            content_hash="",
            mime_type="",
            status_code=404,
            fetched_at=datetime.now(UTC),
        )
        assert result.success is False

    def test_failed(self) -> None:
        """Test the failure constructor."""
        result = FetchResult.failed("https://example.com", "Connection failed")
        assert result.success is False
        assert result.error == "Connection failed"
        assert result.content == b""

    def test_to_page(self) -> None:
        """Test decoding into page content."""
        result = FetchResult(
            url="https://example.com/b",
            content="<p>Café</p>".encode("utf-8"),
            content_hash="x",
            mime_type="text/html",
            status_code=200,
            fetched_at=datetime.now(UTC),
        )
        page = result.to_page()
        assert page.url == "https://example.com/b"
        assert page.html == "<p>Café</p>"


class TestCrawler:
    """Fetching through the polite crawler."""

    def test_content_hash(self) -> None:
        """Identical bodies hash identically."""
        hash1 = Crawler.compute_hash(b"test content")
        assert hash1 == Crawler.compute_hash(b"test content")
        assert len(hash1) == 64
        assert hash1 != Crawler.compute_hash(b"other content")

    def test_rate_limiter_per_source(self, source_config: SourceConfig) -> None:
        """Test that rate limiters are created once per source from its config."""
        crawler = Crawler()
        limiter = crawler._get_rate_limiter(source_config)

        assert crawler._get_rate_limiter(source_config) is limiter
        assert limiter.requests_per_second == 50.0
        assert limiter.burst_limit == 10

    @pytest.mark.asyncio
    async def test_allowlist_enforced(self, source_config: SourceConfig) -> None:
        """Off-allowlist URLs are refused without a request."""
        crawler = Crawler(respect_robots=False)
        result = await crawler.fetch("https://other.example.com/page", source_config)

        assert result.success is False
        assert result.error == "URL not allowed by source 'test' configuration"

    @pytest.mark.asyncio
    async def test_fetch_success(self, source_config: SourceConfig) -> None:
        """Test a successful fetch through a mock transport."""
        crawler = Crawler(respect_robots=False, transport=html_transport())
        result = await crawler.fetch("https://test.example.com/booths", source_config)

        assert result.success is True
        assert result.mime_type == "text/html"
        assert result.content == LISTING_HTML
        assert result.content_hash == Crawler.compute_hash(LISTING_HTML)
        assert result.is_duplicate is False

    @pytest.mark.asyncio
    async def test_fetch_marks_repeated_content(self, source_config: SourceConfig) -> None:
        """Test that identical content is flagged the second time."""
        crawler = Crawler(respect_robots=False, transport=html_transport())
        await crawler.fetch("https://test.example.com/a", source_config)
        second = await crawler.fetch("https://test.example.com/b", source_config)
        assert second.is_duplicate is True

        crawler.clear_seen_hashes()
        third = await crawler.fetch("https://test.example.com/c", source_config)
        assert third.is_duplicate is False

    @pytest.mark.asyncio
    async def test_fetch_transport_error(self, source_config: SourceConfig) -> None:
        """Test that transport errors end in a failed result."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        crawler = Crawler(
            respect_robots=False, max_retries=1, transport=httpx.MockTransport(handler)
        )
        result = await crawler.fetch("https://test.example.com/a", source_config)

        assert result.success is False
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_fetch_page(self, source_config: SourceConfig) -> None:
        """Test fetching straight into page content."""
        crawler = Crawler(respect_robots=False, transport=html_transport())
        page, reason = await crawler.fetch_page("https://test.example.com/a", source_config)

        assert reason is None
        assert page is not None
        assert "Photoautomat" in page.html

    @pytest.mark.asyncio
    async def test_fetch_page_rejects_duplicates(self, source_config: SourceConfig) -> None:
        """Test that an already-seen page is skipped."""
        crawler = Crawler(respect_robots=False, transport=html_transport())
        await crawler.fetch_page("https://test.example.com/a", source_config)
        page, reason = await crawler.fetch_page("https://test.example.com/b", source_config)

        assert page is None
        assert reason == "Duplicate content"

    @pytest.mark.asyncio
    async def test_fetch_page_rejects_binary(self, source_config: SourceConfig) -> None:
        """Test that non-markup content is skipped."""
        crawler = Crawler(
            respect_robots=False,
            transport=html_transport(body=b"%PDF-1.4", content_type="application/pdf"),
        )
        page, reason = await crawler.fetch_page("https://test.example.com/a.pdf", source_config)

        assert page is None
        assert "application/pdf" in reason


class TestRobotsChecker:
    """robots.txt rules and caching."""

    def test_robots_optional(self) -> None:
        """robots.txt handling can be switched off."""
        assert Crawler(respect_robots=True)._robots_checker is not None
        assert Crawler(respect_robots=False)._robots_checker is None

    @pytest.mark.asyncio
    async def test_disallowed_path(self) -> None:
        """Test that robots.txt rules are applied."""
        checker = RobotsChecker(
            "BoothCatalog/0.1",
            transport=html_transport(robots="User-agent: *\nDisallow: /private/\n"),
        )
        assert await checker.is_allowed("https://test.example.com/private/x") is False
        assert await checker.is_allowed("https://test.example.com/booths") is True

    @pytest.mark.asyncio
    async def test_missing_robots_allows_all(self) -> None:
        """Test that a missing robots.txt allows everything."""
        checker = RobotsChecker("BoothCatalog/0.1", transport=html_transport())
        assert await checker.is_allowed("https://test.example.com/private/x") is True

    @pytest.mark.asyncio
    async def test_crawler_blocked_by_robots(self, source_config: SourceConfig) -> None:
        """Test that the crawler refuses disallowed URLs."""
        crawler = Crawler(
            transport=html_transport(robots="User-agent: *\nDisallow: /\n"),
        )
        result = await crawler.fetch("https://test.example.com/booths", source_config)

        assert result.success is False
        assert result.error == "Disallowed by robots.txt"

"""Documentation site crawler for DocChat.

Breadth-first, same-domain traversal of a documentation site with bounded
concurrency. URLs are claimed before their fetch is dispatched so no page is
downloaded twice within a crawl.
"""

import asyncio
import inspect
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Deque, List, Optional, Set, Tuple, Union
from urllib.parse import urlparse

import aiohttp

from ..config import Settings, get_settings
from . import extractor
from .policy import LinkPolicy, validate_seed_url

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36',
    'Accept': 'text/html,application/xhtml+xml',
}

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

# May be a plain function or a coroutine function
ProgressCallback = Callable[[int, int, str], Union[None, Awaitable[None]]]


class FetchError(Exception):
    """A single page could not be fetched or is not HTML."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status in RETRYABLE_STATUS_CODES


@dataclass(frozen=True)
class Page:
    """One successfully extracted documentation page."""
    url: str
    title: str
    content: str


@dataclass
class PageFetch:
    """Outcome of fetching and extracting a single URL."""
    url: str
    page: Optional[Page] = None
    links: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class CrawlStats:
    """Statistics for a crawl session."""
    attempted: int = 0
    extracted: int = 0
    rejected: int = 0
    failed: int = 0
    links_queued: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def __post_init__(self):
        if self.start_time is None:
            self.start_time = datetime.now(timezone.utc)

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return None

    def finish(self):
        """Mark crawl as finished."""
        self.end_time = datetime.now(timezone.utc)


class DocsCrawler:
    """Asynchronous breadth-first documentation crawler."""

    def __init__(self,
                 settings: Optional[Settings] = None,
                 link_policy: Optional[LinkPolicy] = None,
                 concurrency: Optional[int] = None,
                 request_timeout: Optional[float] = None,
                 crawl_delay: Optional[float] = None,
                 max_retries: Optional[int] = None,
                 retry_delay: float = 0.5,
                 max_retry_delay: float = 5.0,
                 strip_navigation: Optional[bool] = None):
        """Initialize crawler.

        Args:
            settings: Configuration source for the defaults below
            link_policy: Rules for which discovered links are followed
            concurrency: Maximum URLs fetched per batch
            request_timeout: Per-request timeout in seconds
            crawl_delay: Pause between batches in seconds
            max_retries: Retry attempts for transient fetch errors
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
            strip_navigation: Also drop <nav> and role="navigation" text
        """
        settings = settings or get_settings()
        self.link_policy = link_policy or LinkPolicy()
        self.concurrency = concurrency or settings.crawl_concurrency
        self.request_timeout = request_timeout or settings.crawl_timeout
        self.crawl_delay = settings.crawl_delay if crawl_delay is None else crawl_delay
        self.max_retries = settings.crawl_max_retries if max_retries is None else max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.default_max_pages = settings.max_pages
        self.strip_navigation = settings.strip_navigation if strip_navigation is None else strip_navigation
        self.session: Optional[aiohttp.ClientSession] = None
        self._owns_session = False

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self.session is None:
            connector = aiohttp.TCPConnector(limit=self.concurrency * 2)
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers=DEFAULT_HEADERS
            )
            self._owns_session = True

    async def close(self):
        """Close the crawler session."""
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None
        self._owns_session = False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    def _is_retryable_error(self, exception: Exception) -> bool:
        if isinstance(exception, FetchError):
            return exception.retryable
        if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return True
        # Connection problems are worth another try, 4xx responses are not
        return isinstance(exception, (aiohttp.ClientConnectionError,
                                      aiohttp.ServerDisconnectedError))

    async def _fetch_html(self, url: str) -> str:
        """Download one URL and return its HTML body.

        Raises FetchError for HTTP errors and non-HTML responses, and lets
        aiohttp/asyncio errors propagate.
        """
        if self.session is None:
            await self.open()

        async with self.session.get(url, allow_redirects=True) as response:
            if response.status >= 400:
                raise FetchError(url, f"HTTP {response.status}", status=response.status)

            content_type = response.headers.get('content-type', '')
            if 'html' not in content_type.lower():
                raise FetchError(url, f"Non-HTML content type: {content_type or 'unknown'}")

            return await response.text()

    async def _fetch_with_retries(self, url: str) -> str:
        attempt = 0
        while True:
            try:
                return await self._fetch_html(url)
            except (FetchError, asyncio.TimeoutError, aiohttp.ClientError) as e:
                if attempt >= self.max_retries or not self._is_retryable_error(e):
                    raise
                delay = self._calculate_retry_delay(attempt)
                logger.warning(f"Retrying {url} in {delay:.2f}s after {type(e).__name__}: {e} "
                               f"(attempt {attempt + 1}/{self.max_retries + 1})")
                await asyncio.sleep(delay)
                attempt += 1

    async def fetch_page(self, url: str, base_host: str) -> PageFetch:
        """Fetch, extract and discover links for a single URL.

        Never raises for per-page problems; they come back as ``error``.
        """
        try:
            html = await self._fetch_with_retries(url)
        except Exception as e:
            logger.warning(f"Error fetching {url}: {e or type(e).__name__}")
            return PageFetch(url=url, error=str(e) or type(e).__name__)

        try:
            soup = extractor.parse_html(html)
            extracted = extractor.extract(soup, strip_navigation=self.strip_navigation)
            links = [
                link for link in extractor.extract_links(soup, url)
                if self.link_policy.should_follow(link, base_host)
            ]
        except Exception as e:
            logger.warning(f"Error parsing {url}: {e}")
            return PageFetch(url=url, error=f"Parse error: {e}")

        page = None
        if extracted.is_usable:
            page = Page(url=url, title=extracted.title, content=extracted.content)
        else:
            logger.debug(f"Skipping {url} - content too short ({len(extracted.content)} chars)")

        return PageFetch(url=url, page=page, links=links)

    async def crawl_with_stats(self,
                               seed_url: str,
                               max_pages: Optional[int] = None,
                               on_progress: Optional[ProgressCallback] = None) -> Tuple[List[Page], CrawlStats]:
        """Crawl a documentation site breadth-first from ``seed_url``.

        Args:
            seed_url: Where the traversal starts
            max_pages: Upper bound on returned pages
            on_progress: Called as ``(count, max_pages, title)`` per extracted page

        Returns:
            Tuple of (pages, stats)
        """
        seed = validate_seed_url(seed_url)
        max_pages = max_pages or self.default_max_pages
        base_host = urlparse(seed).hostname or ''

        # Crawl-scoped state; nothing leaks between crawls
        visited: Set[str] = set()
        frontier: Deque[str] = deque([seed])
        queued: Set[str] = {seed}
        pages: List[Page] = []
        stats = CrawlStats()

        logger.info(f"Starting crawl of {seed} (max_pages={max_pages}, concurrency={self.concurrency})")

        opened_here = self.session is None
        if opened_here:
            await self.open()

        try:
            while frontier and len(pages) < max_pages:
                batch_size = min(self.concurrency, max_pages - len(pages))
                batch = [frontier.popleft() for _ in range(min(batch_size, len(frontier)))]
                for url in batch:
                    queued.discard(url)
                    # Claim before fetching
                    visited.add(url)

                stats.attempted += len(batch)
                results = await asyncio.gather(
                    *(self.fetch_page(url, base_host) for url in batch),
                    return_exceptions=True
                )

                for url, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        logger.error(f"Exception crawling {url}: {result}")
                        stats.failed += 1
                        continue

                    if result.error:
                        stats.failed += 1
                        continue

                    if result.page is not None:
                        if len(pages) < max_pages:
                            pages.append(result.page)
                            stats.extracted += 1
                            logger.debug(f"Scraped [{len(pages)}/{max_pages}]: {result.page.title}")
                            if on_progress is not None:
                                outcome = on_progress(len(pages), max_pages, result.page.title)
                                if inspect.isawaitable(outcome):
                                    await outcome
                    else:
                        stats.rejected += 1

                    for link in result.links:
                        if link not in visited and link not in queued:
                            frontier.append(link)
                            queued.add(link)
                            stats.links_queued += 1

                if frontier and len(pages) < max_pages and self.crawl_delay > 0:
                    await asyncio.sleep(self.crawl_delay)
        finally:
            if opened_here:
                await self.close()

        stats.finish()
        logger.info(f"Crawl completed: {stats.extracted} pages extracted, {stats.rejected} rejected, "
                    f"{stats.failed} failed out of {stats.attempted} fetched URLs")

        return pages, stats

    async def crawl(self,
                    seed_url: str,
                    max_pages: Optional[int] = None,
                    on_progress: Optional[ProgressCallback] = None) -> List[Page]:
        """Crawl a documentation site and return its extracted pages."""
        pages, _ = await self.crawl_with_stats(seed_url, max_pages, on_progress)
        return pages


async def crawl_docs(seed_url: str,
                     max_pages: Optional[int] = None,
                     on_progress: Optional[ProgressCallback] = None,
                     settings: Optional[Settings] = None) -> List[Page]:
    """Convenience function to crawl a documentation site."""
    async with DocsCrawler(settings=settings) as crawler:
        return await crawler.crawl(seed_url, max_pages, on_progress)

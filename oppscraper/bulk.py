"""
Ad-hoc bulk scraping: small concurrent batches with a pause in between
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .config import DEFAULT_USER_AGENT
from .discovery import URLDiscoverer
from .errors import DiscoveryExhausted, FetchFailed
from .extraction import FieldExtractor, scrape_webpage, scraped_from_html
from .fetcher import Fetcher
from .models import ScrapedContent


logger = logging.getLogger(__name__)

BATCH_SIZE = 5
BATCH_DELAY = 2.0
SAMPLE_URL_COUNT = 3

FetchText = Callable[[str], Awaitable[str]]


class BulkScraper:
    """Scrapes a list of URLs a batch at a time over one aiohttp session"""

    def __init__(self, batch_size: int = BATCH_SIZE, batch_delay: float = BATCH_DELAY,
                 timeout: float = 15, user_agent: str = DEFAULT_USER_AGENT,
                 fetch: Optional[FetchText] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 extractor: Optional[FieldExtractor] = None):
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.timeout = timeout
        self.user_agent = user_agent
        self.extractor = extractor or FieldExtractor()
        self._fetch = fetch
        self._sleep = sleep
        self.session = None

    async def __aenter__(self):
        if self._fetch is None:
            self.session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self.batch_size),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={'User-Agent': self.user_agent},
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    async def scrape_urls(self, urls: List[str]) -> Dict[str, Any]:
        """Scrape every URL; returns successes, failed URLs and a summary"""
        logger.info(f"Bulk scraping {len(urls)} URLs in batches of {self.batch_size}")
        start_time = time.time()
        results: List[ScrapedContent] = []
        failed: List[str] = []

        for offset in range(0, len(urls), self.batch_size):
            batch = urls[offset:offset + self.batch_size]
            outcomes = await asyncio.gather(*(self._scrape_one(url) for url in batch),
                                            return_exceptions=True)
            for url, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning(f"Bulk scrape failed for {url}: {outcome}")
                    failed.append(url)
                else:
                    results.append(outcome)

            if offset + self.batch_size < len(urls):
                await self._sleep(self.batch_delay)

        logger.info(f"Bulk scrape finished in {time.time() - start_time:.1f}s: "
                    f"{len(results)}/{len(urls)} scraped")
        return {
            'success': len(results) > 0,
            'results': results,
            'failed': failed,
            'summary': {
                'total': len(urls),
                'scraped': len(results),
                'failed': len(failed),
            },
        }

    async def _scrape_one(self, url: str) -> ScrapedContent:
        html = await self._fetch_text(url)
        return scraped_from_html(url, html, extractor=self.extractor)

    async def _fetch_text(self, url: str) -> str:
        if self._fetch is not None:
            return await self._fetch(url)
        try:
            async with self.session.get(url) as response:
                if not 200 <= response.status < 300:
                    raise FetchFailed(url, f"HTTP error! status: {response.status}", response.status)
                return await response.text()
        except asyncio.TimeoutError as exc:
            raise FetchFailed(url, 'Request timed out') from exc
        except aiohttp.ClientError as exc:
            raise FetchFailed(url, str(exc)) from exc


def bulk_scrape_urls(urls: List[str], **kwargs) -> Dict[str, Any]:
    """Synchronous wrapper for bulk scraping"""
    async def _scrape():
        async with BulkScraper(**kwargs) as scraper:
            return await scraper.scrape_urls(urls)

    return asyncio.run(_scrape())


def sample_source(url: str, fetcher: Fetcher, discoverer: Optional[URLDiscoverer] = None) -> Dict[str, Any]:
    """Check a candidate source: discover its pages and scrape the first one"""
    discoverer = discoverer or URLDiscoverer(fetcher)
    try:
        urls, strategy = discoverer.discover_urls(url)
    except DiscoveryExhausted as exc:
        return {'success': False, 'discovered_posts': 0, 'sample_posts': [], 'error': str(exc)}

    report: Dict[str, Any] = {
        'success': True,
        'discovered_posts': len(urls),
        'sample_posts': urls[:SAMPLE_URL_COUNT],
        'source': strategy.value,
    }
    try:
        scraped = scrape_webpage(fetcher, urls[0])
        report['content_sample'] = {
            'title': scraped.title,
            'content_length': len(scraped.content),
            'has_content': bool(scraped.content),
        }
    except FetchFailed as exc:
        report['content_sample'] = {'title': None, 'content_length': 0, 'has_content': False}
        report['error'] = str(exc)
    return report



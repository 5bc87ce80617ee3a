"""
URL discovery module for finding opportunity pages from feeds, sitemaps and links
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

import feedparser
from bs4 import BeautifulSoup

from .errors import DiscoveryExhausted, FetchFailed
from .fetcher import Fetcher
from .models import DiscoveryResult, DiscoverySource


logger = logging.getLogger(__name__)

OPPORTUNITY_KEYWORDS = (
    'scholarship', 'fellowship', 'grant', 'funding', 'opportunity',
    'internship', 'conference', 'competition', 'exchange', 'program',
    'award', 'bursary', 'stipend', 'research', 'study'
)

FEED_PATHS = ('/feed', '/rss', '/feed.xml', '/rss.xml', '/atom.xml', '/index.xml')
SITEMAP_PATHS = ('/sitemap.xml', '/sitemap_index.xml', '/sitemaps/sitemap.xml')

FEED_URL_LIMIT = 30
SITEMAP_URL_LIMIT = 30
LINK_URL_LIMIT = 20
TOTAL_URL_LIMIT = 50
NESTED_SITEMAP_LIMIT = 3


def is_opportunity_url(url: str, keywords: Sequence[str] = OPPORTUNITY_KEYWORDS) -> bool:
    """Check if the URL mentions any opportunity keyword"""
    url_lower = url.lower()
    return any(keyword in url_lower for keyword in keywords)


def filter_opportunity_urls(urls: Iterable[str], limit: Optional[int] = None,
                            keywords: Sequence[str] = OPPORTUNITY_KEYWORDS) -> List[str]:
    """Keep opportunity-looking URLs, dropping duplicates but preserving order"""
    seen = set()
    filtered = []
    for url in urls:
        if url in seen or not is_opportunity_url(url, keywords):
            continue
        seen.add(url)
        filtered.append(url)
        if limit is not None and len(filtered) >= limit:
            break
    return filtered


def site_origin(site_url: str) -> str:
    parsed = urlparse(site_url)
    return f"{parsed.scheme}://{parsed.netloc}"


def resolve_url(candidate: str, origin: str) -> Optional[str]:
    """Resolve root-relative URLs against the origin; drop anything non-HTTP"""
    candidate = (candidate or '').strip()
    if not candidate:
        return None
    if candidate.startswith('/'):
        return urljoin(origin + '/', candidate)
    if candidate.startswith(('http://', 'https://')):
        return candidate
    return None


class URLDiscoverer:
    """Finds candidate opportunity URLs for a site, first strategy with results wins"""

    def __init__(self, fetcher: Fetcher, keywords: Sequence[str] = OPPORTUNITY_KEYWORDS):
        self.fetcher = fetcher
        self.keywords = tuple(keywords)

    def discover(self, site_url: str) -> DiscoveryResult:
        """Run discovery and report the outcome instead of raising"""
        try:
            urls, source = self.discover_urls(site_url)
        except DiscoveryExhausted as exc:
            logger.warning(str(exc))
            return DiscoveryResult(success=False, urls=[], source=DiscoverySource.LINKS,
                                   error=str(exc))
        return DiscoveryResult(success=True, urls=urls, source=source)

    def discover_urls(self, site_url: str) -> Tuple[List[str], DiscoverySource]:
        """Try RSS feeds, then sitemaps, then raw page links"""
        origin = site_origin(site_url)

        urls = self._discover_from_rss(origin)
        if urls:
            logger.info(f"Found {len(urls)} URLs from RSS feeds for {origin}")
            return urls[:TOTAL_URL_LIMIT], DiscoverySource.RSS

        urls = self._discover_from_sitemap(origin)
        if urls:
            logger.info(f"Found {len(urls)} URLs from sitemap for {origin}")
            return urls[:TOTAL_URL_LIMIT], DiscoverySource.SITEMAP

        urls = self._discover_from_links(site_url)
        if urls:
            logger.info(f"Found {len(urls)} URLs from page links for {site_url}")
            return urls[:TOTAL_URL_LIMIT], DiscoverySource.LINKS

        raise DiscoveryExhausted(site_url)

    def _probe(self, url: str) -> Optional[str]:
        """Fetch a probe URL, swallowing failures"""
        try:
            return self.fetcher.get(url).text
        except FetchFailed as exc:
            logger.debug(f"Probe failed for {url}: {exc}")
            return None

    def _discover_from_rss(self, origin: str) -> List[str]:
        """Extract URLs from the first conventional feed path that serves a feed"""
        for path in FEED_PATHS:
            feed_url = origin + path
            body = self._probe(feed_url)
            if body is None:
                continue
            if '<rss' in body or '<feed' in body or '<atom' in body:
                return self._parse_feed(body, origin)
        return []

    def _parse_feed(self, xml: str, origin: str) -> List[str]:
        feed = feedparser.parse(xml)
        candidates = []
        for entry in feed.entries:
            for value in (entry.get('link'), entry.get('id')):
                resolved = resolve_url(value, origin)
                if resolved:
                    candidates.append(resolved)
        return filter_opportunity_urls(candidates, FEED_URL_LIMIT, self.keywords)

    def _discover_from_sitemap(self, origin: str) -> List[str]:
        """Extract URLs from the first conventional sitemap path that serves a sitemap"""
        for path in SITEMAP_PATHS:
            sitemap_url = origin + path
            body = self._probe(sitemap_url)
            if body is None:
                continue
            if '<urlset' in body or '<sitemapindex' in body:
                return self._parse_sitemap(body, origin)
        return []

    def _parse_sitemap(self, xml: str, origin: str, follow_nested: bool = True) -> List[str]:
        soup = BeautifulSoup(xml, 'xml')
        candidates = []

        # Sitemap index: follow a few child sitemaps
        if follow_nested:
            for sitemap in soup.find_all('sitemap')[:NESTED_SITEMAP_LIMIT]:
                loc = sitemap.find('loc')
                if not loc:
                    continue
                body = self._probe(loc.get_text(strip=True))
                if body:
                    candidates.extend(self._parse_sitemap(body, origin, follow_nested=False))

        for url_tag in soup.find_all('url'):
            loc = url_tag.find('loc')
            if loc:
                resolved = resolve_url(loc.get_text(strip=True), origin)
                if resolved:
                    candidates.append(resolved)

        return filter_opportunity_urls(candidates, SITEMAP_URL_LIMIT, self.keywords)

    def _discover_from_links(self, page_url: str) -> List[str]:
        """Collect every href on the landing page"""
        body = self._probe(page_url)
        if not body:
            return []

        origin = site_origin(page_url)
        soup = BeautifulSoup(body, 'html.parser')
        candidates = []
        for element in soup.find_all(href=True):
            resolved = resolve_url(element['href'], origin)
            if resolved:
                candidates.append(resolved)
        return filter_opportunity_urls(candidates, LINK_URL_LIMIT, self.keywords)

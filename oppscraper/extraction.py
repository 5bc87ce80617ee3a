"""
Field extraction from raw opportunity pages
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from .errors import ExtractionEmpty
from .fetcher import Fetcher
from .models import CampaignFilters, ScrapedContent, ScrapedMetadata, utcnow
from .sections import find_sections


logger = logging.getLogger(__name__)

CONTENT_MAX_CHARS = 5000

_TAIL_50 = r'[:\s]+([^.!?\n]{1,50})'
_TAIL_100 = r'[:\s]+([^.!?\n]{1,100})'

FIELD_PATTERNS: Dict[str, List[Pattern]] = {
    'deadline': [
        re.compile(r'\bdeadline' + _TAIL_50, re.I),
        re.compile(r'\bdue' + _TAIL_50, re.I),
        re.compile(r'\bapply by' + _TAIL_50, re.I),
        re.compile(r'\bclosing date' + _TAIL_50, re.I),
    ],
    'amount': [
        re.compile(r'\$[\d,]+(?:\.\d{2})?'),
        re.compile(r'€[\d,]+(?:\.\d{2})?'),
        re.compile(r'£[\d,]+(?:\.\d{2})?'),
        re.compile(r'\baward[:\s]+([^.!?\n]*[\d,]+[^.!?\n]*)', re.I),
        re.compile(r'\bscholarship[:\s]+([^.!?\n]*[\d,]+[^.!?\n]*)', re.I),
        re.compile(r'\bfunding[:\s]+([^.!?\n]*[\d,]+[^.!?\n]*)', re.I),
    ],
    'organization': [
        re.compile(r'\boffered by' + _TAIL_100, re.I),
        re.compile(r'\bsponsored by' + _TAIL_100, re.I),
        re.compile(r'\bfoundation' + _TAIL_100, re.I),
        re.compile(r'\buniversity' + _TAIL_100, re.I),
    ],
    'location': [
        re.compile(r'\blocation' + _TAIL_50, re.I),
        re.compile(r'\bcountry' + _TAIL_50, re.I),
        re.compile(r'\beligible[:\s]+([^.!?\n]*countries?[^.!?\n]*)', re.I),
    ],
    'requirements': [
        re.compile(r'\brequirements?[:\s]+([^.!?\n]{1,300})', re.I),
        re.compile(r'\beligibility[:\s]+([^.!?\n]{1,300})', re.I),
    ],
    'apply_info': [
        re.compile(r'\bhow to apply[:\s]+([^.!?\n]{1,300})', re.I),
        re.compile(r'\bto apply[,:\s]+([^.!?\n]{1,300})', re.I),
    ],
}


@dataclass
class ExtractedFields:
    title: str
    content: str
    description: str = ''
    organization: Optional[str] = None
    deadline: Optional[str] = None
    location: Optional[str] = None
    amount: Optional[str] = None
    requirements: Optional[str] = None
    apply_info: Optional[str] = None


def match_first(patterns: List[Pattern], text: str) -> Optional[str]:
    """Value of the first pattern in the list that matches; later ones are not tried"""
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = match.group(1) if match.groups() else match.group(0)
            value = value.strip()
            if value:
                return value
    return None


def html_to_text(html: str) -> str:
    """Drop script/style blocks and tags, collapsing whitespace"""
    soup = BeautifulSoup(html, 'html.parser')
    for element in soup(['script', 'style', 'noscript']):
        element.decompose()
    root = soup.body or soup
    return re.sub(r'\s+', ' ', root.get_text(' ')).strip()


class FieldExtractor:
    """Pulls title, body text and opportunity fields out of raw HTML"""

    def extract(self, html: str, selectors: Optional[Dict[str, str]] = None) -> ExtractedFields:
        selectors = {k: v for k, v in (selectors or {}).items() if v}
        soup = BeautifulSoup(html, 'html.parser')
        for element in soup(['script', 'style', 'noscript']):
            element.decompose()

        title = self._select_text(soup, selectors.get('title'))
        if title is None:
            title_tag = soup.find('title')
            title = title_tag.get_text(strip=True) if title_tag else ''

        description = self._select_text(soup, selectors.get('description'))
        if description is None:
            meta = soup.find('meta', attrs={'name': 'description'})
            description = (meta.get('content') or '').strip() if meta else ''

        raw_text = self._select_text(soup, selectors.get('content'))
        if raw_text is None:
            raw_text = (soup.body or soup).get_text(' ')
        content = re.sub(r'\s+', ' ', raw_text).strip()

        fields = ExtractedFields(
            title=title,
            content=content[:CONTENT_MAX_CHARS],
            description=description,
        )

        sections = None
        for name in ('organization', 'deadline', 'location', 'amount', 'requirements', 'apply_info'):
            value = self._select_text(soup, selectors.get(name))
            if value is None:
                value = match_first(FIELD_PATTERNS[name], content)
            if value is None and name in ('requirements', 'apply_info'):
                if sections is None:
                    sections = find_sections(html)
                value = sections.get('eligibility' if name == 'requirements' else 'how_to_apply')
            setattr(fields, name, value)

        return fields

    def _select_text(self, soup: BeautifulSoup, selector: Optional[str]) -> Optional[str]:
        if not selector:
            return None
        try:
            element = soup.select_one(selector)
        except SelectorSyntaxError as exc:
            logger.warning(f"Invalid selector {selector!r}: {exc}")
            return None
        if element is None:
            return None
        return element.get_text(' ', strip=True)


def scraped_from_html(url: str, html: str, selectors: Optional[Dict[str, str]] = None,
                      extractor: Optional[FieldExtractor] = None) -> ScrapedContent:
    """Extract a page we already hold; raises ExtractionEmpty if title or content is missing"""
    extractor = extractor or FieldExtractor()
    fields = extractor.extract(html, selectors)

    if not fields.title or not fields.content:
        raise ExtractionEmpty(url)

    return ScrapedContent(
        title=fields.title,
        url=url,
        content=fields.content,
        metadata=ScrapedMetadata(
            scraped_at=utcnow(),
            source_url=url,
            organization=fields.organization,
            deadline=fields.deadline,
            location=fields.location,
            amount=fields.amount,
            description=fields.description or None,
            requirements=fields.requirements,
            apply_info=fields.apply_info,
            raw_html=html,
        ),
    )


def scrape_webpage(fetcher: Fetcher, url: str, selectors: Optional[Dict[str, str]] = None,
                   extractor: Optional[FieldExtractor] = None) -> ScrapedContent:
    """Fetch a page and extract its fields; raises FetchFailed or ExtractionEmpty"""
    response = fetcher.get(url)
    return scraped_from_html(url, response.text, selectors, extractor)


def check_campaign_filters(content: ScrapedContent, filters: CampaignFilters) -> Optional[str]:
    """Return why the content fails the campaign filters, or None if it passes"""
    length = len(content.content)
    if filters.min_length is not None and length < filters.min_length:
        return f"content too short ({length} < {filters.min_length})"
    if filters.max_length is not None and length > filters.max_length:
        return f"content too long ({length} > {filters.max_length})"

    haystack = f"{content.title} {content.content}".lower()
    banned = [word for word in filters.banned_words if word.lower() in haystack]
    if banned:
        return f"banned words present: {', '.join(banned)}"

    missing = [word for word in filters.required_words if word.lower() not in haystack]
    if missing:
        return f"required words missing: {', '.join(missing)}"

    return None

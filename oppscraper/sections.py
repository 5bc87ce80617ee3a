"""
Heading-bounded section extraction and opportunity type classification
"""

import re
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Pattern, Tuple

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from bs4.element import PreformattedString


SECTION_PATTERNS: List[Tuple[str, Pattern]] = [
    ('type', re.compile(r'type|category|position|role|opportunity type', re.I)),
    ('organization', re.compile(r'organization|organisation|company|institution|host|sponsor|offered by|about', re.I)),
    ('location', re.compile(r'location|country|countries|place|venue|where', re.I)),
    ('salary_stipend', re.compile(r'salary|stipend|compensation|payment|financial|funding|allowance|remuneration', re.I)),
    ('eligibility', re.compile(r'eligibility|requirements?|criteria|who can apply|qualification', re.I)),
    ('benefits', re.compile(r'benefits?|coverage|what[^.]*cover|perks|advantages|includes?', re.I)),
    ('how_to_apply', re.compile(r'how to apply|application|apply|submission|process', re.I)),
    ('deadline', re.compile(r'deadline|date|when|timeline|due|closing', re.I)),
    ('additional_info', re.compile(r'additional|other|important|note|contact|further', re.I)),
]

HEADING_TAGS = ['h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'strong', 'b']

# Trailing boilerplate cut from section bodies
BOILERPLATE_PATTERNS = [
    re.compile(r'\b(?:also check|see also|share this)\b.*$', re.I | re.S),
    re.compile(r'\b(?:related|author|posted by|tags)\s*:.*$', re.I | re.S),
]

SECTION_MAX_CHARS = 800

TYPE_KEYWORDS: List[Tuple[str, Pattern]] = [
    ('Scholarship', re.compile(r'scholarship|study grant|educational', re.I)),
    ('Job', re.compile(r'\bjob\b|employment|position|career|vacancy', re.I)),
    ('Internship', re.compile(r'internship|\bintern\b|training|work experience', re.I)),
    ('Fellowship', re.compile(r'fellowship|research|\bfellow\b', re.I)),
    ('Conference', re.compile(r'conference|summit|symposium|workshop', re.I)),
    ('Volunteer', re.compile(r'volunteer|community service', re.I)),
    ('Competition', re.compile(r'competition|contest|award|prize', re.I)),
    ('Exchange Program', re.compile(r'exchange|study abroad', re.I)),
]

ORGANIZATION_FALLBACK = re.compile(r'(?:by|from|at|with)\s+([A-Z][^.]{10,60})')
LOCATION_FALLBACK = re.compile(r'(?:in|at|located in)\s+([A-Z][^,.]{3,40})')
STIPEND_FALLBACKS = [
    re.compile(r'(?:\$|€|£|₹|USD|EUR|GBP)\s*[\d,]+(?:[.-]\d+)?', re.I),
    re.compile(r'(?:salary|stipend|paid|compensation):\s*([^.]{10,100})', re.I),
]

_MONTHS = (r'january|february|march|april|may|june|july|august|september|october|november|december'
           r'|jan|feb|mar|apr|jun|jul|aug|sep|oct|nov|dec')
DEADLINE_FALLBACKS = [
    re.compile(r'(?:deadline|due|apply by|last date)[:\s]*([^.]*\d{1,2}[^.]*(?:' + _MONTHS + r')[^.]*\d{4})', re.I),
    re.compile(r'\b(\d{1,2}[/\-]\d{1,2}[/\-]\d{4})\b'),
    re.compile(r'\b((?:january|february|march|april|may|june|july|august|september|october|november|december)'
               r'\s+\d{1,2},?\s+\d{4})\b', re.I),
]


@dataclass
class ProcessedOpportunity:
    """Structured view of an opportunity page built from its sections"""
    title: str
    original_url: str
    type: Optional[str] = None
    organization: Optional[str] = None
    location: Optional[str] = None
    salary_stipend: Optional[str] = None
    eligibility: Optional[str] = None
    benefits: Optional[str] = None
    how_to_apply: Optional[str] = None
    deadline: Optional[str] = None
    additional_info: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


def parse_html(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html, 'html.parser')
    for element in soup(['script', 'style', 'noscript']):
        element.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    return soup


def clean_section_text(text: str) -> str:
    """Collapse whitespace, cut trailing boilerplate and cap the length"""
    cleaned = re.sub(r'\s+', ' ', text).strip()

    for pattern in BOILERPLATE_PATTERNS:
        cleaned = pattern.sub('', cleaned)

    return cleaned[:SECTION_MAX_CHARS].strip()


def clean_section_content(html: str) -> str:
    """Strip markup and trailing boilerplate from a section's HTML"""
    return clean_section_text(parse_html(html).get_text(' '))


def find_headings(soup: BeautifulSoup) -> List[Tag]:
    """Outermost structural headings with visible text, in document order"""
    headings = []
    for tag in soup.find_all(HEADING_TAGS):
        # <h2><strong>Eligibility</strong></h2> is one heading
        if tag.find_parent(HEADING_TAGS) is not None:
            continue
        if tag.get_text(strip=True):
            headings.append(tag)
    return headings


def section_text(heading: Tag, boundary: Optional[Tag]) -> str:
    """Text that follows ``heading`` in document order, up to ``boundary``"""
    own = {id(node) for node in heading.descendants}
    parts = []
    for element in heading.next_elements:
        if element is boundary:
            break
        if id(element) in own:
            continue
        if isinstance(element, NavigableString) and not isinstance(element, PreformattedString):
            parts.append(str(element))
    return ' '.join(parts)


def classify_heading(heading: str) -> Optional[str]:
    """First section category whose pattern matches the heading text"""
    for key, pattern in SECTION_PATTERNS:
        if pattern.search(heading):
            return key
    return None


def find_sections(html: str) -> Dict[str, str]:
    """Slice the document between consecutive headings into named sections

    Headings are h1-h6, strong and b elements, matched on their full text
    so nested markup inside a heading is fine. The first heading that
    classifies into a category owns it; later headings of the same
    category are ignored.
    """
    sections: Dict[str, str] = {}
    headings = find_headings(parse_html(html))

    for index, heading in enumerate(headings):
        key = classify_heading(heading.get_text(' ', strip=True))
        if key is None or key in sections:
            continue
        boundary = headings[index + 1] if index + 1 < len(headings) else None
        body = clean_section_text(section_text(heading, boundary))
        if body:
            sections[key] = body

    return sections


def classify_type(text: str) -> Optional[str]:
    for label, pattern in TYPE_KEYWORDS:
        if pattern.search(text):
            return label
    return None


def _first_group(patterns: List[Pattern], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = match.group(1) if match.groups() else match.group(0)
            return value.strip()
    return None


def extract_processed_opportunity(title: str, url: str, html: str, text: str) -> ProcessedOpportunity:
    """Build a ProcessedOpportunity, preferring section bodies over text patterns"""
    sections = find_sections(html)

    organization = sections.get('organization')
    if not organization:
        match = ORGANIZATION_FALLBACK.search(text)
        organization = match.group(1).strip() if match else None

    location = sections.get('location')
    if not location:
        match = LOCATION_FALLBACK.search(text)
        location = match.group(1).strip() if match else None

    return ProcessedOpportunity(
        title=title or 'Untitled Opportunity',
        original_url=url,
        type=sections.get('type') or classify_type(text),
        organization=organization,
        location=location,
        salary_stipend=sections.get('salary_stipend') or _first_group(STIPEND_FALLBACKS, text),
        eligibility=sections.get('eligibility'),
        benefits=sections.get('benefits'),
        how_to_apply=sections.get('how_to_apply'),
        deadline=sections.get('deadline') or _first_group(DEADLINE_FALLBACKS, text),
        additional_info=sections.get('additional_info'),
    )

"""
Shared fixtures: in-memory gateway, canned-page fetcher, scripted AI client.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from oppscraper.ai import AIExtractor
from oppscraper.errors import FetchFailed
from oppscraper.fetcher import FetchResponse
from oppscraper.models import Campaign, Source
from oppscraper.orchestrator import CampaignOrchestrator
from oppscraper.persistence import InMemoryGateway


OPPORTUNITY_HTML = """
<html>
<head>
  <title>Young Leaders Fellowship</title>
  <meta name="description" content="A fellowship for emerging leaders.">
  <script>var tracking = "ignore me";</script>
</head>
<body>
  <h1>Young Leaders Fellowship</h1>
  <p>Offered by Global Youth Foundation for changemakers.</p>
  <h2>Eligibility</h2>
  <p>Applicants must be aged 18-30 and enrolled in a university program.</p>
  <h2>How to Apply</h2>
  <p>Submit the online form with a CV and motivation letter.</p>
  <p>Deadline: March 1, 2025. Award: $5,000 stipend.</p>
  <p>Location: Nairobi, Kenya</p>
</body>
</html>
"""

AI_PAYLOAD = {
    "title": "Young Leaders Fellowship",
    "organization": "Global Youth Foundation",
    "description": "A fellowship for emerging leaders.",
    "category": "Fellowships",
    "location": "Kenya",
    "deadline": "2025-03-01",
    "amount": "$5,000",
    "tags": "fellowship,leadership",
    "url": "https://evil.example.com/not-the-source",
    "featured": False,
    "aboutOpportunity": "A year-long leadership program.",
    "requirements": "Aged 18-30",
    "howToApply": "Online form",
    "whatYouGet": "Stipend and mentoring",
    "contactEmail": "",
    "fundingType": "Stipend",
    "eligibleCountries": "",
}


class FakeClock:
    """Settable clock so backoff and staleness are deterministic"""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class StubFetcher:
    """Serves canned pages; unknown URLs answer 404"""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            raise FetchFailed(url, "HTTP error! status: 404", status_code=404)
        if isinstance(page, Exception):
            raise page
        status, text = page if isinstance(page, tuple) else (200, page)
        if not 200 <= status < 300:
            raise FetchFailed(url, f"HTTP error! status: {status}", status_code=status)
        return FetchResponse(url=url, status_code=status, text=text, elapsed_ms=1)

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ScriptedAIClient:
    """Returns the queued responses in order, raising any that are exceptions"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def sitemap_xml(*urls):
    entries = "".join(f"<url><loc>{url}</loc></url>" for url in urls)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        f"{entries}</urlset>"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def ai_client():
    return ScriptedAIClient(json.dumps(AI_PAYLOAD))


@pytest.fixture
def source(gateway):
    return gateway.save_source(Source(name="Example Opportunities", root_domain="example.org"))


@pytest.fixture
def campaign(gateway, source):
    return gateway.save_campaign(Campaign(name="Fellowship sweep", source_ids=[source.id]))


@pytest.fixture
def site_pages():
    """A site with no feeds, a sitemap listing two opportunity pages, and those pages"""
    return {
        "https://example.org/sitemap.xml": sitemap_xml(
            "https://example.org/fellowship-2025",
            "https://example.org/scholarship-masters",
            "https://example.org/about-us",
        ),
        "https://example.org/fellowship-2025": OPPORTUNITY_HTML,
        "https://example.org/scholarship-masters": OPPORTUNITY_HTML.replace(
            "Young Leaders Fellowship", "Masters Scholarship"),
    }


@pytest.fixture
def fetcher(site_pages):
    return StubFetcher(site_pages)


@pytest.fixture
def orchestrator(gateway, fetcher, ai_client, clock):
    return CampaignOrchestrator(
        gateway,
        fetcher,
        ai_extractor=AIExtractor(ai_client, model_version="test-model"),
        max_workers=1,
        clock=clock,
    )

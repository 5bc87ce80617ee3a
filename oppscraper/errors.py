"""
Exception hierarchy for the scraping pipeline
"""

from typing import Optional


class ScraperError(Exception):
    """Base class for all pipeline errors"""


class CampaignNotFound(ScraperError):
    """Campaign is missing or inactive"""

    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign not found or inactive: {campaign_id}")
        self.campaign_id = campaign_id


class DiscoveryExhausted(ScraperError):
    """RSS, sitemap and link discovery all came back empty"""

    def __init__(self, site_url: str):
        super().__init__(f"No content URLs discovered for {site_url}")
        self.site_url = site_url


class FetchFailed(ScraperError):
    """Non-2xx response or network error; retryable"""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ExtractionEmpty(FetchFailed):
    """Page parsed but produced no title or content"""

    def __init__(self, url: str):
        super().__init__(url, f"No title or content extracted from {url}")


class AIParseFailed(ScraperError):
    """Model response could not be parsed into an opportunity object"""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


class AIProviderError(ScraperError):
    """The generative model call itself failed"""


class PersistenceError(ScraperError):
    """Datastore write failed; never retried"""


class InvalidTransition(ScraperError):
    """Illegal queue item or campaign run state change"""

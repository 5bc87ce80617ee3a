"""
oppscraper - Opportunity discovery, scraping and AI extraction pipeline
"""

__version__ = "0.1.0"
__author__ = "oppscraper Team"

from .models import Campaign, CampaignRun, ContentItem, ScrapedContent, ScrapingQueueItem, Source
from .orchestrator import CampaignOrchestrator
from .scheduler import CampaignScheduler

__all__ = [
    "Campaign", "CampaignRun", "ContentItem", "ScrapedContent", "ScrapingQueueItem", "Source",
    "CampaignOrchestrator", "CampaignScheduler",
]

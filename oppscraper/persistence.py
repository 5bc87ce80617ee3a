"""
Persistence gateway: typed CRUD over sources, campaigns, runs, queue, logs, content and opportunities
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .ai import OpportunityRecord
from .errors import PersistenceError
from .models import (
    Campaign, CampaignRun, ContentItem, QueueStatus, RunStatus, ScrapingLog,
    ScrapingQueueItem, Source, new_id, utcnow,
)
from .queue import drain_order, is_due


logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = (QueueStatus.QUEUED, QueueStatus.RETRYING)
RUN_COUNTERS = ('sources_processed', 'items_found', 'items_created', 'errors_count')

# OpportunityRecord attribute -> opportunities table column
OPPORTUNITY_COLUMNS = {
    'title': 'title',
    'organization': 'organization',
    'description': 'description',
    'category': 'category',
    'location': 'location',
    'deadline': 'deadline',
    'amount': 'amount',
    'tags': 'tags',
    'url': 'url',
    'featured': 'featured',
    'about_opportunity': 'about_opportunity',
    'requirements': 'requirements',
    'how_to_apply': 'how_to_apply',
    'what_you_get': 'what_you_get',
    'program_start_date': 'program_start_date',
    'program_end_date': 'program_end_date',
    'contact_email': 'contact_email',
    'eligibility_age': 'eligibility_age',
    'language_requirements': 'language_requirements',
    'funding_type': 'funding_type',
    'eligible_countries': 'eligible_countries',
    'min_amount': 'min_amount',
    'max_amount': 'max_amount',
}


def opportunity_row(record: OpportunityRecord, status: str = 'draft') -> Dict[str, Any]:
    """Map a record onto the opportunities schema, column by column"""
    row = {column: getattr(record, attr) for attr, column in OPPORTUNITY_COLUMNS.items()}
    row['status'] = status
    return row


def success_rate(successful: int, total: int) -> float:
    return (successful / total) * 100 if total else 0.0


class PersistenceGateway(ABC):
    """Datastore boundary used by the orchestrator, scheduler and analytics

    Counter updates and queue claims must be atomic: several drains may
    run at once.
    """

    # Sources
    @abstractmethod
    def save_source(self, source: Source) -> Source: ...

    @abstractmethod
    def get_source(self, source_id: str) -> Optional[Source]: ...

    @abstractmethod
    def list_sources(self, ids: Optional[Sequence[str]] = None, active_only: bool = False) -> List[Source]: ...

    @abstractmethod
    def record_source_attempt(self, source_id: str, success: bool, at: datetime) -> None: ...

    # Campaigns
    @abstractmethod
    def save_campaign(self, campaign: Campaign) -> Campaign: ...

    @abstractmethod
    def get_campaign(self, campaign_id: str) -> Optional[Campaign]: ...

    @abstractmethod
    def list_campaigns(self, active_only: bool = False) -> List[Campaign]: ...

    @abstractmethod
    def increment_campaign_posts(self, campaign_id: str, delta: int = 1) -> None: ...

    @abstractmethod
    def update_campaign_schedule(self, campaign_id: str, last_run_at: Optional[datetime],
                                 next_run_at: Optional[datetime]) -> None: ...

    # Campaign runs
    @abstractmethod
    def create_run(self, run: CampaignRun) -> CampaignRun: ...

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[CampaignRun]: ...

    @abstractmethod
    def list_runs(self, campaign_id: Optional[str] = None, status: Optional[RunStatus] = None,
                  since: Optional[datetime] = None, limit: int = 50) -> List[CampaignRun]: ...

    @abstractmethod
    def increment_run_stats(self, run_id: str, **deltas: int) -> None: ...

    @abstractmethod
    def add_run_error(self, run_id: str, key: str, message: str) -> None: ...

    @abstractmethod
    def finish_run(self, run_id: str, status: RunStatus, completed_at: datetime,
                   execution_time_ms: int, reason: Optional[str] = None) -> bool:
        """Move a running run to a terminal status; False if it was not running"""

    # Scraping queue
    @abstractmethod
    def enqueue_items(self, items: Iterable[ScrapingQueueItem]) -> int: ...

    @abstractmethod
    def get_queue_item(self, item_id: str) -> Optional[ScrapingQueueItem]: ...

    @abstractmethod
    def select_due_items(self, now: datetime, limit: int,
                         campaign_run_id: Optional[str] = None) -> List[ScrapingQueueItem]:
        """Claimable items due by ``now``, by priority desc then created_at asc"""

    @abstractmethod
    def claim_queue_item(self, item_id: str, now: datetime) -> Optional[ScrapingQueueItem]:
        """Atomically move queued/retrying -> processing and bump attempts"""

    @abstractmethod
    def update_queue_item(self, item_id: str, **changes: Any) -> None: ...

    @abstractmethod
    def list_queue_items(self, campaign_run_id: Optional[str] = None,
                         status: Optional[QueueStatus] = None) -> List[ScrapingQueueItem]: ...

    # Logs
    @abstractmethod
    def append_log(self, log: ScrapingLog) -> None: ...

    @abstractmethod
    def list_logs(self, since: Optional[datetime] = None, campaign_run_id: Optional[str] = None) -> List[ScrapingLog]: ...

    # Content items
    @abstractmethod
    def create_content_item(self, item: ContentItem) -> ContentItem: ...

    @abstractmethod
    def get_content_item(self, item_id: str) -> Optional[ContentItem]: ...

    @abstractmethod
    def update_content_item(self, item_id: str, **changes: Any) -> None: ...

    @abstractmethod
    def find_content_by_url(self, source_url: str) -> Optional[ContentItem]: ...

    @abstractmethod
    def list_content_items(self, since: Optional[datetime] = None,
                           campaign_id: Optional[str] = None) -> List[ContentItem]: ...

    # Opportunities
    @abstractmethod
    def create_opportunity(self, record: OpportunityRecord) -> str: ...

    @abstractmethod
    def list_opportunities(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]: ...


class InMemoryGateway(PersistenceGateway):
    """Lock-guarded dict storage; hands out copies so callers never alias rows"""

    def __init__(self):
        self._lock = threading.RLock()
        self.sources: Dict[str, Source] = {}
        self.campaigns: Dict[str, Campaign] = {}
        self.runs: Dict[str, CampaignRun] = {}
        self.queue: Dict[str, ScrapingQueueItem] = {}
        self.logs: List[ScrapingLog] = []
        self.content_items: Dict[str, ContentItem] = {}
        self.opportunities: Dict[str, Dict[str, Any]] = {}
        self.updated_at: Dict[str, datetime] = {}

    def _touch(self, key: str) -> None:
        self.updated_at[key] = utcnow()

    @staticmethod
    def _apply(target: Any, changes: Dict[str, Any]) -> None:
        for name, value in changes.items():
            if not hasattr(target, name):
                raise PersistenceError(f"Unknown field {name!r} for {type(target).__name__}")
            setattr(target, name, value)

    # Sources
    def save_source(self, source: Source) -> Source:
        with self._lock:
            self.sources[source.id] = copy.deepcopy(source)
            self._touch(source.id)
            return copy.deepcopy(source)

    def get_source(self, source_id: str) -> Optional[Source]:
        with self._lock:
            source = self.sources.get(source_id)
            return copy.deepcopy(source) if source else None

    def list_sources(self, ids: Optional[Sequence[str]] = None, active_only: bool = False) -> List[Source]:
        with self._lock:
            sources = list(self.sources.values())
            if ids is not None:
                wanted = set(ids)
                sources = [s for s in sources if s.id in wanted]
            if active_only:
                sources = [s for s in sources if s.is_active]
            return copy.deepcopy(sources)

    def record_source_attempt(self, source_id: str, success: bool, at: datetime) -> None:
        with self._lock:
            source = self.sources.get(source_id)
            if source is None:
                return
            source.total_attempts += 1
            if success:
                source.successful_attempts += 1
            source.success_rate = success_rate(source.successful_attempts, source.total_attempts)
            source.last_scraped_at = at
            self._touch(source_id)

    # Campaigns
    def save_campaign(self, campaign: Campaign) -> Campaign:
        with self._lock:
            self.campaigns[campaign.id] = copy.deepcopy(campaign)
            self._touch(campaign.id)
            return copy.deepcopy(campaign)

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self._lock:
            campaign = self.campaigns.get(campaign_id)
            return copy.deepcopy(campaign) if campaign else None

    def list_campaigns(self, active_only: bool = False) -> List[Campaign]:
        with self._lock:
            campaigns = [c for c in self.campaigns.values() if c.is_active or not active_only]
            return copy.deepcopy(campaigns)

    def increment_campaign_posts(self, campaign_id: str, delta: int = 1) -> None:
        with self._lock:
            campaign = self.campaigns.get(campaign_id)
            if campaign is not None:
                campaign.current_posts += delta
                self._touch(campaign_id)

    def update_campaign_schedule(self, campaign_id: str, last_run_at: Optional[datetime],
                                 next_run_at: Optional[datetime]) -> None:
        with self._lock:
            campaign = self.campaigns.get(campaign_id)
            if campaign is not None:
                campaign.last_run_at = last_run_at
                campaign.next_run_at = next_run_at
                self._touch(campaign_id)

    # Campaign runs
    def create_run(self, run: CampaignRun) -> CampaignRun:
        with self._lock:
            self.runs[run.id] = copy.deepcopy(run)
            self._touch(run.id)
            return copy.deepcopy(run)

    def get_run(self, run_id: str) -> Optional[CampaignRun]:
        with self._lock:
            run = self.runs.get(run_id)
            return copy.deepcopy(run) if run else None

    def list_runs(self, campaign_id: Optional[str] = None, status: Optional[RunStatus] = None,
                  since: Optional[datetime] = None, limit: int = 50) -> List[CampaignRun]:
        with self._lock:
            runs = [
                r for r in self.runs.values()
                if (campaign_id is None or r.campaign_id == campaign_id)
                and (status is None or r.status == status)
                and (since is None or r.started_at >= since)
            ]
            runs.sort(key=lambda r: r.started_at, reverse=True)
            return copy.deepcopy(runs[:limit])

    def increment_run_stats(self, run_id: str, **deltas: int) -> None:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None:
                return
            for name, delta in deltas.items():
                if name not in RUN_COUNTERS:
                    raise PersistenceError(f"Unknown run counter {name!r}")
                setattr(run, name, getattr(run, name) + delta)
            self._touch(run_id)

    def add_run_error(self, run_id: str, key: str, message: str) -> None:
        with self._lock:
            run = self.runs.get(run_id)
            if run is not None:
                run.error_details[key] = message
                self._touch(run_id)

    def finish_run(self, run_id: str, status: RunStatus, completed_at: datetime,
                   execution_time_ms: int, reason: Optional[str] = None) -> bool:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status is not RunStatus.RUNNING:
                return False
            run.status = status
            run.completed_at = completed_at
            run.execution_time_ms = execution_time_ms
            if reason:
                run.error_details['reason'] = reason
            self._touch(run_id)
            return True

    # Scraping queue
    def enqueue_items(self, items: Iterable[ScrapingQueueItem]) -> int:
        with self._lock:
            count = 0
            for item in items:
                self.queue[item.id] = copy.deepcopy(item)
                self._touch(item.id)
                count += 1
            return count

    def get_queue_item(self, item_id: str) -> Optional[ScrapingQueueItem]:
        with self._lock:
            item = self.queue.get(item_id)
            return copy.deepcopy(item) if item else None

    def select_due_items(self, now: datetime, limit: int,
                         campaign_run_id: Optional[str] = None) -> List[ScrapingQueueItem]:
        with self._lock:
            due = drain_order(item for item in self.queue.values() if is_due(item, now, campaign_run_id))
            return copy.deepcopy(due[:limit])

    def claim_queue_item(self, item_id: str, now: datetime) -> Optional[ScrapingQueueItem]:
        with self._lock:
            item = self.queue.get(item_id)
            if item is None or item.status not in CLAIMABLE_STATUSES:
                return None
            if item.attempts >= item.max_attempts:
                return None
            item.status = QueueStatus.PROCESSING
            item.attempts += 1
            item.started_at = now
            self._touch(item_id)
            return copy.deepcopy(item)

    def update_queue_item(self, item_id: str, **changes: Any) -> None:
        with self._lock:
            item = self.queue.get(item_id)
            if item is None:
                raise PersistenceError(f"Queue item not found: {item_id}")
            self._apply(item, changes)
            self._touch(item_id)

    def list_queue_items(self, campaign_run_id: Optional[str] = None,
                         status: Optional[QueueStatus] = None) -> List[ScrapingQueueItem]:
        with self._lock:
            items = [
                item for item in self.queue.values()
                if (campaign_run_id is None or item.campaign_run_id == campaign_run_id)
                and (status is None or item.status == status)
            ]
            items.sort(key=lambda item: item.created_at)
            return copy.deepcopy(items)

    # Logs
    def append_log(self, log: ScrapingLog) -> None:
        with self._lock:
            self.logs.append(copy.deepcopy(log))

    def list_logs(self, since: Optional[datetime] = None, campaign_run_id: Optional[str] = None) -> List[ScrapingLog]:
        with self._lock:
            return copy.deepcopy([
                log for log in self.logs
                if (since is None or log.created_at >= since)
                and (campaign_run_id is None or log.campaign_run_id == campaign_run_id)
            ])

    # Content items
    def create_content_item(self, item: ContentItem) -> ContentItem:
        with self._lock:
            self.content_items[item.id] = copy.deepcopy(item)
            self._touch(item.id)
            return copy.deepcopy(item)

    def get_content_item(self, item_id: str) -> Optional[ContentItem]:
        with self._lock:
            item = self.content_items.get(item_id)
            return copy.deepcopy(item) if item else None

    def update_content_item(self, item_id: str, **changes: Any) -> None:
        with self._lock:
            item = self.content_items.get(item_id)
            if item is None:
                raise PersistenceError(f"Content item not found: {item_id}")
            self._apply(item, changes)
            self._touch(item_id)

    def find_content_by_url(self, source_url: str) -> Optional[ContentItem]:
        with self._lock:
            for item in self.content_items.values():
                if item.source_url == source_url:
                    return copy.deepcopy(item)
            return None

    def list_content_items(self, since: Optional[datetime] = None,
                           campaign_id: Optional[str] = None) -> List[ContentItem]:
        with self._lock:
            return copy.deepcopy([
                item for item in self.content_items.values()
                if (since is None or item.created_at >= since)
                and (campaign_id is None or item.campaign_id == campaign_id)
            ])

    # Opportunities
    def create_opportunity(self, record: OpportunityRecord) -> str:
        with self._lock:
            opportunity_id = new_id()
            now = utcnow()
            row = opportunity_row(record)
            row.update({'id': opportunity_id, 'created_at': now, 'updated_at': now})
            self.opportunities[opportunity_id] = row
            return opportunity_id

    def list_opportunities(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                dict(row) for row in self.opportunities.values()
                if since is None or row['created_at'] >= since
            ]

"""
Campaign orchestrator that coordinates discovery, the scraping queue and AI extraction
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .ai import AIExtractionResult, AIExtractor, GeminiClient
from .analytics import queue_status
from .config import Settings
from .discovery import URLDiscoverer
from .errors import CampaignNotFound, DiscoveryExhausted, FetchFailed, InvalidTransition, PersistenceError
from .extraction import FieldExtractor, check_campaign_filters, scrape_webpage
from .fetcher import DomainRateLimiter, Fetcher
from .models import (
    Campaign, CampaignRun, ContentItem, ContentStatus, QueueStatus, RunStatus,
    ScrapedContent, ScrapingLog, ScrapingQueueItem, utcnow,
)
from .persistence import PersistenceGateway
from .queue import build_queue_items, completion_changes, failure_changes, is_terminal


logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = 'completed'
OUTCOME_SKIPPED = 'skipped'
OUTCOME_RETRYING = 'retrying'
OUTCOME_FAILED = 'failed'


@dataclass
class DrainResult:
    """Tally of one drain call"""
    selected: int = 0
    processed: int = 0
    completed: int = 0
    skipped: int = 0
    retrying: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


class CampaignOrchestrator:
    """Runs campaigns: discover URLs, queue them, drain the queue in batches"""

    def __init__(self, gateway: PersistenceGateway, fetcher: Fetcher,
                 ai_extractor: Optional[AIExtractor] = None,
                 discoverer: Optional[URLDiscoverer] = None,
                 field_extractor: Optional[FieldExtractor] = None,
                 batch_size: int = 10, max_workers: int = 5,
                 confidence_threshold: float = 0.1,
                 clock: Callable[[], datetime] = utcnow):
        self.gateway = gateway
        self.fetcher = fetcher
        self.ai_extractor = ai_extractor or AIExtractor(None)
        self.discoverer = discoverer or URLDiscoverer(fetcher)
        self.field_extractor = field_extractor or FieldExtractor()
        self.batch_size = batch_size
        self.max_workers = max(1, max_workers)
        self.confidence_threshold = confidence_threshold
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, gateway: PersistenceGateway) -> "CampaignOrchestrator":
        fetcher = Fetcher(
            user_agent=settings.user_agent,
            timeout=settings.fetch_timeout,
            rate_limiter=DomainRateLimiter(settings.domain_min_interval),
        )
        client = None
        if settings.gemini_api_key:
            client = GeminiClient(settings.gemini_api_key, model=settings.gemini_model)
        else:
            logger.warning("No Gemini API key configured; AI extraction will use metadata fallback")

        return cls(
            gateway,
            fetcher,
            ai_extractor=AIExtractor(client, model_version=settings.gemini_model),
            batch_size=settings.drain_batch_size,
            max_workers=settings.max_workers,
            confidence_threshold=settings.confidence_threshold,
        )

    # Run lifecycle

    def start_campaign_run(self, campaign_id: str, drain: bool = True) -> CampaignRun:
        """Create a run, queue every discovered URL and optionally drain the first batch"""
        campaign = self.gateway.get_campaign(campaign_id)
        if campaign is None or not campaign.is_active:
            raise CampaignNotFound(campaign_id)

        now = self.clock()
        run = self.gateway.create_run(CampaignRun(campaign_id=campaign.id, started_at=now))
        logger.info(f"Started run {run.id} for campaign '{campaign.name}'")

        queued = self._queue_campaign_urls(campaign, run)
        logger.info(f"Queued {queued} URLs for run {run.id}")
        self.gateway.update_campaign_schedule(campaign.id, now, campaign.next_run_at)

        if drain and queued:
            self.drain_queue(run.id)

        return self.gateway.get_run(run.id)

    def _queue_campaign_urls(self, campaign: Campaign, run: CampaignRun) -> int:
        sources = self.gateway.list_sources(campaign.source_ids, active_only=True)
        remaining = campaign.max_posts if campaign.max_posts > 0 else None
        items: List[ScrapingQueueItem] = []

        for source in sources:
            if remaining is not None and remaining <= 0:
                break
            self.gateway.increment_run_stats(run.id, sources_processed=1)
            try:
                urls, strategy = self.discoverer.discover_urls(source.root_url)
            except DiscoveryExhausted as exc:
                logger.warning(f"Skipping source {source.name}: {exc}")
                self.gateway.add_run_error(run.id, source.id, str(exc))
                continue

            if remaining is not None:
                urls = urls[:remaining]
                remaining -= len(urls)
            logger.info(f"Discovered {len(urls)} URLs for {source.name} via {strategy.value}")
            items.extend(build_queue_items(campaign, source, urls, run.id, self.clock()))

        if not items:
            return 0
        return self.gateway.enqueue_items(items)

    def complete_campaign_run(self, run_id: str) -> CampaignRun:
        """Finalize a running run as completed"""
        return self._finish(run_id, RunStatus.COMPLETED)

    def cancel_campaign_run(self, run_id: str) -> CampaignRun:
        """Cancel a running run and fail whatever it still has waiting in the queue"""
        run = self._finish(run_id, RunStatus.CANCELLED)
        now = self.clock()
        cancelled = 0
        for item in self.gateway.list_queue_items(campaign_run_id=run_id):
            if item.status in (QueueStatus.QUEUED, QueueStatus.RETRYING):
                self.gateway.update_queue_item(item.id, status=QueueStatus.FAILED,
                                               error_message='cancelled', completed_at=now)
                cancelled += 1
        logger.info(f"Cancelled run {run_id}, dropped {cancelled} queued items")
        return run

    def _finish(self, run_id: str, status: RunStatus, reason: Optional[str] = None) -> CampaignRun:
        run = self.gateway.get_run(run_id)
        if run is None:
            raise InvalidTransition(f"Campaign run not found: {run_id}")
        now = self.clock()
        if not self.gateway.finish_run(run_id, status, now, elapsed_ms(run.started_at, now), reason):
            raise InvalidTransition(f"Run {run_id} is already {run.status.value}")
        logger.info(f"Run {run_id} {status.value}")
        return self.gateway.get_run(run_id)

    def reap_stale_runs(self, max_age: float) -> List[str]:
        """Fail every run that has been running longer than ``max_age`` seconds"""
        now = self.clock()
        cutoff = now - timedelta(seconds=max_age)
        reaped = []
        for run in self.gateway.list_runs(status=RunStatus.RUNNING, limit=1000):
            if run.started_at >= cutoff:
                continue
            if self.gateway.finish_run(run.id, RunStatus.FAILED, now,
                                       elapsed_ms(run.started_at, now), reason='stale'):
                logger.warning(f"Marked stale run {run.id} as failed")
                reaped.append(run.id)
        return reaped

    def get_campaign_runs(self, campaign_id: Optional[str] = None, limit: int = 50) -> List[CampaignRun]:
        return self.gateway.list_runs(campaign_id=campaign_id, limit=limit)

    def get_queue_status(self) -> Dict[str, int]:
        return queue_status(self.gateway, self.clock())

    # Queue draining

    def drain_queue(self, campaign_run_id: Optional[str] = None, limit: Optional[int] = None) -> DrainResult:
        """Process one batch of due items; items are claimed in drain order"""
        now = self.clock()
        candidates = self.gateway.select_due_items(now, limit or self.batch_size, campaign_run_id)
        result = DrainResult(selected=len(candidates))

        claimed = []
        for candidate in candidates:
            item = self.gateway.claim_queue_item(candidate.id, self.clock())
            if item is None:
                logger.debug(f"Queue item {candidate.id} already claimed elsewhere")
                continue
            claimed.append(item)

        if not claimed:
            return result

        if self.max_workers == 1 or len(claimed) == 1:
            outcomes = [self._run_item(item) for item in claimed]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(claimed))) as pool:
                outcomes = list(pool.map(self._run_item, claimed))

        for outcome in outcomes:
            result.processed += 1
            setattr(result, outcome, getattr(result, outcome) + 1)

        logger.info(f"Drained {result.processed} items: {result.completed} completed, "
                    f"{result.skipped} skipped, {result.retrying} retrying, {result.failed} failed")
        return result

    def _run_item(self, item: ScrapingQueueItem) -> str:
        """Process a claimed item; nothing raised here escapes the drain"""
        try:
            return self.process_queue_item(item)
        except PersistenceError as exc:
            logger.error(f"Persistence failure on {item.url}: {exc}")
            return self._fail_item(item, f"Persistence error: {exc}", retryable=False)
        except Exception as exc:
            logger.exception(f"Unexpected error processing {item.url}")
            return self._fail_item(item, str(exc))

    def process_queue_item(self, item: ScrapingQueueItem) -> str:
        """Scrape, filter, extract and persist a single claimed queue item"""
        run_id = item.campaign_run_id
        source = self.gateway.get_source(item.source_id)
        source_name = source.name if source else item.source_id
        campaign = self.gateway.get_campaign(item.campaign_id)
        filters = campaign.filters if campaign else None
        selectors = (item.metadata.get('scraping_config') or {}).get('selectors')

        if filters and filters.skip_duplicates and self.gateway.find_content_by_url(item.url):
            self._log(item, 'skipped', 0, error_message='duplicate')
            return self._skip(item, 'duplicate URL')

        started = time.monotonic()
        try:
            scraped = scrape_webpage(self.fetcher, item.url, selectors, self.field_extractor)
        except FetchFailed as exc:
            self._log(item, 'failed', self._ms_since(started), error_message=str(exc),
                      http_status_code=exc.status_code)
            self.gateway.record_source_attempt(item.source_id, False, self.clock())
            return self._fail_item(item, str(exc))

        response_ms = self._ms_since(started)
        self.gateway.record_source_attempt(item.source_id, True, self.clock())

        reason = check_campaign_filters(scraped, filters) if filters else None
        if reason:
            self._log(item, 'skipped', response_ms, content_length=len(scraped.content),
                      error_message=reason)
            return self._skip(item, reason)

        self._log(item, 'success', response_ms, content_length=len(scraped.content),
                  http_status_code=200)

        content_item = self.gateway.create_content_item(ContentItem(
            title=scraped.title,
            content=scraped.content,
            source_name=source_name,
            source_url=item.url,
            campaign_id=item.campaign_id,
            status=ContentStatus.PENDING,
            raw_html=scraped.metadata.raw_html or '',
            extraction_metadata=scraped.to_dict()['metadata'],
        ))

        try:
            extraction = self._extract_and_publish(item, scraped, content_item)
        except Exception as exc:
            self._fail_content_item(content_item, str(exc))
            raise

        if run_id:
            self.gateway.increment_run_stats(run_id, items_found=1,
                                             items_created=1 if extraction.success else 0)
        self.gateway.update_queue_item(item.id, **completion_changes(item, self.clock()))
        return OUTCOME_COMPLETED

    def _extract_and_publish(self, item: ScrapingQueueItem, scraped: ScrapedContent,
                             content_item: ContentItem) -> AIExtractionResult:
        """Run AI extraction for a stored content item and publish it when confident"""
        extraction = self.ai_extractor.process_scraped_content(scraped)
        changes = {
            'ai_processed': True,
            'extraction_confidence': extraction.confidence,
            'ai_model_version': extraction.model_version,
            'error_message': extraction.error or ('; '.join(extraction.validation_errors) or None),
            'extraction_metadata': {
                **content_item.extraction_metadata,
                'processing_time_ms': extraction.processing_time_ms,
                'validation_errors': extraction.validation_errors,
                'extracted_fields': extraction.extracted_fields,
                'fallback': extraction.fallback,
            },
        }
        if extraction.data is not None:
            changes['category'] = extraction.data.category

        confident = (extraction.confidence or 0.0) >= self.confidence_threshold
        if extraction.success and extraction.data is not None and confident:
            opportunity_id = self.gateway.create_opportunity(extraction.data)
            changes['opportunity_id'] = opportunity_id
            changes['status'] = ContentStatus.PUBLISHED
            self.gateway.increment_campaign_posts(item.campaign_id)
            logger.info(f"Created opportunity {opportunity_id} from {item.url}")
        else:
            logger.info(f"No opportunity for {item.url} (confidence {extraction.confidence})")
        self.gateway.update_content_item(content_item.id, **changes)
        return extraction

    def _fail_content_item(self, content_item: ContentItem, message: str) -> None:
        try:
            self.gateway.update_content_item(content_item.id, status=ContentStatus.FAILED,
                                             error_message=message)
        except PersistenceError as exc:
            logger.error(f"Could not mark content item {content_item.id} failed: {exc}")

    def _skip(self, item: ScrapingQueueItem, reason: str) -> str:
        logger.info(f"Skipped {item.url}: {reason}")
        if item.campaign_run_id:
            self.gateway.increment_run_stats(item.campaign_run_id, items_found=1)
        self.gateway.update_queue_item(item.id, **completion_changes(item, self.clock()))
        return OUTCOME_SKIPPED

    def _fail_item(self, item: ScrapingQueueItem, message: str, retryable: bool = True) -> str:
        try:
            stored = self.gateway.get_queue_item(item.id)
        except PersistenceError as exc:
            logger.error(f"Could not reload queue item {item.url}: {exc}")
            stored = None
        if stored is not None and is_terminal(stored.status):
            logger.error(f"Queue item {item.url} already {stored.status.value}, "
                         f"not recording failure: {message}")
            return OUTCOME_COMPLETED if stored.status is QueueStatus.COMPLETED else OUTCOME_FAILED

        changes = failure_changes(item, self.clock(), message, retryable=retryable)
        try:
            self.gateway.update_queue_item(item.id, **changes)
            if item.campaign_run_id:
                self.gateway.increment_run_stats(item.campaign_run_id, errors_count=1)
                self.gateway.add_run_error(item.campaign_run_id, item.url, message)
        except PersistenceError as exc:
            logger.error(f"Could not record failure for {item.url}: {exc}")

        status = changes['status']
        logger.warning(f"Queue item {item.url} {status.value} after attempt "
                       f"{item.attempts}/{item.max_attempts}: {message}")
        return OUTCOME_RETRYING if status is QueueStatus.RETRYING else OUTCOME_FAILED

    def _log(self, item: ScrapingQueueItem, status: str, response_ms: int,
             content_length: Optional[int] = None, http_status_code: Optional[int] = None,
             error_message: Optional[str] = None) -> None:
        self.gateway.append_log(ScrapingLog(
            campaign_run_id=item.campaign_run_id,
            source_id=item.source_id,
            url=item.url,
            status=status,
            response_time_ms=response_ms,
            content_length=content_length,
            http_status_code=http_status_code,
            error_message=error_message,
            metadata={'attempt': item.attempts},
        ))

    @staticmethod
    def _ms_since(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    def close(self) -> None:
        self.fetcher.close()

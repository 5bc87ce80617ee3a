"""
Scraping queue state machine: transitions, retry backoff and batch building
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .errors import InvalidTransition
from .models import Campaign, QueueStatus, ScrapingQueueItem, Source


logger = logging.getLogger(__name__)

RETRY_BACKOFF = timedelta(seconds=30)
DEFAULT_MAX_ATTEMPTS = 3

TRANSITIONS = {
    QueueStatus.QUEUED: {QueueStatus.PROCESSING, QueueStatus.FAILED},
    QueueStatus.RETRYING: {QueueStatus.PROCESSING, QueueStatus.FAILED},
    QueueStatus.PROCESSING: {QueueStatus.COMPLETED, QueueStatus.RETRYING, QueueStatus.FAILED},
    QueueStatus.COMPLETED: set(),
    QueueStatus.FAILED: set(),
}


def next_attempt(attempts: int, now: datetime) -> datetime:
    """When a failed item may be tried again: now + attempts x 30s"""
    return now + attempts * RETRY_BACKOFF


def can_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: QueueStatus, target: QueueStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(f"Queue item cannot move from {current.value} to {target.value}")


def is_terminal(status: QueueStatus) -> bool:
    return not TRANSITIONS[status]


def failure_changes(item: ScrapingQueueItem, now: datetime, message: str,
                    retryable: bool = True) -> Dict[str, Any]:
    """Field updates for a processing item that just failed

    ``item.attempts`` already counts the failed attempt. Once it reaches
    ``max_attempts`` the item is failed for good and keeps its schedule.
    """
    if retryable and item.attempts < item.max_attempts:
        check_transition(item.status, QueueStatus.RETRYING)
        return {
            'status': QueueStatus.RETRYING,
            'scheduled_for': next_attempt(item.attempts, now),
            'error_message': message,
        }

    check_transition(item.status, QueueStatus.FAILED)
    return {
        'status': QueueStatus.FAILED,
        'completed_at': now,
        'error_message': message,
    }


def completion_changes(item: ScrapingQueueItem, now: datetime) -> Dict[str, Any]:
    check_transition(item.status, QueueStatus.COMPLETED)
    return {'status': QueueStatus.COMPLETED, 'completed_at': now, 'error_message': None}


def build_queue_items(campaign: Campaign, source: Source, urls: Iterable[str],
                      campaign_run_id: str, now: datetime,
                      priority: int = 0) -> List[ScrapingQueueItem]:
    """One queued item per discovered URL, tagged with the run that found it"""
    return [
        ScrapingQueueItem(
            campaign_id=campaign.id,
            source_id=source.id,
            url=url,
            priority=priority,
            status=QueueStatus.QUEUED,
            attempts=0,
            max_attempts=DEFAULT_MAX_ATTEMPTS,
            scheduled_for=now,
            created_at=now,
            metadata={
                'campaign_run_id': campaign_run_id,
                'source_keywords': list(source.keywords),
                'scraping_config': dict(source.scraping_config),
            },
        )
        for url in urls
    ]


def drain_order(items: Iterable[ScrapingQueueItem]) -> List[ScrapingQueueItem]:
    """Priority descending, then oldest first"""
    return sorted(items, key=lambda item: (-item.priority, item.created_at))


def is_due(item: ScrapingQueueItem, now: datetime, campaign_run_id: Optional[str] = None) -> bool:
    if item.status not in (QueueStatus.QUEUED, QueueStatus.RETRYING):
        return False
    if campaign_run_id is not None and item.campaign_run_id != campaign_run_id:
        return False
    return item.scheduled_for <= now

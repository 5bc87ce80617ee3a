"""
Read-side statistics over runs, logs, content items and the queue
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .models import QueueStatus, RunStatus, utcnow
from .persistence import PersistenceGateway


logger = logging.getLogger(__name__)

TIMEFRAMES = {
    '1d': timedelta(days=1),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
    '90d': timedelta(days=90),
}
DEFAULT_TIMEFRAME = '7d'
HIGH_CONFIDENCE = 0.7
METRICS = ('overview', 'campaign_performance', 'source_analytics', 'ai_performance', 'queue_status')


def percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def since_for(timeframe: Optional[str], now: datetime) -> datetime:
    """Start of the window; unknown timeframes fall back to seven days"""
    return now - TIMEFRAMES.get(timeframe or DEFAULT_TIMEFRAME, TIMEFRAMES[DEFAULT_TIMEFRAME])


def queue_status(gateway: PersistenceGateway, now: datetime) -> Dict[str, int]:
    counts = {status.value: 0 for status in QueueStatus}
    items = gateway.list_queue_items()
    overdue = 0
    for item in items:
        counts[item.status.value] += 1
        if item.status in (QueueStatus.QUEUED, QueueStatus.RETRYING) and item.scheduled_for < now:
            overdue += 1
    counts['overdue'] = overdue
    counts['total'] = len(items)
    return counts


class Analytics:
    """Dashboard metrics computed from the gateway"""

    def __init__(self, gateway: PersistenceGateway, clock: Callable[[], datetime] = utcnow):
        self.gateway = gateway
        self.clock = clock

    def report(self, metric: str = 'overview', timeframe: str = DEFAULT_TIMEFRAME,
               campaign_id: Optional[str] = None) -> Dict[str, Any]:
        if metric not in METRICS:
            raise ValueError(f"Invalid metric: {metric}")
        if metric == 'queue_status':
            return self.queue_status()
        since = since_for(timeframe, self.clock())
        return getattr(self, metric)(since, campaign_id)

    def overview(self, since: datetime, campaign_id: Optional[str] = None) -> Dict[str, Any]:
        campaigns = self.gateway.list_campaigns()
        runs = self.gateway.list_runs(campaign_id=campaign_id, since=since, limit=10000)
        completed_runs = [run for run in runs if run.status is RunStatus.COMPLETED]
        items = self.gateway.list_content_items(since=since, campaign_id=campaign_id)
        processed = [item for item in items if item.ai_processed]
        confident = [item for item in processed if (item.extraction_confidence or 0) >= HIGH_CONFIDENCE]
        created = [item for item in items if item.opportunity_id]

        return {
            'campaigns': {
                'total': len(campaigns),
                'active': sum(1 for c in campaigns if c.is_active),
                'runs': len(runs),
                'success_rate': percentage(len(completed_runs), len(runs)),
            },
            'scraping': {
                'total_items': len(items),
                'successful_items': len(processed),
                'success_rate': percentage(len(processed), len(items)),
            },
            'ai_processing': {
                'total_processed': len(processed),
                'high_confidence_items': len(confident),
                'confidence_rate': percentage(len(confident), len(processed)),
            },
            'opportunities': {
                'created': len(created),
                'conversion_rate': percentage(len(created), len(items)),
            },
        }

    def campaign_performance(self, since: datetime, campaign_id: Optional[str] = None) -> Dict[str, Any]:
        runs = self.gateway.list_runs(campaign_id=campaign_id, since=since, limit=50)
        names = {c.id: c.name for c in self.gateway.list_campaigns()}
        stats: Dict[str, Dict[str, Any]] = {}
        times: Dict[str, List[int]] = {}

        for run in runs:
            entry = stats.setdefault(run.campaign_id, {
                'campaign_id': run.campaign_id,
                'name': names.get(run.campaign_id, run.campaign_id),
                'total_runs': 0,
                'completed_runs': 0,
                'total_items': 0,
                'total_created': 0,
                'total_errors': 0,
            })
            entry['total_runs'] += 1
            if run.status is RunStatus.COMPLETED:
                entry['completed_runs'] += 1
            entry['total_items'] += run.items_found
            entry['total_created'] += run.items_created
            entry['total_errors'] += run.errors_count
            if run.execution_time_ms:
                times.setdefault(run.campaign_id, []).append(run.execution_time_ms)

        for key, entry in stats.items():
            entry['avg_execution_time'] = round(average(times.get(key, [])))
            entry['success_rate'] = percentage(entry['completed_runs'], entry['total_runs'])
            entry['conversion_rate'] = percentage(entry['total_created'], entry['total_items'])

        return {
            'runs': [run.to_dict() for run in runs],
            'campaign_stats': list(stats.values()),
        }

    def source_analytics(self, since: datetime, campaign_id: Optional[str] = None) -> Dict[str, Any]:
        logs = self.gateway.list_logs(since=since)
        if campaign_id:
            run_ids = {run.id for run in self.gateway.list_runs(campaign_id=campaign_id, limit=10000)}
            logs = [log for log in logs if log.campaign_run_id in run_ids]
        sources = {s.id: s for s in self.gateway.list_sources()}
        stats: Dict[str, Dict[str, Any]] = {}
        times: Dict[str, List[int]] = {}

        for log in logs:
            source = sources.get(log.source_id)
            entry = stats.setdefault(log.source_id, {
                'source_id': log.source_id,
                'name': source.name if source else log.source_id,
                'domain': source.root_domain if source else None,
                'total_requests': 0,
                'successful_requests': 0,
                'errors': 0,
            })
            entry['total_requests'] += 1
            if log.status == 'success':
                entry['successful_requests'] += 1
            else:
                entry['errors'] += 1
            if log.response_time_ms:
                times.setdefault(log.source_id, []).append(log.response_time_ms)

        for key, entry in stats.items():
            entry['success_rate'] = percentage(entry['successful_requests'], entry['total_requests'])
            entry['avg_response_time'] = round(average(times.get(key, [])))

        return {'source_stats': list(stats.values())}

    def ai_performance(self, since: datetime, campaign_id: Optional[str] = None) -> Dict[str, Any]:
        items = [
            item for item in self.gateway.list_content_items(since=since, campaign_id=campaign_id)
            if item.ai_processed
        ]
        distribution = {'high (>0.8)': 0, 'medium (0.6-0.8)': 0, 'low (<0.6)': 0}
        for item in items:
            confidence = item.extraction_confidence or 0
            if confidence > 0.8:
                distribution['high (>0.8)'] += 1
            elif confidence >= 0.6:
                distribution['medium (0.6-0.8)'] += 1
            else:
                distribution['low (<0.6)'] += 1

        processing_times = [
            item.extraction_metadata['processing_time_ms'] for item in items
            if item.extraction_metadata.get('processing_time_ms')
        ]
        models: Dict[str, int] = {}
        for item in items:
            if item.ai_model_version:
                models[item.ai_model_version] = models.get(item.ai_model_version, 0) + 1

        return {
            'total_processed': len(items),
            'avg_confidence': round(average([item.extraction_confidence or 0 for item in items]), 2),
            'confidence_distribution': distribution,
            'avg_processing_time': round(average(processing_times)),
            'published': sum(1 for item in items if item.opportunity_id),
            'fallbacks': sum(1 for item in items if item.extraction_metadata.get('fallback')),
            'models': models,
        }

    def queue_status(self) -> Dict[str, int]:
        return queue_status(self.gateway, self.clock())

"""
Background scheduler that runs due campaigns and keeps the queue moving
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .errors import ScraperError
from .models import Campaign, CampaignRun, utcnow
from .orchestrator import CampaignOrchestrator


logger = logging.getLogger(__name__)

UNIT_SECONDS = {
    'minutes': 60,
    'hours': 60 * 60,
    'days': 24 * 60 * 60,
}
DEFAULT_CRON = '0 */1 * * *'
MAX_DRAIN_BATCHES = 100


def calculate_next_run(frequency: int, unit: str, now: Optional[datetime] = None) -> datetime:
    """Next run time for a campaign frequency; unknown units mean hourly"""
    now = now or utcnow()
    if unit not in UNIT_SECONDS:
        return now + timedelta(hours=1)
    return now + timedelta(seconds=frequency * UNIT_SECONDS[unit])


def generate_cron_expression(frequency: int, unit: str) -> str:
    if unit == 'minutes':
        return f"*/{frequency} * * * *"
    if unit == 'hours':
        return f"0 */{frequency} * * *"
    if unit == 'days':
        return f"0 0 */{frequency} * *"
    return DEFAULT_CRON


def is_campaign_due(campaign: Campaign, now: datetime) -> bool:
    return campaign.is_active and (campaign.next_run_at is None or campaign.next_run_at <= now)


class CampaignScheduler:
    """Owns one polling thread; construct it at the composition root and inject it"""

    def __init__(self, orchestrator: CampaignOrchestrator, poll_interval: float = 60.0,
                 stale_run_timeout: float = 3600.0, max_drain_batches: int = MAX_DRAIN_BATCHES,
                 clock: Callable[[], datetime] = utcnow):
        self.orchestrator = orchestrator
        self.gateway = orchestrator.gateway
        self.poll_interval = poll_interval
        self.stale_run_timeout = stale_run_timeout
        self.max_drain_batches = max_drain_batches
        self.clock = clock

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the polling thread; False if it is already running"""
        with self._lock:
            if self.is_running:
                logger.info("Scheduler is already running")
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name='campaign-scheduler', daemon=True)
            self._thread.start()
        logger.info(f"Scheduler started, polling every {self.poll_interval}s")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Signal the thread to exit and wait for it; False if it was not running"""
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._stop_event.set()
            thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped")
        return True

    def wait(self, timeout: float) -> bool:
        """Block until stop() is called or the timeout passes"""
        return self._stop_event.wait(timeout)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(self.poll_interval)

    def tick(self) -> Dict[str, Any]:
        """One scheduling pass: reap stale runs, run due campaigns, drain retries"""
        now = self.clock()
        reaped = self.orchestrator.reap_stale_runs(self.stale_run_timeout)

        runs: List[CampaignRun] = []
        for campaign in self.gateway.list_campaigns(active_only=True):
            if not is_campaign_due(campaign, now):
                continue
            try:
                runs.append(self.run_campaign(campaign))
            except ScraperError as exc:
                self.last_error = str(exc)
                logger.warning(f"Scheduled run of campaign '{campaign.name}' failed: {exc}")

        retried = self._drain_all()

        self.ticks += 1
        self.last_tick_at = now
        return {
            'reaped_runs': reaped,
            'runs': [run.id for run in runs],
            'retried_items': retried,
        }

    def run_campaign(self, campaign: Campaign) -> CampaignRun:
        """Start a run, drain everything it queued that is due, then complete it"""
        run = self.orchestrator.start_campaign_run(campaign.id, drain=False)
        self._drain_all(run.id)
        run = self.orchestrator.complete_campaign_run(run.id)

        next_run = calculate_next_run(campaign.frequency, campaign.frequency_unit, self.clock())
        self.gateway.update_campaign_schedule(campaign.id, run.started_at, next_run)
        logger.info(f"Campaign '{campaign.name}' done: {run.items_found} found, "
                    f"{run.items_created} created; next run at {next_run.isoformat()} "
                    f"({generate_cron_expression(campaign.frequency, campaign.frequency_unit)})")
        return run

    def _drain_all(self, campaign_run_id: Optional[str] = None) -> int:
        processed = 0
        for _ in range(self.max_drain_batches):
            result = self.orchestrator.drain_queue(campaign_run_id)
            if result.processed == 0:
                break
            processed += result.processed
        return processed

    def status(self) -> Dict[str, Any]:
        return {
            'running': self.is_running,
            'poll_interval': self.poll_interval,
            'ticks': self.ticks,
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
            'last_error': self.last_error,
        }

"""
HTTP fetching with a bot-identifying user agent and per-domain politeness
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import requests

from .config import DEFAULT_USER_AGENT
from .errors import FetchFailed


logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    url: str
    status_code: int
    text: str
    elapsed_ms: int

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class DomainRateLimiter:
    """Spaces out requests to the same domain by a minimum interval"""

    def __init__(self, min_interval: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: Dict[str, float] = {}

    def acquire(self, url: str) -> float:
        """Block until the domain of ``url`` may be hit again; returns seconds waited"""
        if self.min_interval <= 0:
            return 0.0

        domain = urlparse(url).netloc.lower()
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(domain, now))
            self._next_slot[domain] = slot + self.min_interval
        wait = slot - now
        if wait > 0:
            logger.debug(f"Rate limiting {domain}: waiting {wait:.2f}s")
            self._sleep(wait)
        return wait


class Fetcher:
    """Single-shot GET client; retrying is the queue's job"""

    def __init__(self, session: Optional[requests.Session] = None,
                 user_agent: str = DEFAULT_USER_AGENT, timeout: float = 15.0,
                 rate_limiter: Optional[DomainRateLimiter] = None):
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        })
        self.timeout = timeout
        self.rate_limiter = rate_limiter

    def get(self, url: str, timeout: Optional[float] = None) -> FetchResponse:
        """GET ``url``; raises FetchFailed on network errors and non-2xx responses"""
        if self.rate_limiter:
            self.rate_limiter.acquire(url)

        start = time.monotonic()
        try:
            response = self.session.get(url, timeout=timeout or self.timeout)
        except requests.Timeout as exc:
            raise FetchFailed(url, f"Timed out fetching {url}: {exc}") from exc
        except requests.RequestException as exc:
            raise FetchFailed(url, f"Request failed for {url}: {exc}") from exc

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if not 200 <= response.status_code < 300:
            raise FetchFailed(url, f"HTTP error! status: {response.status_code}",
                              status_code=response.status_code)

        logger.debug(f"Fetched {url} ({len(response.text)} chars, {elapsed_ms}ms)")
        return FetchResponse(url=url, status_code=response.status_code,
                             text=response.text, elapsed_ms=elapsed_ms)

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

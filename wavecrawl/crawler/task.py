"""
Per-URL unit of crawl work: claim, fetch with retries, analyze, publish discoveries.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .analyzer import PageAnalyzer
from .fetcher import FetchError, FetchErrorKind, PageFetcher, PageFetchResult
from .registry import VisitRegistry, Wave
from .result import CrawlResult
from ..utils.logger import get_crawler_logger


@dataclass
class RetryPolicy:
    """Exponential backoff for transient fetch failures."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based attempt failed."""
        delay = self.base_delay * (2 ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_retry(self, attempt: int) -> bool:
        return attempt + 1 < self.max_attempts


class TaskStatus(Enum):
    """How a crawl task ended."""
    FETCHED = 'fetched'
    CONFLICT = 'conflict'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class TaskOutcome:
    """What a crawl task hands back to the scheduler."""
    url: str
    status: TaskStatus
    result: Optional[CrawlResult] = None
    attempts: int = 0
    error: Optional[FetchError] = None
    discovered: int = 0

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


class CrawlTask:
    """
    Crawls a single URL.

    The URL is claimed before anything else; a task that loses the claim is a
    no-op. Links are registered only after the page has been fetched and
    analyzed, and are published to the next wave in one step so an abandoned
    page never leaks a partial link list. ``run`` never raises.
    """

    def __init__(self, url: str, registry: VisitRegistry, next_wave: Wave,
                 fetcher: PageFetcher, analyzer: PageAnalyzer,
                 retry_policy: Optional[RetryPolicy] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.url = url
        self.registry = registry
        self.next_wave = next_wave
        self.fetcher = fetcher
        self.analyzer = analyzer
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.logger = get_crawler_logger(__name__, url=url)

    def run(self) -> TaskOutcome:
        if self.cancel_event.is_set():
            return self._cancelled(0)

        if not self.registry.claim(self.url):
            self.logger.debug(f"Already claimed: {self.url}")
            return TaskOutcome(self.url, TaskStatus.CONFLICT)

        attempt = 0
        while True:
            if self.cancel_event.is_set():
                return self._cancelled(attempt)

            page = self._fetch()
            attempts = attempt + 1

            if page.ok:
                return self._complete(page, attempts)

            error = page.error
            if error.cancelled or self.cancel_event.is_set():
                return self._cancelled(attempts)

            if error.permanent:
                return self._failed(error, attempts, "permanent failure")

            if not self.retry_policy.should_retry(attempt):
                return self._failed(error, attempts, f"gave up after {attempts} attempts")

            delay = self.retry_policy.delay(attempt)
            self.logger.info(
                f"Retrying {self.url} in {delay:.2f}s "
                f"({attempts}/{self.retry_policy.max_attempts}): {error.message}"
            )
            # Backoff doubles as a liveness check: a fired time-box ends the wait.
            if self.cancel_event.wait(delay):
                return self._cancelled(attempts)
            attempt += 1

    def _fetch(self) -> PageFetchResult:
        try:
            return self.fetcher.fetch(self.url, self.cancel_event)
        except FetchError as e:
            return PageFetchResult(url=self.url, error=e, status_code=e.status_code)
        except Exception as e:
            self.logger.warning(f"Fetcher raised for {self.url}: {e!r}")
            return PageFetchResult.failure(self.url, f"Unexpected error: {e}", FetchErrorKind.TRANSIENT)

    def _complete(self, page: PageFetchResult, attempts: int) -> TaskOutcome:
        frequencies = self.analyzer.analyze(page.text)

        if self.cancel_event.is_set():
            return self._cancelled(attempts)

        discovered = self.registry.register_many(page.links)
        if discovered and not self.next_wave.extend(discovered):
            # The barrier has already passed; this task was left behind.
            return self._cancelled(attempts)

        self.registry.mark_done(self.url)
        self.logger.debug(f"Crawled {self.url}: {len(frequencies)} distinct words, "
                          f"{len(discovered)} new links")
        return TaskOutcome(
            self.url,
            TaskStatus.FETCHED,
            result=CrawlResult(url=self.url, word_frequencies=frequencies),
            attempts=attempts,
            discovered=len(discovered)
        )

    def _failed(self, error: FetchError, attempts: int, reason: str) -> TaskOutcome:
        self.registry.mark_done(self.url)
        self.logger.log_url_event(logging.WARNING, self.url,
                                  f"Dropping {self.url} ({reason}): {error.message}")
        return TaskOutcome(self.url, TaskStatus.FAILED, attempts=attempts, error=error)

    def _cancelled(self, attempts: int) -> TaskOutcome:
        self.logger.debug(f"Abandoned {self.url}: crawl cancelled")
        return TaskOutcome(self.url, TaskStatus.CANCELLED, attempts=attempts)

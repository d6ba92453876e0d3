"""
Wave scheduler that drives depth-synchronized crawl waves under a time-box.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .analyzer import PageAnalyzer
from .fetcher import HttpPageFetcher, PageFetcher
from .parser import ContentParser
from .registry import VisitRegistry, Wave
from .result import CrawlResult
from .task import CrawlTask, RetryPolicy, TaskOutcome, TaskStatus
from ..utils.config import Config
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


class CrawlPhase(Enum):
    """States of one crawl invocation."""
    IDLE = 'idle'
    SEEDING = 'seeding'
    WAVE_IN_FLIGHT = 'wave_in_flight'
    DRAINING = 'draining'
    NEXT_WAVE = 'next_wave'
    TIMED_OUT = 'timed_out'
    DEPTH_EXHAUSTED = 'depth_exhausted'
    QUIESCENT = 'quiescent'
    STOPPED = 'stopped'
    TERMINATED = 'terminated'


class TimeBox:
    """
    Wall-clock budget of a crawl.

    Firing sets ``cancel_event``, which every task polls, and resolves
    ``fired_future``, which the wave barrier waits on alongside the tasks.
    A budget of ``None`` never fires on its own; a budget of 0 arms no timer
    but forbids any wave after the first.
    """

    DEADLINE = 'deadline'
    STOPPED = 'stopped'

    def __init__(self, seconds: Optional[float]):
        self.seconds = seconds
        self.cancel_event = threading.Event()
        self.fired_future: Future = Future()
        self.reason: Optional[str] = None
        self.deadline: Optional[float] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def arm(self):
        if not self.seconds:
            return
        self.deadline = time.monotonic() + self.seconds
        self._timer = threading.Timer(self.seconds, self.fire, kwargs={'reason': self.DEADLINE})
        self._timer.name = 'crawl-time-box'
        self._timer.daemon = True
        self._timer.start()

    def fire(self, reason: str = DEADLINE) -> bool:
        """Fire once; later calls are ignored. Returns True if this call fired it."""
        with self._lock:
            if self.reason is not None:
                return False
            self.reason = reason
        self.cancel_event.set()
        self.fired_future.set_result(reason)
        return True

    @property
    def fired(self) -> bool:
        return self.reason is not None

    def allows_next_wave(self) -> bool:
        return not self.fired and self.seconds != 0

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def disarm(self):
        """Cancel the timer and wait for its thread to exit."""
        if self._timer is not None:
            self._timer.cancel()
            if self._timer is not threading.current_thread():
                self._timer.join()
            self._timer = None


@dataclass
class CrawlStats:
    """Statistics for one crawl invocation."""
    start_time: float = field(default_factory=time.time)
    waves_completed: int = 0
    tasks_submitted: int = 0
    pages_fetched: int = 0
    failures: int = 0
    retries: int = 0
    claim_conflicts: int = 0
    cancelled: int = 0
    forced_out: int = 0
    urls_discovered: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.pages_fetched / elapsed_minutes if elapsed_minutes > 0 else 0

    def to_dict(self) -> Dict[str, float]:
        return {
            'waves_completed': self.waves_completed,
            'tasks_submitted': self.tasks_submitted,
            'pages_fetched': self.pages_fetched,
            'failures': self.failures,
            'retries': self.retries,
            'claim_conflicts': self.claim_conflicts,
            'cancelled': self.cancelled,
            'forced_out': self.forced_out,
            'urls_discovered': self.urls_discovered,
            'elapsed_time': self.elapsed_time,
            'pages_per_minute': self.pages_per_minute
        }


@dataclass
class CrawlState:
    """Everything one crawl invocation owns; rebuilt from scratch for every crawl."""
    seed_url: str
    max_depth: int
    time_box: TimeBox
    registry: VisitRegistry = field(default_factory=VisitRegistry)
    current_wave: Wave = field(default_factory=lambda: Wave(0))
    next_wave: Wave = field(default_factory=lambda: Wave(1))
    depth: int = 0
    results: List[CrawlResult] = field(default_factory=list)
    stats: CrawlStats = field(default_factory=CrawlStats)
    phase: CrawlPhase = CrawlPhase.IDLE
    termination_reason: Optional[CrawlPhase] = None
    in_flight: Dict[Future, str] = field(default_factory=dict)


class WaveScheduler:
    """
    Crawls outward from a seed URL one depth wave at a time.

    Every URL of the current wave becomes a CrawlTask on a bounded thread
    pool. The scheduler waits at a barrier until the whole wave has finished
    or the time-box fires, drains the results, and then either swaps in the
    next wave or terminates.
    """

    def __init__(self, fetcher: PageFetcher, analyzer: Optional[PageAnalyzer] = None,
                 max_workers: int = 10, retry_policy: Optional[RetryPolicy] = None,
                 shutdown_grace_period: float = 10.0,
                 monitor: Optional[CrawlerMonitor] = None):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if shutdown_grace_period < 0:
            raise ValueError("shutdown_grace_period must be non-negative")

        self.fetcher = fetcher
        self.analyzer = analyzer or PageAnalyzer()
        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.shutdown_grace_period = shutdown_grace_period
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._running = False
        self.state: Optional[CrawlState] = None

    @classmethod
    def from_config(cls, config: Config, fetcher: Optional[PageFetcher] = None,
                    monitor: Optional[CrawlerMonitor] = None) -> 'WaveScheduler':
        """Build a scheduler (and, unless given, an HTTP fetcher) from configuration."""
        crawler = config.crawler
        if fetcher is None:
            fetcher = HttpPageFetcher(
                user_agent=crawler.user_agent,
                request_timeout=crawler.request_timeout,
                max_content_bytes=crawler.max_content_bytes,
                parser=ContentParser(
                    allowed_domains=crawler.allowed_domains,
                    blocked_domains=crawler.blocked_domains
                )
            )
        return cls(
            fetcher=fetcher,
            max_workers=crawler.max_workers,
            retry_policy=RetryPolicy(
                max_attempts=crawler.retry_attempts,
                base_delay=crawler.retry_base_delay,
                max_delay=crawler.retry_max_delay
            ),
            shutdown_grace_period=crawler.shutdown_grace_period,
            monitor=monitor
        )

    @property
    def phase(self) -> CrawlPhase:
        return self.state.phase if self.state else CrawlPhase.IDLE

    @property
    def termination_reason(self) -> Optional[CrawlPhase]:
        return self.state.termination_reason if self.state else None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def start_crawl(self, seed_url: str, max_depth: int,
                    time_limit: Optional[float] = None) -> List[CrawlResult]:
        """
        Crawl from ``seed_url`` and return one result per successfully fetched page.

        Args:
            seed_url: Absolute URL of the first page
            max_depth: Number of waves to run; 0 and 1 both crawl only the seed
            time_limit: Seconds before in-flight work is preempted; 0 finishes
                the seed wave and starts no other, None disables the time-box

        Returns:
            Results tagged with the depth of the wave that fetched them
        """
        self._validate_arguments(seed_url, max_depth, time_limit)

        with self._lock:
            if self._running:
                raise RuntimeError("A crawl is already in progress on this scheduler")
            self._running = True
            state = self._seed(seed_url, max_depth, time_limit)
            self.state = state

        executor = None
        try:
            executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                          thread_name_prefix='crawl-worker')
            state.time_box.arm()
            self._run_waves(state, executor)
        except Exception as e:
            self.logger.error(f"Error during crawling: {e}", exc_info=True)
            state.termination_reason = CrawlPhase.STOPPED
        finally:
            self._terminate(state, executor)
            with self._lock:
                self._running = False

        return list(state.results)

    def stop(self):
        """
        Stop the running crawl as if its time-box had fired.

        Takes no scheduler lock, so it is safe from signal handlers that may
        interrupt the thread holding it.
        """
        state = self.state
        if state is None or not self._running:
            self.logger.debug("stop() called with no crawl running")
            return
        if state.time_box.fire(TimeBox.STOPPED):
            self.logger.info("Stopping crawler...")

    def _validate_arguments(self, seed_url, max_depth, time_limit):
        if not isinstance(seed_url, str) or not seed_url.strip():
            raise ValueError("seed_url must be a non-empty string")
        if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 0:
            raise ValueError("max_depth must be a non-negative integer")
        if time_limit is not None:
            if isinstance(time_limit, bool) or not isinstance(time_limit, (int, float)) or time_limit < 0:
                raise ValueError("time_limit must be a non-negative number of seconds")

    def _seed(self, seed_url: str, max_depth: int, time_limit: Optional[float]) -> CrawlState:
        state = CrawlState(seed_url=seed_url, max_depth=max_depth, time_box=TimeBox(time_limit))
        state.phase = CrawlPhase.SEEDING
        state.registry.register(seed_url)
        state.current_wave.add(seed_url)
        self.logger.info(f"Starting crawl at {seed_url} (max_depth={max_depth}, "
                         f"time_limit={time_limit}, workers={self.max_workers})")
        return state

    def _run_waves(self, state: CrawlState, executor: ThreadPoolExecutor):
        while True:
            wave = state.current_wave
            state.phase = CrawlPhase.WAVE_IN_FLIGHT
            wave_started = time.monotonic()
            self.logger.info(f"Crawling depth {state.depth}: {len(wave)} URLs")
            if self.monitor:
                self.monitor.record_wave_started(state.depth, len(wave))

            rejected = self._submit_wave(state, executor, wave)
            completed = self._await_barrier(state)

            state.phase = CrawlPhase.DRAINING
            state.next_wave.seal()
            self._drain(state, completed)
            state.stats.waves_completed += 1
            if self.monitor:
                self.monitor.record_wave_completed(state.depth, time.monotonic() - wave_started)

            reason = self._next_step(state, rejected)
            if reason is not None:
                state.phase = reason
                state.termination_reason = reason
                self.logger.info(f"Finished crawling at depth {state.depth}: {reason.value}")
                return

            self._swap_waves(state)

    def _submit_wave(self, state: CrawlState, executor: ThreadPoolExecutor, wave: Wave) -> bool:
        """Submit one task per URL. Returns True if the pool refused a submission."""
        state.in_flight = {}
        cancel_event = state.time_box.cancel_event

        for url in wave:
            if cancel_event.is_set():
                break
            task = CrawlTask(
                url=url,
                registry=state.registry,
                next_wave=state.next_wave,
                fetcher=self.fetcher,
                analyzer=self.analyzer,
                retry_policy=self.retry_policy,
                cancel_event=cancel_event
            )
            try:
                future = executor.submit(task.run)
            except RuntimeError as e:
                # Pool is shutting down; nothing more can be scheduled.
                self.logger.warning(f"Task submission rejected for {url}: {e}")
                return True
            state.in_flight[future] = url
            state.stats.tasks_submitted += 1

        return False

    def _await_barrier(self, state: CrawlState) -> Set[Future]:
        """
        Block until every task of the wave is done or the time-box fires.

        Returns the futures that were done when the barrier released; tasks
        still running at that point are abandoned.
        """
        fired = state.time_box.fired_future
        pending = set(state.in_flight)

        while pending and not fired.done():
            _done, not_done = wait(pending | {fired}, return_when=FIRST_COMPLETED)
            not_done.discard(fired)
            pending = not_done

        return {future for future in state.in_flight if future.done()}

    def _drain(self, state: CrawlState, completed: Set[Future]):
        abandoned = 0
        for future, url in state.in_flight.items():
            if future not in completed or future.cancelled():
                abandoned += 1
                continue

            try:
                outcome = future.result()
            except Exception as e:
                self.logger.error(f"Task for {url} failed unexpectedly: {e}", exc_info=True)
                state.stats.failures += 1
                continue

            self._record_outcome(state, outcome)

        if abandoned:
            state.stats.forced_out += abandoned
            self.logger.info(f"{abandoned} tasks abandoned at depth {state.depth}")

    def _record_outcome(self, state: CrawlState, outcome: TaskOutcome):
        stats = state.stats
        stats.retries += outcome.retries
        if self.monitor:
            self.monitor.record_retries(outcome.retries)

        if outcome.status is TaskStatus.FETCHED:
            outcome.result.assign_depth(state.depth)
            state.results.append(outcome.result)
            stats.pages_fetched += 1
            stats.urls_discovered += outcome.discovered
            if self.monitor:
                self.monitor.record_page_fetched(outcome.url, outcome.attempts)
        elif outcome.status is TaskStatus.FAILED:
            stats.failures += 1
            if self.monitor:
                self.monitor.record_failure(outcome.url, outcome.error.kind.value, outcome.attempts)
        elif outcome.status is TaskStatus.CONFLICT:
            stats.claim_conflicts += 1
            if self.monitor:
                self.monitor.record_claim_conflict(outcome.url)
        else:
            stats.cancelled += 1
            if self.monitor:
                self.monitor.record_cancelled(outcome.url)

    def _next_step(self, state: CrawlState, rejected: bool) -> Optional[CrawlPhase]:
        """Pick the terminal phase, or None to advance to the next wave."""
        time_box = state.time_box
        if time_box.fired:
            return CrawlPhase.STOPPED if time_box.reason == TimeBox.STOPPED else CrawlPhase.TIMED_OUT
        if rejected:
            return CrawlPhase.STOPPED
        if not time_box.allows_next_wave():
            return CrawlPhase.TIMED_OUT
        # Depth is assigned at fetch time, so the next wave would run at depth + 1.
        if state.depth + 1 >= state.max_depth:
            return CrawlPhase.DEPTH_EXHAUSTED
        if not state.next_wave:
            return CrawlPhase.QUIESCENT
        return None

    def _swap_waves(self, state: CrawlState):
        state.phase = CrawlPhase.NEXT_WAVE
        state.depth += 1
        state.current_wave = state.next_wave
        state.next_wave = Wave(state.depth + 1)
        self.logger.info(f"Advancing to depth: {state.depth}")

    def _terminate(self, state: CrawlState, executor: Optional[ThreadPoolExecutor]):
        """Release the time-box and the worker pool."""
        state.time_box.disarm()

        if executor is not None:
            stragglers = [future for future in state.in_flight if not future.done()]
            if stragglers:
                state.time_box.cancel_event.set()
                executor.shutdown(wait=False, cancel_futures=True)
                _done, not_done = wait(stragglers, timeout=self.shutdown_grace_period)
                if not_done:
                    self.logger.warning(
                        f"{len(not_done)} tasks still running after the "
                        f"{self.shutdown_grace_period}s grace period; abandoning them"
                    )
            else:
                executor.shutdown(wait=True)

        if state.termination_reason is None:
            state.termination_reason = CrawlPhase.STOPPED
        state.phase = CrawlPhase.TERMINATED
        self._log_final_stats(state)

    def _log_final_stats(self, state: CrawlState):
        stats = state.stats
        counts = state.registry.counts()
        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"Seed: {state.seed_url}")
        self.logger.info(f"Termination: {state.termination_reason.value} at depth {state.depth}")
        stats_logger = get_crawler_logger(__name__, seed_url=state.seed_url)
        for name, value in (('pages_crawled', stats.pages_fetched), ('failures', stats.failures),
                            ('retries', stats.retries), ('claim_conflicts', stats.claim_conflicts),
                            ('cancelled', stats.cancelled), ('abandoned', stats.forced_out),
                            ('urls_known', sum(counts.values()))):
            stats_logger.log_crawler_stat(name, value)
        self.logger.info(f"Total time: {stats.elapsed_time:.2f} seconds")

    def get_stats(self) -> Dict:
        """Get statistics of the current or most recent crawl."""
        if self.state is None:
            return {'is_running': False}
        stats = self.state.stats.to_dict()
        stats['depth'] = self.state.depth
        stats['phase'] = self.state.phase.value
        stats['is_running'] = self.is_running
        return stats


def start_crawl(seed_url: str, max_depth: int, time_limit: Optional[float] = None,
                fetcher: Optional[PageFetcher] = None, **scheduler_options) -> List[CrawlResult]:
    """
    Run one crawl with a fresh scheduler.

    Without an explicit fetcher an HttpPageFetcher is created and closed
    around the crawl.
    """
    own_fetcher = fetcher is None
    if own_fetcher:
        fetcher = HttpPageFetcher(user_agent=Config().crawler.user_agent)
    try:
        scheduler = WaveScheduler(fetcher, **scheduler_options)
        return scheduler.start_crawl(seed_url, max_depth, time_limit)
    finally:
        if own_fetcher:
            fetcher.close()

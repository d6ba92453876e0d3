import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from wavecrawl import start_crawl
from wavecrawl.crawler.analyzer import PageAnalyzer
from wavecrawl.crawler.fetcher import FetchErrorKind, PageFetcher, PageFetchResult
from wavecrawl.crawler.scheduler import CrawlPhase, TimeBox, WaveScheduler
from wavecrawl.crawler.task import RetryPolicy
from wavecrawl.utils.monitoring import CrawlerMonitor

from conftest import A, B, C, D, GraphFetcher, wait_for_threads_to_exit


def make_scheduler(fetcher, **kwargs):
    kwargs.setdefault('max_workers', 4)
    kwargs.setdefault('retry_policy', RetryPolicy(max_attempts=3, base_delay=0.001))
    kwargs.setdefault('shutdown_grace_period', 1.0)
    kwargs.setdefault('analyzer', PageAnalyzer(stopwords={'the'}))
    return WaveScheduler(fetcher, **kwargs)


def depths(results):
    return {r.url: r.depth for r in results}


def test_diamond_with_max_depth_two_never_fetches_d(diamond_fetcher):
    scheduler = make_scheduler(diamond_fetcher)

    results = scheduler.start_crawl(A, max_depth=2, time_limit=30)

    assert depths(results) == {A: 0, B: 1, C: 1}
    assert D not in diamond_fetcher.calls
    assert scheduler.termination_reason is CrawlPhase.DEPTH_EXHAUSTED
    assert scheduler.phase is CrawlPhase.TERMINATED


def test_diamond_with_max_depth_three_fetches_d_once_at_depth_two(diamond_fetcher):
    scheduler = make_scheduler(diamond_fetcher)

    results = scheduler.start_crawl(A, max_depth=3, time_limit=30)

    assert depths(results) == {A: 0, B: 1, C: 1, D: 2}
    assert diamond_fetcher.fetch_counts()[D] == 1


def test_seed_result_carries_word_frequencies(diamond_fetcher):
    results = make_scheduler(diamond_fetcher).start_crawl(A, max_depth=1, time_limit=30)

    assert len(results) == 1
    assert results[0].word_frequencies == {'cat': 2, 'sat': 1, 'ran': 1}


def test_max_depth_zero_crawls_only_the_seed(diamond_fetcher):
    scheduler = make_scheduler(diamond_fetcher)

    results = scheduler.start_crawl(A, max_depth=0, time_limit=30)

    assert depths(results) == {A: 0}
    assert diamond_fetcher.calls == [A]
    assert scheduler.termination_reason is CrawlPhase.DEPTH_EXHAUSTED


def test_zero_time_limit_completes_seed_wave_only(diamond_fetcher):
    scheduler = make_scheduler(diamond_fetcher)

    results = scheduler.start_crawl(A, max_depth=5, time_limit=0)

    assert depths(results) == {A: 0}
    assert diamond_fetcher.calls == [A]
    assert scheduler.termination_reason is CrawlPhase.TIMED_OUT


def test_finite_graph_reaches_quiescence_without_waiting_for_time_limit(diamond_fetcher):
    scheduler = make_scheduler(diamond_fetcher)

    started = time.monotonic()
    results = scheduler.start_crawl(A, max_depth=10, time_limit=60)

    assert time.monotonic() - started < 5
    assert len(results) == 4
    assert scheduler.termination_reason is CrawlPhase.QUIESCENT


def test_no_result_reaches_max_depth():
    graph = {f"http://chain.test/{i}": [f"http://chain.test/{i + 1}"] for i in range(10)}
    fetcher = GraphFetcher(graph)

    results = make_scheduler(fetcher).start_crawl("http://chain.test/0", max_depth=4, time_limit=30)

    assert sorted(r.depth for r in results) == [0, 1, 2, 3]
    assert all(r.depth < 4 for r in results)


def test_heavily_interlinked_pages_are_fetched_exactly_once():
    pages = [f"http://mesh.test/{i}" for i in range(25)]
    seed = "http://mesh.test/seed"
    graph = {seed: list(pages)}
    for page in pages:
        # every page links to every other page, the seed, and itself
        graph[page] = [seed] + pages + [page]
    fetcher = GraphFetcher(graph, default_delay=0.005)

    results = make_scheduler(fetcher, max_workers=8).start_crawl(seed, max_depth=5, time_limit=30)

    counts = fetcher.fetch_counts()
    assert set(counts) == {seed, *pages}
    assert all(count == 1 for count in counts.values())
    assert len(results) == len({r.url for r in results}) == 26


def test_each_wave_starts_after_previous_wave_finished():
    graph = {
        "http://w.test/root": [f"http://w.test/1/{i}" for i in range(4)],
    }
    for i in range(4):
        graph[f"http://w.test/1/{i}"] = [f"http://w.test/2/{i}/{j}" for j in range(3)]
        for j in range(3):
            graph[f"http://w.test/2/{i}/{j}"] = []
    # uneven delays so that a missing barrier would interleave waves
    delays = {f"http://w.test/1/{i}": 0.01 * (i + 1) for i in range(4)}
    fetcher = GraphFetcher(graph, delays=delays)

    results = make_scheduler(fetcher, max_workers=6).start_crawl("http://w.test/root", max_depth=3, time_limit=30)

    by_depth = {}
    for result in results:
        start, end = fetcher.spans[result.url][0]
        by_depth.setdefault(result.depth, []).append((start, end))

    assert sorted(by_depth) == [0, 1, 2]
    for depth in (1, 2):
        previous_end = max(end for _start, end in by_depth[depth - 1])
        current_start = min(start for start, _end in by_depth[depth])
        assert current_start >= previous_end


def test_time_box_preempts_slow_wave():
    seed = "http://slow.test/"
    children = [f"http://slow.test/{i}" for i in range(3)]
    graph = {seed: children, **{child: [] for child in children}}
    fetcher = GraphFetcher(graph, delays={child: 10.0 for child in children})
    scheduler = make_scheduler(fetcher, shutdown_grace_period=1.0)

    started = time.monotonic()
    results = scheduler.start_crawl(seed, max_depth=5, time_limit=0.5)
    elapsed = time.monotonic() - started

    assert elapsed < 0.5 + 1.0 + 1.0
    assert depths(results) == {seed: 0}
    assert scheduler.termination_reason is CrawlPhase.TIMED_OUT
    assert wait_for_threads_to_exit() == []


def test_transient_failures_are_retried_and_non_fatal(diamond_graph):
    fetcher = GraphFetcher(diamond_graph, failures={B: [FetchErrorKind.TRANSIENT] * 5})
    scheduler = make_scheduler(fetcher)

    results = scheduler.start_crawl(A, max_depth=2, time_limit=30)

    assert depths(results) == {A: 0, C: 1}
    assert fetcher.fetch_counts()[B] == 3
    stats = scheduler.get_stats()
    assert stats['failures'] == 1
    assert stats['retries'] == 2


def test_recovering_url_is_crawled_after_retry(diamond_graph):
    fetcher = GraphFetcher(diamond_graph, failures={C: [FetchErrorKind.TRANSIENT]})

    results = make_scheduler(fetcher).start_crawl(A, max_depth=2, time_limit=30)

    assert depths(results) == {A: 0, B: 1, C: 1}
    assert fetcher.fetch_counts()[C] == 2


def test_permanent_failure_is_not_retried():
    graph = {A: [B, C], C: []}
    fetcher = GraphFetcher(graph)

    results = make_scheduler(fetcher).start_crawl(A, max_depth=2, time_limit=30)

    assert depths(results) == {A: 0, C: 1}
    assert fetcher.fetch_counts()[B] == 1


def test_failed_seed_ends_quietly():
    fetcher = GraphFetcher({})
    scheduler = make_scheduler(fetcher)

    results = scheduler.start_crawl(A, max_depth=3, time_limit=30)

    assert results == []
    assert scheduler.termination_reason is CrawlPhase.QUIESCENT


def test_raising_fetcher_is_absorbed(diamond_graph):
    class ExplodingFetcher(GraphFetcher):
        def fetch(self, url, cancel_event=None):
            if url == B:
                with self._lock:
                    self.calls.append(url)
                raise RuntimeError("socket closed")
            return super().fetch(url, cancel_event)

    fetcher = ExplodingFetcher(diamond_graph)

    results = make_scheduler(fetcher).start_crawl(A, max_depth=2, time_limit=30)

    assert depths(results) == {A: 0, C: 1}
    assert fetcher.fetch_counts()[B] == 3


def test_state_is_reset_between_crawls(diamond_fetcher):
    scheduler = make_scheduler(diamond_fetcher)

    first = scheduler.start_crawl(A, max_depth=2, time_limit=30)
    second = scheduler.start_crawl(A, max_depth=2, time_limit=30)

    assert depths(first) == depths(second) == {A: 0, B: 1, C: 1}
    assert diamond_fetcher.fetch_counts()[A] == 2
    assert scheduler.get_stats()['pages_fetched'] == 3


def test_stop_from_another_thread_ends_crawl():
    seed = "http://stop.test/"
    child = "http://stop.test/child"
    fetcher = GraphFetcher({seed: [child], child: []}, delays={child: 10.0})
    scheduler = make_scheduler(fetcher)

    timer = threading.Timer(0.2, scheduler.stop)
    timer.start()
    started = time.monotonic()
    results = scheduler.start_crawl(seed, max_depth=5, time_limit=None)
    timer.join()

    assert time.monotonic() - started < 3
    assert depths(results) == {seed: 0}
    assert scheduler.termination_reason is CrawlPhase.STOPPED


def test_stop_succeeds_while_scheduler_lock_is_held():
    seed = "http://locked.test/"
    fetcher = GraphFetcher({seed: []}, delays={seed: 10.0})
    scheduler = make_scheduler(fetcher)
    crawl = threading.Thread(target=scheduler.start_crawl, args=(seed, 3, None))
    crawl.start()
    deadline = time.monotonic() + 2
    while not fetcher.calls and time.monotonic() < deadline:
        time.sleep(0.01)

    with scheduler._lock:
        stopper = threading.Thread(target=scheduler.stop)
        stopper.start()
        stopper.join(timeout=2)
        stopper_blocked = stopper.is_alive()

    crawl.join(timeout=5)
    assert not stopper_blocked
    assert not crawl.is_alive()
    assert scheduler.termination_reason is CrawlPhase.STOPPED


def test_concurrent_start_is_rejected():
    seed = "http://busy.test/"
    fetcher = GraphFetcher({seed: []}, delays={seed: 10.0})
    scheduler = make_scheduler(fetcher)
    worker = threading.Thread(target=scheduler.start_crawl, args=(seed, 1, None))
    worker.start()
    try:
        deadline = time.monotonic() + 2
        while not scheduler.is_running and time.monotonic() < deadline:
            time.sleep(0.01)

        with pytest.raises(RuntimeError):
            scheduler.start_crawl(seed, 1, None)
    finally:
        scheduler.stop()
        worker.join(timeout=5)

    assert not worker.is_alive()
    assert not scheduler.is_running


@pytest.mark.parametrize("seed,max_depth,time_limit", [
    ("", 2, 10),
    (A, -1, 10),
    (A, True, 10),
    (A, 2.5, 10),
    (A, 2, -1),
])
def test_invalid_arguments_fail_fast(diamond_fetcher, seed, max_depth, time_limit):
    with pytest.raises(ValueError):
        make_scheduler(diamond_fetcher).start_crawl(seed, max_depth, time_limit)
    assert diamond_fetcher.calls == []


def test_worker_pool_and_timer_are_released(diamond_fetcher):
    make_scheduler(diamond_fetcher).start_crawl(A, max_depth=3, time_limit=30)

    assert wait_for_threads_to_exit() == []


def test_monitor_receives_crawl_metrics(diamond_graph):
    fetcher = GraphFetcher(diamond_graph, failures={B: [FetchErrorKind.PERMANENT]})
    monitor = CrawlerMonitor()

    make_scheduler(fetcher, monitor=monitor).start_crawl(A, max_depth=3, time_limit=30)

    registry = monitor.metrics.registry
    assert registry.get_sample_value('crawler_pages_fetched_total') == 3
    assert registry.get_sample_value('crawler_fetch_failures_total', {'kind': 'permanent'}) == 1
    assert registry.get_sample_value('crawler_waves_completed_total') == 3


def test_module_level_start_crawl_uses_given_fetcher(diamond_fetcher):
    results = start_crawl(A, 2, 30, fetcher=diamond_fetcher, max_workers=2)

    assert depths(results) == {A: 0, B: 1, C: 1}


def test_time_box_fires_once():
    time_box = TimeBox(None)

    assert time_box.fire(TimeBox.STOPPED)
    assert not time_box.fire(TimeBox.DEADLINE)
    assert time_box.reason == TimeBox.STOPPED
    assert time_box.cancel_event.is_set()
    assert time_box.fired_future.result(timeout=0) == TimeBox.STOPPED


def test_time_box_disarm_cancels_timer():
    time_box = TimeBox(30)
    time_box.arm()
    assert 0 < time_box.remaining() <= 30

    time_box.disarm()

    assert not time_box.fired
    assert wait_for_threads_to_exit(prefixes=("crawl-time-box",)) == []


def test_final_stats_are_logged_as_structured_records(diamond_fetcher, caplog):
    scheduler = make_scheduler(diamond_fetcher)

    with caplog.at_level(logging.INFO, logger='wavecrawl.crawler.scheduler'):
        scheduler.start_crawl(A, max_depth=2, time_limit=30)

    stats = {r.extra_fields['stat_name']: r.extra_fields['stat_value']
             for r in caplog.records if 'stat_name' in getattr(r, 'extra_fields', {})}
    assert stats['pages_crawled'] == 3
    assert stats['failures'] == 0
    assert stats['urls_known'] == 4


def test_rejected_submission_stops_crawl(diamond_fetcher, monkeypatch):
    class RejectingExecutor(ThreadPoolExecutor):
        accepted = 2

        def submit(self, fn, *args, **kwargs):
            if self.accepted == 0:
                raise RuntimeError("cannot schedule new futures after shutdown")
            self.accepted -= 1
            return super().submit(fn, *args, **kwargs)

    monkeypatch.setattr('wavecrawl.crawler.scheduler.ThreadPoolExecutor', RejectingExecutor)
    scheduler = make_scheduler(diamond_fetcher)

    results = scheduler.start_crawl(A, max_depth=3, time_limit=30)

    assert depths(results) == {A: 0, B: 1}
    assert C not in diamond_fetcher.calls
    assert scheduler.termination_reason is CrawlPhase.STOPPED
    assert scheduler.get_stats()['tasks_submitted'] == 2


class UncancellableFetcher(PageFetcher):
    """Serves a seed instantly and then blocks on every other page, ignoring cancellation."""

    def __init__(self, seed, children, block_for):
        self.seed = seed
        self.children = children
        self.block_for = block_for

    def fetch(self, url, cancel_event=None):
        if url == self.seed:
            return PageFetchResult(url=url, links=list(self.children), text="seed page", status_code=200)
        time.sleep(self.block_for)
        return PageFetchResult(url=url, links=[], text="late page", status_code=200)


def test_stragglers_are_abandoned_after_grace_period():
    seed = "http://s.test/"
    fetcher = UncancellableFetcher(seed, ["http://s.test/1", "http://s.test/2"], block_for=3.0)
    scheduler = make_scheduler(fetcher, shutdown_grace_period=0.5)

    started = time.monotonic()
    results = scheduler.start_crawl(seed, max_depth=5, time_limit=0.3)
    elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert depths(results) == {seed: 0}
    assert scheduler.termination_reason is CrawlPhase.TIMED_OUT
    assert scheduler.state.stats.forced_out == 2
    assert wait_for_threads_to_exit(prefixes=("crawl-worker",), timeout=5.0) == []

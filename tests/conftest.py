import threading
import time
from collections import Counter

import pytest

from wavecrawl.crawler.fetcher import FetchErrorKind, PageFetcher, PageFetchResult


class GraphFetcher(PageFetcher):
    """
    Serves an in-memory link graph and records every fetch.

    ``failures`` maps a URL to the error kinds returned (in order) before the
    page is served; ``delays`` maps a URL to a cancel-aware fetch duration.
    URLs missing from the graph answer with a permanent 404.
    """

    def __init__(self, graph, texts=None, delays=None, failures=None, default_delay=0.0):
        self.graph = graph
        self.texts = texts or {}
        self.delays = delays or {}
        self.default_delay = default_delay
        self.failures = {url: list(kinds) for url, kinds in (failures or {}).items()}
        self.calls = []
        self.spans = {}
        self._lock = threading.Lock()

    def fetch(self, url, cancel_event=None):
        start = time.monotonic()
        with self._lock:
            self.calls.append(url)
            pending = self.failures.get(url)
            failure = pending.pop(0) if pending else None

        delay = self.delays.get(url, self.default_delay)
        if delay:
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    return PageFetchResult.failure(url, "cancelled", FetchErrorKind.CANCELLED)
            else:
                time.sleep(delay)

        with self._lock:
            self.spans.setdefault(url, []).append((start, time.monotonic()))

        if failure is not None:
            return PageFetchResult.failure(url, f"simulated {failure.value} failure", failure)
        if url not in self.graph:
            return PageFetchResult.failure(url, "HTTP 404", FetchErrorKind.PERMANENT, 404)
        return PageFetchResult(
            url=url,
            links=list(self.graph[url]),
            text=self.texts.get(url, "a page about crawling"),
            status_code=200
        )

    def fetch_counts(self):
        with self._lock:
            return Counter(self.calls)


A = "http://site.test/a"
B = "http://site.test/b"
C = "http://site.test/c"
D = "http://site.test/d"


@pytest.fixture
def diamond_graph():
    """A links to B and C; both link to D."""
    return {
        A: [B, C],
        B: [D, A],
        C: [D],
        D: [],
    }


@pytest.fixture
def diamond_fetcher(diamond_graph):
    return GraphFetcher(diamond_graph, texts={
        A: "The Cat sat. The cat RAN!",
        B: "dogs bark at cats",
        C: "birds sing songs",
        D: "fish swim",
    })


def wait_for_threads_to_exit(prefixes=("crawl-worker", "crawl-time-box"), timeout=3.0):
    """Return the names of matching threads still alive after ``timeout``."""
    deadline = time.monotonic() + timeout
    while True:
        alive = [t.name for t in threading.enumerate() if t.name.startswith(prefixes)]
        if not alive or time.monotonic() >= deadline:
            return alive
        time.sleep(0.02)

"""
Visit registry and wave containers shared between the scheduler and crawl tasks.
"""

import logging
import threading
from enum import Enum
from typing import Dict, Iterable, List, Optional


class VisitState(Enum):
    """Lifecycle of a discovered URL."""
    UNCLAIMED = 1
    CLAIMED = 2
    DONE = 3


class VisitRegistry:
    """
    Concurrent record of every URL discovered during one crawl.

    Each URL is inserted at most once. ``claim`` is the dedup point: the
    check and the transition to CLAIMED happen under one lock, so exactly one
    caller ever sees it succeed for a given URL.
    """

    def __init__(self):
        self._entries: Dict[str, VisitState] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def register(self, url: str) -> bool:
        """
        Insert a URL as UNCLAIMED if it has never been seen.
        Returns True if the URL was newly registered.
        """
        with self._lock:
            if url in self._entries:
                return False
            self._entries[url] = VisitState.UNCLAIMED
            return True

    def register_many(self, urls: Iterable[str]) -> List[str]:
        """Register a batch of URLs; returns the newly registered ones in first-seen order."""
        added = []
        with self._lock:
            for url in urls:
                if url in self._entries:
                    continue
                self._entries[url] = VisitState.UNCLAIMED
                added.append(url)
        return added

    def claim(self, url: str) -> bool:
        """
        Atomically move a URL from absent/UNCLAIMED to CLAIMED.
        Returns False if another caller already owns it.
        """
        with self._lock:
            state = self._entries.get(url)
            if state is not None and state is not VisitState.UNCLAIMED:
                return False
            self._entries[url] = VisitState.CLAIMED
            return True

    def mark_done(self, url: str):
        """Mark a claimed URL as finished, whether or not it produced a result."""
        with self._lock:
            state = self._entries.get(url)
            if state is not VisitState.CLAIMED:
                self.logger.debug(f"mark_done on {url} in state {state}")
            self._entries[url] = VisitState.DONE

    def state(self, url: str) -> Optional[VisitState]:
        with self._lock:
            return self._entries.get(url)

    def counts(self) -> Dict[str, int]:
        """Number of URLs in each state."""
        with self._lock:
            totals = {state.name.lower(): 0 for state in VisitState}
            for state in self._entries.values():
                totals[state.name.lower()] += 1
        return totals

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class Wave:
    """
    URLs scheduled for one depth.

    Tasks append to the next wave while it is open; the scheduler seals it
    once the barrier has passed and owns it exclusively from then on.
    Additions to a sealed wave are rejected.
    """

    def __init__(self, depth: int, urls: Optional[Iterable[str]] = None):
        self.depth = depth
        self._urls: List[str] = list(urls) if urls else []
        self._lock = threading.Lock()
        self._sealed = False

    def add(self, url: str) -> bool:
        return self.extend([url])

    def extend(self, urls: Iterable[str]) -> bool:
        """Append URLs. Returns False, adding nothing, if the wave is sealed."""
        urls = list(urls)
        with self._lock:
            if self._sealed:
                return False
            self._urls.extend(urls)
            return True

    def seal(self):
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        with self._lock:
            return self._sealed

    def urls(self) -> List[str]:
        with self._lock:
            return list(self._urls)

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)

    def __bool__(self) -> bool:
        return len(self) > 0

    def __iter__(self):
        return iter(self.urls())

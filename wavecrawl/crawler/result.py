"""
Crawl result records produced for every successfully fetched page.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass
class CrawlResult:
    """Word frequencies of one crawled page and the wave depth it was fetched at."""
    url: str
    word_frequencies: Dict[str, int] = field(default_factory=dict)
    depth: Optional[int] = None

    def assign_depth(self, depth: int):
        """
        Tag the result with the depth of the wave that fetched it.

        The task that builds a result does not know its depth; the scheduler
        assigns it once while draining the wave.
        """
        if self.depth is not None:
            raise ValueError(f"Depth already assigned for {self.url}: {self.depth}")
        if depth < 0:
            raise ValueError("depth must be non-negative")
        self.depth = depth

    @property
    def total_words(self) -> int:
        return sum(self.word_frequencies.values())

    def top_words(self, n: int = 10) -> List[Tuple[str, int]]:
        """Most frequent words, highest count first; ties broken alphabetically."""
        ranked = sorted(self.word_frequencies.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:n]

    def most_frequent_word(self) -> Optional[str]:
        top = self.top_words(1)
        return top[0][0] if top else None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'depth': self.depth,
            'word_frequencies': dict(self.word_frequencies)
        }

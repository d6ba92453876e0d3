"""
wavecrawl

A depth-bounded, time-boxed web crawler that builds per-page word frequency tables.
"""

__version__ = "1.0.0"
__description__ = "Wave-synchronized web crawler producing significant-word frequencies per page"

from .crawler.scheduler import WaveScheduler, start_crawl
from .crawler.result import CrawlResult

__all__ = ['WaveScheduler', 'start_crawl', 'CrawlResult', '__version__']

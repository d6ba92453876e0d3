"""
Web crawler core components.
"""

from .analyzer import PageAnalyzer, STOPWORDS
from .fetcher import PageFetcher, HttpPageFetcher, PageFetchResult, FetchError, FetchErrorKind
from .parser import ContentParser, ParsedPage
from .registry import VisitRegistry, VisitState, Wave
from .result import CrawlResult
from .task import CrawlTask, RetryPolicy, TaskOutcome, TaskStatus
from .scheduler import WaveScheduler, CrawlPhase, CrawlState, CrawlStats, TimeBox, start_crawl

__all__ = [
    'PageAnalyzer', 'STOPWORDS',
    'PageFetcher', 'HttpPageFetcher', 'PageFetchResult', 'FetchError', 'FetchErrorKind',
    'ContentParser', 'ParsedPage',
    'VisitRegistry', 'VisitState', 'Wave',
    'CrawlResult',
    'CrawlTask', 'RetryPolicy', 'TaskOutcome', 'TaskStatus',
    'WaveScheduler', 'CrawlPhase', 'CrawlState', 'CrawlStats', 'TimeBox', 'start_crawl'
]

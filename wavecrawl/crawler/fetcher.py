"""
Page fetching: the result/error types crawl tasks consume and a default HTTP implementation.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import requests
from requests.exceptions import (
    ConnectionError as RequestsConnectionError,
    InvalidSchema,
    InvalidURL,
    MissingSchema,
    RequestException,
    Timeout,
)

from .parser import ContentParser


class FetchErrorKind(Enum):
    """Classification of a failed fetch."""
    TRANSIENT = 'transient'
    PERMANENT = 'permanent'
    CANCELLED = 'cancelled'


class FetchError(Exception):
    """A failed fetch. Transient unless the fetcher says otherwise."""

    def __init__(self, message: str, kind: FetchErrorKind = FetchErrorKind.TRANSIENT,
                 status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.kind is FetchErrorKind.TRANSIENT

    @property
    def permanent(self) -> bool:
        return self.kind is FetchErrorKind.PERMANENT

    @property
    def cancelled(self) -> bool:
        return self.kind is FetchErrorKind.CANCELLED

    def __repr__(self) -> str:
        return f"FetchError({self.message!r}, kind={self.kind.value})"


@dataclass
class PageFetchResult:
    """Outbound links and text of a fetched page, or the error that prevented it."""
    url: str
    links: List[str] = field(default_factory=list)
    text: str = ""
    status_code: int = 0
    error: Optional[FetchError] = None
    fetch_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, url: str, message: str, kind: FetchErrorKind = FetchErrorKind.TRANSIENT,
                status_code: int = 0, fetch_time: float = 0.0) -> 'PageFetchResult':
        return cls(
            url=url,
            status_code=status_code,
            error=FetchError(message, kind, status_code),
            fetch_time=fetch_time
        )


class PageFetcher:
    """Base class for page fetchers used by crawl tasks."""

    def fetch(self, url: str, cancel_event: Optional[threading.Event] = None) -> PageFetchResult:
        """
        Fetch a page and return its links and text.

        Failures are reported through ``PageFetchResult.error``. Implementations
        should give up early with a CANCELLED error once ``cancel_event`` is set.
        """
        raise NotImplementedError

    def close(self):
        """Release any resources held by the fetcher."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class HttpPageFetcher(PageFetcher):
    """
    Fetches pages over HTTP with a shared ``requests`` session and parses them
    into links and text. Safe to call from many worker threads.
    """

    TEXT_TYPES = (
        'text/html',
        'text/plain',
        'application/xhtml+xml',
    )

    def __init__(self, user_agent: str, request_timeout: float = 15,
                 max_content_bytes: int = 10 * 1024 * 1024,
                 parser: Optional[ContentParser] = None,
                 session: Optional[requests.Session] = None):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_content_bytes = max_content_bytes
        self.parser = parser or ContentParser()
        self.logger = logging.getLogger(__name__)

        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': user_agent})

        # Statistics
        self._stats_lock = threading.Lock()
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    def close(self):
        """Close the fetcher session."""
        if self.session:
            self.session.close()
            self.logger.info("HttpPageFetcher session closed")

    def _count(self, key: str, amount: int = 1):
        with self._stats_lock:
            self.stats[key] += amount

    def fetch(self, url: str, cancel_event: Optional[threading.Event] = None) -> PageFetchResult:
        """
        Fetch a single URL.

        Args:
            url: Absolute URL to fetch
            cancel_event: Set when the crawl no longer wants this page

        Returns:
            PageFetchResult with links and text, or a classified error
        """
        start_time = time.time()

        if cancel_event is not None and cancel_event.is_set():
            return PageFetchResult.failure(url, "Cancelled before request", FetchErrorKind.CANCELLED)

        self._count('total_requests')
        try:
            response = self.session.get(url, timeout=self.request_timeout, stream=True)
        except (MissingSchema, InvalidSchema, InvalidURL) as e:
            self._count('failed_requests')
            self.logger.warning(f"Malformed URL {url}: {e}")
            return PageFetchResult.failure(url, f"Malformed URL: {e}", FetchErrorKind.PERMANENT,
                                           fetch_time=time.time() - start_time)
        except Timeout:
            self._count('failed_requests')
            self.logger.warning(f"Timeout fetching {url}")
            return PageFetchResult.failure(url, "Request timeout", fetch_time=time.time() - start_time)
        except RequestsConnectionError as e:
            self._count('failed_requests')
            self.logger.warning(f"Connection error fetching {url}: {e}")
            return PageFetchResult.failure(url, f"Connection error: {e}",
                                           fetch_time=time.time() - start_time)
        except RequestException as e:
            self._count('failed_requests')
            self.logger.warning(f"Request error fetching {url}: {e}")
            return PageFetchResult.failure(url, f"Request error: {e}",
                                           fetch_time=time.time() - start_time)

        final_url = response.url or url
        try:
            status = response.status_code
            if status >= 400:
                self._count('failed_requests')
                kind = FetchErrorKind.TRANSIENT if status == 429 or status >= 500 else FetchErrorKind.PERMANENT
                return PageFetchResult.failure(url, f"HTTP {status}", kind, status,
                                               fetch_time=time.time() - start_time)

            content_type = response.headers.get('content-type', '').lower()
            if not self._is_text_content(content_type):
                self._count('failed_requests')
                self.logger.debug(f"Skipping non-text content: {url} ({content_type})")
                return PageFetchResult.failure(url, f"Non-text content type: {content_type}",
                                               FetchErrorKind.PERMANENT, status,
                                               fetch_time=time.time() - start_time)

            body = self._read_content_safely(response, cancel_event)
            if isinstance(body, PageFetchResult):
                self._count('failed_requests')
                body.fetch_time = time.time() - start_time
                return body
        except RequestException as e:
            self._count('failed_requests')
            self.logger.warning(f"Error reading body of {url}: {e}")
            return PageFetchResult.failure(url, f"Read error: {e}", fetch_time=time.time() - start_time)
        finally:
            response.close()

        self._count('successful_requests')
        parsed = self.parser.parse(final_url, body)
        fetch_time = time.time() - start_time
        self.logger.debug(f"Fetched {final_url}: {status} ({len(body)} chars, {len(parsed.links)} links)")
        return PageFetchResult(
            url=url,
            links=parsed.links,
            text=parsed.text,
            status_code=status,
            fetch_time=fetch_time
        )

    def _is_text_content(self, content_type: str) -> bool:
        """Check if content type is text-based."""
        if not content_type:
            return True
        return any(text_type in content_type for text_type in self.TEXT_TYPES)

    def _read_content_safely(self, response, cancel_event: Optional[threading.Event]):
        """
        Read the response body in chunks, honouring the size limit and cancellation.

        Returns the decoded body, or a failed PageFetchResult.
        """
        url = response.url
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_bytes:
            self.logger.warning(f"Content too large ({content_length} bytes): {url}")
            return PageFetchResult.failure(url, "Content too large", FetchErrorKind.PERMANENT,
                                           response.status_code)

        chunks = []
        size = 0
        for chunk in response.iter_content(chunk_size=8192):
            if cancel_event is not None and cancel_event.is_set():
                return PageFetchResult.failure(url, "Cancelled while reading body",
                                               FetchErrorKind.CANCELLED, response.status_code)
            size += len(chunk)
            if size > self.max_content_bytes:
                self.logger.warning(f"Content exceeded size limit during reading: {url}")
                return PageFetchResult.failure(url, "Content too large", FetchErrorKind.PERMANENT,
                                               response.status_code)
            chunks.append(chunk)

        self._count('total_bytes_downloaded', size)
        return self._decode(b''.join(chunks), response.encoding)

    def _decode(self, content_bytes: bytes, encoding: Optional[str]) -> str:
        try:
            return content_bytes.decode(encoding or 'utf-8')
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'latin-1', 'cp1252']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue
            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        with self._stats_lock:
            return self.stats.copy()

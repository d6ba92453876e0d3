"""
HTML parser that turns a fetched page into plain text and absolute outbound links.
"""

import re
import logging
from typing import List, Optional
from urllib.parse import urljoin, urldefrag, urlparse
from dataclasses import dataclass, field
from bs4 import BeautifulSoup, Comment


@dataclass
class ParsedPage:
    """Text and links extracted from one HTML document."""
    url: str
    text: str = ""
    links: List[str] = field(default_factory=list)


class ContentParser:
    """
    Extracts the visible text and the hyperlinks of an HTML page.
    """

    SKIP_EXTENSIONS = (
        '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
        '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
        '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
        '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
        '.css', '.js', '.ico', '.woff', '.woff2', '.ttf', '.eot'
    )

    def __init__(self, allowed_domains: Optional[List[str]] = None,
                 blocked_domains: Optional[List[str]] = None):
        self.allowed_domains = {d.lower() for d in allowed_domains} if allowed_domains else set()
        self.blocked_domains = {d.lower() for d in blocked_domains} if blocked_domains else set()
        self.logger = logging.getLogger(__name__)
        self.whitespace_pattern = re.compile(r'\s+')

    def parse(self, url: str, html_content: str) -> ParsedPage:
        """
        Parse HTML content.

        Args:
            url: The URL of the page, used to resolve relative links
            html_content: Raw HTML content

        Returns:
            ParsedPage with the document text and absolute links
        """
        soup = BeautifulSoup(html_content, 'lxml')

        # Remove script and style elements
        for script in soup(["script", "style", "noscript"]):
            script.decompose()

        # Remove comments
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        page = ParsedPage(url=url)
        page.text = self._clean_text(soup.get_text(separator=' '))
        page.links = self._extract_links(soup, url)

        self.logger.debug(f"Parsed {url}: {len(page.text)} chars, {len(page.links)} links")
        return page

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> List[str]:
        """Resolve every anchor against the page URL, keeping first-seen order."""
        links = []
        seen = set()

        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.startswith('#'):
                continue

            absolute_url, _fragment = urldefrag(urljoin(base_url, href))
            if absolute_url in seen or not self._is_valid_url(absolute_url):
                continue
            seen.add(absolute_url)
            links.append(absolute_url)

        return links

    def _is_valid_url(self, url: str) -> bool:
        """Check if URL is worth crawling."""
        try:
            parsed = urlparse(url)
        except ValueError:
            return False

        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return False

        domain = parsed.netloc.lower()
        if any(blocked in domain for blocked in self.blocked_domains):
            return False
        if self.allowed_domains and not any(allowed in domain for allowed in self.allowed_domains):
            return False

        return not parsed.path.lower().endswith(self.SKIP_EXTENSIONS)

    def _clean_text(self, text: str) -> str:
        if not text:
            return ""
        return self.whitespace_pattern.sub(' ', text.strip())

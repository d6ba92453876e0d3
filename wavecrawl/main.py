#!/usr/bin/env python3
"""
Main entry point for the web crawler.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional, TextIO

from . import __version__
from .crawler.fetcher import PageFetcher
from .crawler.result import CrawlResult
from .crawler.scheduler import WaveScheduler
from .utils.config import Config, load_config, validate_config
from .utils.logger import setup_logging
from .utils.monitoring import initialize_monitoring


class CrawlerApp:
    """Main application class for the web crawler."""

    def __init__(self, fetcher: Optional[PageFetcher] = None, output: Optional[TextIO] = None):
        self.scheduler: Optional[WaveScheduler] = None
        self.fetcher = fetcher
        self.output = output or sys.stdout
        self.logger = logging.getLogger(__name__)
        self._shutdown_event = threading.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self.request_shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def request_shutdown(self):
        """Stop the crawl in progress and skip any seeds not yet crawled."""
        self._shutdown_event.set()
        if self.scheduler:
            self.scheduler.stop()

    def run(self, config: Config, top: int = 5, as_json: bool = False) -> int:
        """Crawl every configured seed in turn and print a report."""
        if not config.crawler.seed_urls:
            self.logger.error("No seed URLs given (use the command line or crawler.seed_urls)")
            return 1

        monitor = initialize_monitoring(config.monitoring.metrics_enabled,
                                        config.monitoring.prometheus_port)
        self.scheduler = WaveScheduler.from_config(config, fetcher=self.fetcher, monitor=monitor)

        self.logger.info("=== WEB CRAWLER STARTING ===")
        self.logger.info(f"Seed URLs: {config.crawler.seed_urls}")
        self.logger.info(f"Max depth: {config.crawler.max_depth}")
        self.logger.info(f"Time limit: {config.crawler.time_limit}s")
        self.logger.info(f"Workers: {config.crawler.max_workers}")

        crawls = []
        try:
            for seed_url in config.crawler.seed_urls:
                if self._shutdown_event.is_set():
                    self.logger.info(f"Shutdown requested, skipping remaining seeds from {seed_url}")
                    break
                results = self.scheduler.start_crawl(
                    seed_url, config.crawler.max_depth, config.crawler.time_limit
                )
                crawls.append({
                    'seed_url': seed_url,
                    'termination': self.scheduler.termination_reason.value,
                    'stats': self.scheduler.get_stats(),
                    'results': results
                })
        finally:
            self.scheduler.fetcher.close()
            self.logger.info("=== WEB CRAWLER FINISHED ===")

        if as_json:
            self.output.write(format_json_report(crawls) + '\n')
        else:
            for crawl in crawls:
                self.output.write(format_report(crawl['seed_url'], crawl['results'], top) + '\n')
        return 0


def format_report(seed_url: str, results: List[CrawlResult], top: int = 5) -> str:
    """One line per page: depth, URL and its most frequent words."""
    lines = [f"Crawl from {seed_url}: {len(results)} pages"]
    for result in sorted(results, key=lambda r: (r.depth, r.url)):
        words = ', '.join(f"{word} ({count})" for word, count in result.top_words(top))
        lines.append(f"  [{result.depth}] {result.url} -> {words or '(no significant words)'}")
    return '\n'.join(lines)


def format_json_report(crawls: List[dict]) -> str:
    return json.dumps([
        {
            'seed_url': crawl['seed_url'],
            'termination': crawl['termination'],
            'stats': crawl['stats'],
            'pages': [result.to_dict() for result in crawl['results']]
        }
        for crawl in crawls
    ], indent=2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wavecrawl',
        description="Depth-bounded, time-boxed web crawler reporting word frequencies per page",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  wavecrawl https://example.com                    # Crawl with defaults
  wavecrawl --config config.yaml                   # Seeds and limits from a config file
  wavecrawl https://example.com --max-depth 3      # Three waves
  wavecrawl https://example.com --time-limit 30    # Stop after 30 seconds
  wavecrawl https://example.com --json             # Machine-readable report
        """
    )

    parser.add_argument('seeds', nargs='*', help='Seed URLs (override crawler.seed_urls)')
    parser.add_argument('--config', help='Path to YAML configuration file')
    parser.add_argument('--max-depth', type=int, help='Number of depth waves to crawl')
    parser.add_argument('--time-limit', type=float, help='Crawl time budget in seconds')
    parser.add_argument('--workers', type=int, help='Worker threads per crawl')
    parser.add_argument('--top', type=int, default=5, help='Words to show per page (default: 5)')
    parser.add_argument('--json', action='store_true', help='Print the report as JSON')
    parser.add_argument('--log-level', help='Override logging.level')
    parser.add_argument('--version', action='version', version=f'wavecrawl {__version__}')
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply command-line values on top of the loaded configuration."""
    if args.seeds:
        config.crawler.seed_urls = list(args.seeds)
    if args.max_depth is not None:
        config.crawler.max_depth = args.max_depth
    if args.time_limit is not None:
        config.crawler.time_limit = args.time_limit
    if args.workers is not None:
        config.crawler.max_workers = args.workers
    if args.log_level:
        config.logging.level = args.log_level
    validate_config(config)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.config and not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.", file=sys.stderr)
        return 1

    try:
        config = apply_overrides(load_config(args.config), args)
    except ValueError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.logging)

    app = CrawlerApp()
    app.setup_signal_handlers()
    return app.run(config, top=args.top, as_json=args.json)


if __name__ == '__main__':
    sys.exit(main())

"""
Monitoring and metrics collection for the web crawler system.
"""

import time
import logging
import threading
from typing import Dict, Optional, Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class MetricsCollector:
    """
    Crawler metrics backed by a private Prometheus registry.

    Current values are mirrored in a plain dict so summaries and tests can
    read them without scraping.
    """

    def __init__(self, enable_server: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_server = enable_server
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()
        self._values: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._server_started = False

        self.prometheus_metrics = {
            'pages_fetched_total': Counter(
                'crawler_pages_fetched_total',
                'Total number of pages fetched and analyzed',
                registry=self.registry
            ),
            'fetch_failures_total': Counter(
                'crawler_fetch_failures_total',
                'Total number of URLs dropped after failing to fetch',
                ['kind'],
                registry=self.registry
            ),
            'fetch_retries_total': Counter(
                'crawler_fetch_retries_total',
                'Total number of fetch retries',
                registry=self.registry
            ),
            'claim_conflicts_total': Counter(
                'crawler_claim_conflicts_total',
                'Tasks that found their URL already claimed',
                registry=self.registry
            ),
            'tasks_cancelled_total': Counter(
                'crawler_tasks_cancelled_total',
                'Tasks abandoned because the crawl was cancelled',
                registry=self.registry
            ),
            'waves_completed_total': Counter(
                'crawler_waves_completed_total',
                'Number of depth waves drained',
                registry=self.registry
            ),
            'current_depth': Gauge(
                'crawler_current_depth',
                'Depth of the wave in flight',
                registry=self.registry
            ),
            'wave_size': Gauge(
                'crawler_wave_size',
                'Number of URLs in the wave in flight',
                registry=self.registry
            ),
            'fetch_attempts': Histogram(
                'crawler_fetch_attempts',
                'Fetch attempts used per claimed URL',
                buckets=(1, 2, 3, 4, 5, 8),
                registry=self.registry
            ),
            'wave_duration_seconds': Histogram(
                'crawler_wave_duration_seconds',
                'Wall-clock duration of a wave from submission to barrier',
                registry=self.registry
            )
        }

    def start_server(self):
        """Start the Prometheus metrics HTTP server if enabled."""
        if not self.enable_server or self._server_started:
            return

        start_http_server(self.prometheus_port, registry=self.registry)
        self._server_started = True
        self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")

    def _key(self, name: str, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return name
        label_str = ','.join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment_counter(self, name: str, amount: float = 1, labels: Optional[Dict[str, str]] = None):
        metric = self.prometheus_metrics[name]
        if labels:
            metric.labels(**labels).inc(amount)
        else:
            metric.inc(amount)
        with self._lock:
            key = self._key(name, labels)
            self._values[key] = self._values.get(key, 0) + amount

    def set_gauge(self, name: str, value: float):
        self.prometheus_metrics[name].set(value)
        with self._lock:
            self._values[name] = value

    def observe_histogram(self, name: str, value: float):
        self.prometheus_metrics[name].observe(value)
        with self._lock:
            self._values[f"{name}_count"] = self._values.get(f"{name}_count", 0) + 1
            self._values[f"{name}_sum"] = self._values.get(f"{name}_sum", 0) + value

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all metrics."""
        with self._lock:
            return dict(self._values)


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.logger = logging.getLogger(__name__)
        self.start_time = time.time()

    def record_page_fetched(self, url: str, attempts: int):
        self.metrics.increment_counter('pages_fetched_total')
        self.metrics.observe_histogram('fetch_attempts', attempts)

    def record_failure(self, url: str, kind: str, attempts: int):
        self.metrics.increment_counter('fetch_failures_total', labels={'kind': kind})
        self.metrics.observe_histogram('fetch_attempts', attempts)

    def record_retries(self, count: int):
        if count:
            self.metrics.increment_counter('fetch_retries_total', count)

    def record_claim_conflict(self, url: str):
        self.metrics.increment_counter('claim_conflicts_total')

    def record_cancelled(self, url: str):
        self.metrics.increment_counter('tasks_cancelled_total')

    def record_wave_started(self, depth: int, size: int):
        self.metrics.set_gauge('current_depth', depth)
        self.metrics.set_gauge('wave_size', size)

    def record_wave_completed(self, depth: int, duration: float):
        self.metrics.increment_counter('waves_completed_total')
        self.metrics.observe_histogram('wave_duration_seconds', duration)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'rates': {
                'pages_per_second': current_values.get('pages_fetched_total', 0) / runtime if runtime > 0 else 0,
            },
            'averages': {
                name: _mean(current_values, name)
                for name in ('fetch_attempts', 'wave_duration_seconds')
            }
        }


def _mean(values: Dict[str, float], histogram: str) -> float:
    count = values.get(f"{histogram}_count", 0)
    return values.get(f"{histogram}_sum", 0) / count if count else 0


def initialize_monitoring(enable_server: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Build a monitor and start its metrics server when enabled."""
    monitor = CrawlerMonitor(MetricsCollector(enable_server, prometheus_port))
    monitor.metrics.start_server()
    return monitor

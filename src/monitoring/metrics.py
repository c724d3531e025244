"""
Prometheus Metrics for Binlog Flashback

Counters and timings for rollback runs and position searches. Metrics live in
their own registry so that tests and repeated runs in one process do not
collide; they can be exposed over HTTP or pushed to a Pushgateway.
"""

import logging
from typing import Dict, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    push_to_gateway,
    start_http_server,
)

logger = logging.getLogger(__name__)


class FlashbackMetrics:
    """Prometheus metrics for rollback and locate operations."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "binlog_flashback"):
        """
        Initialize metrics.

        Args:
            registry: Prometheus registry (a fresh one if not provided)
            namespace: Metric name prefix
        """
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace

        self.statements_generated_total = Counter(
            f'{namespace}_statements_generated_total',
            'Total compensating statements generated',
            ['database', 'table', 'source_kind'],
            registry=self.registry
        )

        self.events_dropped_total = Counter(
            f'{namespace}_events_dropped_total',
            'Row events dropped without generating SQL',
            ['reason'],
            registry=self.registry
        )

        self.table_resolutions_total = Counter(
            f'{namespace}_table_resolutions_total',
            'Table metadata resolutions by outcome',
            ['status'],
            registry=self.registry
        )

        self.locator_probes_total = Counter(
            f'{namespace}_locator_probes_total',
            'Binlog file time-range probes by outcome',
            ['status'],
            registry=self.registry
        )

        self.locate_duration_seconds = Histogram(
            f'{namespace}_locate_duration_seconds',
            'Duration of position searches in seconds',
            registry=self.registry,
            buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800]
        )

        self.last_event_timestamp = Gauge(
            f'{namespace}_last_event_timestamp_seconds',
            'Timestamp of the last binlog event processed',
            registry=self.registry
        )

        logger.debug(f"FlashbackMetrics initialized with namespace {namespace}")

    def record_statement(self, database: str, table: str, source_kind: str) -> None:
        self.statements_generated_total.labels(
            database=database,
            table=table,
            source_kind=source_kind
        ).inc()

    def record_dropped_event(self, reason: str) -> None:
        self.events_dropped_total.labels(reason=reason).inc()

    def record_table_resolution(self, status: str) -> None:
        self.table_resolutions_total.labels(status=status).inc()

    def record_probe(self, status: str) -> None:
        self.locator_probes_total.labels(status=status).inc()

    def record_locate_duration(self, duration_seconds: float) -> None:
        self.locate_duration_seconds.observe(duration_seconds)

    def update_last_event_timestamp(self, timestamp: float) -> None:
        if timestamp:
            self.last_event_timestamp.set(timestamp)

    def get_sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read a sample value from the registry (mainly for reporting)."""
        return self.registry.get_sample_value(f"{self.namespace}_{name}", labels or {})

    def start_server(self, port: int) -> None:
        """Start the Prometheus HTTP exposition server."""
        try:
            start_http_server(port, registry=self.registry)
            logger.info(f"Metrics server started on port {port}")
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Metrics server already running on port {port}")
            else:
                raise

    def push(self, gateway_url: str, job_name: str = "binlog_flashback") -> None:
        """
        Push metrics to a Prometheus Pushgateway.

        Raises:
            Exception: If the push fails
        """
        try:
            push_to_gateway(gateway_url, job=job_name, registry=self.registry)
            logger.info(f"Pushed metrics to gateway: {gateway_url}")
        except Exception as e:
            logger.error(f"Failed to push metrics to gateway: {e}")
            raise

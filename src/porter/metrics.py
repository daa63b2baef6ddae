"""Prometheus metrics for export, import and replication runs."""

import time
from typing import Optional

import structlog
from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)

from utils.logging import get_logger


class PorterMetrics:
    """Prometheus metrics for porter."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (defaults to global REGISTRY)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or REGISTRY

        self.rows_exported_total = Counter(
            "porter_rows_exported_total",
            "Rows written to SQL dumps",
            ["table"],
            registry=self.registry,
        )
        self.bytes_flushed_total = Counter(
            "porter_bytes_flushed_total",
            "Dump bytes flushed to a sink",
            ["sink"],  # local, remote
            registry=self.registry,
        )
        self.parts_uploaded_total = Counter(
            "porter_parts_uploaded_total",
            "Multipart upload parts sent",
            registry=self.registry,
        )
        self.statements_imported_total = Counter(
            "porter_statements_imported_total",
            "SQL statements executed by imports",
            registry=self.registry,
        )
        self.objects_total = Counter(
            "porter_replication_objects_total",
            "Objects seen by bucket replication, by outcome",
            ["outcome"],  # copied, skipped, failed
            registry=self.registry,
        )
        self.runs_total = Counter(
            "porter_runs_total",
            "Operation runs by status",
            ["operation", "status"],
            registry=self.registry,
        )
        self.duration_seconds = Histogram(
            "porter_duration_seconds",
            "Duration of operations in seconds",
            ["operation"],
            buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0],
            registry=self.registry,
        )
        self._timers: dict[str, float] = {}

    def record_rows(self, table: str, rows: int) -> None:
        if rows:
            self.rows_exported_total.labels(table=table).inc(rows)

    def record_flush(self, sink: str, size: int) -> None:
        self.bytes_flushed_total.labels(sink=sink).inc(size)
        if sink == "remote":
            self.parts_uploaded_total.inc()

    def record_statements(self, count: int = 1) -> None:
        self.statements_imported_total.inc(count)

    def record_object(self, outcome: str, count: int = 1) -> None:
        self.objects_total.labels(outcome=outcome).inc(count)

    def start_timer(self, operation: str) -> None:
        self._timers[operation] = time.monotonic()

    def finish_run(self, operation: str, status: str) -> None:
        """Record run status and, if a timer was started, its duration."""
        self.runs_total.labels(operation=operation, status=status).inc()
        started = self._timers.pop(operation, None)
        if started is not None:
            self.duration_seconds.labels(operation=operation).observe(time.monotonic() - started)

    def get_metrics(self) -> bytes:
        """Metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 8000) -> None:
        """Start the HTTP exposition server."""
        start_http_server(port, registry=self.registry)
        self.logger.info("Metrics server started", port=port)

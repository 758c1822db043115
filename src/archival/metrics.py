"""Prometheus metrics for monitoring archival jobs."""

import time
from typing import Optional

import structlog
from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from utils.logging import get_logger


class ArchivalMetrics:
    """Prometheus metrics for the archival engine."""

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

        self.rows_moved_total = Counter(
            "archival_rows_moved_total",
            "Total number of rows moved to target tables",
            ["job", "strategy"],
            registry=self.registry,
        )

        self.batches_total = Counter(
            "archival_batches_total",
            "Total number of batches executed",
            ["job", "strategy", "outcome"],  # outcome: moved, empty, failed
            registry=self.registry,
        )

        self.invocations_total = Counter(
            "archival_invocations_total",
            "Total number of job invocations by final status",
            ["job", "status"],
            registry=self.registry,
        )

        self.auto_disabled_total = Counter(
            "archival_auto_disabled_total",
            "Jobs disabled after too many consecutive failures",
            ["job"],
            registry=self.registry,
        )

        self.batch_duration_seconds = Histogram(
            "archival_batch_duration_seconds",
            "Duration of single batches in seconds",
            ["job", "strategy"],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0],
            registry=self.registry,
        )

        self.consecutive_failures = Gauge(
            "archival_consecutive_failures",
            "Consecutive failed invocations per job",
            ["job"],
            registry=self.registry,
        )

        self.last_success_timestamp = Gauge(
            "archival_last_success_timestamp",
            "Unix timestamp of the last successful invocation per job",
            ["job"],
            registry=self.registry,
        )

    def record_batch(
        self,
        job: str,
        strategy: str,
        success: bool,
        rows_moved: int,
        duration_seconds: float,
    ) -> None:
        """Record one batch.

        Args:
            job: Job name
            strategy: Move strategy
            success: Whether the batch succeeded
            rows_moved: Rows moved by the batch
            duration_seconds: Time taken by the batch
        """
        if not success:
            outcome = "failed"
        elif rows_moved == 0:
            outcome = "empty"
        else:
            outcome = "moved"
        self.batches_total.labels(job=job, strategy=strategy, outcome=outcome).inc()
        self.batch_duration_seconds.labels(job=job, strategy=strategy).observe(duration_seconds)
        if rows_moved:
            self.rows_moved_total.labels(job=job, strategy=strategy).inc(rows_moved)

    def record_invocation(self, job: str, status: str, consecutive_failures: int, auto_disabled: bool) -> None:
        """Record the final status of an invocation."""
        self.invocations_total.labels(job=job, status=status).inc()
        self.consecutive_failures.labels(job=job).set(consecutive_failures)
        if status == "Success":
            self.last_success_timestamp.labels(job=job).set(time.time())
        if auto_disabled:
            self.auto_disabled_total.labels(job=job).inc()

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 8000) -> None:
        """Start HTTP server for Prometheus metrics.

        Args:
            port: Port to listen on (default: 8000)
        """
        try:
            start_http_server(port, registry=self.registry)
            self.logger.info(
                "Prometheus metrics server started",
                port=port,
                endpoint=f"http://localhost:{port}/metrics",
            )
        except Exception as e:
            self.logger.error(
                "Failed to start metrics server",
                port=port,
                error=str(e),
            )
            raise

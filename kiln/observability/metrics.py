"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from kiln.constants import (
    METRIC_DISTRIBUTOR_PAUSED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_PROGRESS_FLUSHES,
    METRIC_QUEUE_DEPTH,
    METRIC_TASK_DURATION,
    METRIC_TASKS_COMPLETED,
    METRIC_TASKS_SUBMITTED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task queue.

    Collects metrics for:
    - Queue depth by status
    - Task submissions and completions
    - Task execution duration
    - Lease operations and progress flushes
    - Distributor idleness
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of task records by status",
            ["status"],
            registry=self._registry,
        )

        self.tasks_submitted = Counter(
            METRIC_TASKS_SUBMITTED,
            "Total number of tasks submitted",
            ["type"],
            registry=self._registry,
        )

        self.tasks_completed = Counter(
            METRIC_TASKS_COMPLETED,
            "Total number of tasks acknowledged",
            ["status"],
            registry=self._registry,
        )

        self.task_duration = Histogram(
            METRIC_TASK_DURATION,
            "Task execution duration in seconds",
            ["type", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 600.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases returned to the queue",
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker"],
            registry=self._registry,
        )

        self.progress_flushes = Counter(
            METRIC_PROGRESS_FLUSHES,
            "Total number of progress updates written",
            registry=self._registry,
        )

        self.distributor_paused = Gauge(
            METRIC_DISTRIBUTOR_PAUSED,
            "1 while a distributor waits for a queued event",
            ["task_types"],
            registry=self._registry,
        )

    def record_task_submitted(self, task_type: str, count: int = 1) -> None:
        """Record task submissions."""
        self.tasks_submitted.labels(type=task_type).inc(count)

    def record_task_acked(self, status: str) -> None:
        """Record an acknowledgement."""
        self.tasks_completed.labels(status=status).inc()

    def record_task_duration(
        self,
        task_type: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record how long a task body ran."""
        self.task_duration.labels(type=task_type, status=status).observe(
            duration_seconds
        )

    def record_lease_expired(self, count: int = 1) -> None:
        """Record expired leases."""
        self.lease_expired.inc(count)

    def record_lease_acquired(self, worker: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker=worker).inc(count)

    def record_progress_flush(self) -> None:
        """Record a progress write."""
        self.progress_flushes.inc()

    def set_distributor_paused(self, task_types: list[str], paused: bool) -> None:
        """Flag the distributor for a set of task types as paused or active."""
        self.distributor_paused.labels(task_types=",".join(sorted(task_types))).set(int(paused))

    def update_queue_depth(self, status: str, depth: int) -> None:
        """Update the number of records in a status."""
        self.queue_depth.labels(status=status).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics

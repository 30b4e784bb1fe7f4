"""
Prometheus Metrics Integration.

Provides metrics collection for delegation store operations.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge


class StoreMetrics:
    """
    Prometheus metrics collector for a delegation store.

    Exposes metrics:
    - delegation_store_operations_total{operation="...", outcome="ok|duplicate|not_found|ignored|error"}
    - delegation_store_purged_total
    - delegation_store_last_purge_timestamp_seconds

    Each collector registers into its own ``CollectorRegistry`` unless one
    is passed in, so several stores can live in one process.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        prefix: str = "delegation_store",
    ):
        """Initialize metrics collector."""
        self.registry = registry if registry is not None else CollectorRegistry()
        self._prefix = prefix

        self.operations_total = Counter(
            f"{prefix}_operations_total",
            "Delegation store operations by kind and outcome",
            ["operation", "outcome"],
            registry=self.registry,
        )

        self.purged_total = Counter(
            f"{prefix}_purged_total",
            "Expired proxy credentials physically removed",
            registry=self.registry,
        )

        self.last_purge = Gauge(
            f"{prefix}_last_purge_timestamp_seconds",
            "Unix time of the last completed purge pass",
            registry=self.registry,
        )

    def record_operation(self, operation: str, outcome: str = "ok"):
        """Record one store operation."""
        self.operations_total.labels(operation=operation, outcome=outcome).inc()

    def record_purge(self, removed: int):
        """Record a completed purge pass."""
        self.purged_total.inc(removed)
        self.last_purge.set_to_current_time()

    def operation_count(self, operation: str, outcome: str = "ok") -> float:
        """Current value of an operation counter."""
        value = self.registry.get_sample_value(
            f"{self._prefix}_operations_total",
            {"operation": operation, "outcome": outcome},
        )
        return value or 0.0

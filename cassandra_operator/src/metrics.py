from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics carry a ``queue`` label and informer metrics an
    ``informer`` label so each watched kind can be alerted on separately.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "cassandra_controller_reconcile_total",
            "Total reconciliation passes by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "cassandra_controller_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "cassandra_controller_workqueue_adds_total",
            "Total keys admitted to the work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "cassandra_controller_workqueue_retries_total",
            "Total rate-limited requeues after failed reconciliations",
            ["queue"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "cassandra_controller_workqueue_depth",
            "Current number of keys waiting to be processed",
            ["queue"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cassandra_controller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "cassandra_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "cassandra_controller_relists_total",
            "Total full re-lists after the watch resource version expired",
            ["informer"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "cassandra_controller_events_total",
            "Total Kubernetes Events emitted for CassandraCluster objects",
            ["type", "reason"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "cassandra_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

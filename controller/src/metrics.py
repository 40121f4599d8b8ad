from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Informer metrics carry a ``kind`` label (``Application`` or
    ``Deployment``) so operators can tell which watch is failing.
    """

    syncs_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_syncs_total",
            "Total Application syncs by result",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "application_controller_sync_duration_seconds",
            "Seconds spent in a single Application sync",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    deployments_created_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_deployments_created_total",
            "Total Deployments created for Applications",
        )
    )
    deployments_updated_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_deployments_updated_total",
            "Total Deployment replica corrections",
        )
    )
    status_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_status_updates_total",
            "Total Application status subresource writes",
        )
    )
    ownership_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_ownership_conflicts_total",
            "Total syncs refused because the Deployment is not controlled by the Application",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "application_controller_queue_depth",
            "Current number of keys waiting to be processed",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_queue_adds_total",
            "Total keys added to the work queue",
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_retries_total",
            "Total keys requeued with backoff after a failed sync",
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_dropped_keys_total",
            "Total keys dropped after exceeding the retry ceiling",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "application_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "application_controller_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "application_controller_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "application_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

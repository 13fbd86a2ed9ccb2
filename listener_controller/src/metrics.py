from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile metrics are labelled by ``result`` (``success``, ``error``,
    ``not_ready``, ``requeue``); watch metrics by the watched ``resource``.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "eventlistener_reconcile_total",
            "Total EventListener reconcile passes",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "eventlistener_reconcile_duration_seconds",
            "Seconds spent in one EventListener reconcile pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    child_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "eventlistener_child_writes_total",
            "Total create/update/delete calls issued for generated objects",
            ["kind", "verb"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "eventlistener_workqueue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "eventlistener_workqueue_retries_total",
            "Total keys re-queued with backoff after a failed reconcile",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "eventlistener_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "eventlistener_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    dynamic_watches: Gauge = field(
        default_factory=lambda: Gauge(
            "eventlistener_dynamic_watches",
            "Number of custom object kinds watched at runtime",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "eventlistener_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "eventlistener_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "eventlistener_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "eventlistener_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported by the reloader on ``/metrics``.

    Per-object counters carry a ``kind`` label (``ConfigMap`` or ``Secret``)
    so operators can tell config map churn from secret rotation.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "confsec_reloader_events_total",
            "Configuration object update events seen by the change filter",
            ["kind", "outcome"],
        )
    )
    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "confsec_reloader_reconciles_total",
            "Reconciliations processed, by result",
            ["kind", "result"],
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "confsec_reloader_restarts_total",
            "Workload restarts triggered by configuration changes",
            ["kind"],
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "confsec_reloader_restart_errors_total",
            "Workload restart patches that failed",
            ["kind"],
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "confsec_reloader_retries_total",
            "Reconciliations requeued after a failure",
            ["kind"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "confsec_reloader_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            ["kind"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "confsec_reloader_queue_depth",
            "Reconciliation requests waiting in the work queue, including delayed retries",
        )
    )
    indexed_workloads: Gauge = field(
        default_factory=lambda: Gauge(
            "confsec_reloader_indexed_workloads",
            "Deployments currently referencing at least one configuration object",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "confsec_reloader_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "confsec_reloader_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "confsec_reloader",
            "Build information for the reloader",
        )
    )


METRICS = ReloaderMetrics()

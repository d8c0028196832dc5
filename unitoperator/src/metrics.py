from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile series carry a ``controller`` label (``unit`` or ``unitset``)
    so the two loops can be alerted on independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "unit_operator_reconcile_total",
            "Total reconcile passes by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "unit_operator_reconcile_duration_seconds",
            "Wall time spent in a single reconcile pass",
            ["controller"],
            buckets=(0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, float("inf")),
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "unit_operator_watch_errors_total",
            "Total Kubernetes watch errors",
            ["controller"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "unit_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["controller"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "unit_operator_queue_depth",
            "Keys currently waiting in the work queue",
            ["controller"],
        )
    )
    pod_recreates_total: Counter = field(
        default_factory=lambda: Counter(
            "unit_operator_pod_recreates_total",
            "Total unit pods deleted and recreated, by reason",
            ["reason"],
        )
    )
    agent_calls_total: Counter = field(
        default_factory=lambda: Counter(
            "unit_operator_agent_calls_total",
            "Total sidecar agent calls by action and outcome",
            ["action", "result"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "unit_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()

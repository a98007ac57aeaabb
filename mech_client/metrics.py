"""Prometheus counters for submissions and delivery waits."""

from __future__ import annotations

import prometheus_client

_METRICS_REGISTRY: prometheus_client.CollectorRegistry | None = prometheus_client.CollectorRegistry()


def metrics_registry() -> prometheus_client.CollectorRegistry:
    global _METRICS_REGISTRY
    if _METRICS_REGISTRY is None:
        _METRICS_REGISTRY = prometheus_client.CollectorRegistry()
    return _METRICS_REGISTRY


TX_ATTEMPTS_TOTAL = prometheus_client.Counter(
    "mech_tx_attempts_total", "Signed transaction send attempts", registry=metrics_registry()
)
TX_SUBMISSIONS_TOTAL = prometheus_client.Counter(
    "mech_tx_submissions_total",
    "Finished transaction submissions by receipt status",
    ["status"],
    registry=metrics_registry(),
)
DELIVERIES_TOTAL = prometheus_client.Counter(
    "mech_deliveries_total",
    "Watched request ids by final delivery outcome",
    ["outcome"],
    registry=metrics_registry(),
)
DELIVERY_WAIT_SECONDS = prometheus_client.Histogram(
    "mech_delivery_wait_seconds",
    "Time spent waiting for deliveries (seconds)",
    registry=metrics_registry(),
)


__all__ = [
    "DELIVERIES_TOTAL",
    "DELIVERY_WAIT_SECONDS",
    "TX_ATTEMPTS_TOTAL",
    "TX_SUBMISSIONS_TOTAL",
    "metrics_registry",
]

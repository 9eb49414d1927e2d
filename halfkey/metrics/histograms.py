from __future__ import annotations

from prometheus_client import Histogram

from halfkey.metrics.prometheus import get_prometheus_registry, sanitize_label

LATENCY_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0]

halfkey_proxy_latency_metric = Histogram(
    "halfkey_proxy_latency_seconds",
    "Gateway latency up to the upstream response headers",
    ["outcome"],
    buckets=LATENCY_BUCKETS,
    registry=get_prometheus_registry(),
)

halfkey_upstream_latency_metric = Histogram(
    "halfkey_upstream_latency_seconds",
    "Destination latency until response headers arrive",
    buckets=LATENCY_BUCKETS,
    registry=get_prometheus_registry(),
)


def observe_proxy_latency(*, outcome: str, latency_seconds: float) -> None:
    halfkey_proxy_latency_metric.labels(outcome=sanitize_label(outcome)).observe(max(0.0, float(latency_seconds)))


def observe_upstream_latency(*, latency_seconds: float) -> None:
    halfkey_upstream_latency_metric.observe(max(0.0, float(latency_seconds)))

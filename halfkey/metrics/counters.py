from __future__ import annotations

from prometheus_client import Counter

from halfkey.metrics.prometheus import get_prometheus_registry, sanitize_label

halfkey_proxy_requests_metric = Counter(
    "halfkey_proxy_requests_total",
    "Total proxy requests by pipeline outcome",
    ["outcome", "status_code"],
    registry=get_prometheus_registry(),
)

halfkey_attestation_checks_metric = Counter(
    "halfkey_attestation_checks_total",
    "Total attestation verifications",
    ["mode", "result"],
    registry=get_prometheus_registry(),
)

halfkey_usage_events_metric = Counter(
    "halfkey_usage_events_total",
    "Total usage-increment events emitted",
    ["result"],
    registry=get_prometheus_registry(),
)


def increment_proxy_request(*, outcome: str, status_code: int) -> None:
    halfkey_proxy_requests_metric.labels(outcome=sanitize_label(outcome), status_code=str(status_code)).inc()


def increment_attestation_check(*, mode: str | None, result: str) -> None:
    halfkey_attestation_checks_metric.labels(mode=sanitize_label(mode), result=sanitize_label(result)).inc()


def increment_usage_event(*, result: str) -> None:
    halfkey_usage_events_metric.labels(result=sanitize_label(result)).inc()

from halfkey.metrics.counters import increment_attestation_check, increment_proxy_request, increment_usage_event
from halfkey.metrics.histograms import observe_proxy_latency, observe_upstream_latency
from halfkey.metrics.prometheus import get_prometheus_registry

__all__ = [
    "get_prometheus_registry",
    "increment_attestation_check",
    "increment_proxy_request",
    "increment_usage_event",
    "observe_proxy_latency",
    "observe_upstream_latency",
]

from .destinations import DestinationPolicy
from .gateway import ForwardedResponse, ProxyGateway
from .rate_limiter import RateLimiter, RateWindow
from .usage import UsageDispatcher, UsageRecorder, WebhookUsageRecorder

__all__ = [
    "DestinationPolicy",
    "ForwardedResponse",
    "ProxyGateway",
    "RateLimiter",
    "RateWindow",
    "UsageDispatcher",
    "UsageRecorder",
    "WebhookUsageRecorder",
]

from .credentials import Credential, DeviceCheckConfig, PlayIntegrityConfig, WhitelistEntry
from .errors import (
    AttestationFailure,
    AttestationRejected,
    ClientHeaderError,
    CredentialNotFound,
    DecodeError,
    ProxyError,
    QuotaExceeded,
    RateLimitExceeded,
    UpstreamError,
    UpstreamTimeout,
    WhitelistViolation,
)
from .requests import ProxyHeaderNames, ProxyRequest, ValidationMode

__all__ = [
    "Credential",
    "DeviceCheckConfig",
    "PlayIntegrityConfig",
    "WhitelistEntry",
    "AttestationFailure",
    "AttestationRejected",
    "ClientHeaderError",
    "CredentialNotFound",
    "DecodeError",
    "ProxyError",
    "QuotaExceeded",
    "RateLimitExceeded",
    "UpstreamError",
    "UpstreamTimeout",
    "WhitelistViolation",
    "ProxyHeaderNames",
    "ProxyRequest",
    "ValidationMode",
]

from .base import AttestationOutcome, AttestationRegistry, AttestationVerifier, bypass_matches
from .client_cache import AttestationClientCache
from .device_check import DeviceCheckVerifier
from .google_auth import GoogleServiceAccountClient
from .play_integrity import PlayIntegrityVerifier
from .web import WebVerifier

__all__ = [
    "AttestationClientCache",
    "AttestationOutcome",
    "AttestationRegistry",
    "AttestationVerifier",
    "DeviceCheckVerifier",
    "GoogleServiceAccountClient",
    "PlayIntegrityVerifier",
    "WebVerifier",
    "bypass_matches",
]

"""Split-key API gateway: reconstructs provider keys only for attested, whitelisted requests."""

__version__ = "0.1.0"

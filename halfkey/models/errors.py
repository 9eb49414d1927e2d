from __future__ import annotations


class ProxyError(Exception):
    status_code: int = 500
    error_type: str = "server_error"
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, code: str | None = None):
        self.message = message or self.message
        self.code = code
        super().__init__(self.message)


class ClientHeaderError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"
    message = "Invalid proxy request"


class DecodeError(ClientHeaderError):
    error_type = "decode_error"
    message = "Key shares could not be decoded"


class CredentialNotFound(ProxyError):
    status_code = 404
    error_type = "not_found"
    message = "Not found"


class RateLimitExceeded(ProxyError):
    status_code = 429
    error_type = "rate_limit_error"
    message = "Rate limit exceeded"

    def __init__(self, message: str | None = None, retry_after: int | None = None, **kwargs):
        super().__init__(message=message, **kwargs)
        self.retry_after = retry_after


class AttestationFailure(ProxyError):
    status_code = 401
    error_type = "attestation_error"
    message = "Device validation failed"


class AttestationRejected(ProxyError):
    status_code = 403
    error_type = "attestation_rejected"
    message = "Device validation rejected"


class WhitelistViolation(ProxyError):
    status_code = 403
    error_type = "permission_denied"
    message = "Destination not allowed"


class QuotaExceeded(ProxyError):
    status_code = 403
    error_type = "quota_exceeded"
    message = "Beyond request limit"


class UpstreamError(ProxyError):
    status_code = 502
    error_type = "upstream_error"
    message = "Destination request failed"


class UpstreamTimeout(UpstreamError):
    status_code = 504
    error_type = "upstream_timeout"
    message = "Destination request timed out"

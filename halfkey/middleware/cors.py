from __future__ import annotations

from fastapi import Request

from halfkey.models.requests import ValidationMode

WILDCARD_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Expose-Headers": "*",
}


def is_web_request(request: Request) -> bool:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        return False
    mode = request.headers.get(gateway.header_names.validation_mode)
    return (mode or "").strip() == ValidationMode.WEB.value


def apply_wildcard_cors(headers: list[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Replace any upstream CORS headers with the permissive, credential-less set."""
    kept = [(name, value) for name, value in headers if not name.lower().startswith(b"access-control-")]
    return kept + [
        (name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in WILDCARD_CORS_HEADERS.items()
    ]

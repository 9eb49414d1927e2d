from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from halfkey.middleware.cors import WILDCARD_CORS_HEADERS, is_web_request
from halfkey.models.errors import ProxyError, RateLimitExceeded

logger = logging.getLogger(__name__)


def _serialize_error(exc: ProxyError) -> dict[str, object]:
    return {
        "error": {
            "message": exc.message,
            "type": exc.error_type,
            "code": getattr(exc, "code", None),
        }
    }


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimitExceeded) and getattr(exc, "retry_after", None):
            headers["Retry-After"] = str(exc.retry_after)
        if is_web_request(request):
            headers.update(WILDCARD_CORS_HEADERS)
        return JSONResponse(status_code=exc.status_code, content=_serialize_error(exc), headers=headers)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled exception", exc_info=exc)
        proxy_error = ProxyError()
        return JSONResponse(status_code=proxy_error.status_code, content=_serialize_error(proxy_error))

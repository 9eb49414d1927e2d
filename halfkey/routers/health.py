from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    ready_payload = await _readiness_payload(request)
    status = 200 if ready_payload["status"] == "ok" else 503
    payload = {"liveliness": "ok", "readiness": ready_payload}
    return JSONResponse(status_code=status, content=payload)


@router.get("/health/liveliness")
async def liveliness() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/readiness")
async def readiness(request: Request) -> JSONResponse:
    payload = await _readiness_payload(request)
    status = 200 if payload["status"] == "ok" else 503
    return JSONResponse(status_code=status, content=payload)


@router.get("/version")
async def version(request: Request) -> dict[str, str]:
    settings = getattr(request.app.state, "settings", None)
    return {"version": getattr(settings, "version", "unknown")}


async def _readiness_payload(request: Request) -> dict[str, object]:
    checks: dict[str, bool] = {}

    repository = getattr(request.app.state, "credential_repository", None)
    if repository is None:
        checks["credentials"] = False
    else:
        try:
            checks["credentials"] = bool(await repository.ping())
        except Exception:
            logger.warning("credential store ping failed", exc_info=True)
            checks["credentials"] = False

    checks["gateway"] = getattr(request.app.state, "gateway", None) is not None

    status = "ok" if all(checks.values()) else "degraded"
    return {"status": status, "checks": checks}

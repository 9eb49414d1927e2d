from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client.exposition import choose_encoder

from halfkey.metrics import get_prometheus_registry

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    """Proxy, attestation and usage metrics, as OpenMetrics when the scraper asks for it."""
    encoder, content_type = choose_encoder(request.headers.get("accept"))
    return Response(content=encoder(get_prometheus_registry()), media_type=content_type)

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from halfkey.middleware.cors import apply_wildcard_cors
from halfkey.services.gateway import ProxyGateway

router = APIRouter(tags=["proxy"])


async def _proxy(request: Request) -> StreamingResponse:
    gateway: ProxyGateway = request.app.state.gateway
    proxy_request = gateway.parse_request(
        headers=[(name, value) for name, value in request.headers.items()],
        body=request.stream(),
        path=request.url.path,
    )
    forwarded = await gateway.handle(proxy_request)

    try:
        headers = forwarded.headers()
        if forwarded.attestation.cors:
            headers = apply_wildcard_cors(headers)

        response = StreamingResponse(
            forwarded.iter_body(),
            status_code=forwarded.status_code,
            background=BackgroundTask(forwarded.aclose),
        )
        response.raw_headers = [(name.lower(), value) for name, value in headers]
    except BaseException:
        await forwarded.aclose()
        raise
    return response


@router.post("/proxy")
async def proxy(request: Request) -> StreamingResponse:
    """Forward a request using a split key.

    Control headers name the credential, target method and destination URL. Any
    other header may carry ``%PARTIAL_KEY:<client share>%``, which is replaced
    by the full key before the request is sent on.
    """
    return await _proxy(request)


@router.post("/v1/proxy")
async def proxy_v1(request: Request) -> StreamingResponse:
    return await _proxy(request)

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from time import perf_counter
from typing import AsyncIterator

import httpx

from halfkey.attestation.base import AttestationOutcome, AttestationRegistry
from halfkey.db.repositories import CredentialRepository
from halfkey.metrics import increment_proxy_request, observe_proxy_latency, observe_upstream_latency
from halfkey.models.credentials import Credential
from halfkey.models.errors import (
    ClientHeaderError,
    CredentialNotFound,
    DecodeError,
    ProxyError,
    QuotaExceeded,
    UpstreamError,
    UpstreamTimeout,
)
from halfkey.models.requests import ProxyHeaderNames, ProxyRequest
from halfkey.services import key_splitter
from halfkey.services.destinations import DestinationPolicy
from halfkey.services.rate_limiter import RateLimiter
from halfkey.services.usage import UsageDispatcher

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
_METHOD_PATTERN = re.compile(r"[A-Z]+")


@dataclass
class ForwardedResponse:
    upstream: httpx.Response
    credential_id: str
    attestation: AttestationOutcome

    @property
    def status_code(self) -> int:
        return self.upstream.status_code

    def headers(self) -> list[tuple[bytes, bytes]]:
        """Upstream headers as received on the wire, minus hop-by-hop ones."""
        return [
            (name, value)
            for name, value in self.upstream.headers.raw
            if name.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
        ]

    def iter_body(self) -> AsyncIterator[bytes]:
        return self.upstream.aiter_raw()

    async def aclose(self) -> None:
        await self.upstream.aclose()


class ProxyGateway:
    """Validates a proxy request and forwards it with the reconstructed key.

    Every step is a terminal gate: a failure raises a ``ProxyError`` before
    anything is forwarded or counted as usage.
    """

    def __init__(
        self,
        credentials: CredentialRepository,
        rate_limiter: RateLimiter,
        attestation: AttestationRegistry,
        destinations: DestinationPolicy,
        usage: UsageDispatcher,
        http_client: httpx.AsyncClient,
        header_names: ProxyHeaderNames | None = None,
        forward_timeout: float = 60.0,
    ) -> None:
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.attestation = attestation
        self.destinations = destinations
        self.usage = usage
        self.http_client = http_client
        self.header_names = header_names or ProxyHeaderNames()
        self.forward_timeout = forward_timeout
        self._control_headers = self.header_names.control_headers()
        self._placeholder = re.compile(re.escape(self.header_names.partial_key_marker) + r"([^%]*)%")

    def parse_request(
        self,
        headers: list[tuple[str, str]],
        body: AsyncIterator[bytes] | bytes = b"",
        path: str = "/proxy",
    ) -> ProxyRequest:
        return ProxyRequest.from_headers(headers, self.header_names, body=body, path=path)

    async def handle(self, request: ProxyRequest) -> ForwardedResponse:
        start = perf_counter()
        try:
            forwarded = await self._handle(request)
        except ProxyError as exc:
            increment_proxy_request(outcome=exc.error_type, status_code=exc.status_code)
            observe_proxy_latency(outcome=exc.error_type, latency_seconds=perf_counter() - start)
            raise
        increment_proxy_request(outcome="forwarded", status_code=forwarded.status_code)
        observe_proxy_latency(outcome="forwarded", latency_seconds=perf_counter() - start)
        return forwarded

    async def _handle(self, request: ProxyRequest) -> ForwardedResponse:
        method = self._require_headers(request)

        credential = await self.credentials.get(request.association_id or "")
        if credential is None:
            logger.warning("unknown credential")
            raise CredentialNotFound()

        await self.rate_limiter.check(credential)

        if not await self.usage.has_quota(credential):
            logger.warning("request quota exhausted", extra={"credential_id": credential.id})
            raise QuotaExceeded()

        outcome = await self.attestation.verify(credential, request)

        destination = request.destination_url or ""
        self.destinations.check(credential, destination)

        client_share = self._extract_client_share(request)
        secret = key_splitter.reconstruct(credential.server_share, client_share)
        if "\r" in secret or "\n" in secret:
            raise DecodeError(message="Reconstructed key is not a valid header value", code="invalid_share")

        headers = self._rewrite_headers(request.headers, client_share, secret)
        upstream = await self._forward(method, destination, headers, request.body, credential)

        self.usage.dispatch(credential)
        return ForwardedResponse(upstream=upstream, credential_id=credential.id, attestation=outcome)

    def _require_headers(self, request: ProxyRequest) -> str:
        names = self.header_names
        if not request.association_id:
            raise ClientHeaderError(message="Association ID missing from request.", code="association_id_missing")
        if not self._placeholder_headers(request):
            raise ClientHeaderError(message="Partial key missing from request.", code="partial_key_missing")
        if not request.override_method:
            raise ClientHeaderError(message="HTTP method missing from request.", code="http_method_missing")
        if not request.destination_url:
            raise ClientHeaderError(message="Destination missing from request.", code="destination_missing")

        method = request.override_method.strip().upper()
        if not _METHOD_PATTERN.fullmatch(method):
            raise ClientHeaderError(message=f"Invalid {names.http_method} header.", code="http_method_invalid")
        return method

    def _placeholder_headers(self, request: ProxyRequest) -> list[tuple[str, str]]:
        marker = self.header_names.partial_key_marker
        return [
            (name, value)
            for name, value in request.headers
            if name.lower() not in self._control_headers and marker in value
        ]

    def _extract_client_share(self, request: ProxyRequest) -> str:
        shares = {
            match.group(1)
            for _, value in self._placeholder_headers(request)
            for match in self._placeholder.finditer(value)
        }
        if "" in shares:
            raise ClientHeaderError(message="Partial key is empty", code="partial_key_empty")
        if not shares:
            raise ClientHeaderError(message="Partial Key was not found", code="partial_key_missing")
        if len(shares) > 1:
            raise ClientHeaderError(message="Conflicting partial keys in request", code="partial_key_conflict")
        return shares.pop()

    def _rewrite_headers(
        self,
        headers: list[tuple[str, str]],
        client_share: str,
        secret: str,
    ) -> list[tuple[bytes, bytes]]:
        # Inbound values arrive latin-1 decoded, so encoding back restores the wire bytes.
        placeholder = f"{self.header_names.partial_key_marker}{client_share}%".encode("latin-1")
        secret_bytes = secret.encode("utf-8")
        rewritten: list[tuple[bytes, bytes]] = []
        for name, value in headers:
            lowered = name.lower()
            if lowered in self._control_headers or lowered in HOP_BY_HOP_HEADERS:
                continue
            try:
                raw_name = name.encode("latin-1")
                raw_value = value.encode("latin-1")
            except UnicodeEncodeError as exc:
                raise ClientHeaderError(message=f"Invalid value for header {name}", code="invalid_header") from exc
            rewritten.append((raw_name, raw_value.replace(placeholder, secret_bytes)))
        return rewritten

    async def _forward(
        self,
        method: str,
        destination: str,
        headers: list[tuple[bytes, bytes]],
        body: AsyncIterator[bytes] | bytes,
        credential: Credential,
    ) -> httpx.Response:
        upstream_start = perf_counter()
        try:
            outbound = self.http_client.build_request(
                method,
                destination,
                headers=headers,
                content=body,
                timeout=self.forward_timeout,
            )
            response = await self.http_client.send(outbound, stream=True)
        except httpx.TimeoutException as exc:
            logger.warning("destination timed out", extra={"credential_id": credential.id})
            raise UpstreamTimeout() from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "destination request failed",
                extra={"credential_id": credential.id, "error": exc.__class__.__name__},
            )
            raise UpstreamError() from exc
        finally:
            observe_upstream_latency(latency_seconds=perf_counter() - upstream_start)

        logger.info(
            "request forwarded",
            extra={"credential_id": credential.id, "method": method, "status_code": response.status_code},
        )
        return response

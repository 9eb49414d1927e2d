from __future__ import annotations

import base64

import httpx
import pytest
import respx

from conftest import CLIENT_SHARE, DEVICE_BYPASS_TOKEN, SECRET, FakeClock, RecordingUsageRecorder, make_credential
from halfkey.attestation import AttestationRegistry, WebVerifier
from halfkey.attestation.device_check import DeviceCheckVerifier
from halfkey.db import InMemoryCredentialRepository
from halfkey.models.errors import ClientHeaderError, DecodeError
from halfkey.models.requests import ProxyHeaderNames
from halfkey.services import DestinationPolicy, ProxyGateway, RateLimiter, UsageDispatcher, key_splitter


def _gateway(http_client: httpx.AsyncClient, *credentials, prefix: str = "") -> ProxyGateway:
    return ProxyGateway(
        credentials=InMemoryCredentialRepository(credentials),
        rate_limiter=RateLimiter(clock=FakeClock()),
        attestation=AttestationRegistry([DeviceCheckVerifier(http_client), WebVerifier()]),
        destinations=DestinationPolicy(),
        usage=UsageDispatcher(RecordingUsageRecorder()),
        http_client=http_client,
        header_names=ProxyHeaderNames(prefix=prefix),
    )


@respx.mock
async def test_prefixed_control_headers():
    route = respx.delete("https://api.example.com/v1/charges/ch_1").mock(return_value=httpx.Response(204))
    async with httpx.AsyncClient() as http_client:
        gateway = _gateway(http_client, make_credential("cred-1"), prefix="ProxLock_")
        request = gateway.parse_request(
            [
                ("ProxLock_ASSOCIATION_ID", "cred-1"),
                ("ProxLock_HTTP_METHOD", "DELETE"),
                ("ProxLock_DESTINATION", "https://api.example.com/v1/charges/ch_1"),
                ("ProxLock_VALIDATION_MODE", "device-check"),
                ("X-Apple-Device-Token", DEVICE_BYPASS_TOKEN),
                ("X-Api-Key", f"%ProxLock_PARTIAL_KEY:{CLIENT_SHARE}%"),
            ]
        )
        forwarded = await gateway.handle(request)
        await forwarded.aclose()
        await gateway.usage.drain()

    assert forwarded.status_code == 204
    assert forwarded.credential_id == "cred-1"
    assert forwarded.attestation.bypassed is True
    sent = route.calls.last.request
    assert sent.headers["X-Api-Key"] == SECRET
    assert "ProxLock_ASSOCIATION_ID" not in sent.headers
    assert gateway.usage.recorder.increments == ["cred-1"]


async def test_secret_with_line_break_is_never_forwarded():
    secret = b"sk-live\r\nX-Injected: 1"
    pad = bytes(len(secret))
    server_share = base64.b64encode(pad).decode()
    client_share = base64.b64encode(secret).decode()

    async with httpx.AsyncClient() as http_client:
        gateway = _gateway(http_client, make_credential("cred-1", server_share=server_share))
        request = gateway.parse_request(
            [
                ("ASSOCIATION_ID", "cred-1"),
                ("HTTP_METHOD", "GET"),
                ("DESTINATION", "https://api.example.com/v1/charges"),
                ("VALIDATION_MODE", "device-check"),
                ("X-Apple-Device-Token", DEVICE_BYPASS_TOKEN),
                ("Authorization", f"Bearer %PARTIAL_KEY:{client_share}%"),
            ]
        )
        with pytest.raises(DecodeError):
            await gateway.handle(request)


def test_control_header_names_follow_prefix():
    names = ProxyHeaderNames(prefix="ProxLock_")

    assert names.partial_key_marker == "%ProxLock_PARTIAL_KEY:"
    assert "proxlock_association_id" in names.control_headers()
    assert "x-apple-device-token" in names.control_headers()
    assert "host" in names.control_headers()


@respx.mock
async def test_non_ascii_secret_is_sent_as_utf8():
    secret = "clé-ключ"
    server_share, client_share = key_splitter.split(secret)
    route = respx.get("https://api.example.com/v1/charges").mock(return_value=httpx.Response(200))

    async with httpx.AsyncClient() as http_client:
        gateway = _gateway(http_client, make_credential("cred-1", server_share=server_share))
        request = gateway.parse_request(
            [
                ("ASSOCIATION_ID", "cred-1"),
                ("HTTP_METHOD", "GET"),
                ("DESTINATION", "https://api.example.com/v1/charges"),
                ("VALIDATION_MODE", "device-check"),
                ("X-Apple-Device-Token", DEVICE_BYPASS_TOKEN),
                ("Authorization", f"Bearer %PARTIAL_KEY:{client_share}%"),
            ]
        )
        forwarded = await gateway.handle(request)
        await forwarded.aclose()
        await gateway.usage.drain()

    sent = {name.lower(): value for name, value in route.calls.last.request.headers.raw}
    assert sent[b"authorization"] == b"Bearer " + secret.encode("utf-8")


@respx.mock
async def test_header_value_outside_latin1_is_client_error():
    route = respx.get("https://api.example.com/v1/charges").mock(return_value=httpx.Response(200))

    async with httpx.AsyncClient() as http_client:
        gateway = _gateway(http_client, make_credential("cred-1"))
        request = gateway.parse_request(
            [
                ("ASSOCIATION_ID", "cred-1"),
                ("HTTP_METHOD", "GET"),
                ("DESTINATION", "https://api.example.com/v1/charges"),
                ("VALIDATION_MODE", "device-check"),
                ("X-Apple-Device-Token", DEVICE_BYPASS_TOKEN),
                ("Authorization", f"Bearer %PARTIAL_KEY:{CLIENT_SHARE}%"),
                ("X-Note", "ключ"),
            ]
        )
        with pytest.raises(ClientHeaderError) as exc_info:
            await gateway.handle(request)

    assert exc_info.value.code == "invalid_header"
    assert route.call_count == 0

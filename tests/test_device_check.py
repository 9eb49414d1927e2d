from __future__ import annotations

import json

import httpx
import jwt
import pytest
import respx

from conftest import DEVICE_BYPASS_TOKEN, ec_private_key_pem, make_credential, rsa_private_key_pem
from halfkey.attestation import DeviceCheckVerifier
from halfkey.attestation.device_check import (
    DEVICE_CHECK_SANDBOX_URL,
    DEVICE_CHECK_URL,
    InvalidSigningKey,
    load_signing_key,
)
from halfkey.models.credentials import DeviceCheckConfig
from halfkey.models.errors import AttestationFailure
from halfkey.models.requests import ProxyHeaderNames, ProxyRequest


def _request(device_token: str | None = "device-token-abc", path: str = "/proxy") -> ProxyRequest:
    headers = [("VALIDATION_MODE", "device-check")]
    if device_token is not None:
        headers.append(("X-Apple-Device-Token", device_token))
    return ProxyRequest.from_headers(headers, ProxyHeaderNames(), path=path)


@pytest.fixture
def signing_key():
    return ec_private_key_pem()


@pytest.fixture
def credential(signing_key):
    _, pem = signing_key
    return make_credential(
        device_check=DeviceCheckConfig(
            key_id="KEY123",
            team_id="TEAM456",
            private_key_pem=pem,
            bypass_token=DEVICE_BYPASS_TOKEN,
        )
    )


@respx.mock
async def test_valid_device_token_signs_request_for_apple(signing_key, credential):
    key, _ = signing_key
    route = respx.post(DEVICE_CHECK_URL).mock(return_value=httpx.Response(200))
    async with httpx.AsyncClient() as http_client:
        verifier = DeviceCheckVerifier(http_client, clock=lambda: 1_700_000_000.5)
        outcome = await verifier.verify(credential, _request())

    assert outcome.bypassed is False
    assert route.call_count == 1

    sent = route.calls.last.request
    token = sent.headers["Authorization"].removeprefix("Bearer ")
    assert jwt.get_unverified_header(token)["kid"] == "KEY123"
    claims = jwt.decode(token, key.public_key(), algorithms=["ES256"])
    assert claims == {"iss": "TEAM456", "iat": 1_700_000_000}

    body = json.loads(sent.content)
    assert body["device_token"] == "device-token-abc"
    assert body["timestamp"] == 1_700_000_000_500
    assert body["transaction_id"]


@respx.mock
async def test_falls_back_to_sandbox_when_production_rejects(credential):
    production = respx.post(DEVICE_CHECK_URL).mock(return_value=httpx.Response(400))
    sandbox = respx.post(DEVICE_CHECK_SANDBOX_URL).mock(return_value=httpx.Response(200))
    async with httpx.AsyncClient() as http_client:
        outcome = await DeviceCheckVerifier(http_client).verify(credential, _request())

    assert outcome.bypassed is False
    assert production.called
    assert sandbox.called


@respx.mock
async def test_invalid_token_fails_when_both_environments_reject(credential):
    respx.post(DEVICE_CHECK_URL).mock(return_value=httpx.Response(400))
    respx.post(DEVICE_CHECK_SANDBOX_URL).mock(return_value=httpx.Response(401))
    async with httpx.AsyncClient() as http_client:
        with pytest.raises(AttestationFailure) as exc_info:
            await DeviceCheckVerifier(http_client).verify(credential, _request())

    assert exc_info.value.status_code == 401
    assert exc_info.value.code == "device_token_invalid"


@respx.mock
async def test_sandbox_fallback_can_be_disabled(credential):
    respx.post(DEVICE_CHECK_URL).mock(return_value=httpx.Response(400))
    sandbox = respx.post(DEVICE_CHECK_SANDBOX_URL).mock(return_value=httpx.Response(200))
    async with httpx.AsyncClient() as http_client:
        with pytest.raises(AttestationFailure):
            await DeviceCheckVerifier(http_client, sandbox_fallback=False).verify(credential, _request())

    assert not sandbox.called


@respx.mock
async def test_bypass_token_skips_apple(credential):
    route = respx.post(DEVICE_CHECK_URL).mock(return_value=httpx.Response(500))
    async with httpx.AsyncClient() as http_client:
        outcome = await DeviceCheckVerifier(http_client).verify(credential, _request(DEVICE_BYPASS_TOKEN))

    assert outcome.bypassed is True
    assert not route.called


@respx.mock
async def test_apple_timeout_is_attestation_failure(credential):
    respx.post(DEVICE_CHECK_URL).mock(side_effect=httpx.ConnectTimeout)
    async with httpx.AsyncClient() as http_client:
        with pytest.raises(AttestationFailure) as exc_info:
            await DeviceCheckVerifier(http_client).verify(credential, _request())

    assert exc_info.value.code == "attestation_timeout"


async def test_missing_device_token(credential):
    async with httpx.AsyncClient() as http_client:
        with pytest.raises(AttestationFailure) as exc_info:
            await DeviceCheckVerifier(http_client).verify(credential, _request(device_token=None))

    assert exc_info.value.code == "device_token_missing"


async def test_credential_without_device_check_config():
    async with httpx.AsyncClient() as http_client:
        with pytest.raises(AttestationFailure) as exc_info:
            await DeviceCheckVerifier(http_client).verify(make_credential(device_check=None), _request())

    assert exc_info.value.code == "attestation_not_configured"


async def test_health_path_is_not_attested():
    async with httpx.AsyncClient() as http_client:
        outcome = await DeviceCheckVerifier(http_client).verify(
            make_credential(device_check=None),
            _request(device_token=None, path="/health"),
        )

    assert outcome.bypassed is True


@respx.mock
async def test_signing_key_is_loaded_once_per_key_id(credential):
    respx.post(DEVICE_CHECK_URL).mock(return_value=httpx.Response(200))
    async with httpx.AsyncClient() as http_client:
        verifier = DeviceCheckVerifier(http_client)
        await verifier.verify(credential, _request())
        await verifier.verify(credential, _request())

        assert len(verifier.signing_keys) == 1
        await verifier.close()
        assert len(verifier.signing_keys) == 0


async def test_unusable_signing_key_is_attestation_failure():
    broken = make_credential(
        device_check=DeviceCheckConfig(key_id="K", team_id="T", private_key_pem="not a pem"),
    )
    async with httpx.AsyncClient() as http_client:
        with pytest.raises(AttestationFailure) as exc_info:
            await DeviceCheckVerifier(http_client).verify(broken, _request())

    assert exc_info.value.code == "attestation_not_configured"


def test_load_signing_key_requires_p256():
    _, rsa_pem = rsa_private_key_pem()

    with pytest.raises(InvalidSigningKey):
        load_signing_key(rsa_pem)

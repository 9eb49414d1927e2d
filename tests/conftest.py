from __future__ import annotations

from dataclasses import replace

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from fastapi import FastAPI

from halfkey.config import AppConfig, Settings, merge_settings
from halfkey.db import InMemoryCredentialRepository, parse_whitelist
from halfkey.main import build_gateway, create_app
from halfkey.models.credentials import Credential, DeviceCheckConfig, PlayIntegrityConfig
from halfkey.services import RateLimiter, UsageRecorder
from halfkey.services import key_splitter

SECRET = "sk-live-ABC"
SERVER_SHARE, CLIENT_SHARE = key_splitter.split(SECRET)
DEVICE_BYPASS_TOKEN = "dc-bypass-token"
PLAY_BYPASS_TOKEN = "pi-bypass-token"


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingUsageRecorder(UsageRecorder):
    def __init__(self) -> None:
        self.increments: list[str] = []
        self.fail = False
        self.quota_available = True

    async def has_quota(self, credential: Credential) -> bool:
        return self.quota_available

    async def increment(self, credential: Credential) -> None:
        self.increments.append(credential.id)
        if self.fail:
            raise RuntimeError("usage backend unavailable")


def ec_private_key_pem() -> tuple[ec.EllipticCurvePrivateKey, str]:
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    return key, pem


def rsa_private_key_pem() -> tuple[rsa.RSAPrivateKey, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    return key, pem


def service_account(private_key_pem: str, project_id: str = "demo-project") -> dict[str, str]:
    return {
        "type": "service_account",
        "project_id": project_id,
        "private_key_id": "pk-1",
        "private_key": private_key_pem,
        "client_email": f"verifier@{project_id}.iam.gserviceaccount.com",
        "token_uri": "https://oauth2.googleapis.com/token",
    }


def make_credential(credential_id: str = "cred-device", **overrides) -> Credential:
    _, pem = ec_private_key_pem()
    base = Credential(
        id=credential_id,
        name="Payments",
        owner_id="user-1",
        server_share=SERVER_SHARE,
        whitelist=parse_whitelist(["api.example.com/v1"]),
        device_check=DeviceCheckConfig(
            key_id="KEY123",
            team_id="TEAM456",
            private_key_pem=pem,
            bypass_token=DEVICE_BYPASS_TOKEN,
        ),
    )
    return replace(base, **overrides)


def proxy_headers(
    association_id: str = "cred-device",
    destination: str = "https://api.example.com/v1/charges",
    method: str = "GET",
    mode: str = "device-check",
    device_token: str | None = DEVICE_BYPASS_TOKEN,
    client_share: str = CLIENT_SHARE,
    **extra: str,
) -> dict[str, str]:
    headers = {
        "ASSOCIATION_ID": association_id,
        "HTTP_METHOD": method,
        "DESTINATION": destination,
        "VALIDATION_MODE": mode,
        "Authorization": f"Bearer %PARTIAL_KEY:{client_share}%",
    }
    if device_token is not None:
        headers["X-Apple-Device-Token"] = device_token
    headers.update(extra)
    return headers


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def usage_recorder() -> RecordingUsageRecorder:
    return RecordingUsageRecorder()


@pytest.fixture
async def test_app(clock: FakeClock, usage_recorder: RecordingUsageRecorder):
    app = create_app()
    settings = Settings()
    gateway_settings = merge_settings(settings, AppConfig())

    repo = InMemoryCredentialRepository(
        [
            make_credential("cred-device"),
            make_credential("cred-limited", rate_limit=2),
            make_credential("cred-web", allows_web=True, device_check=None),
            make_credential("cred-mobile-only", device_check=None),
        ]
    )
    http_client = httpx.AsyncClient()

    app.state.settings = settings
    app.state.credential_repository = repo
    app.state.http_client = http_client
    app.state.gateway = build_gateway(
        gateway_settings,
        repo,
        http_client,
        usage_recorder=usage_recorder,
        rate_limiter=RateLimiter(window_seconds=300, clock=clock),
    )

    app.state._test_repo = repo
    app.state._test_usage = usage_recorder
    yield app
    await http_client.aclose()


@pytest.fixture
async def client(test_app: FastAPI):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

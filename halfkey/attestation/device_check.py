from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable
from typing import Callable

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_private_key
from jwt.exceptions import PyJWTError

from halfkey.attestation.base import AttestationOutcome, AttestationVerifier, bypass_matches
from halfkey.attestation.client_cache import AttestationClientCache
from halfkey.models.credentials import Credential, DeviceCheckConfig
from halfkey.models.errors import AttestationFailure
from halfkey.models.requests import APPLE_DEVICE_TOKEN_HEADER, ProxyRequest, ValidationMode

logger = logging.getLogger(__name__)

DEVICE_CHECK_URL = "https://api.devicecheck.apple.com/v1/validate_device_token"
DEVICE_CHECK_SANDBOX_URL = "https://api.development.devicecheck.apple.com/v1/validate_device_token"


class InvalidSigningKey(Exception):
    pass


def load_signing_key(pem: str) -> ec.EllipticCurvePrivateKey:
    try:
        key = load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise InvalidSigningKey("DeviceCheck key is not a valid PEM private key") from exc
    if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
        raise InvalidSigningKey("DeviceCheck key must be an ECDSA P-256 private key")
    return key


class _RegisteredKey:
    def __init__(self, config: DeviceCheckConfig) -> None:
        self.pem = config.private_key_pem
        self.key = load_signing_key(config.private_key_pem)


class DeviceCheckVerifier(AttestationVerifier):
    """Validates ``X-Apple-Device-Token`` against Apple's DeviceCheck service.

    Requests to Apple carry an ES256 JWT signed with the credential's key,
    with ``kid`` set to the key id and ``iss`` to the developer team id. Parsed
    keys are registered by key id so each PEM is loaded once.
    """

    mode = ValidationMode.DEVICE_CHECK

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        timeout: float = 10.0,
        excluded_paths: Iterable[str] = ("health",),
        sandbox_fallback: bool = True,
        signing_keys: AttestationClientCache[_RegisteredKey] | None = None,
        production_url: str = DEVICE_CHECK_URL,
        sandbox_url: str = DEVICE_CHECK_SANDBOX_URL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.http_client = http_client
        self.timeout = timeout
        self.excluded_paths = frozenset(path.strip("/") for path in excluded_paths)
        self.sandbox_fallback = sandbox_fallback
        self.signing_keys = signing_keys or AttestationClientCache(max_size=1024)
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self.clock = clock

    async def _signing_key(self, config: DeviceCheckConfig) -> ec.EllipticCurvePrivateKey:
        registered = await self.signing_keys.get_or_create(
            f"{config.team_id}:{config.key_id}",
            lambda: _RegisteredKey(config),
            is_current=lambda entry: entry.pem == config.private_key_pem,
        )
        return registered.key

    def _authorization(self, config: DeviceCheckConfig, key: ec.EllipticCurvePrivateKey) -> str:
        try:
            token = jwt.encode(
                {"iss": config.team_id, "iat": int(self.clock())},
                key,
                algorithm="ES256",
                headers={"kid": config.key_id},
            )
        except PyJWTError as exc:
            raise InvalidSigningKey("DeviceCheck key could not sign the request") from exc
        return f"Bearer {token}"

    async def _validate(self, url: str, authorization: str, device_token: str) -> int:
        body = {
            "device_token": device_token,
            "transaction_id": str(uuid.uuid4()),
            "timestamp": int(self.clock() * 1000),
        }
        response = await self.http_client.post(
            url,
            json=body,
            headers={"Authorization": authorization},
            timeout=self.timeout,
        )
        return response.status_code

    async def verify(self, credential: Credential, request: ProxyRequest) -> AttestationOutcome:
        if request.path.strip("/") in self.excluded_paths:
            return AttestationOutcome(mode=self.mode, bypassed=True)

        config = credential.device_check
        if config is None:
            raise AttestationFailure(code="attestation_not_configured")

        device_token = request.header(APPLE_DEVICE_TOKEN_HEADER)
        if not device_token:
            raise AttestationFailure(message="Device token missing", code="device_token_missing")

        if bypass_matches(device_token, config.bypass_token):
            logger.info("device check bypass token accepted", extra={"credential_id": credential.id})
            return AttestationOutcome(mode=self.mode, bypassed=True)

        try:
            authorization = self._authorization(config, await self._signing_key(config))
        except InvalidSigningKey as exc:
            logger.error("device check key unusable", extra={"credential_id": credential.id, "error": str(exc)})
            raise AttestationFailure(code="attestation_not_configured") from exc

        try:
            status = await self._validate(self.production_url, authorization, device_token)
            if status != 200 and self.sandbox_fallback:
                status = await self._validate(self.sandbox_url, authorization, device_token)
        except httpx.TimeoutException as exc:
            raise AttestationFailure(code="attestation_timeout") from exc
        except httpx.HTTPError as exc:
            raise AttestationFailure(code="attestation_unavailable") from exc

        if status != 200:
            raise AttestationFailure(code="device_token_invalid")
        return AttestationOutcome(mode=self.mode)

    async def close(self) -> None:
        await self.signing_keys.clear()

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from halfkey.attestation.base import AttestationOutcome, AttestationVerifier, bypass_matches
from halfkey.attestation.client_cache import AttestationClientCache
from halfkey.attestation.google_auth import GoogleAuthError, GoogleServiceAccountClient
from halfkey.models.credentials import Credential, PlayIntegrityConfig
from halfkey.models.errors import AttestationFailure, AttestationRejected
from halfkey.models.requests import PLAY_INTEGRITY_TOKEN_HEADER, ProxyRequest, ValidationMode

logger = logging.getLogger(__name__)

DECODE_INTEGRITY_TOKEN_URL = "https://playintegrity.googleapis.com/v1/{package_name}:decodeIntegrityToken"
MEETS_DEVICE_INTEGRITY = "MEETS_DEVICE_INTEGRITY"


def evaluate_verdict(payload: dict[str, Any], config: PlayIntegrityConfig) -> None:
    """Raise ``AttestationRejected`` unless the decoded token satisfies ``config``."""
    token_payload = payload.get("tokenPayloadExternal") or {}

    device_verdicts = (token_payload.get("deviceIntegrity") or {}).get("deviceRecognitionVerdict") or []
    if MEETS_DEVICE_INTEGRITY not in device_verdicts:
        raise AttestationRejected(code="device_integrity_not_met")

    app_integrity = token_payload.get("appIntegrity") or {}
    if app_integrity.get("appRecognitionVerdict") not in config.allowed_app_verdicts:
        raise AttestationRejected(code="app_not_recognized")

    package_name = app_integrity.get("packageName")
    if package_name and package_name != config.package_name:
        raise AttestationRejected(code="package_mismatch")


class PlayIntegrityVerifier(AttestationVerifier):
    mode = ValidationMode.PLAY_INTEGRITY

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_cache: AttestationClientCache[GoogleServiceAccountClient] | None = None,
        timeout: float = 10.0,
        decode_url: str = DECODE_INTEGRITY_TOKEN_URL,
    ) -> None:
        self.http_client = http_client
        self.client_cache = client_cache or AttestationClientCache(on_evict=close_google_client)
        self.timeout = timeout
        self.decode_url = decode_url

    async def _client_for(self, config: PlayIntegrityConfig) -> GoogleServiceAccountClient:
        return await self.client_cache.get_or_create(
            config.project_id,
            lambda: GoogleServiceAccountClient(config.service_account, self.http_client, timeout=self.timeout),
            is_current=lambda client: client.matches(config.service_account),
        )

    async def verify(self, credential: Credential, request: ProxyRequest) -> AttestationOutcome:
        config = credential.play_integrity
        if config is None:
            raise AttestationFailure(code="attestation_not_configured")

        token = request.header(PLAY_INTEGRITY_TOKEN_HEADER)
        if not token:
            raise AttestationFailure(message="Integrity token missing", code="integrity_token_missing")

        if bypass_matches(token, config.bypass_token):
            logger.info("play integrity bypass token accepted", extra={"credential_id": credential.id})
            return AttestationOutcome(mode=self.mode, bypassed=True)

        url = self.decode_url.format(package_name=quote(config.package_name, safe=""))
        try:
            client = await self._client_for(config)
            response = await client.post(url, json={"integrity_token": token}, timeout=self.timeout)
        except GoogleAuthError as exc:
            logger.error("google authentication failed", extra={"credential_id": credential.id, "error": str(exc)})
            raise AttestationFailure(code="attestation_unavailable") from exc
        except httpx.TimeoutException as exc:
            raise AttestationFailure(code="attestation_timeout") from exc
        except httpx.HTTPError as exc:
            raise AttestationFailure(code="attestation_unavailable") from exc

        if response.status_code != 200:
            logger.warning(
                "decodeIntegrityToken rejected token",
                extra={"credential_id": credential.id, "status_code": response.status_code},
            )
            raise AttestationFailure(code="integrity_token_invalid")

        try:
            payload = response.json()
        except ValueError as exc:
            raise AttestationFailure(code="integrity_token_invalid") from exc

        evaluate_verdict(payload, config)
        return AttestationOutcome(mode=self.mode)

    async def close(self) -> None:
        await self.client_cache.clear()


async def close_google_client(client: GoogleServiceAccountClient) -> None:
    await client.close()

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import httpx
import jwt
from jwt.exceptions import PyJWTError

logger = logging.getLogger(__name__)

PLAY_INTEGRITY_SCOPE = "https://www.googleapis.com/auth/playintegrity"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class GoogleAuthError(Exception):
    pass


class GoogleServiceAccountClient:
    """Signs requests to Google APIs with a service account's OAuth2 access token.

    The access token comes from the JWT bearer grant: an RS256 assertion signed
    with the service account key is exchanged at ``token_uri``. Tokens are reused
    until shortly before they expire.
    """

    def __init__(
        self,
        service_account: dict[str, Any],
        http_client: httpx.AsyncClient,
        scopes: tuple[str, ...] = (PLAY_INTEGRITY_SCOPE,),
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_email = service_account.get("client_email")
        self.private_key_id = service_account.get("private_key_id")
        self._private_key = service_account.get("private_key")
        self.token_uri = service_account.get("token_uri") or DEFAULT_TOKEN_URI
        if not self.client_email or not self._private_key:
            raise GoogleAuthError("service account credentials require client_email and private_key")

        self.http_client = http_client
        self.scopes = scopes
        self.timeout = timeout
        self.clock = clock
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def matches(self, service_account: dict[str, Any]) -> bool:
        return (
            service_account.get("client_email") == self.client_email
            and service_account.get("private_key_id") == self.private_key_id
        )

    def _assertion(self, now: int) -> str:
        claims = {
            "iss": self.client_email,
            "scope": " ".join(self.scopes),
            "aud": self.token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        headers = {"kid": self.private_key_id} if self.private_key_id else None
        try:
            return jwt.encode(claims, self._private_key, algorithm="RS256", headers=headers)
        except (PyJWTError, ValueError, TypeError) as exc:
            raise GoogleAuthError("service account private key could not sign the assertion") from exc

    async def access_token(self) -> str:
        async with self._lock:
            now = self.clock()
            if self._access_token and now < self._expires_at - 60:
                return self._access_token

            try:
                response = await self.http_client.post(
                    self.token_uri,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": self._assertion(int(now))},
                    timeout=self.timeout,
                )
            except httpx.HTTPError as exc:
                raise GoogleAuthError(f"token exchange failed: {exc.__class__.__name__}") from exc

            if response.status_code != 200:
                raise GoogleAuthError(f"token exchange returned status {response.status_code}")

            payload = response.json()
            token = payload.get("access_token")
            if not token:
                raise GoogleAuthError("token exchange returned no access_token")

            self._access_token = str(token)
            self._expires_at = now + float(payload.get("expires_in") or 3600)
            return self._access_token

    async def post(self, url: str, json: dict[str, Any], timeout: float | None = None) -> httpx.Response:
        token = await self.access_token()
        return await self.http_client.post(
            url,
            json=json,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout or self.timeout,
        )

    async def close(self) -> None:
        self._access_token = None
        self._expires_at = 0.0

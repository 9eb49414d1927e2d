from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator

APPLE_DEVICE_TOKEN_HEADER = "X-Apple-Device-Token"
PLAY_INTEGRITY_TOKEN_HEADER = "X-Play-Integrity-Key"


class ValidationMode(str, Enum):
    DEVICE_CHECK = "device-check"
    PLAY_INTEGRITY = "play-integrity"
    WEB = "web"


@dataclass(frozen=True)
class ProxyHeaderNames:
    """Names of the gateway control headers, optionally namespaced by a prefix."""

    prefix: str = ""

    @property
    def association_id(self) -> str:
        return f"{self.prefix}ASSOCIATION_ID"

    @property
    def http_method(self) -> str:
        return f"{self.prefix}HTTP_METHOD"

    @property
    def destination(self) -> str:
        return f"{self.prefix}DESTINATION"

    @property
    def validation_mode(self) -> str:
        return f"{self.prefix}VALIDATION_MODE"

    @property
    def partial_key_marker(self) -> str:
        return f"%{self.prefix}PARTIAL_KEY:"

    def control_headers(self) -> frozenset[str]:
        names = {
            self.association_id,
            self.http_method,
            self.destination,
            self.validation_mode,
            APPLE_DEVICE_TOKEN_HEADER,
            PLAY_INTEGRITY_TOKEN_HEADER,
            "Host",
        }
        return frozenset(name.lower() for name in names)


@dataclass
class ProxyRequest:
    association_id: str | None
    override_method: str | None
    destination_url: str | None
    validation_mode: str | None
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: AsyncIterator[bytes] | bytes = b""
    path: str = "/proxy"

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    @classmethod
    def from_headers(
        cls,
        headers: list[tuple[str, str]],
        names: ProxyHeaderNames,
        body: AsyncIterator[bytes] | bytes = b"",
        path: str = "/proxy",
    ) -> ProxyRequest:
        request = cls(
            association_id=None,
            override_method=None,
            destination_url=None,
            validation_mode=None,
            headers=list(headers),
            body=body,
            path=path,
        )
        request.association_id = request.header(names.association_id)
        request.override_method = request.header(names.http_method)
        request.destination_url = request.header(names.destination)
        request.validation_mode = request.header(names.validation_mode)
        return request

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

PLAY_RECOGNIZED = "PLAY_RECOGNIZED"
UNRECOGNIZED_VERSION = "UNRECOGNIZED_VERSION"
UNEVALUATED = "UNEVALUATED"
APP_RECOGNITION_VERDICTS = frozenset({PLAY_RECOGNIZED, UNRECOGNIZED_VERSION, UNEVALUATED})


def split_host_and_path(url: str) -> tuple[str | None, str]:
    """Return ``(host, path)`` of an absolute URL without case-folding the host."""
    parts = urlsplit(url)
    netloc = parts.netloc.rsplit("@", 1)[-1]
    if netloc.startswith("["):
        host = netloc[1:].split("]", 1)[0]
    else:
        host = netloc.split(":", 1)[0]
    return (host or None), parts.path


@dataclass(frozen=True)
class WhitelistEntry:
    host: str
    path: str = ""

    @classmethod
    def parse(cls, value: str) -> WhitelistEntry:
        """Build an entry from a stored whitelist string.

        Accepts ``api.example.com/v1`` as well as ``https://api.example.com/v1``;
        the scheme is ignored.
        """
        stripped = value.strip().replace("https://", "", 1).replace("http://", "", 1)
        host, path = split_host_and_path(f"http://{stripped}")
        if host is None:
            raise ValueError(f"whitelist entry has no host: {value!r}")
        return cls(host=host, path=path)

    def allows_path(self, path: str) -> bool:
        return path.startswith(f"{self.path}/") or path.endswith(self.path)


@dataclass(frozen=True)
class DeviceCheckConfig:
    key_id: str
    team_id: str
    private_key_pem: str = field(repr=False)
    bypass_token: str = field(default="", repr=False)


@dataclass(frozen=True)
class PlayIntegrityConfig:
    package_name: str
    service_account: dict[str, Any] = field(repr=False, hash=False)
    bypass_token: str = field(default="", repr=False)
    allowed_app_verdicts: frozenset[str] = frozenset({PLAY_RECOGNIZED})

    @property
    def project_id(self) -> str:
        return str(self.service_account.get("project_id") or self.service_account.get("client_email") or "")

    @property
    def client_email(self) -> str | None:
        return self.service_account.get("client_email")


@dataclass(frozen=True)
class Credential:
    id: str
    server_share: str = field(repr=False)
    whitelist: tuple[WhitelistEntry, ...] = ()
    rate_limit: int | None = None
    allows_web: bool = False
    device_check: DeviceCheckConfig | None = None
    play_integrity: PlayIntegrityConfig | None = None
    owner_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.rate_limit is not None and self.rate_limit < 0:
            object.__setattr__(self, "rate_limit", None)

    def entries_for_host(self, host: str) -> list[WhitelistEntry]:
        return [entry for entry in self.whitelist if entry.host == host]

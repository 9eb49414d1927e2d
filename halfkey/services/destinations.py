from __future__ import annotations

import logging
from collections.abc import Iterable
from urllib.parse import urlsplit

from halfkey.models.credentials import Credential, split_host_and_path
from halfkey.models.errors import ClientHeaderError, WhitelistViolation

logger = logging.getLogger(__name__)

FORWARDABLE_SCHEMES = frozenset({"http", "https"})


class DestinationPolicy:
    """Decides whether a destination URL may receive a reconstructed key.

    Hosts on the blacklist are refused outright. Otherwise the host must equal
    the host of a whitelist entry and the path must start with
    ``entry.path + "/"`` or end with ``entry.path`` for one of those entries.
    """

    def __init__(self, blacklisted_hosts: Iterable[str] = ()) -> None:
        self.blacklisted_hosts = frozenset(host for host in blacklisted_hosts if host)

    @staticmethod
    def parse(destination_url: str) -> tuple[str, str]:
        scheme = urlsplit(destination_url).scheme.lower()
        if scheme not in FORWARDABLE_SCHEMES:
            raise ClientHeaderError(message="Destination must be an absolute http(s) URL", code="invalid_destination")
        host, path = split_host_and_path(destination_url)
        if host is None:
            raise ClientHeaderError(message="Destination must be an absolute http(s) URL", code="invalid_destination")
        return host, path

    def check(self, credential: Credential, destination_url: str) -> None:
        host, path = self.parse(destination_url)

        if host in self.blacklisted_hosts or host.lower() in self.blacklisted_hosts:
            logger.warning("blacklisted destination", extra={"credential_id": credential.id, "host": host})
            raise WhitelistViolation(code="destination_blocked")

        candidates = credential.entries_for_host(host)
        if not candidates:
            logger.warning("destination host not whitelisted", extra={"credential_id": credential.id, "host": host})
            raise WhitelistViolation(code="destination_not_whitelisted")

        if any(entry.allows_path(path) for entry in candidates):
            return

        logger.warning("destination path not whitelisted", extra={"credential_id": credential.id, "host": host})
        raise WhitelistViolation(code="destination_not_whitelisted")

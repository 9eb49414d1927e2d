from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable
from typing import Any

from halfkey.models.credentials import (
    PLAY_RECOGNIZED,
    Credential,
    DeviceCheckConfig,
    PlayIntegrityConfig,
    WhitelistEntry,
)

logger = logging.getLogger(__name__)


class CredentialRepository:
    """Read-only lookup of credential records by association id."""

    async def get(self, credential_id: str) -> Credential | None:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True


class InMemoryCredentialRepository(CredentialRepository):
    def __init__(self, credentials: Iterable[Credential] = ()) -> None:
        self.records: dict[str, Credential] = {credential.id: credential for credential in credentials}
        self.calls = 0

    async def get(self, credential_id: str) -> Credential | None:
        self.calls += 1
        return self.records.get(credential_id)


def parse_whitelist(values: Iterable[str] | None) -> tuple[WhitelistEntry, ...]:
    entries: list[WhitelistEntry] = []
    for value in values or []:
        try:
            entries.append(WhitelistEntry.parse(value))
        except ValueError:
            logger.warning("skipping unparsable whitelist entry")
    return tuple(entries)


def _json_value(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PrismaCredentialRepository(CredentialRepository):
    def __init__(self, prisma_client: Any | None = None) -> None:
        self.prisma = prisma_client

    async def ping(self) -> bool:
        if self.prisma is None:
            return True
        await self.prisma.query_raw("SELECT 1")
        return True

    async def get(self, credential_id: str) -> Credential | None:
        if self.prisma is None:
            return None

        try:
            key_uuid = str(uuid.UUID(credential_id))
        except (ValueError, AttributeError, TypeError):
            return None

        # Raw SQL keeps the repository usable without a generated Prisma schema.
        rows = await self.prisma.query_raw(
            """
            SELECT
                k.id,
                k.name,
                k.partial_key,
                k.rate_limit,
                k.allows_web,
                k.whitelisted_urls,
                p.user_id,
                d.secret_key AS dc_secret_key,
                d.key_id AS dc_key_id,
                d.team_id AS dc_team_id,
                d.bypass_token AS dc_bypass_token,
                g.package_name AS pi_package_name,
                g.gcloud_json AS pi_gcloud_json,
                g.bypass_token AS pi_bypass_token,
                g.allowed_app_recognition_verdicts AS pi_allowed_verdicts
            FROM api_keys k
            JOIN projects p
                ON p.id = k.project_id
            LEFT JOIN device_check_keys d
                ON d.project_id = k.project_id
            LEFT JOIN play_integrity_configs g
                ON g.project_id = k.project_id
            WHERE k.id = $1::uuid
            LIMIT 1
            """,
            key_uuid,
        )
        if not rows:
            return None
        return self._to_credential(rows[0])

    @staticmethod
    def _to_credential(row: dict[str, Any]) -> Credential:
        device_check = None
        if row.get("dc_secret_key"):
            device_check = DeviceCheckConfig(
                key_id=row["dc_key_id"],
                team_id=row["dc_team_id"],
                private_key_pem=row["dc_secret_key"],
                bypass_token=row.get("dc_bypass_token") or "",
            )

        play_integrity = None
        if row.get("pi_gcloud_json"):
            verdicts = row.get("pi_allowed_verdicts") or [PLAY_RECOGNIZED]
            play_integrity = PlayIntegrityConfig(
                package_name=row.get("pi_package_name") or "",
                service_account=_json_value(row["pi_gcloud_json"]),
                bypass_token=row.get("pi_bypass_token") or "",
                allowed_app_verdicts=frozenset(_json_value(verdicts)),
            )

        return Credential(
            id=str(row["id"]),
            name=row.get("name"),
            server_share=row["partial_key"],
            whitelist=parse_whitelist(_json_value(row.get("whitelisted_urls"))),
            rate_limit=row.get("rate_limit"),
            allows_web=bool(row.get("allows_web")),
            device_check=device_check,
            play_integrity=play_integrity,
            owner_id=str(row["user_id"]) if row.get("user_id") else None,
        )

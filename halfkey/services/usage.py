from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from halfkey.metrics import increment_usage_event
from halfkey.models.credentials import Credential

logger = logging.getLogger(__name__)


class UsageRecorder:
    """External usage collaborator. The default records nothing and never refuses."""

    async def has_quota(self, credential: Credential) -> bool:
        return True

    async def increment(self, credential: Credential) -> None:
        return None

    async def close(self) -> None:
        return None


class WebhookUsageRecorder(UsageRecorder):
    """Posts one usage event per forwarded request to a billing endpoint."""

    def __init__(self, url: str, http_client: httpx.AsyncClient, timeout: float = 5.0) -> None:
        self.url = url
        self.http_client = http_client
        self.timeout = timeout

    async def increment(self, credential: Credential) -> None:
        payload: dict[str, Any] = {
            "credential_id": credential.id,
            "owner_id": credential.owner_id,
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }
        response = await self.http_client.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()


class UsageDispatcher:
    """Fires usage increments in the background; failures are logged, never raised."""

    def __init__(self, recorder: UsageRecorder | None = None) -> None:
        self.recorder = recorder or UsageRecorder()
        self._tasks: set[asyncio.Task[Any]] = set()

    async def has_quota(self, credential: Credential) -> bool:
        return await self.recorder.has_quota(credential)

    def dispatch(self, credential: Credential) -> None:
        try:
            task = asyncio.create_task(self._record(credential))
        except RuntimeError:
            logger.warning("no running loop for usage event", extra={"credential_id": credential.id})
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _record(self, credential: Credential) -> None:
        try:
            await self.recorder.increment(credential)
        except Exception:
            increment_usage_event(result="failure")
            logger.exception("usage increment failed", extra={"credential_id": credential.id})
            return
        increment_usage_event(result="success")

    async def drain(self) -> None:
        if not self._tasks:
            return
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.drain()
        self._tasks.clear()
        await self.recorder.close()

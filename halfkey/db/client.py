from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class PrismaClientManager:
    def __init__(self) -> None:
        self.client: Any | None = None

    async def connect(self, database_url: str | None = None) -> None:
        if not database_url:
            self.client = None
            return

        try:
            from prisma import Prisma  # type: ignore
        except Exception:
            logger.warning("database_url is set but the prisma client is not installed; install halfkey-gateway[prisma]")
            self.client = None
            return

        self.client = Prisma(datasource={"url": database_url})
        await self.client.connect()

    async def disconnect(self) -> None:
        if self.client is not None:
            await self.client.disconnect()
            self.client = None

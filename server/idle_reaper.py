from __future__ import annotations

import asyncio
import logging

from shared.protocol import IDLE_REAP_INTERVAL, PERSISTENT_IDLE_TIMEOUT

from .party_registry import PartyRegistry

logger = logging.getLogger(__name__)


class IdleReaper:
    """Periodically deletes persistent parties that stayed empty too long."""

    def __init__(
        self,
        registry: PartyRegistry,
        *,
        interval: float = IDLE_REAP_INTERVAL,
        idle_timeout: float = PERSISTENT_IDLE_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._interval = interval
        self._idle_timeout = idle_timeout

    async def sweep(self) -> list[str]:
        expired = await self._registry.expire_idle_parties(self._idle_timeout)
        if expired:
            logger.info("Idle reaper removed %d persistent parties: %s", len(expired), ", ".join(expired))
        return expired

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Idle reaper sweep failed")

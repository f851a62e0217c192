from __future__ import annotations

import logging
from typing import Optional

from .party_registry import PartyRegistry

logger = logging.getLogger(__name__)


class BroadcastRelay:
    """Fans an encoded frame out to the live members of a party.

    Delivery is at-most-once and best effort: a member whose channel is not
    writable is skipped, never queued or retried.
    """

    def __init__(self, registry: PartyRegistry) -> None:
        self._registry = registry

    async def broadcast_excluding(self, party_code: str, message: str, excluded_connection_id: str) -> int:
        return await self._deliver(party_code, message, exclude=excluded_connection_id)

    async def broadcast_to_all(self, party_code: str, message: str) -> int:
        return await self._deliver(party_code, message)

    async def _deliver(self, party_code: str, message: str, *, exclude: Optional[str] = None) -> int:
        delivered = 0
        for connection_id, channel in await self._registry.recipients(party_code, exclude=exclude):
            if not channel.is_writable:
                logger.debug("Skipping %s in %s: channel not writable", connection_id, party_code)
                continue
            try:
                if channel.deliver(message):
                    delivered += 1
            except Exception:
                logger.exception("Failed to queue message to %s in %s", connection_id, party_code)
        return delivered

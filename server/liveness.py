from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Dict

from shared.protocol import SERVER_HEARTBEAT_INTERVAL

from .connection import Connection

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """Pings every tracked connection and terminates the ones that went quiet.

    A connection must answer the previous probe before the next sweep;
    otherwise its transport is aborted and the regular disconnect path removes
    it from its party. Probes run as their own tasks, so a peer whose ping
    never completes cannot hold up the sweep.
    """

    def __init__(self, interval: float = SERVER_HEARTBEAT_INTERVAL) -> None:
        self._interval = interval
        self._connections: Dict[str, Connection] = {}
        self._probes: Dict[str, asyncio.Task[None]] = {}

    @property
    def interval(self) -> float:
        return self._interval

    def track(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def untrack(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        self._cancel_probe(connection_id)

    def tracked_count(self) -> int:
        return len(self._connections)

    def pending_probes(self) -> int:
        return len(self._probes)

    def sweep(self) -> list[str]:
        """Terminate silent connections and start a new probe for the rest."""

        terminated: list[str] = []
        for connection_id, connection in list(self._connections.items()):
            if not connection.alive:
                logger.warning("Connection %s missed a heartbeat; terminating", connection_id)
                self._connections.pop(connection_id, None)
                self._cancel_probe(connection_id)
                connection.terminate()
                terminated.append(connection_id)
                continue
            connection.alive = False
            task = asyncio.create_task(self._probe(connection))
            self._probes[connection_id] = task
            task.add_done_callback(partial(self._forget_probe, connection_id))
        return terminated

    async def run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    self.sweep()
                except Exception:
                    logger.exception("Heartbeat sweep failed")
        finally:
            for connection_id in list(self._probes):
                self._cancel_probe(connection_id)

    async def _probe(self, connection: Connection) -> None:
        try:
            await connection.probe()
        except Exception as exc:
            logger.warning("Heartbeat probe to %s failed: %s", connection.id, exc)

    def _forget_probe(self, connection_id: str, task: asyncio.Task[None]) -> None:
        if self._probes.get(connection_id) is task:
            del self._probes[connection_id]

    def _cancel_probe(self, connection_id: str) -> None:
        task = self._probes.pop(connection_id, None)
        if task is not None and not task.done():
            task.cancel()

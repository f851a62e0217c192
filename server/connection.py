from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Optional

from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

OUTBOX_LIMIT = 256


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    LEAVING = "leaving"
    CLOSED = "closed"


class Connection:
    """One client socket: outbound queue, liveness flag and lifecycle state.

    Frames handed to :meth:`deliver` are queued and written by a dedicated
    writer task so a slow peer never stalls whoever is broadcasting to it.
    """

    def __init__(self, websocket: Any, *, connection_id: Optional[str] = None, outbox_limit: int = OUTBOX_LIMIT) -> None:
        self.id = connection_id or uuid.uuid4().hex
        self.state = ConnectionState.CONNECTED
        self.alive = True
        self._websocket = websocket
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=outbox_limit)
        self._writer_task: Optional[asyncio.Task[None]] = None

    @property
    def remote_address(self) -> Optional[object]:
        return getattr(self._websocket, "remote_address", None)

    @property
    def is_writable(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self._writer_task is not None
            and not self._writer_task.done()
        )

    def start(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())

    def deliver(self, payload: str) -> bool:
        """Queue a frame without waiting; returns False when it was dropped."""

        if not self.is_writable:
            return False
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Outbox full for connection %s; dropping frame", self.id)
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the socket."""

        writer = self._writer_task
        if writer is None or writer.done():
            return
        joiner = asyncio.ensure_future(self._outbox.join())
        try:
            await asyncio.wait({joiner, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            joiner.cancel()

    async def probe(self) -> None:
        """Send a liveness ping; the pong flips :attr:`alive` back to True."""

        self.alive = False
        try:
            pong_waiter = await self._websocket.ping()
        except ConnectionClosed:
            logger.debug("Probe skipped; connection %s already closed", self.id)
            return
        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self.alive = True

    def terminate(self) -> None:
        """Drop the transport without a closing handshake."""

        transport = getattr(self._websocket, "transport", None)
        if transport is not None:
            transport.abort()

    def begin_leaving(self) -> bool:
        """Move CONNECTED -> LEAVING; False when teardown already started."""

        if self.state != ConnectionState.CONNECTED:
            return False
        self.state = ConnectionState.LEAVING
        return True

    async def close(self) -> None:
        self.state = ConnectionState.CLOSED
        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
        self._drain_outbox()
        try:
            await self._websocket.close()
        except Exception:  # pragma: no cover - cleanup best effort
            logger.debug("Error while closing websocket for %s", self.id, exc_info=True)

    async def _write_loop(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                await self._websocket.send(payload)
            except ConnectionClosed:
                logger.debug("Connection %s closed while sending", self.id)
                self._drain_outbox()
                return
            except Exception:
                logger.exception("Failed to send frame to %s", self.id)
                self._drain_outbox()
                return
            finally:
                self._outbox.task_done()

    def _drain_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

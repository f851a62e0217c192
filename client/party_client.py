from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from shared.errors import MalformedMessage
from shared.protocol import (
    CLIENT_KEEPALIVE_INTERVAL,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
    ClientMessageType,
    ServerMessageType,
    SyncAction,
    SyncData,
    VideoDescriptor,
    decode_message,
    encode_message,
)

from .sync_controller import SyncController

logger = logging.getLogger(__name__)

MessageCallback = Callable[[ServerMessageType, Dict[str, Any]], Union[Awaitable[None], None]]
Connector = Callable[..., Awaitable[ClientConnection]]


def reconnect_delay(
    attempt: int,
    *,
    base: float = RECONNECT_BASE_DELAY,
    maximum: float = RECONNECT_MAX_DELAY,
) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at ``maximum``."""

    return min(base * (2 ** max(0, attempt)), maximum)


@dataclass(slots=True)
class PartySession:
    party_code: str
    username: str
    password: Optional[str] = field(default=None, repr=False)


class PartyClient:
    """Relay connection for one viewer.

    Keeps the transport alive with application-level pings, reconnects with
    exponential backoff, and re-joins the last party explicitly after a
    reconnect since the relay has no session resumption.
    """

    def __init__(
        self,
        url: str,
        *,
        controller: Optional[SyncController] = None,
        on_message: Optional[MessageCallback] = None,
        keepalive_interval: float = CLIENT_KEEPALIVE_INTERVAL,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY,
        rejoin: bool = True,
        connector: Connector = connect,
    ) -> None:
        self._url = url
        self.controller = controller
        self._on_message = on_message
        self._keepalive_interval = keepalive_interval
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._rejoin = rejoin
        self._connector = connector
        self._websocket: Optional[ClientConnection] = None
        self._connected = asyncio.Event()
        self._stop = False
        self._reconnect_attempt = 0
        self._keepalive_task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task[Any]] = set()
        self._session: Optional[PartySession] = None
        self._pending_password: Optional[str] = None
        self._video: Optional[VideoDescriptor] = None
        self._announced_url: Optional[str] = None
        self.participants: list[dict[str, Any]] = []
        self.shared_video: Optional[VideoDescriptor] = None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    @property
    def party_code(self) -> Optional[str]:
        return self._session.party_code if self._session else None

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def run(self) -> None:
        """Connect and keep reconnecting until :meth:`close` is called."""

        while not self._stop:
            try:
                websocket = await self._connector(self._url, ping_interval=None)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Could not connect to %s: %s", self._url, exc)
                await self._backoff()
                continue

            await self._on_open(websocket)
            try:
                async for frame in websocket:
                    await self._handle_frame(frame)
            except ConnectionClosed as exc:
                logger.warning("Relay connection lost: %s", exc)
            finally:
                await self._on_close()
            if not self._stop:
                await self._backoff()

    async def close(self) -> None:
        self._stop = True
        websocket = self._websocket
        await self._on_close()
        if websocket is not None:
            try:
                await websocket.close()
            except Exception:
                logger.debug("Error while closing relay connection", exc_info=True)
        for task in list(self._background):
            task.cancel()

    async def send(self, message_type: ClientMessageType, data: Optional[Dict[str, Any]] = None) -> bool:
        return await self._send_raw(encode_message(message_type, data))

    async def create_party(self, username: str, *, password: Optional[str] = None, persistent: bool = False) -> bool:
        self._pending_password = password
        payload: Dict[str, Any] = {"username": username, "persistent": persistent}
        if password:
            payload["password"] = password
        return await self.send(ClientMessageType.CREATE_PARTY, payload)

    async def join(self, party_code: str, username: str, *, password: Optional[str] = None) -> bool:
        self._pending_password = password
        payload: Dict[str, Any] = {"partyCode": party_code.strip().upper(), "username": username}
        if password:
            payload["password"] = password
        return await self.send(ClientMessageType.JOIN, payload)

    async def leave(self) -> bool:
        return await self.send(ClientMessageType.LEAVE)

    async def send_chat(self, message: str) -> bool:
        return await self.send(ClientMessageType.CHAT, {"message": message})

    async def announce_video(self, descriptor: VideoDescriptor, *, force: bool = False) -> bool:
        """Report the local video; repeated URLs are skipped unless forced."""

        self._video = descriptor
        if self._session is None:
            return False
        if not force and descriptor.url == self._announced_url:
            return False
        sent = await self.send(ClientMessageType.VIDEO_INFO, {"data": descriptor.to_dict()})
        if sent:
            self._announced_url = descriptor.url
        return sent

    def handle_player_event(self, action: Union[SyncAction, str]) -> bool:
        """Player callback hook; queues a sync frame unless the event is an echo."""

        if self.controller is None or not self.connected:
            return False
        command = self.controller.handle_local_event(action)
        if command is None:
            return False
        self._spawn(self._send_raw(command.to_message()))
        return True

    async def _send_raw(self, payload: str) -> bool:
        websocket = self._websocket
        if websocket is None:
            logger.debug("Not connected; dropping outbound frame")
            return False
        try:
            await websocket.send(payload)
        except ConnectionClosed:
            logger.debug("Connection closed while sending")
            return False
        return True

    async def _backoff(self) -> None:
        delay = reconnect_delay(
            self._reconnect_attempt,
            base=self._reconnect_base_delay,
            maximum=self._reconnect_max_delay,
        )
        self._reconnect_attempt += 1
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._reconnect_attempt)
        await asyncio.sleep(delay)

    async def _on_open(self, websocket: ClientConnection) -> None:
        logger.info("Connected to relay %s", self._url)
        self._websocket = websocket
        self._reconnect_attempt = 0
        self._connected.set()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        if self._rejoin and self._session is not None:
            session = self._session
            logger.info("Re-joining party %s", session.party_code)
            await self.join(session.party_code, session.username, password=session.password)

    async def _on_close(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        self._websocket = None
        self._connected.clear()
        self._announced_url = None
        if self.controller is not None:
            self.controller.active = False

    async def _keepalive_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._keepalive_interval)
                await self.send(ClientMessageType.PING)
        except asyncio.CancelledError:
            pass

    async def _handle_frame(self, frame: Union[str, bytes]) -> None:
        try:
            payload = decode_message(frame)
        except MalformedMessage:
            logger.warning("Ignoring malformed frame from relay")
            return
        try:
            message_type = ServerMessageType(payload["type"])
        except ValueError:
            logger.debug("Unknown message type from relay: %s", payload["type"])
            return
        try:
            await self._apply(message_type, payload)
        except Exception:
            logger.exception("Error while handling relay message %s", message_type.value)
        await self._dispatch(message_type, payload)

    async def _apply(self, message_type: ServerMessageType, payload: Dict[str, Any]) -> None:
        if message_type in (ServerMessageType.PARTY_CREATED, ServerMessageType.JOINED):
            self._session = PartySession(
                party_code=str(payload.get("partyCode", "")),
                username=str(payload.get("username", "")),
                password=self._pending_password,
            )
            if message_type == ServerMessageType.JOINED:
                self.participants = list(payload.get("participants") or [])
                video = payload.get("video")
                self.shared_video = VideoDescriptor.from_dict(video) if video else None
            if self.controller is not None:
                self.controller.active = True
            logger.info("In party %s as %s", self._session.party_code, self._session.username)
            if self._video is not None:
                await self.announce_video(self._video, force=True)
        elif message_type == ServerMessageType.LEFT:
            self._session = None
            self.participants = []
            self.shared_video = None
            self._announced_url = None
            if self.controller is not None:
                self.controller.active = False
        elif message_type == ServerMessageType.PARTICIPANTS:
            self.participants = list(payload.get("participants") or [])
        elif message_type == ServerMessageType.SYNC:
            if self.controller is not None:
                self.controller.apply_remote(payload.get("action"), SyncData.from_dict(payload.get("data")))
        elif message_type == ServerMessageType.VIDEO_INFO:
            self.shared_video = VideoDescriptor.from_dict(payload.get("data"))
        elif message_type == ServerMessageType.ERROR:
            logger.warning("Relay error: %s", payload.get("message"))
        elif message_type == ServerMessageType.CHAT:
            logger.info("[chat] %s: %s", payload.get("username"), payload.get("message"))
        elif message_type == ServerMessageType.PONG:
            logger.debug("Keep-alive acknowledged")

    async def _dispatch(self, message_type: ServerMessageType, payload: Dict[str, Any]) -> None:
        if self._on_message is None:
            return
        try:
            result = self._on_message(message_type, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling relay message %s", message_type.value)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

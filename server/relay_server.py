from __future__ import annotations

import logging
from typing import Dict, Optional, Union

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from shared.errors import MalformedMessage, NotInParty, RelayError
from shared.protocol import (
    MAX_TRANSPORT_FRAME_BYTES,
    ChatRequest,
    ClientMessage,
    CreatePartyRequest,
    JoinRequest,
    LeaveRequest,
    PingRequest,
    ServerMessageType,
    SyncRequest,
    VideoInfoRequest,
    encode_message,
    parse_client_message,
)

from .broadcast import BroadcastRelay
from .connection import Connection
from .liveness import LivenessMonitor
from .party_registry import PartyRegistry

logger = logging.getLogger(__name__)


class RelayServer:
    """WebSocket front end: one :class:`Connection` per client, frames routed to the registry."""

    def __init__(
        self,
        host: str,
        port: int,
        registry: PartyRegistry,
        *,
        relay: Optional[BroadcastRelay] = None,
        liveness: Optional[LivenessMonitor] = None,
        max_frame_bytes: int = MAX_TRANSPORT_FRAME_BYTES,
    ) -> None:
        self._host = host
        self._port = port
        self._registry = registry
        self._relay = relay or BroadcastRelay(registry)
        self._liveness = liveness
        self._max_frame_bytes = max_frame_bytes
        self._connections: Dict[str, Connection] = {}
        self._server: Optional[Server] = None

    @property
    def port(self) -> int:
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        # Protocol-level keepalive is off; LivenessMonitor owns the ping schedule.
        self._server = await serve(
            self._handle_client,
            self._host,
            self._port,
            ping_interval=None,
            max_size=self._max_frame_bytes,
        )
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets)
        logger.info("Relay server listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        for connection in list(self._connections.values()):
            await self.disconnect(connection)
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Relay server stopped")

    async def _handle_client(self, websocket: ServerConnection) -> None:
        connection = Connection(websocket)
        self.open_connection(connection)
        logger.info("New connection %s from %s", connection.id, connection.remote_address)
        try:
            async for frame in websocket:
                await self.handle_frame(connection, frame)
        except ConnectionClosed as exc:
            logger.info("Connection %s closed abruptly: %s", connection.id, exc)
        except Exception:
            logger.exception("Error while handling connection %s", connection.id)
        finally:
            await self.disconnect(connection)

    def open_connection(self, connection: Connection) -> None:
        connection.start()
        self._connections[connection.id] = connection
        if self._liveness is not None:
            self._liveness.track(connection)

    async def disconnect(self, connection: Connection) -> None:
        """Single teardown path for normal closes, transport errors and evictions."""

        if not connection.begin_leaving():
            return
        self._connections.pop(connection.id, None)
        if self._liveness is not None:
            self._liveness.untrack(connection.id)
        try:
            party_code = await self._registry.leave_party(connection.id)
            if party_code:
                await self._broadcast_participants(party_code)
        finally:
            await connection.close()
            logger.info("Connection %s closed", connection.id)

    async def handle_frame(self, connection: Connection, frame: Union[str, bytes]) -> None:
        try:
            message = parse_client_message(frame)
            await self._dispatch(connection, message)
        except RelayError as exc:
            logger.info("Rejected frame from %s: %s", connection.id, exc.message)
            self._send(connection, ServerMessageType.ERROR, {"message": exc.message})
        except Exception:
            logger.exception("Unexpected error while processing frame from %s", connection.id)
            self._send(connection, ServerMessageType.ERROR, {"message": "Internal server error"})

    async def _dispatch(self, connection: Connection, message: ClientMessage) -> None:
        if isinstance(message, CreatePartyRequest):
            await self._handle_create_party(connection, message)
        elif isinstance(message, JoinRequest):
            await self._handle_join(connection, message)
        elif isinstance(message, LeaveRequest):
            await self._handle_leave(connection)
        elif isinstance(message, SyncRequest):
            await self._handle_sync(connection, message)
        elif isinstance(message, VideoInfoRequest):
            await self._handle_video_info(connection, message)
        elif isinstance(message, PingRequest):
            self._send(connection, ServerMessageType.PONG)
        elif isinstance(message, ChatRequest):
            await self._handle_chat(connection, message)
        else:
            raise MalformedMessage(f"Unhandled message {type(message).__name__}")

    async def _handle_create_party(self, connection: Connection, message: CreatePartyRequest) -> None:
        result = await self._registry.create_party(
            connection.id,
            connection,
            message.username,
            password=message.password,
            persistent=message.persistent,
        )
        if result.previous_party:
            await self._broadcast_participants(result.previous_party)
        self._send(
            connection,
            ServerMessageType.PARTY_CREATED,
            {
                "partyCode": result.party_code,
                "username": result.username,
                "hasPassword": result.has_password,
                "persistent": result.persistent,
            },
        )
        await self._broadcast_participants(result.party_code)

    async def _handle_join(self, connection: Connection, message: JoinRequest) -> None:
        result = await self._registry.join_party(
            connection.id,
            connection,
            message.party_code,
            message.username,
            password=message.password,
        )
        if result.previous_party:
            await self._broadcast_participants(result.previous_party)
        self._send(
            connection,
            ServerMessageType.JOINED,
            {
                "partyCode": result.party_code,
                "username": result.username,
                "participants": [view.to_dict() for view in result.participants],
                "video": result.video.to_dict() if result.video else None,
            },
        )
        await self._broadcast_participants(result.party_code)

    async def _handle_leave(self, connection: Connection) -> None:
        party_code = await self._registry.leave_party(connection.id)
        if party_code:
            await self._broadcast_participants(party_code)
        self._send(connection, ServerMessageType.LEFT)

    async def _handle_sync(self, connection: Connection, message: SyncRequest) -> None:
        membership = await self._registry.require_membership(connection.id)
        await self._relay.broadcast_excluding(
            membership.party_code,
            encode_message(
                ServerMessageType.SYNC,
                {
                    "action": message.action.value,
                    "data": message.data.to_dict(),
                    "username": membership.username,
                },
            ),
            connection.id,
        )
        logger.debug("Sync %s from %s in %s", message.action.value, membership.username, membership.party_code)

    async def _handle_video_info(self, connection: Connection, message: VideoInfoRequest) -> None:
        membership = await self._registry.record_video_info(connection.id, message.descriptor)
        await self._relay.broadcast_to_all(
            membership.party_code,
            encode_message(
                ServerMessageType.VIDEO_INFO,
                {"data": message.descriptor.to_dict(), "username": membership.username},
            ),
        )
        await self._broadcast_participants(membership.party_code)

    async def _handle_chat(self, connection: Connection, message: ChatRequest) -> None:
        membership = await self._registry.get_membership(connection.id)
        if membership is None:
            raise NotInParty()
        await self._relay.broadcast_to_all(
            membership.party_code,
            encode_message(
                ServerMessageType.CHAT,
                {"message": message.message, "username": membership.username},
            ),
        )

    async def _broadcast_participants(self, party_code: str) -> None:
        participants = await self._registry.list_participants(party_code)
        if not participants:
            return
        await self._relay.broadcast_to_all(
            party_code,
            encode_message(
                ServerMessageType.PARTICIPANTS,
                {"participants": [view.to_dict() for view in participants]},
            ),
        )

    def _send(self, connection: Connection, message_type: ServerMessageType, data: Optional[dict] = None) -> None:
        if not connection.deliver(encode_message(message_type, data)):
            logger.debug("Reply %s to %s dropped", message_type.value, connection.id)

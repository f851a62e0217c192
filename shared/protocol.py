"""Wire protocol shared between the relay server and party clients.

Every frame is a single UTF-8 JSON object carried in one WebSocket text frame.
Each object has a ``type`` discriminator and a ``timestamp`` in epoch
milliseconds plus type-specific fields. Inbound frames are parsed into one
dataclass per ``type`` so the server dispatches over a closed set of variants
instead of poking at raw dictionaries.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

import json
import math
import re
import time

from shared.errors import MalformedMessage


class ClientMessageType(str, Enum):
    """Frames sent from a party client to the relay."""

    CREATE_PARTY = "create-party"
    JOIN = "join"
    LEAVE = "leave"
    SYNC = "sync"
    VIDEO_INFO = "video-info"
    PING = "ping"
    CHAT = "chat"


class ServerMessageType(str, Enum):
    """Frames sent from the relay to a party client."""

    PARTY_CREATED = "party-created"
    JOINED = "joined"
    LEFT = "left"
    PARTICIPANTS = "participants"
    SYNC = "sync"
    VIDEO_INFO = "video-info"
    CHAT = "chat"
    ERROR = "error"
    PONG = "pong"


class SyncAction(str, Enum):
    """Playback changes relayed between party members."""

    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"
    RATECHANGE = "ratechange"


DEFAULT_PORT = 8080
DEFAULT_ADMIN_PORT = 8700

PARTY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PARTY_CODE_LENGTH = 6
_PARTY_CODE_RE = re.compile(rf"^[{PARTY_CODE_ALPHABET}]{{{PARTY_CODE_LENGTH}}}$")

DEFAULT_USERNAME = "Anonymous"
MAX_USERNAME_LENGTH = 40
MAX_CHAT_LENGTH = 500
MAX_FRAME_BYTES = 64 * 1024
# Frames between MAX_FRAME_BYTES and this limit get an error reply; larger ones close the socket (1009).
MAX_TRANSPORT_FRAME_BYTES = 1024 * 1024

SERVER_HEARTBEAT_INTERVAL = 30.0  # seconds
CLIENT_KEEPALIVE_INTERVAL = 25.0  # seconds
RECONNECT_BASE_DELAY = 1.0  # seconds
RECONNECT_MAX_DELAY = 30.0  # seconds
IDLE_REAP_INTERVAL = 60.0 * 60.0  # seconds
PERSISTENT_IDLE_TIMEOUT = 24 * 60.0 * 60.0  # seconds

SYNC_COOLDOWN_SECONDS = 0.3
DRIFT_TOLERANCE_SECONDS = 1.0


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_party_code(raw: object) -> str:
    """Upper-case and strip a party code; non-strings become an empty code."""

    if not isinstance(raw, str):
        return ""
    return raw.strip().upper()


def is_valid_party_code(code: str) -> bool:
    return bool(_PARTY_CODE_RE.match(code))


def _optional_number(value: Any, name: str, *, minimum: float = 0.0, strict: bool = False) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedMessage(f"{name} must be a number")
    number = float(value)
    if not math.isfinite(number):
        raise MalformedMessage(f"{name} must be finite")
    if number < minimum or (strict and number == minimum):
        raise MalformedMessage(f"{name} is out of range")
    return number


@dataclass(slots=True, frozen=True)
class VideoDescriptor:
    """The video a participant (or the whole party) is watching."""

    url: str
    title: str = ""
    duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "VideoDescriptor":
        if not isinstance(data, dict):
            raise MalformedMessage("video-info requires a data object")
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            raise MalformedMessage("video-info requires a url")
        title = data.get("title")
        if title is not None and not isinstance(title, str):
            raise MalformedMessage("title must be a string")
        # A browser reports NaN for unknown durations, which JSON encodes as null.
        return cls(
            url=url.strip(),
            title=title or "",
            duration=_optional_number(data.get("duration"), "duration"),
        )


@dataclass(slots=True, frozen=True)
class SyncData:
    """Playback snapshot attached to a sync event."""

    current_time: Optional[float] = None
    playback_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.current_time is not None:
            data["currentTime"] = self.current_time
        if self.playback_rate is not None:
            data["playbackRate"] = self.playback_rate
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "SyncData":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise MalformedMessage("sync data must be an object")
        return cls(
            current_time=_optional_number(data.get("currentTime"), "currentTime"),
            playback_rate=_optional_number(data.get("playbackRate"), "playbackRate", strict=True),
        )


@dataclass(slots=True, frozen=True)
class ParticipantView:
    """Client-facing view of a party member."""

    username: str
    video_url: Optional[str]
    synced: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "videoUrl": self.video_url,
            "synced": self.synced,
        }


@dataclass(slots=True, frozen=True)
class CreatePartyRequest:
    username: str = DEFAULT_USERNAME
    password: Optional[str] = field(default=None, repr=False)
    persistent: bool = False


@dataclass(slots=True, frozen=True)
class JoinRequest:
    party_code: str
    username: str = DEFAULT_USERNAME
    password: Optional[str] = field(default=None, repr=False)


@dataclass(slots=True, frozen=True)
class LeaveRequest:
    pass


@dataclass(slots=True, frozen=True)
class SyncRequest:
    action: SyncAction
    data: SyncData


@dataclass(slots=True, frozen=True)
class VideoInfoRequest:
    descriptor: VideoDescriptor


@dataclass(slots=True, frozen=True)
class PingRequest:
    pass


@dataclass(slots=True, frozen=True)
class ChatRequest:
    message: str


ClientMessage = Union[
    CreatePartyRequest,
    JoinRequest,
    LeaveRequest,
    SyncRequest,
    VideoInfoRequest,
    PingRequest,
    ChatRequest,
]


def _clean_username(raw: Any) -> str:
    if raw is None:
        return DEFAULT_USERNAME
    if not isinstance(raw, str):
        raise MalformedMessage("username must be a string")
    username = raw.strip()[:MAX_USERNAME_LENGTH]
    return username or DEFAULT_USERNAME


def _clean_password(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise MalformedMessage("password must be a string")
    return raw or None


def decode_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Decode one frame into a JSON object carrying a string ``type``."""

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessage() from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedMessage() from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        raise MalformedMessage()
    return payload


def parse_client_message(raw: Union[str, bytes]) -> ClientMessage:
    """Parse an inbound frame into its request variant.

    Raises :class:`MalformedMessage` for unparseable frames, unknown types and
    invalid fields. Party codes are only normalized here; whether a code exists
    (or is well formed) is decided by the registry.
    """

    size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
    if size > MAX_FRAME_BYTES:
        raise MalformedMessage("Message too large")
    payload = decode_message(raw)
    try:
        message_type = ClientMessageType(payload["type"])
    except ValueError as exc:
        raise MalformedMessage(f"Unknown message type: {payload['type']}") from exc

    if message_type == ClientMessageType.CREATE_PARTY:
        persistent = payload.get("persistent", False)
        if persistent is None:
            persistent = False
        if not isinstance(persistent, bool):
            raise MalformedMessage("persistent must be a boolean")
        return CreatePartyRequest(
            username=_clean_username(payload.get("username")),
            password=_clean_password(payload.get("password")),
            persistent=persistent,
        )

    if message_type == ClientMessageType.JOIN:
        return JoinRequest(
            party_code=normalize_party_code(payload.get("partyCode")),
            username=_clean_username(payload.get("username")),
            password=_clean_password(payload.get("password")),
        )

    if message_type == ClientMessageType.LEAVE:
        return LeaveRequest()

    if message_type == ClientMessageType.SYNC:
        try:
            action = SyncAction(payload.get("action"))
        except ValueError as exc:
            raise MalformedMessage(f"Unknown sync action: {payload.get('action')}") from exc
        return SyncRequest(action=action, data=SyncData.from_dict(payload.get("data")))

    if message_type == ClientMessageType.VIDEO_INFO:
        return VideoInfoRequest(descriptor=VideoDescriptor.from_dict(payload.get("data")))

    if message_type == ClientMessageType.PING:
        return PingRequest()

    if message_type == ClientMessageType.CHAT:
        text = payload.get("message")
        if not isinstance(text, str) or not text.strip():
            raise MalformedMessage("chat requires a message")
        return ChatRequest(message=text.strip()[:MAX_CHAT_LENGTH])

    raise MalformedMessage(f"Unknown message type: {message_type.value}")


def encode_message(
    message_type: Union[ClientMessageType, ServerMessageType],
    data: Optional[Dict[str, Any]] = None,
    *,
    timestamp_ms: Optional[int] = None,
) -> str:
    """Serialize a frame, stamping it with the current epoch milliseconds."""

    envelope: Dict[str, Any] = {"type": message_type.value}
    if data:
        envelope.update(data)
    envelope["timestamp"] = timestamp_ms if timestamp_ms is not None else now_ms()
    return json.dumps(envelope, separators=(",", ":"))

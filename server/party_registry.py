from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol

from shared.errors import NotInParty, PartyNotFound, WrongPassword
from shared.protocol import (
    PARTY_CODE_ALPHABET,
    PARTY_CODE_LENGTH,
    PERSISTENT_IDLE_TIMEOUT,
    ParticipantView,
    VideoDescriptor,
    is_valid_party_code,
    normalize_party_code,
)

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 1000
PASSWORD_HASH_ITERATIONS = 100_000


class Channel(Protocol):
    """Outbound side of a live connection."""

    @property
    def is_writable(self) -> bool: ...

    def deliver(self, payload: str) -> bool: ...


def generate_party_code() -> str:
    return "".join(secrets.choice(PARTY_CODE_ALPHABET) for _ in range(PARTY_CODE_LENGTH))


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_HASH_ITERATIONS)


@dataclass(slots=True)
class Participant:
    connection_id: str
    username: str
    channel: Channel
    video_url: Optional[str] = None


@dataclass(slots=True)
class Party:
    code: str
    persistent: bool = False
    password_salt: Optional[bytes] = field(default=None, repr=False)
    password_hash: Optional[bytes] = field(default=None, repr=False)
    video: Optional[VideoDescriptor] = None
    participants: Dict[str, Participant] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    def check_password(self, password: Optional[str]) -> bool:
        if self.password_hash is None or self.password_salt is None:
            return True
        if password is None:
            return False
        return hmac.compare_digest(_hash_password(password, self.password_salt), self.password_hash)

    def is_synced(self, participant: Participant) -> bool:
        return (
            participant.video_url is not None
            and self.video is not None
            and participant.video_url == self.video.url
        )

    def views(self) -> list[ParticipantView]:
        return [
            ParticipantView(
                username=participant.username,
                video_url=participant.video_url,
                synced=self.is_synced(participant),
            )
            for participant in self.participants.values()
        ]


@dataclass(slots=True, frozen=True)
class Membership:
    party_code: str
    username: str


@dataclass(slots=True, frozen=True)
class CreateResult:
    party_code: str
    username: str
    has_password: bool
    persistent: bool
    previous_party: Optional[str] = None


@dataclass(slots=True, frozen=True)
class JoinResult:
    party_code: str
    username: str
    participants: list[ParticipantView]
    video: Optional[VideoDescriptor]
    previous_party: Optional[str] = None


class PartyRegistry:
    """Owns every party and its membership.

    All mutation is serialized through a single lock. Callers identify
    themselves by connection id; the registry keeps the connection-to-party
    index so a connection can be a member of at most one party at a time.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        code_factory: Callable[[], str] = generate_party_code,
    ) -> None:
        self._parties: Dict[str, Party] = {}
        self._memberships: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._code_factory = code_factory
        self._event_log: list[dict] = []

    async def create_party(
        self,
        connection_id: str,
        channel: Channel,
        username: str,
        *,
        password: Optional[str] = None,
        persistent: bool = False,
    ) -> CreateResult:
        async with self._lock:
            previous = self._remove_member_locked(connection_id)
            code = self._code_factory()
            while code in self._parties:
                logger.debug("Party code collision on %s, retrying", code)
                code = self._code_factory()
            now = self._clock()
            party = Party(code=code, persistent=persistent, created_at=now, last_activity=now)
            if password:
                party.password_salt = os.urandom(16)
                party.password_hash = _hash_password(password, party.password_salt)
            party.participants[connection_id] = Participant(
                connection_id=connection_id,
                username=username,
                channel=channel,
            )
            self._parties[code] = party
            self._memberships[connection_id] = code
            logger.info(
                "Party %s created by %s (persistent=%s, protected=%s)",
                code,
                username,
                persistent,
                party.has_password,
            )
            self._record_event(
                "party_created",
                {
                    "party_code": code,
                    "username": username,
                    "persistent": persistent,
                    "has_password": party.has_password,
                },
            )
            return CreateResult(
                party_code=code,
                username=username,
                has_password=party.has_password,
                persistent=persistent,
                previous_party=previous,
            )

    async def join_party(
        self,
        connection_id: str,
        channel: Channel,
        party_code: str,
        username: str,
        *,
        password: Optional[str] = None,
    ) -> JoinResult:
        code = normalize_party_code(party_code)
        async with self._lock:
            if not is_valid_party_code(code):
                raise PartyNotFound()
            party = self._parties.get(code)
            if party is None:
                raise PartyNotFound()
            if not party.check_password(password):
                logger.warning("Rejected join to %s: wrong password", code)
                raise WrongPassword()

            previous: Optional[str] = None
            existing = party.participants.get(connection_id)
            if existing is not None:
                existing.username = username
                existing.channel = channel
            else:
                previous = self._remove_member_locked(connection_id)
                party.participants[connection_id] = Participant(
                    connection_id=connection_id,
                    username=username,
                    channel=channel,
                )
                self._memberships[connection_id] = code
            party.last_activity = self._clock()
            logger.info("%s joined party %s (%d participants)", username, code, len(party.participants))
            self._record_event("joined", {"party_code": code, "username": username})
            return JoinResult(
                party_code=code,
                username=username,
                participants=party.views(),
                video=party.video,
                previous_party=previous,
            )

    async def leave_party(self, connection_id: str) -> Optional[str]:
        """Remove the connection from its party; returns the party code left, if any."""

        async with self._lock:
            return self._remove_member_locked(connection_id)

    async def record_video_info(self, connection_id: str, descriptor: VideoDescriptor) -> Membership:
        async with self._lock:
            party, participant = self._require_member_locked(connection_id)
            participant.video_url = descriptor.url
            if party.video is not None and party.video.url != descriptor.url:
                logger.info(
                    "Party %s shared video changed by %s: %s -> %s",
                    party.code,
                    participant.username,
                    party.video.url,
                    descriptor.url,
                )
            party.video = descriptor
            party.last_activity = self._clock()
            return Membership(party_code=party.code, username=participant.username)

    async def get_membership(self, connection_id: str) -> Optional[Membership]:
        async with self._lock:
            code = self._memberships.get(connection_id)
            if code is None:
                return None
            party = self._parties.get(code)
            if party is None or connection_id not in party.participants:
                return None
            return Membership(party_code=code, username=party.participants[connection_id].username)

    async def require_membership(self, connection_id: str) -> Membership:
        async with self._lock:
            party, participant = self._require_member_locked(connection_id)
            party.last_activity = self._clock()
            return Membership(party_code=party.code, username=participant.username)

    async def list_participants(self, party_code: str) -> list[ParticipantView]:
        async with self._lock:
            party = self._parties.get(normalize_party_code(party_code))
            if party is None:
                return []
            return party.views()

    async def recipients(self, party_code: str, *, exclude: Optional[str] = None) -> list[tuple[str, Channel]]:
        async with self._lock:
            party = self._parties.get(party_code)
            if party is None:
                return []
            return [
                (connection_id, participant.channel)
                for connection_id, participant in party.participants.items()
                if connection_id != exclude
            ]

    async def cleanup_empty_party(self, party_code: str) -> bool:
        """Delete a non-persistent empty party; returns True when it was deleted."""

        async with self._lock:
            return self._cleanup_locked(party_code)

    async def expire_idle_parties(self, idle_timeout: float = PERSISTENT_IDLE_TIMEOUT) -> list[str]:
        async with self._lock:
            now = self._clock()
            expired = [
                code
                for code, party in self._parties.items()
                if party.persistent and not party.participants and now - party.last_activity > idle_timeout
            ]
            for code in expired:
                idle_for = now - self._parties[code].last_activity
                del self._parties[code]
                logger.info("Persistent party %s expired after %.0fs idle", code, idle_for)
                self._record_event("party_expired", {"party_code": code, "idle_seconds": idle_for})
            return expired

    async def has_party(self, party_code: str) -> bool:
        async with self._lock:
            return normalize_party_code(party_code) in self._parties

    async def party_codes(self) -> list[str]:
        async with self._lock:
            return list(self._parties.keys())

    async def snapshot(self) -> dict:
        async with self._lock:
            now = self._clock()
            parties: list[dict[str, object]] = []
            for party in self._parties.values():
                parties.append(
                    {
                        "party_code": party.code,
                        "participant_count": len(party.participants),
                        "participants": [view.to_dict() for view in party.views()],
                        "video": party.video.to_dict() if party.video else None,
                        "persistent": party.persistent,
                        "has_password": party.has_password,
                        "created_at": party.created_at,
                        "last_activity": party.last_activity,
                        "idle_seconds": max(0.0, now - party.last_activity) if not party.participants else 0.0,
                    }
                )
            return {
                "parties": parties,
                "party_count": len(parties),
                "member_count": len(self._memberships),
            }

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    def _require_member_locked(self, connection_id: str) -> tuple[Party, Participant]:
        code = self._memberships.get(connection_id)
        party = self._parties.get(code) if code is not None else None
        if party is None or connection_id not in party.participants:
            raise NotInParty()
        return party, party.participants[connection_id]

    def _remove_member_locked(self, connection_id: str) -> Optional[str]:
        code = self._memberships.pop(connection_id, None)
        if code is None:
            return None
        party = self._parties.get(code)
        if party is None:
            return None
        participant = party.participants.pop(connection_id, None)
        if participant is None:
            return None
        logger.info("%s left party %s (%d remaining)", participant.username, code, len(party.participants))
        self._record_event("left", {"party_code": code, "username": participant.username})
        self._cleanup_locked(code)
        return code

    def _cleanup_locked(self, party_code: str) -> bool:
        party = self._parties.get(party_code)
        if party is None or party.participants:
            return False
        if party.persistent:
            party.last_activity = self._clock()
            logger.info("Persistent party %s is empty; kept for idle expiry", party_code)
            return False
        del self._parties[party_code]
        logger.info("Party %s cleaned up (empty)", party_code)
        self._record_event("party_deleted", {"party_code": party_code})
        return True

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": self._clock(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)

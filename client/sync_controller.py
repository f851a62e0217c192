"""Echo-free translation between local player events and relay sync frames.

Applying a remote change makes the local player fire the very events a user
action would, so the controller must tell the two apart. After a remote event
is applied the controller sits in ``SUSPENDING_ECHO`` until a deadline passes;
local events seen before the deadline are treated as echoes and swallowed.
Independently, outbound events are rate limited by a cooldown so a burst of
native events (a seek usually fires several) produces a single frame.

The deadline is evaluated whenever the state is read, so the transition back
to ``IDLE`` is a pure function of the clock rather than a timer callback.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from shared.protocol import (
    DRIFT_TOLERANCE_SECONDS,
    SYNC_COOLDOWN_SECONDS,
    ClientMessageType,
    SyncAction,
    SyncData,
    encode_message,
)

from .player import Player

logger = logging.getLogger(__name__)


class EchoState(str, Enum):
    IDLE = "idle"
    SUSPENDING_ECHO = "suspending_echo"


@dataclass(slots=True, frozen=True)
class SyncCommand:
    """An outbound sync event produced from a local player change."""

    action: SyncAction
    data: SyncData

    def to_message(self) -> str:
        return encode_message(
            ClientMessageType.SYNC,
            {"action": self.action.value, "data": self.data.to_dict()},
        )


class SyncController:
    def __init__(
        self,
        player: Player,
        *,
        clock: Callable[[], float] = time.monotonic,
        cooldown: float = SYNC_COOLDOWN_SECONDS,
        suspend_duration: Optional[float] = None,
        drift_tolerance: float = DRIFT_TOLERANCE_SECONDS,
    ) -> None:
        suspend = cooldown if suspend_duration is None else suspend_duration
        if suspend < cooldown:
            raise ValueError("suspend_duration must be at least as long as the cooldown")
        self.player = player
        self.active = False
        self._clock = clock
        self._cooldown = cooldown
        self._suspend_duration = suspend
        self._drift_tolerance = drift_tolerance
        self._suspended_until: Optional[float] = None
        self._last_outbound_at: Optional[float] = None

    @property
    def state(self) -> EchoState:
        if self._suspended_until is not None and self._clock() >= self._suspended_until:
            self._suspended_until = None
        if self._suspended_until is None:
            return EchoState.IDLE
        return EchoState.SUSPENDING_ECHO

    @property
    def suspended_until(self) -> Optional[float]:
        if self.state == EchoState.IDLE:
            return None
        return self._suspended_until

    def handle_local_event(self, action: Union[SyncAction, str]) -> Optional[SyncCommand]:
        """Translate a native player event; returns None when it must not be sent."""

        action = SyncAction(action)
        if not self.active:
            return None
        if self.state == EchoState.SUSPENDING_ECHO:
            logger.debug("Swallowed %s echo of a remote change", action.value)
            return None
        now = self._clock()
        if self._last_outbound_at is not None and now - self._last_outbound_at < self._cooldown:
            logger.debug("Dropped %s inside the sync cooldown", action.value)
            return None
        self._last_outbound_at = now
        return SyncCommand(action=action, data=self._snapshot(action))

    def apply_remote(self, action: Union[SyncAction, str], data: SyncData) -> None:
        """Apply a relayed event to the local player without echoing it back."""

        action = SyncAction(action)
        self._suspended_until = self._clock() + self._suspend_duration
        player = self.player

        if action == SyncAction.PLAY:
            self._correct_drift(data.current_time)
            if data.playback_rate is not None and player.playback_rate != data.playback_rate:
                player.set_playback_rate(data.playback_rate)
            if player.paused:
                player.play()
        elif action == SyncAction.PAUSE:
            self._correct_drift(data.current_time)
            if not player.paused:
                player.pause()
        elif action == SyncAction.SEEK:
            if data.current_time is not None:
                player.seek(data.current_time)
        elif action == SyncAction.RATECHANGE:
            if data.playback_rate is not None and player.playback_rate != data.playback_rate:
                player.set_playback_rate(data.playback_rate)
            self._correct_drift(data.current_time)
        logger.debug("Applied remote %s %s", action.value, data)

    def _correct_drift(self, target: Optional[float]) -> bool:
        if target is None:
            return False
        if abs(self.player.current_time - target) <= self._drift_tolerance:
            return False
        self.player.seek(target)
        return True

    def _snapshot(self, action: SyncAction) -> SyncData:
        if action in (SyncAction.PLAY, SyncAction.RATECHANGE):
            return SyncData(current_time=self.player.current_time, playback_rate=self.player.playback_rate)
        return SyncData(current_time=self.player.current_time)

"""Player interface driven by the sync controller, plus a headless implementation.

Real integrations wrap a browser video element or a media library; the relay
only needs the handful of operations below. :class:`SimulatedPlayer` behaves
like an HTML5 video element in the one way that matters for echo suppression:
every state change fires its event callbacks synchronously.
"""
from __future__ import annotations

import time
from typing import Callable, List, Optional, Protocol

from shared.protocol import SyncAction, VideoDescriptor

PlayerListener = Callable[[SyncAction], None]


class Player(Protocol):
    @property
    def current_time(self) -> float: ...

    @property
    def playback_rate(self) -> float: ...

    @property
    def paused(self) -> bool: ...

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, position: float) -> None: ...

    def set_playback_rate(self, rate: float) -> None: ...


class SimulatedPlayer:
    """Clock-driven player model used by the headless client and tests."""

    def __init__(
        self,
        url: str,
        *,
        title: str = "",
        duration: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.title = title
        self.duration = duration
        self._clock = clock
        self._paused = True
        self._rate = 1.0
        self._anchor_position = 0.0
        self._anchor_time = clock()
        self._listeners: List[PlayerListener] = []

    @property
    def descriptor(self) -> VideoDescriptor:
        return VideoDescriptor(url=self.url, title=self.title, duration=self.duration)

    @property
    def current_time(self) -> float:
        if self._paused:
            return self._anchor_position
        elapsed = (self._clock() - self._anchor_time) * self._rate
        position = self._anchor_position + elapsed
        if self.duration is not None:
            position = min(position, self.duration)
        return position

    @property
    def playback_rate(self) -> float:
        return self._rate

    @property
    def paused(self) -> bool:
        return self._paused

    def add_listener(self, listener: PlayerListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PlayerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def play(self) -> None:
        if not self._paused:
            return
        self._rebase()
        self._paused = False
        self._emit(SyncAction.PLAY)

    def pause(self) -> None:
        if self._paused:
            return
        self._rebase()
        self._paused = True
        self._emit(SyncAction.PAUSE)

    def seek(self, position: float) -> None:
        position = max(0.0, position)
        if self.duration is not None:
            position = min(position, self.duration)
        self._anchor_position = position
        self._anchor_time = self._clock()
        self._emit(SyncAction.SEEK)

    def set_playback_rate(self, rate: float) -> None:
        if rate <= 0:
            raise ValueError("playback rate must be positive")
        if rate == self._rate:
            return
        self._rebase()
        self._rate = rate
        self._emit(SyncAction.RATECHANGE)

    def _rebase(self) -> None:
        self._anchor_position = self.current_time
        self._anchor_time = self._clock()

    def _emit(self, action: SyncAction) -> None:
        for listener in list(self._listeners):
            listener(action)

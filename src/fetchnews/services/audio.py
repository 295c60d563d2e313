from __future__ import annotations

import asyncio
import itertools
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from fetchnews.errors import AudioLoadError

log = logging.getLogger(__name__)


class AudioEventKind(Enum):
    POSITION = "position"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass(slots=True)
class AudioEvent:
    kind: AudioEventKind
    position: float = 0.0
    duration: float = math.nan
    error: str = ""


AudioHandler = Callable[[AudioEvent], None]


class AudioTransport(ABC):
    """Platform audio player seen through the handful of calls the client needs."""

    @abstractmethod
    async def load(self, ref: str) -> float:
        """Load ``ref`` and return its duration in seconds.

        The duration may be NaN when the transport doesn't know it yet; a later
        POSITION event carries it. Raises AudioLoadError.
        """

    @abstractmethod
    def play(self, rate: float = 1.0) -> None: ...

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def seek(self, seconds: float) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def subscribe(self, handler: AudioHandler) -> int:
        """Register for position/finished/failed events. Returns a handle."""

    @abstractmethod
    def unsubscribe(self, handle: int) -> None: ...


class SimulatedAudioTransport(AudioTransport):
    """Deterministic in-process transport.

    Nothing is decoded: each reference has a fixed duration and time only moves
    when ``advance()`` is called. Used by the CLI dry run and by tests.
    """

    def __init__(
        self,
        durations: dict[str, float] | None = None,
        default_duration: float = 60.0,
        failing: set[str] | None = None,
        load_delay: float = 0.0,
    ) -> None:
        self._durations = dict(durations or {})
        self._default_duration = default_duration
        self._failing = set(failing or ())
        self._load_delay = load_delay
        self._handlers: dict[int, AudioHandler] = {}
        self._handles = itertools.count(1)

        self.loaded_ref: str | None = None
        self.duration = math.nan
        self.position = 0.0
        self.playing = False
        self.rate = 1.0
        self.load_calls: list[str] = []
        self.seek_calls: list[float] = []

    async def load(self, ref: str) -> float:
        self.load_calls.append(ref)
        if self._load_delay:
            await asyncio.sleep(self._load_delay)
        else:
            await asyncio.sleep(0)
        if ref in self._failing:
            raise AudioLoadError(ref, "simulated load failure")
        self.loaded_ref = ref
        self.position = 0.0
        self.playing = False
        self.duration = self._durations.get(ref, self._default_duration)
        return self.duration

    def play(self, rate: float = 1.0) -> None:
        if self.loaded_ref is None:
            return
        self.playing = True
        self.rate = rate

    def pause(self) -> None:
        self.playing = False

    def seek(self, seconds: float) -> None:
        self.seek_calls.append(seconds)
        self.position = seconds

    def stop(self) -> None:
        self.playing = False
        self.position = 0.0

    def subscribe(self, handler: AudioHandler) -> int:
        handle = next(self._handles)
        self._handlers[handle] = handler
        return handle

    def unsubscribe(self, handle: int) -> None:
        self._handlers.pop(handle, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def drop_subscriptions(self) -> None:
        """Forget every subscriber, as the platform does when the audio session is reset."""
        self._handlers.clear()

    def emit(self, event: AudioEvent) -> None:
        for handler in list(self._handlers.values()):
            handler(event)

    def advance(self, seconds: float) -> None:
        """Move the playhead while playing, emitting a position tick (and finished at the end)."""
        if not self.playing:
            return
        self.position += seconds * self.rate
        if not math.isnan(self.duration) and self.position >= self.duration:
            self.position = self.duration
            self.playing = False
            self.emit(AudioEvent(AudioEventKind.POSITION, self.position, self.duration))
            self.emit(AudioEvent(AudioEventKind.FINISHED, self.position, self.duration))
            return
        self.emit(AudioEvent(AudioEventKind.POSITION, self.position, self.duration))

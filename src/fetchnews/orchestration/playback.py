"""Playback coordinator: per-topic audio on top of an AudioTransport.

Loads are keyed by ``(session_id, topic)``. Switching to the key that is
already loaded never reloads; switching elsewhere stops the transport and
loads the new topic's audio (or the session-wide audio when the topic has
none). A load that is superseded by a later switch is discarded on arrival.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from fetchnews.errors import AudioLoadError
from fetchnews.models.domain import PlaybackState, Session, TopicSection
from fetchnews.services.audio import AudioEvent, AudioEventKind, AudioTransport

log = logging.getLogger(__name__)

TopicKey = tuple[str, str]
AdvanceListener = Callable[[int], Any]

MIN_RATE = 0.5
MAX_RATE = 2.0


class PlaybackCoordinator:
    """Owns PlaybackState; nothing else mutates it."""

    def __init__(
        self,
        transport: AudioTransport,
        session_provider: Callable[[], Session | None] | None = None,
        rate: float = 1.0,
        settle_s: float = 0.1,
    ) -> None:
        self._transport = transport
        self._session_provider = session_provider or (lambda: None)
        self._rate = max(MIN_RATE, min(MAX_RATE, rate))
        self._settle_s = settle_s

        self.state = PlaybackState()
        self.loaded_topic_key: TopicKey | None = None
        self.audio_unavailable: set[TopicKey] = set()
        self._section: TopicSection | None = None

        self._generation = 0
        self._loading = False
        self._pending_autoplay = False
        self._scrubbing = False
        self._scrub_value = 0.0
        self._interrupted = False
        self._was_playing_before_interruption = False

        self._advance_listeners: list[AdvanceListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._subscription: int | None = transport.subscribe(self._on_event)

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def is_scrubbing(self) -> bool:
        return self._scrubbing

    @property
    def is_interrupted(self) -> bool:
        return self._interrupted

    def add_advance_listener(self, listener: AdvanceListener) -> None:
        """Called with the next topic index when a topic finishes and another follows."""
        self._advance_listeners.append(listener)

    def now_playing_title(self) -> str | None:
        if self._section is None:
            return None
        return self._section.topic.title()

    # ── Loading ──────────────────────────────────────────────────────

    async def switch_to_topic(self, section: TopicSection, session_id: str, auto_play: bool = False) -> bool:
        """Make ``section`` the loaded topic. Returns True when its audio is ready."""
        session = self._session_provider()
        if session is not None and session.id != session_id:
            log.info("Ignoring switch for stale session %s (current %s)", session_id, session.id,
                     extra={"session_id": session_id, "topic": section.topic})
            return False

        key = (session_id, section.topic)
        if key == self.loaded_topic_key:
            if auto_play and not self.state.is_playing:
                if self.state.can_play:
                    self._start()
                else:
                    self._pending_autoplay = True
            return self.state.can_play

        self._transport.stop()
        self._generation += 1
        generation = self._generation
        self._loading = False
        index = session.index_of(section.topic) if session is not None else None
        self.state = PlaybackState(current_topic_index=index if index is not None else 0)
        self.loaded_topic_key = key
        self._section = section
        self._pending_autoplay = auto_play
        self._scrubbing = False

        ref = section.audio_ref or (session.audio_ref if session is not None else None)
        if not ref:
            self._mark_unavailable(key, "no audio reference")
            return False

        log.debug("Loading audio for %s", section.topic, extra={"session_id": session_id, "topic": section.topic})
        self._loading = True
        try:
            duration = await self._transport.load(ref)
        except AudioLoadError as e:
            if generation == self._generation:
                self._loading = False
                self._mark_unavailable(key, e.reason or str(e))
            return False
        if generation != self._generation:
            log.debug("Discarding superseded audio load for %s", section.topic, extra={"topic": section.topic})
            return False

        self._loading = False
        self.audio_unavailable.discard(key)
        self._apply_duration(duration)
        return self.state.can_play

    def _apply_duration(self, duration: float) -> None:
        if duration is None or math.isnan(duration) or math.isinf(duration) or duration < 0:
            return
        self.state.duration_seconds = float(duration)
        if not self.state.can_play:
            self.state.can_play = True
            if self._pending_autoplay:
                self._pending_autoplay = False
                self._start()

    def _mark_unavailable(self, key: TopicKey, reason: str) -> None:
        self.state.can_play = False
        self.state.is_playing = False
        self._pending_autoplay = False
        self.loaded_topic_key = None
        self.audio_unavailable.add(key)
        log.warning("Audio unavailable for %s: %s", key[1], reason, extra={"session_id": key[0], "topic": key[1]})

    # ── Transport control ────────────────────────────────────────────

    def _start(self) -> None:
        self._transport.play(self._rate)
        self.state.is_playing = True

    def play_pause(self) -> None:
        if not self.state.can_play:
            return
        if self.state.is_playing:
            self._transport.pause()
            self.state.is_playing = False
        else:
            self._start()

    def seek(self, seconds: float) -> None:
        if not self.state.can_play:
            return
        target = self._clamp(seconds)
        self.state.position_seconds = target
        self._transport.seek(target)

    def begin_scrub(self) -> None:
        self._scrubbing = True
        self._scrub_value = self.state.position_seconds

    def scrub_to(self, seconds: float) -> None:
        if not self._scrubbing:
            self.begin_scrub()
        self._scrub_value = self._clamp(seconds)
        self.state.position_seconds = self._scrub_value

    def end_scrub(self) -> None:
        if not self._scrubbing:
            return
        self._scrubbing = False
        self.seek(self._scrub_value)

    def set_rate(self, rate: float) -> None:
        self._rate = max(MIN_RATE, min(MAX_RATE, rate))
        if self.state.is_playing:
            self._transport.play(self._rate)

    def _clamp(self, seconds: float) -> float:
        return max(0.0, min(float(seconds), self.state.duration_seconds))

    # ── Transport events ─────────────────────────────────────────────

    def _on_event(self, event: AudioEvent) -> None:
        # Events that arrive mid-load belong to the previous item
        if self.loaded_topic_key is None or self._loading:
            return
        if event.kind is AudioEventKind.POSITION:
            self._apply_duration(event.duration)
            if not self._scrubbing:
                self.state.position_seconds = self._clamp(event.position)
        elif event.kind is AudioEventKind.FINISHED:
            task = asyncio.get_running_loop().create_task(self.on_finished())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif event.kind is AudioEventKind.FAILED:
            self._transport.stop()
            self._mark_unavailable(self.loaded_topic_key, event.error or "playback failed")

    async def on_finished(self) -> int | None:
        """Stop at the end of a topic and signal advance when another topic follows.

        Returns the index advanced to, or None on the last topic.
        """
        self.state.is_playing = False
        self.state.position_seconds = 0.0
        session = self._session_provider()
        if session is None or self.loaded_topic_key is None or self.loaded_topic_key[0] != session.id:
            return None
        next_index = self.state.current_topic_index + 1
        if next_index >= len(session.sections):
            log.debug("Last topic finished; not advancing", extra={"session_id": session.id})
            return None
        log.info("Advancing to topic %d", next_index, extra={"session_id": session.id,
                                                             "topic": session.sections[next_index].topic})
        for listener in list(self._advance_listeners):
            result = listener(next_index)
            if inspect.isawaitable(result):
                await result
        return next_index

    # ── Interruptions ────────────────────────────────────────────────

    def begin_interruption(self) -> None:
        """Pause for an overlay that takes over audio, remembering whether we were playing."""
        if self._interrupted:
            return
        self._interrupted = True
        self._was_playing_before_interruption = self.state.is_playing
        if self.state.is_playing:
            self.play_pause()

    async def end_interruption(self) -> None:
        """Resume if we were playing, then re-arm the event subscription after a settle delay."""
        if not self._interrupted:
            return
        self._interrupted = False
        if self._was_playing_before_interruption:
            self.play_pause()
        self._was_playing_before_interruption = False
        await asyncio.sleep(self._settle_s)
        self._rearm_subscription()

    @asynccontextmanager
    async def interruption(self) -> AsyncIterator[PlaybackCoordinator]:
        self.begin_interruption()
        try:
            yield self
        finally:
            await self.end_interruption()

    def _rearm_subscription(self) -> None:
        if self._subscription is not None:
            self._transport.unsubscribe(self._subscription)
        self._subscription = self._transport.subscribe(self._on_event)
        log.debug("Position subscription re-armed")

    # ── Lifecycle ────────────────────────────────────────────────────

    def reset(self) -> None:
        self._generation += 1
        self._loading = False
        self._transport.stop()
        self.state = PlaybackState()
        self.loaded_topic_key = None
        self._section = None
        self._pending_autoplay = False
        self._scrubbing = False
        self.audio_unavailable.clear()

    def close(self) -> None:
        if self._subscription is not None:
            self._transport.unsubscribe(self._subscription)
            self._subscription = None

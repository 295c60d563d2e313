"""Fetch orchestrator: topic selection, dirty tracking, the fetch phase machine and cancellation.

The orchestrator is the only writer of the current session. A fetch moves
through ``gathering -> summarizing -> synthesizing`` as the server reports
checkpoints and always ends in ``idle``: with a new session on success, with
``last_error`` set on failure, and with nothing changed on cancellation.

Every attempt carries its own CancelToken. Results, errors and progress from
an attempt whose token is no longer current are discarded, so a cancelled
call can never overwrite state even if its response arrives late.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

from fetchnews.errors import FetchCancelled, FetchError, FetchErrorKind
from fetchnews.models.domain import FetchPhase, FetchPreferences, Session
from fetchnews.services.cancel import CancelToken
from fetchnews.services.news_api import RemoteNewsService

log = logging.getLogger(__name__)

PhaseListener = Callable[[FetchPhase], None]


@dataclass(slots=True)
class FetchAttempt:
    """Tracks a single fetch through its phases."""
    attempt_id: int
    topics: frozenset[str]
    phase: FetchPhase = FetchPhase.GATHERING
    started_at: float = field(default_factory=time.monotonic)
    phase_times: dict[str, float] = field(default_factory=dict)
    phase_entered_at: float = field(default_factory=time.monotonic)
    outcome: str = ""
    error: str = ""

    def advance(self, new_phase: FetchPhase) -> None:
        """Move to the next phase, recording how long the previous one took."""
        now = time.monotonic()
        self.phase_times[self.phase.value] = round(now - self.phase_entered_at, 4)
        self.phase = new_phase
        self.phase_entered_at = now

    def finish(self, outcome: str, error: str = "") -> None:
        self.advance(FetchPhase.IDLE)
        self.outcome = outcome
        self.error = error

    def total_elapsed(self) -> float:
        return round(time.monotonic() - self.started_at, 4)

    def snapshot(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "topics": sorted(self.topics),
            "phase": self.phase.value,
            "elapsed_s": self.total_elapsed(),
            "phase_times": dict(self.phase_times),
            "outcome": self.outcome,
            "error": self.error,
        }


class FetchOrchestrator:
    """Owns the phase machine and the current session.

    At most one fetch is in flight; ``fetch()`` while busy is rejected, not
    queued. All state changes happen on the event loop that awaits ``fetch()``.
    """

    def __init__(self, service: RemoteNewsService, preferences: FetchPreferences | None = None) -> None:
        self._service = service
        self.preferences = preferences or FetchPreferences()

        self._phase = FetchPhase.IDLE
        self._selected: set[str] = set()
        self._last_fetched: set[str] = set()
        self._last_word_count: int | None = None
        # Set by reset()/fetch_again(); cleared by toggles and successful fetches
        self._force_dirty = True

        self.current_session: Session | None = None
        self.last_error: FetchError | None = None

        self._token: CancelToken | None = None
        self._attempt: FetchAttempt | None = None
        self._attempt_seq = 0
        self._listeners: list[PhaseListener] = []

        self._completed: list[dict] = []
        self._max_history = 50

    # ── Read-only views ──────────────────────────────────────────────

    @property
    def phase(self) -> FetchPhase:
        return self._phase

    @property
    def is_busy(self) -> bool:
        return self._phase is not FetchPhase.IDLE

    @property
    def selected_topics(self) -> frozenset[str]:
        return frozenset(self._selected)

    @property
    def last_fetched_topics(self) -> frozenset[str]:
        return frozenset(self._last_fetched)

    @property
    def is_dirty(self) -> bool:
        if self._force_dirty or self._selected != self._last_fetched:
            return True
        return self._last_word_count is not None and self._last_word_count != self.preferences.word_count

    @property
    def can_fetch(self) -> bool:
        """Whether a trigger affordance should be enabled right now."""
        return self._phase is FetchPhase.IDLE and bool(self._selected) and self.is_dirty

    def add_listener(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    # ── Selection ────────────────────────────────────────────────────

    def toggle_topic(self, name: str) -> None:
        if name in self._selected:
            self._selected.discard(name)
        else:
            self._selected.add(name)
        self._force_dirty = False
        log.debug("Topic %r toggled; selected=%s dirty=%s", name, sorted(self._selected), self.is_dirty,
                  extra={"topic": name})

    def set_selection(self, topics: Iterable[str]) -> None:
        """Replace the whole selection, e.g. with a scheduled summary's topics."""
        self._selected = {t for t in topics if t}
        self._force_dirty = False

    def set_length(self, word_count: int) -> None:
        self.preferences = replace(self.preferences, word_count=word_count)
        self._force_dirty = True

    def reset(self) -> None:
        """Forget selection, session and error. Does not touch the phase."""
        self._selected.clear()
        self._last_fetched.clear()
        self._last_word_count = None
        self.current_session = None
        self.last_error = None
        self._force_dirty = True
        log.info("Topic selection reset")

    # ── Fetch ────────────────────────────────────────────────────────

    async def fetch(self, word_count: int | None = None) -> Session | None:
        """Run one fetch for the current selection.

        Returns the published session, or None when the call was rejected,
        failed (see ``last_error``) or was cancelled.
        """
        if self._phase is not FetchPhase.IDLE:
            log.info("Fetch rejected: already %s", self._phase.value, extra={"phase": self._phase.value})
            return None
        if not self._selected:
            log.debug("Fetch rejected: no topics selected")
            return None
        if not self.is_dirty:
            log.debug("Fetch rejected: selection unchanged since last fetch")
            return None

        token = CancelToken()
        topics = frozenset(self._selected)
        prefs = self.preferences if word_count is None else replace(self.preferences, word_count=word_count)
        self._attempt_seq += 1
        attempt = FetchAttempt(attempt_id=self._attempt_seq, topics=topics)
        self._token = token
        self._attempt = attempt
        self.last_error = None
        self._set_phase(FetchPhase.GATHERING)
        log.info("Fetch %d started for %s", attempt.attempt_id, sorted(topics),
                 extra={"phase": FetchPhase.GATHERING.value})

        try:
            session = await self._service.fetch(
                topics, prefs, token, on_progress=lambda p: self._on_progress(token, p),
            )
        except FetchCancelled:
            log.info("Fetch %d cancelled", attempt.attempt_id)
            if self._is_current(token):
                self._complete(attempt, "cancelled")
            return None
        except FetchError as e:
            return self._fail(token, attempt, e)
        except asyncio.CancelledError:
            if self._is_current(token):
                self._complete(attempt, "cancelled")
            raise
        except Exception as e:
            log.warning("Fetch %d raised unexpectedly", attempt.attempt_id, exc_info=True)
            return self._fail(token, attempt, FetchError(FetchErrorKind.UNKNOWN, str(e)))

        if not self._is_current(token):
            log.info("Discarding result of cancelled fetch %d (session %s)", attempt.attempt_id, session.id,
                     extra={"session_id": session.id})
            return None

        # Walk any phases the server never reported so observers see them in order
        self._on_progress(token, FetchPhase.SYNTHESIZING)
        self.current_session = session
        self._last_fetched = set(topics)
        self._last_word_count = prefs.word_count
        self._force_dirty = False
        self.last_error = None
        self._complete(attempt, "success")
        log.info("Fetch %d published session %s with %d sections", attempt.attempt_id, session.id,
                 len(session.sections), extra={"session_id": session.id,
                                               "duration_ms": int(attempt.total_elapsed() * 1000)})
        return session

    async def fetch_again(self) -> Session | None:
        """Re-run the last successful selection."""
        if self._phase is not FetchPhase.IDLE:
            return None
        self._selected = set(self._last_fetched)
        self._force_dirty = True
        return await self.fetch()

    async def run_selection(self, topics: Iterable[str], word_count: int | None = None) -> Session | None:
        """Fetch ``topics`` regardless of whether they match the last fetch."""
        if self._phase is not FetchPhase.IDLE:
            return None
        self.set_selection(topics)
        self._force_dirty = True
        return await self.fetch(word_count=word_count)

    def cancel(self) -> None:
        """Invalidate the in-flight fetch and return to idle. Safe to call any time."""
        if self._phase is FetchPhase.IDLE:
            return
        token, attempt = self._token, self._attempt
        if token is not None:
            token.cancel()
        if attempt is not None:
            log.info("Cancelling fetch %d in %s", attempt.attempt_id, self._phase.value,
                     extra={"phase": self._phase.value})
            self._complete(attempt, "cancelled")
        else:
            self._token = None
            self._set_phase(FetchPhase.IDLE)

    # ── Internals ────────────────────────────────────────────────────

    def _is_current(self, token: CancelToken) -> bool:
        return token is self._token and not token.cancelled

    def _on_progress(self, token: CancelToken, target: FetchPhase) -> None:
        """Advance toward ``target`` one phase at a time; ignore stale or backward checkpoints."""
        if not self._is_current(token) or target is FetchPhase.IDLE:
            return
        while self._phase.ordinal < target.ordinal:
            nxt = _NEXT_PHASE[self._phase]
            if self._attempt is not None:
                self._attempt.advance(nxt)
            self._set_phase(nxt)

    def _fail(self, token: CancelToken, attempt: FetchAttempt, error: FetchError) -> None:
        if not self._is_current(token):
            log.info("Ignoring failure of cancelled fetch %d: %s", attempt.attempt_id, error)
            return None
        self.last_error = error
        log.warning("Fetch %d failed: %s", attempt.attempt_id, error)
        self._complete(attempt, "failed", str(error))
        return None

    def _complete(self, attempt: FetchAttempt, outcome: str, error: str = "") -> None:
        attempt.finish(outcome, error)
        self._completed.append(attempt.snapshot())
        if len(self._completed) > self._max_history:
            self._completed = self._completed[-self._max_history:]
        self._token = None
        self._attempt = None
        self._set_phase(FetchPhase.IDLE)

    def _set_phase(self, phase: FetchPhase) -> None:
        if phase is self._phase:
            return
        self._phase = phase
        log.debug("Phase -> %s", phase.value, extra={"phase": phase.value})
        for listener in list(self._listeners):
            listener(phase)

    def metrics(self) -> dict[str, Any]:
        """Aggregate outcome counts and timings over recent attempts."""
        if not self._completed:
            return {"total_fetches": 0}
        times = [r["elapsed_s"] for r in self._completed]
        return {
            "total_fetches": len(self._completed),
            "avg_elapsed_s": round(sum(times) / len(times), 3),
            "succeeded": sum(1 for r in self._completed if r["outcome"] == "success"),
            "failed": sum(1 for r in self._completed if r["outcome"] == "failed"),
            "cancelled": sum(1 for r in self._completed if r["outcome"] == "cancelled"),
        }


_NEXT_PHASE = {
    FetchPhase.IDLE: FetchPhase.GATHERING,
    FetchPhase.GATHERING: FetchPhase.SUMMARIZING,
    FetchPhase.SUMMARIZING: FetchPhase.SYNTHESIZING,
}

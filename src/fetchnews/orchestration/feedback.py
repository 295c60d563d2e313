"""Feedback coordinator: per-topic reactions, comments and exactly-once submission.

Feedback is presented per topic but recorded per article: submitting a topic
sends one call for every article in that topic's section. State is kept per
session id and persisted as a blob under a key derived from that id. The
transient ``submitting`` flag is never written or trusted from storage.
"""
from __future__ import annotations

import hashlib
import logging
from typing import Callable

from fetchnews.db.state_store import PersistentStore, is_valid_key
from fetchnews.errors import FetchNewsError
from fetchnews.models.domain import FeedbackEntry, FeedbackState, Reaction, Session
from fetchnews.services.news_api import RemoteNewsService

log = logging.getLogger(__name__)

_KEY_PREFIX = "feedback-"


def storage_key(session_id: str) -> str:
    """Store key for a session's feedback blob."""
    key = _KEY_PREFIX + session_id
    if is_valid_key(key):
        return key
    return _KEY_PREFIX + hashlib.sha1(session_id.encode("utf-8")).hexdigest()[:40]


class FeedbackCoordinator:

    def __init__(
        self,
        store: PersistentStore,
        service: RemoteNewsService,
        session_provider: Callable[[], Session | None] | None = None,
    ) -> None:
        self._store = store
        self._service = service
        self._session_provider = session_provider or (lambda: None)
        self._states: dict[str, FeedbackState] = {}
        self._active_id: str | None = None

    # ── Session binding ──────────────────────────────────────────────

    def load_for_session(self, session_id: str) -> FeedbackState:
        """Bind to ``session_id``, loading whatever was persisted for it."""
        state = self._states.get(session_id)
        if state is None:
            state = FeedbackState.from_blob(session_id, self._store.get(storage_key(session_id)))
            self._states[session_id] = state
        for entry in state.entries.values():
            entry.submitting = False
        self._active_id = session_id
        log.debug("Feedback loaded for session %s (%d submitted)", session_id, len(state.submitted_topics),
                  extra={"session_id": session_id})
        return state

    def _resolve(self, session_id: str | None) -> FeedbackState | None:
        """State for the live session, or None when ``session_id`` is stale."""
        session = self._session_provider()
        live_id = session.id if session is not None else self._active_id
        if live_id is None:
            return None
        if session_id is not None and session_id != live_id:
            log.info("Rejecting feedback for stale session %s (current %s)", session_id, live_id,
                     extra={"session_id": session_id})
            return None
        if live_id != self._active_id or live_id not in self._states:
            self.load_for_session(live_id)
        return self._states[live_id]

    def state_for(self, session_id: str | None = None) -> FeedbackState | None:
        """Feedback for ``session_id``, or for the live session when omitted.

        Any other session is read from storage without rebinding.
        """
        if session_id is None:
            return self._resolve(None)
        if session_id in self._states:
            return self._states[session_id]
        live = self._resolve(None)
        if live is not None and live.session_id == session_id:
            return live
        return FeedbackState.from_blob(session_id, self._store.get(storage_key(session_id)))

    @property
    def expanded_topic(self) -> str | None:
        state = self._resolve(None)
        return state.expanded_topic if state is not None else None

    @property
    def submitted_topics(self) -> set[str]:
        state = self._resolve(None)
        return state.submitted_topics if state is not None else set()

    def entry(self, topic: str) -> FeedbackEntry | None:
        state = self._resolve(None)
        if state is None or topic not in state.entries:
            return None
        return state.entries[topic]

    # ── Editing ──────────────────────────────────────────────────────

    def set_reaction(self, topic: str, reaction: Reaction, session_id: str | None = None) -> bool:
        """Select or toggle off a reaction. Returns False when rejected."""
        state = self._resolve(session_id)
        if state is None:
            return False
        existing = state.entries.get(topic)
        if existing is not None and (existing.submitted or existing.submitting):
            log.debug("Reaction ignored for submitted topic %s", topic, extra={"topic": topic})
            return False

        entry = state.entry(topic)
        if reaction is Reaction.NONE or reaction is entry.reaction:
            entry.reaction = Reaction.NONE
            entry.comment = None
            if state.expanded_topic == topic:
                state.expanded_topic = None
        else:
            entry.reaction = reaction
            state.expanded_topic = topic
        self._persist(state)
        return True

    def set_comment(self, topic: str, comment: str | None, session_id: str | None = None) -> bool:
        state = self._resolve(session_id)
        if state is None:
            return False
        entry = state.entries.get(topic)
        if entry is None or entry.submitted or entry.reaction is Reaction.NONE:
            return False
        entry.comment = comment.strip() if comment and comment.strip() else None
        self._persist(state)
        return True

    def collapse(self, session_id: str | None = None) -> None:
        state = self._resolve(session_id)
        if state is not None and state.expanded_topic is not None:
            state.expanded_topic = None
            self._persist(state)

    # ── Submission ───────────────────────────────────────────────────

    async def submit(self, topic: str, comment: str | None = None, session_id: str | None = None) -> bool:
        """Send the topic's reaction once for every article in its section.

        Returns True when the whole batch succeeded and the topic is now
        submitted. A failure leaves the entry editable and nothing persisted.
        """
        state = self._resolve(session_id)
        if state is None:
            return False
        entry = state.entries.get(topic)
        if entry is None or entry.reaction is Reaction.NONE:
            log.debug("Submit ignored: no reaction for %s", topic, extra={"topic": topic})
            return False
        if entry.submitted or entry.submitting:
            log.debug("Submit ignored: %s already %s", topic,
                      "submitted" if entry.submitted else "submitting", extra={"topic": topic})
            return False

        session = self._session_provider()
        section = session.section_for(topic) if session is not None and session.id == state.session_id else None
        if section is None:
            log.warning("Submit ignored: no section %r in session %s", topic, state.session_id,
                        extra={"session_id": state.session_id, "topic": topic})
            return False

        if comment is not None:
            entry.comment = comment.strip() or None
        entry.submitting = True
        reaction = entry.reaction
        try:
            for article in section.articles:
                await self._service.submit_feedback(
                    article.id, article.url, article.title, article.source,
                    topic, reaction, entry.comment,
                )
        except FetchNewsError as e:
            log.warning("Feedback for %s failed: %s", topic, e,
                        extra={"session_id": state.session_id, "topic": topic})
            return False
        finally:
            entry.submitting = False

        entry.submitted = True
        if state.expanded_topic == topic:
            state.expanded_topic = None
        self._persist(state)
        log.info("Feedback submitted for %s (%d articles)", topic, len(section.articles),
                 extra={"session_id": state.session_id, "topic": topic})
        return True

    async def skip(self, topic: str, session_id: str | None = None) -> bool:
        """Submit the reaction without a comment."""
        state = self._resolve(session_id)
        entry = state.entries.get(topic) if state is not None else None
        if entry is not None and not entry.submitted and not entry.submitting:
            entry.comment = None
        return await self.submit(topic, None, session_id=session_id)

    # ── Persistence ──────────────────────────────────────────────────

    def _persist(self, state: FeedbackState) -> None:
        self._store.set(storage_key(state.session_id), state.to_blob())

    def forget(self, session_id: str) -> None:
        """Drop a session's feedback from memory and storage."""
        self._states.pop(session_id, None)
        self._store.delete(storage_key(session_id))
        if self._active_id == session_id:
            self._active_id = None

    def clear(self) -> None:
        self._states.clear()
        self._active_id = None

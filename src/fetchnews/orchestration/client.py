"""NewsClient: wires the fetch, playback, feedback and schedule coordinators.

All four run on the caller's event loop. The orchestrator is the only writer
of the current session; playback and feedback read it through a provider and
re-key against its id on every call.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fetchnews.db.state_store import PersistentStore, SQLiteStateStore
from fetchnews.models.config import ClientConfig
from fetchnews.models.domain import FetchPreferences, Session
from fetchnews.orchestration.feedback import FeedbackCoordinator
from fetchnews.orchestration.fetch import FetchOrchestrator
from fetchnews.orchestration.playback import PlaybackCoordinator
from fetchnews.orchestration.schedule import ScheduleRunner
from fetchnews.services.audio import AudioTransport
from fetchnews.services.news_api import HttpNewsService, RemoteNewsService

log = logging.getLogger(__name__)


class NewsClient:

    def __init__(
        self,
        service: RemoteNewsService,
        transport: AudioTransport,
        store: PersistentStore,
        preferences: FetchPreferences | None = None,
        timezone: str = "UTC",
        schedule_interval_s: float = 120.0,
        schedule_tolerance_minutes: int = 1,
        settle_s: float = 0.1,
    ) -> None:
        prefs = preferences or FetchPreferences()
        self.service = service
        self.store = store
        self.orchestrator = FetchOrchestrator(service, prefs)
        provider = self._current_session
        self.playback = PlaybackCoordinator(transport, provider, rate=prefs.playback_rate, settle_s=settle_s)
        self.feedback = FeedbackCoordinator(store, service, provider)
        self.schedules = ScheduleRunner(
            service,
            self.orchestrator,
            tz=timezone,
            interval_s=schedule_interval_s,
            tolerance_minutes=schedule_tolerance_minutes,
            on_session=self._on_session,
        )
        self.playback.add_advance_listener(self._advance_to)

    @classmethod
    def from_config(cls, cfg: ClientConfig, transport: AudioTransport) -> NewsClient:
        service = HttpNewsService(
            cfg.api_base_url,
            auth_token=cfg.auth_token,
            timeout=cfg.request_timeout_s,
            max_retries=cfg.max_retries,
        )
        return cls(
            service,
            transport,
            SQLiteStateStore(Path(cfg.store_path)),
            preferences=cfg.preferences,
            timezone=cfg.timezone,
            schedule_interval_s=cfg.schedule_poll_interval_s,
            schedule_tolerance_minutes=cfg.schedule_tolerance_minutes,
            settle_s=cfg.interruption_settle_s,
        )

    def _current_session(self) -> Session | None:
        return self.orchestrator.current_session

    @property
    def session(self) -> Session | None:
        return self.orchestrator.current_session

    async def fetch(self) -> Session | None:
        session = await self.orchestrator.fetch()
        if session is not None:
            await self._on_session(session)
        return session

    async def fetch_again(self) -> Session | None:
        session = await self.orchestrator.fetch_again()
        if session is not None:
            await self._on_session(session)
        return session

    def cancel(self) -> None:
        self.orchestrator.cancel()

    def reset(self) -> None:
        """Clear user state: cancel any fetch, stop audio, forget the selection."""
        self.orchestrator.cancel()
        self.playback.reset()
        self.orchestrator.reset()
        self.feedback.clear()

    @asynccontextmanager
    async def interruption(self) -> AsyncIterator[NewsClient]:
        async with self.playback.interruption():
            yield self

    async def _on_session(self, session: Session) -> None:
        if session is not self.orchestrator.current_session:
            return
        self.feedback.load_for_session(session.id)
        if session.sections:
            await self.playback.switch_to_topic(session.sections[0], session.id, auto_play=False)

    async def _advance_to(self, index: int) -> None:
        session = self.orchestrator.current_session
        if session is None or index >= len(session.sections):
            return
        await self.playback.switch_to_topic(session.sections[index], session.id, auto_play=True)

    def close(self) -> None:
        self.schedules.stop()
        self.playback.close()
        if isinstance(self.store, SQLiteStateStore):
            self.store.close()

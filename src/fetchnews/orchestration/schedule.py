"""Schedule runner: fires scheduled summaries at their configured local time.

Definitions live on the server and are re-listed on every tick. A definition
is due when it is enabled and its ``HH:MM`` on a day it runs (an empty day
set means every day) is within ``tolerance_minutes`` of now in the user's
timezone, windows straddling midnight included. Each definition fires at
most once per matching window: the periodic tick and the foreground check
can race, so the local guard is taken before the first suspension point.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from datetime import time as dt_time
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fetchnews.errors import FetchNewsError, ScheduleListError
from fetchnews.models.domain import DAY_NAMES, ScheduleDefinition, Session
from fetchnews.orchestration.fetch import FetchOrchestrator
from fetchnews.services.news_api import RemoteNewsService

log = logging.getLogger(__name__)


def resolve_timezone(name: str) -> tzinfo:
    """ZoneInfo for ``name``, falling back to UTC when it is unknown."""
    if name in ("UTC", "Etc/UTC", ""):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r; scheduling in UTC", name)
        return timezone.utc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleRunner:
    """Polls scheduled summaries and runs the due ones through the orchestrator."""

    def __init__(
        self,
        service: RemoteNewsService,
        orchestrator: FetchOrchestrator,
        tz: tzinfo | str = "UTC",
        interval_s: float = 120.0,
        tolerance_minutes: int = 1,
        clock: Callable[[], datetime] = _utcnow,
        on_session: Callable[[Session], Any] | None = None,
    ) -> None:
        self._service = service
        self._orchestrator = orchestrator
        self._tz = resolve_timezone(tz) if isinstance(tz, str) else tz
        self._interval_s = interval_s
        self._tolerance = tolerance_minutes
        self._clock = clock
        self._on_session = on_session

        self.definitions: list[ScheduleDefinition] = []
        self._last_execution: dict[str, datetime] = {}
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Polling ──────────────────────────────────────────────────────

    def start(self) -> None:
        """Arm the periodic tick. Must be called from a running event loop."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        log.info("Schedule polling started (every %.0fs)", self._interval_s)

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        log.info("Schedule polling stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                log.exception("Schedule tick failed")
            await asyncio.sleep(self._interval_s)

    async def tick(self) -> list[str]:
        await self.refresh()
        return await self.check_due()

    async def on_foreground(self) -> list[str]:
        """One-shot check when the app returns to the foreground, independent of start/stop."""
        return await self.tick()

    async def refresh(self) -> list[ScheduleDefinition]:
        try:
            self.definitions = await self._service.list_schedules()
        except ScheduleListError as e:
            log.warning("Could not list scheduled summaries: %s", e)
            self.definitions = []
        return self.definitions

    # ── Due check ────────────────────────────────────────────────────

    def occurrence(self, definition: ScheduleDefinition, now: datetime) -> datetime | None:
        """The target time (in UTC) whose window contains ``now``, if any.

        Windows may straddle midnight, so the candidate on the previous and
        next local day are considered too. The weekday filter applies to the
        day the target falls on, not the day of ``now``.
        """
        if not definition.enabled:
            return None
        target = definition.minute_of_day
        if target is None:
            return None
        local = now.astimezone(self._tz).replace(second=0, microsecond=0)
        current = local.astimezone(timezone.utc)
        window = timedelta(minutes=self._tolerance)
        hour, minute = divmod(target, 60)
        for offset in (0, -1, 1):
            day = local.date() + timedelta(days=offset)
            candidate = datetime.combine(day, dt_time(hour, minute), tzinfo=self._tz).astimezone(timezone.utc)
            if abs(current - candidate) <= window and definition.runs_on(DAY_NAMES[day.weekday()]):
                return candidate
        return None

    def is_due(self, definition: ScheduleDefinition, now: datetime) -> bool:
        """Calendar and window match only; ignores whether it already ran."""
        return self.occurrence(definition, now) is not None

    def _already_ran(self, definition: ScheduleDefinition, occurrence: datetime) -> bool:
        # A run stamped anywhere in the occurrence's window (seconds included) counts
        window = timedelta(minutes=self._tolerance + 1)
        for last in (self._last_execution.get(definition.id), definition.last_run_at):
            if last is not None and abs(last.astimezone(timezone.utc) - occurrence) < window:
                return True
        return False

    async def check_due(self, now: datetime | None = None) -> list[str]:
        """Run every definition due at ``now``. Returns the ids that fired."""
        now = now or self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        fired: list[str] = []
        for definition in list(self.definitions):
            occurrence = self.occurrence(definition, now)
            if occurrence is None or self._already_ran(definition, occurrence):
                continue
            if self._orchestrator.is_busy:
                log.info("Schedule %s due but a fetch is in flight; will retry next tick", definition.name,
                         extra={"schedule_id": definition.id})
                continue
            topics = definition.all_topics()
            if not topics:
                log.warning("Schedule %s has no topics", definition.name, extra={"schedule_id": definition.id})
                continue

            self._last_execution[definition.id] = now
            await self._execute(definition, topics, now)
            fired.append(definition.id)
        return fired

    async def _execute(self, definition: ScheduleDefinition, topics: set[str], now: datetime) -> None:
        log.info("Running scheduled summary %s for %s", definition.name, sorted(topics),
                 extra={"schedule_id": definition.id})
        session = await self._orchestrator.run_selection(topics, definition.word_count)
        if session is None:
            error = self._orchestrator.last_error
            log.warning("Scheduled summary %s produced no session%s", definition.name,
                        f": {error}" if error else "", extra={"schedule_id": definition.id})
        elif self._on_session is not None:
            result = self._on_session(session)
            if inspect.isawaitable(result):
                await result

        definition.last_run_at = now
        try:
            await self._service.record_run(definition.id, now)
        except FetchNewsError as e:
            log.warning("Could not record run of schedule %s: %s", definition.id, e,
                        extra={"schedule_id": definition.id})

    # ── CRUD ─────────────────────────────────────────────────────────

    async def create(self, definition: ScheduleDefinition) -> ScheduleDefinition | None:
        try:
            created = await self._service.create_schedule(definition)
        except FetchNewsError as e:
            log.warning("Could not create schedule %s: %s", definition.name, e)
            return None
        await self.refresh()
        return created

    async def update(self, definition: ScheduleDefinition) -> ScheduleDefinition | None:
        try:
            updated = await self._service.update_schedule(definition)
        except FetchNewsError as e:
            log.warning("Could not update schedule %s: %s", definition.id, e, extra={"schedule_id": definition.id})
            return None
        await self.refresh()
        return updated

    async def delete(self, schedule_id: str) -> bool:
        try:
            await self._service.delete_schedule(schedule_id)
        except FetchNewsError as e:
            log.warning("Could not delete schedule %s: %s", schedule_id, e, extra={"schedule_id": schedule_id})
            return False
        self._last_execution.pop(schedule_id, None)
        await self.refresh()
        return True

from __future__ import annotations

import asyncio
import http.client
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fakes import FakeNewsService, make_session

from fetchnews.errors import FetchError, FetchErrorKind, ScheduleListError, SubmissionError
from fetchnews.models.domain import ScheduleDefinition
from fetchnews.orchestration.fetch import FetchOrchestrator
from fetchnews.orchestration.schedule import ScheduleRunner, resolve_timezone
from fetchnews.services.news_api import HttpNewsService

# A Monday
MONDAY_8AM = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


def _definition(**overrides) -> ScheduleDefinition:
    fields = dict(id="sched-1", name="Morning", time="08:00", topics=["tech"],
                  custom_topics=[], days_of_week=set(), enabled=True)
    fields.update(overrides)
    return ScheduleDefinition(**fields)


def _runner(service: FakeNewsService, *definitions: ScheduleDefinition, **kwargs) -> ScheduleRunner:
    service.schedules = list(definitions)
    runner = ScheduleRunner(service, FetchOrchestrator(service), clock=lambda: MONDAY_8AM, **kwargs)
    runner.definitions = list(definitions)
    return runner


class DueCheckTests(unittest.IsolatedAsyncioTestCase):
    async def test_fires_once_per_window(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition())

        self.assertEqual(await runner.check_due(MONDAY_8AM), ["sched-1"])
        self.assertEqual(await runner.check_due(MONDAY_8AM + timedelta(seconds=40)), [])
        self.assertEqual(await runner.check_due(MONDAY_8AM + timedelta(minutes=1)), [])

        self.assertEqual(len(service.fetch_calls), 1)
        self.assertEqual([r[0] for r in service.recorded_runs], ["sched-1"])

    async def test_midnight_window_fires_once(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(id="midnight", time="00:00"))
        late_monday = datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc)

        self.assertEqual(await runner.check_due(late_monday), ["midnight"])
        self.assertEqual(await runner.check_due(late_monday + timedelta(minutes=1)), [])
        self.assertEqual(await runner.check_due(late_monday + timedelta(minutes=2)), [])
        self.assertEqual(len(service.fetch_calls), 1)

    async def test_midnight_window_uses_target_weekday(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(id="midnight", time="00:00", days_of_week={"Tuesday"}))
        late_monday = datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc)
        self.assertEqual(await runner.check_due(late_monday), ["midnight"])

        other = _runner(FakeNewsService(), _definition(id="midnight", time="00:00", days_of_week={"Monday"}))
        self.assertEqual(await other.check_due(late_monday), [])

    async def test_server_last_run_before_midnight_guards(self) -> None:
        service = FakeNewsService()
        late_monday = datetime(2026, 10, 19, 23, 59, 30, tzinfo=timezone.utc)
        runner = _runner(service, _definition(time="00:00", last_run_at=late_monday))
        self.assertEqual(await runner.check_due(late_monday + timedelta(seconds=30)), [])

    async def test_tick_and_foreground_race_fires_once(self) -> None:
        service = FakeNewsService(gated=True)
        runner = _runner(service, _definition())

        tick = asyncio.create_task(runner.check_due(MONDAY_8AM))
        foreground = asyncio.create_task(runner.check_due(MONDAY_8AM))
        await asyncio.sleep(0)
        self.assertEqual(len(service.fetch_calls), 1)

        service.fetch_calls[0].resolve(make_session("s0", ["tech"]))
        results = await asyncio.gather(tick, foreground)
        self.assertEqual(sorted(len(r) for r in results), [0, 1])
        self.assertEqual(len(service.fetch_calls), 1)

    async def test_fires_again_next_day(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition())
        await runner.check_due(MONDAY_8AM)
        self.assertEqual(await runner.check_due(MONDAY_8AM + timedelta(days=1)), ["sched-1"])

    async def test_disabled_definition_never_fires(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(enabled=False))
        self.assertEqual(await runner.check_due(MONDAY_8AM), [])
        self.assertEqual(service.fetch_calls, [])

    async def test_day_filter(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(days_of_week={"Tuesday", "Wednesday"}))
        self.assertEqual(await runner.check_due(MONDAY_8AM), [])
        self.assertEqual(await runner.check_due(MONDAY_8AM + timedelta(days=1)), ["sched-1"])

    async def test_tolerance_window(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(), tolerance_minutes=1)
        self.assertEqual(await runner.check_due(MONDAY_8AM + timedelta(minutes=2)), [])
        self.assertEqual(await runner.check_due(MONDAY_8AM - timedelta(minutes=1)), ["sched-1"])

    async def test_last_run_today_in_window_is_skipped(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(last_run_at=MONDAY_8AM - timedelta(seconds=30)))
        self.assertEqual(await runner.check_due(MONDAY_8AM), [])

    async def test_last_run_yesterday_does_not_block(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(last_run_at=MONDAY_8AM - timedelta(days=1)))
        self.assertEqual(await runner.check_due(MONDAY_8AM), ["sched-1"])

    async def test_fetch_uses_union_of_topics_and_length(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(topics=["tech", "world"], custom_topics=["formula 1"],
                                              word_count=2000))
        await runner.check_due(MONDAY_8AM)
        call = service.fetch_calls[0]
        self.assertEqual(call.topics, {"tech", "world", "formula 1"})
        self.assertEqual(call.preferences.word_count, 2000)

    async def test_failed_fetch_is_not_retried_in_window(self) -> None:
        service = FakeNewsService()
        service.next_error = FetchError(FetchErrorKind.SERVER_ERROR, "500")
        runner = _runner(service, _definition())

        self.assertEqual(await runner.check_due(MONDAY_8AM), ["sched-1"])
        service.next_error = None
        self.assertEqual(await runner.check_due(MONDAY_8AM + timedelta(seconds=50)), [])
        self.assertEqual(len(service.fetch_calls), 1)
        self.assertEqual(len(service.recorded_runs), 1)

    async def test_record_failure_still_guards(self) -> None:
        service = FakeNewsService()
        service.record_error = SubmissionError("offline")
        definition = _definition()
        runner = _runner(service, definition)
        await runner.check_due(MONDAY_8AM)
        self.assertEqual(definition.last_run_at, MONDAY_8AM)
        self.assertEqual(await runner.check_due(MONDAY_8AM), [])

    async def test_busy_orchestrator_defers_without_guard(self) -> None:
        service = FakeNewsService(gated=True)
        runner = _runner(service, _definition())
        orch = runner._orchestrator
        orch.toggle_topic("sports")
        manual = asyncio.create_task(orch.fetch())
        await asyncio.sleep(0)

        self.assertEqual(await runner.check_due(MONDAY_8AM), [])

        orch.cancel()
        service.fetch_calls[0].resolve(make_session("s0", ["tech"]))
        await manual
        service.gated = False
        self.assertEqual(await runner.check_due(MONDAY_8AM), ["sched-1"])

    async def test_session_callback_receives_result(self) -> None:
        service = FakeNewsService()
        published = []
        runner = _runner(service, _definition(), on_session=published.append)
        await runner.check_due(MONDAY_8AM)
        self.assertEqual(len(published), 1)

    async def test_local_timezone(self) -> None:
        service = FakeNewsService()
        eastern = timezone(timedelta(hours=-5))
        runner = _runner(service, _definition(), tz=eastern)
        self.assertEqual(await runner.check_due(MONDAY_8AM), [])
        self.assertEqual(await runner.check_due(MONDAY_8AM + timedelta(hours=5)), ["sched-1"])


class PollingTests(unittest.IsolatedAsyncioTestCase):
    async def test_list_failure_degrades_to_no_schedules(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition())
        service.list_error = ScheduleListError("network down")
        self.assertEqual(await runner.refresh(), [])
        self.assertEqual(await runner.tick(), [])
        self.assertEqual(service.fetch_calls, [])

    @patch("fetchnews.services.news_api.urllib.request.urlopen")
    async def test_dropped_connection_on_foreground_degrades(self, mock_urlopen) -> None:
        mock_urlopen.side_effect = http.client.RemoteDisconnected("closed")
        service = HttpNewsService("https://api.fetchnews.example", max_retries=0)
        runner = ScheduleRunner(service, FetchOrchestrator(service), clock=lambda: MONDAY_8AM)
        runner.definitions = [_definition()]

        self.assertEqual(await runner.on_foreground(), [])
        self.assertEqual(runner.definitions, [])

    async def test_foreground_check_without_start(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition())
        runner.definitions = []
        self.assertFalse(runner.is_running)
        self.assertEqual(await runner.on_foreground(), ["sched-1"])
        self.assertEqual(service.list_calls, 1)

    async def test_start_and_stop(self) -> None:
        service = FakeNewsService()
        runner = _runner(service, _definition(enabled=False), interval_s=3600)
        runner.start()
        runner.start()
        self.assertTrue(runner.is_running)
        await asyncio.sleep(0)
        self.assertEqual(service.list_calls, 1)
        runner.stop()
        self.assertFalse(runner.is_running)
        runner.stop()

    async def test_crud_refreshes_definitions(self) -> None:
        service = FakeNewsService()
        runner = _runner(service)
        created = await runner.create(_definition(id="sched-2", name="Evening", time="18:30"))
        self.assertEqual(created.id, "sched-2")
        self.assertEqual([d.id for d in runner.definitions], ["sched-2"])

        await runner.update(_definition(id="sched-2", name="Late", time="22:00"))
        self.assertEqual(runner.definitions[0].name, "Late")

        self.assertTrue(await runner.delete("sched-2"))
        self.assertEqual(runner.definitions, [])


class HelperTests(unittest.TestCase):
    def test_unknown_timezone_falls_back_to_utc(self) -> None:
        self.assertIs(resolve_timezone("Not/AZone"), timezone.utc)
        self.assertIs(resolve_timezone("UTC"), timezone.utc)


if __name__ == "__main__":
    unittest.main()

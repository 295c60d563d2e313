from __future__ import annotations

import asyncio
import unittest
from unittest.mock import patch

from fakes import FakeNewsService, make_session

from fetchnews.db.state_store import MemoryStateStore
from fetchnews.models.domain import FeedbackState, Reaction
from fetchnews.orchestration.feedback import FeedbackCoordinator, storage_key
from fetchnews.services.news_api import HttpNewsService


class _Host:
    def __init__(self, session) -> None:
        self.session = session

    def __call__(self):
        return self.session


def _coordinator(session, service=None, store=None):
    service = service or FakeNewsService()
    store = store or MemoryStateStore()
    fc = FeedbackCoordinator(store, service, _Host(session))
    fc.load_for_session(session.id)
    return fc, service, store


class ReactionTests(unittest.TestCase):
    def test_reaction_expands_comment_editor(self) -> None:
        fc, _, _ = _coordinator(make_session("s1", ["tech"]))
        self.assertTrue(fc.set_reaction("tech", Reaction.DISLIKE))
        self.assertEqual(fc.expanded_topic, "tech")
        self.assertIs(fc.entry("tech").reaction, Reaction.DISLIKE)

    def test_same_reaction_twice_deselects(self) -> None:
        fc, _, _ = _coordinator(make_session("s1", ["tech"]))
        fc.set_reaction("tech", Reaction.LIKE)
        fc.set_comment("tech", "great")
        fc.set_reaction("tech", Reaction.LIKE)
        entry = fc.entry("tech")
        self.assertIs(entry.reaction, Reaction.NONE)
        self.assertIsNone(entry.comment)
        self.assertIsNone(fc.expanded_topic)

    def test_switching_reaction_keeps_editor_open(self) -> None:
        fc, _, _ = _coordinator(make_session("s1", ["tech"]))
        fc.set_reaction("tech", Reaction.LIKE)
        fc.set_reaction("tech", Reaction.DISLIKE)
        self.assertIs(fc.entry("tech").reaction, Reaction.DISLIKE)
        self.assertEqual(fc.expanded_topic, "tech")

    def test_deselect_other_topic_keeps_expanded(self) -> None:
        fc, _, _ = _coordinator(make_session("s1", ["tech", "sports"]))
        fc.set_reaction("sports", Reaction.LIKE)
        fc.set_reaction("tech", Reaction.LIKE)
        fc.set_reaction("sports", Reaction.LIKE)
        self.assertEqual(fc.expanded_topic, "tech")

    def test_comment_requires_reaction(self) -> None:
        fc, _, _ = _coordinator(make_session("s1", ["tech"]))
        self.assertFalse(fc.set_comment("tech", "hello"))

    def test_stale_session_rejected(self) -> None:
        fc, _, _ = _coordinator(make_session("s2", ["tech"]))
        self.assertFalse(fc.set_reaction("tech", Reaction.LIKE, session_id="s1"))
        self.assertIsNone(fc.entry("tech"))


class SubmitTests(unittest.IsolatedAsyncioTestCase):
    @patch("fetchnews.services.news_api.urllib.request.urlopen")
    async def test_connection_reset_leaves_topic_editable(self, mock_urlopen) -> None:
        mock_urlopen.side_effect = ConnectionResetError("reset")
        service = HttpNewsService("https://api.fetchnews.example", max_retries=0)
        fc, _, _ = _coordinator(make_session("s1", ["tech"]), service=service)
        fc.set_reaction("tech", Reaction.LIKE)

        self.assertFalse(await fc.submit("tech"))
        entry = fc.entry("tech")
        self.assertFalse(entry.submitted)
        self.assertFalse(entry.submitting)
        self.assertEqual(fc.submitted_topics, set())

    async def test_submit_sends_one_call_per_article(self) -> None:
        session = make_session("s1", ["tech", "sports"], articles_per_topic=3)
        fc, service, _ = _coordinator(session)
        fc.set_reaction("tech", Reaction.DISLIKE)
        self.assertEqual(fc.expanded_topic, "tech")

        self.assertTrue(await fc.submit("tech", "too shallow"))

        self.assertEqual(len(service.feedback_calls), 3)
        self.assertEqual({c["article_id"] for c in service.feedback_calls},
                         {a.id for a in session.sections[0].articles})
        for call in service.feedback_calls:
            self.assertEqual(call["topic"], "tech")
            self.assertIs(call["reaction"], Reaction.DISLIKE)
            self.assertEqual(call["comment"], "too shallow")
        self.assertEqual(fc.submitted_topics, {"tech"})
        self.assertIsNone(fc.expanded_topic)

    async def test_concurrent_submit_sends_one_batch(self) -> None:
        session = make_session("s1", ["tech"], articles_per_topic=2)
        fc, service, _ = _coordinator(session)
        service.feedback_gate = asyncio.Event()
        fc.set_reaction("tech", Reaction.LIKE)

        first = asyncio.create_task(fc.submit("tech"))
        second = asyncio.create_task(fc.submit("tech"))
        await asyncio.sleep(0)
        self.assertTrue(fc.entry("tech").submitting)

        service.feedback_gate.set()
        results = await asyncio.gather(first, second)

        self.assertEqual(sorted(results), [False, True])
        self.assertEqual(len(service.feedback_calls), 2)
        self.assertFalse(fc.entry("tech").submitting)

    async def test_submitted_topic_is_locked(self) -> None:
        session = make_session("s1", ["tech"])
        fc, service, _ = _coordinator(session)
        fc.set_reaction("tech", Reaction.LIKE)
        await fc.submit("tech")

        self.assertFalse(fc.set_reaction("tech", Reaction.DISLIKE))
        self.assertFalse(await fc.submit("tech"))
        self.assertIs(fc.entry("tech").reaction, Reaction.LIKE)
        self.assertEqual(len(service.feedback_calls), 1)

    async def test_submit_without_reaction_is_rejected(self) -> None:
        fc, service, _ = _coordinator(make_session("s1", ["tech"]))
        self.assertFalse(await fc.submit("tech"))
        self.assertEqual(service.feedback_calls, [])

    async def test_failure_leaves_entry_editable(self) -> None:
        session = make_session("s1", ["tech"], articles_per_topic=3)
        service = FakeNewsService()
        service.feedback_fail_at = 2
        fc, _, store = _coordinator(session, service)
        fc.set_reaction("tech", Reaction.LIKE)
        blob_before = store.get(storage_key("s1"))

        self.assertFalse(await fc.submit("tech", "nice"))

        entry = fc.entry("tech")
        self.assertFalse(entry.submitted)
        self.assertFalse(entry.submitting)
        self.assertIs(entry.reaction, Reaction.LIKE)
        self.assertEqual(store.get(storage_key("s1")), blob_before)

        service.feedback_fail_at = None
        self.assertTrue(await fc.submit("tech", "nice"))
        self.assertEqual(fc.submitted_topics, {"tech"})

    async def test_skip_submits_without_comment(self) -> None:
        session = make_session("s1", ["tech"])
        fc, service, _ = _coordinator(session)
        fc.set_reaction("tech", Reaction.LIKE)
        fc.set_comment("tech", "draft")
        self.assertTrue(await fc.skip("tech"))
        self.assertIsNone(service.feedback_calls[0]["comment"])

    async def test_submit_for_stale_session_is_rejected(self) -> None:
        host = _Host(make_session("s1", ["tech"]))
        service = FakeNewsService()
        fc = FeedbackCoordinator(MemoryStateStore(), service, host)
        fc.load_for_session("s1")
        fc.set_reaction("tech", Reaction.LIKE)

        host.session = make_session("s2", ["tech"])
        self.assertFalse(await fc.submit("tech", session_id="s1"))
        self.assertEqual(service.feedback_calls, [])
        self.assertEqual(fc.submitted_topics, set())


class PersistenceTests(unittest.IsolatedAsyncioTestCase):
    async def test_blob_schema(self) -> None:
        session = make_session("s1", ["tech", "sports"])
        fc, _, store = _coordinator(session)
        fc.set_reaction("tech", Reaction.DISLIKE)
        await fc.submit("tech", "too shallow")
        fc.set_reaction("sports", Reaction.LIKE)

        blob = store.get(storage_key("s1"))
        self.assertEqual(set(blob), {"topicFeedback", "expandedTopic", "topicComments", "submittedTopics"})
        self.assertEqual(blob["topicFeedback"], {"tech": "dislike", "sports": "like"})
        self.assertEqual(blob["topicComments"], {"tech": "too shallow"})
        self.assertEqual(blob["submittedTopics"], ["tech"])
        self.assertEqual(blob["expandedTopic"], "sports")
        self.assertNotIn("submitting", str(blob))

    async def test_reload_restores_state_and_clears_submitting(self) -> None:
        session = make_session("s1", ["tech"])
        store = MemoryStateStore()
        fc, _, _ = _coordinator(session, store=store)
        fc.set_reaction("tech", Reaction.LIKE)
        await fc.submit("tech")

        fresh, service, _ = _coordinator(session, store=store)
        self.assertEqual(fresh.submitted_topics, {"tech"})
        self.assertFalse(fresh.entry("tech").submitting)
        self.assertFalse(await fresh.submit("tech"))
        self.assertEqual(service.feedback_calls, [])

    async def test_new_session_does_not_inherit_feedback(self) -> None:
        host = _Host(make_session("s1", ["tech"]))
        fc = FeedbackCoordinator(MemoryStateStore(), FakeNewsService(), host)
        fc.load_for_session("s1")
        fc.set_reaction("tech", Reaction.LIKE)
        await fc.submit("tech")

        host.session = make_session("s2", ["tech"])
        self.assertEqual(fc.submitted_topics, set())
        self.assertEqual(fc.state_for("s1").submitted_topics, {"tech"})

    def test_old_session_addressable_after_clear(self) -> None:
        host = _Host(make_session("s1", ["tech"]))
        store = MemoryStateStore()
        fc = FeedbackCoordinator(store, FakeNewsService(), host)
        fc.load_for_session("s1")
        fc.set_reaction("tech", Reaction.LIKE)

        host.session = make_session("s2", ["sports"])
        fc.clear()

        old = fc.state_for("s1")
        self.assertEqual(old.session_id, "s1")
        self.assertIs(old.entry("tech").reaction, Reaction.LIKE)
        self.assertEqual(fc.state_for().session_id, "s2")
        self.assertEqual(fc.state_for("s2").entries, {})
        self.assertIsNone(fc.entry("tech"))

    def test_unknown_session_is_empty_not_live(self) -> None:
        fc, _, _ = _coordinator(make_session("s2", ["tech"]))
        fc.set_reaction("tech", Reaction.DISLIKE)
        other = fc.state_for("never-seen")
        self.assertEqual(other.session_id, "never-seen")
        self.assertEqual(other.entries, {})

    def test_from_blob_ignores_persisted_submitting(self) -> None:
        state = FeedbackState.from_blob("s1", {
            "topicFeedback": {"tech": "like"},
            "expandedTopic": "tech",
            "topicComments": {},
            "submittedTopics": [],
            "submitting": ["tech"],
        })
        self.assertFalse(state.entry("tech").submitting)
        self.assertEqual(state.expanded_topic, "tech")

    def test_storage_key_is_always_valid(self) -> None:
        self.assertEqual(storage_key("abc-123"), "feedback-abc-123")
        key = storage_key("https://weird/id with spaces")
        self.assertTrue(key.startswith("feedback-"))
        self.assertLessEqual(len(key), 64)


if __name__ == "__main__":
    unittest.main()

import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path

from knowledgechat.document_store import DocumentDatabase
from knowledgechat.models import PersonalScope, Team, TeamScope, Thread
from knowledgechat.threads import (
    ChatSelection,
    ChatThreadManager,
    pick_thread,
    reconcile_teams,
    select_personal,
    select_team,
    sort_threads,
)


def _thread(tid, created=None, updated=None):
    return Thread(id=tid, scope=PersonalScope(), created_at=created, updated_at=updated)


class TestSelectionHelpers(unittest.TestCase):
    def test_pick_thread_keeps_existing_selection(self):
        threads = [_thread("a"), _thread("b")]
        self.assertEqual(pick_thread("b", threads), "b")
        self.assertEqual(pick_thread("gone", threads), "a")
        self.assertIsNone(pick_thread("gone", []))
        self.assertIsNone(pick_thread(None, []))

    def test_sort_threads_prefers_updated_then_created(self):
        t = lambda day: datetime(2026, 1, day, tzinfo=timezone.utc)  # noqa: E731
        threads = [
            _thread("old", created=t(1)),
            _thread("bumped", created=t(1), updated=t(5)),
            _thread("new", created=t(3)),
            _thread("unknown"),
        ]
        self.assertEqual([x.id for x in sort_threads(threads)], ["bumped", "new", "old", "unknown"])

    def test_select_team_clears_thread(self):
        selection = ChatSelection(uid="u1", thread_id="t9")
        switched = select_team(selection, Team(id="team1", name="Sales"))
        self.assertEqual(switched.scope, TeamScope(team_id="team1", team_name="Sales"))
        self.assertIsNone(switched.thread_id)

    def test_select_personal(self):
        selection = ChatSelection(uid="u1", scope=TeamScope(team_id="x"), thread_id="t1")
        back = select_personal(selection)
        self.assertIsInstance(back.scope, PersonalScope)
        self.assertIsNone(back.thread_id)
        self.assertIs(select_personal(back), back)

    def test_reconcile_reverts_when_team_disappears(self):
        selection = ChatSelection(uid="u1", scope=TeamScope(team_id="x"), thread_id="t1")
        self.assertIs(reconcile_teams(selection, [Team(id="x", name="X")]), selection)
        reverted = reconcile_teams(selection, [Team(id="y", name="Y")])
        self.assertIsInstance(reverted.scope, PersonalScope)

    def test_thread_labels(self):
        created = datetime(2026, 3, 7, tzinfo=timezone.utc)
        self.assertEqual(_thread("a", created=created).label(), "3月7日のチャット")
        team_thread = Thread(id="b", scope=TeamScope(team_id="t", team_name="営業"), created_at=created)
        self.assertEqual(team_thread.label(), "営業のチャット")


class TestChatThreadManager(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = DocumentDatabase(Path(self.tmp.name) / "docs.sqlite")
        self.manager = ChatThreadManager(self.db)
        self.selection = ChatSelection(uid="u1")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_ensure_active_thread_is_lazy(self):
        self.assertEqual(self.manager.list_threads(self.selection), [])
        active = self.manager.ensure_active_thread(self.selection)
        self.assertIsNotNone(active.thread_id)
        self.assertIs(self.manager.ensure_active_thread(active), active)
        self.assertEqual(len(self.manager.list_threads(self.selection)), 1)

    def test_messages_are_ordered_and_bump_thread(self):
        active = self.manager.ensure_active_thread(self.selection)
        before = self.manager.list_threads(active)[0].updated_at
        self.manager.post_message(active, "user", "質問")
        self.manager.post_message(active, "assistant", "回答")
        messages = self.manager.list_messages(active)
        self.assertEqual([(m.sender, m.text) for m in messages], [("user", "質問"), ("assistant", "回答")])
        self.assertGreater(self.manager.list_threads(active)[0].updated_at, before)

    def test_post_message_requires_thread(self):
        with self.assertRaises(ValueError):
            self.manager.post_message(self.selection, "user", "hi")

    def test_threads_are_scoped(self):
        personal = self.manager.ensure_active_thread(self.selection)
        team_sel = ChatSelection(uid="u1", scope=TeamScope(team_id="t1", team_name="Sales"))
        team = self.manager.ensure_active_thread(team_sel)
        other_team = ChatSelection(uid="u1", scope=TeamScope(team_id="t2"))

        self.assertEqual([t.id for t in self.manager.list_threads(self.selection)], [personal.thread_id])
        self.assertEqual([t.id for t in self.manager.list_threads(team_sel)], [team.thread_id])
        self.assertEqual(self.manager.list_threads(other_team), [])
        self.assertEqual(self.manager.list_threads(team_sel)[0].scope.team_name, "Sales")

    def test_watch_threads_newest_activity_first(self):
        first = self.manager.ensure_active_thread(self.selection)
        second = self.manager.ensure_active_thread(self.selection.with_thread(None))
        snapshots = []
        self.manager.watch_threads(self.selection, lambda threads: snapshots.append([t.id for t in threads]))
        self.assertEqual(snapshots[-1], [second.thread_id, first.thread_id])

        self.manager.post_message(first, "user", "bump")
        self.assertEqual(snapshots[-1], [first.thread_id, second.thread_id])

    def test_watch_messages_without_thread_delivers_empty(self):
        delivered = []
        self.assertIsNone(self.manager.watch_messages(self.selection, delivered.append))
        self.assertEqual(delivered, [[]])

    def test_in_flight_rejects_concurrent_ask(self):
        results = []
        entered = threading.Event()
        release = threading.Event()

        def _first():
            with self.manager.in_flight("t1") as acquired:
                results.append(("first", acquired))
                entered.set()
                release.wait(5)

        worker = threading.Thread(target=_first)
        worker.start()
        entered.wait(5)
        with self.manager.in_flight("t1") as acquired:
            results.append(("second", acquired))
        with self.manager.in_flight("t2") as acquired:
            results.append(("other", acquired))
        release.set()
        worker.join(5)

        self.assertEqual(results, [("first", True), ("second", False), ("other", True)])
        with self.manager.in_flight("t1") as acquired:
            self.assertTrue(acquired)

    def test_in_flight_guards_released_after_use(self):
        for idx in range(50):
            with self.manager.in_flight(f"t{idx}") as acquired:
                self.assertTrue(acquired)
        self.assertEqual(self.manager._guards, {})

        with self.manager.in_flight("t1"):
            with self.manager.in_flight("t1") as nested:
                self.assertFalse(nested)
            self.assertIn("t1", self.manager._guards)
        self.assertEqual(self.manager._guards, {})


if __name__ == "__main__":
    unittest.main()

import tempfile
import unittest
from pathlib import Path

from knowledgechat.blob_store import LocalBlobStore
from knowledgechat.document_store import DocumentDatabase
from knowledgechat.errors import PersistenceError
from knowledgechat.knowledge_store import KnowledgeStore
from knowledgechat.models import PersonalScope, PricingPlan, SourceDraft, TeamScope
from knowledgechat.threads import ChatSelection, ChatThreadManager


def _draft(name, **extra):
    return SourceDraft(
        name=name,
        text=f"{name} text",
        summary=f"{name} summary",
        pricingPlans=[PricingPlan(name="Basic", priceMonthlyYen=1000, note="税込")],
        **extra,
    )


class TestLocalBlobStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.blobs = LocalBlobStore(Path(self.tmp.name), chunk_size=4)

    def tearDown(self):
        self.tmp.cleanup()

    def test_put_reports_non_decreasing_progress(self):
        progress = []
        self.blobs.put("users/u1/documents/1-a.pdf", b"0123456789", on_progress=progress.append)
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 100)
        url = self.blobs.url_for("users/u1/documents/1-a.pdf")
        self.assertTrue(url.startswith("file://"))

    def test_empty_blob_completes(self):
        progress = []
        self.blobs.put("x/empty.txt", b"", on_progress=progress.append)
        self.assertEqual(progress, [100])

    def test_rejects_path_traversal(self):
        with self.assertRaises(PersistenceError):
            self.blobs.put("../escape.txt", b"x")

    def test_url_for_missing_blob(self):
        with self.assertRaises(PersistenceError):
            self.blobs.url_for("missing/file.pdf")


class TestKnowledgeStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.db = DocumentDatabase(root / "docs.sqlite")
        self.blobs = LocalBlobStore(root / "blobs")
        self.store = KnowledgeStore(self.db, self.blobs)
        self.threads = ChatThreadManager(self.db)
        self.personal = ChatSelection(uid="u1")
        team = ChatSelection(uid="u1", scope=TeamScope(team_id="t1", team_name="Sales"))
        self.team = self.threads.ensure_active_thread(team)

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_scopes_write_to_separate_collections(self):
        self.store.create_source(self.personal, _draft("personal.pdf"))
        self.store.create_source(self.team, _draft("team.pdf"))
        self.assertEqual([s.name for s in self.store.list_sources(self.personal)], ["personal.pdf"])
        self.assertEqual([s.name for s in self.store.list_sources(self.team)], ["team.pdf"])

    def test_sources_newest_first(self):
        for name in ("a", "b", "c"):
            self.store.create_source(self.personal, _draft(name))
        self.assertEqual([s.name for s in self.store.list_sources(self.personal)], ["c", "b", "a"])

    def test_team_scope_without_thread_is_empty(self):
        no_thread = ChatSelection(uid="u1", scope=TeamScope(team_id="t1"))
        delivered = []
        self.assertIsNone(self.store.watch_sources(no_thread, delivered.append))
        self.assertEqual(delivered, [[]])
        self.assertEqual(self.store.list_sources(no_thread), [])

    def test_inherit_copies_fields_into_team_thread(self):
        origin = self.store.create_source(self.personal, _draft("brochure.pdf", storagePath="users/u1/documents/1-brochure.pdf"))
        created = self.store.inherit_into_team("u1", self.team.thread_id, [origin.id, "missing"])
        self.assertEqual(len(created), 1)

        copy = self.store.list_sources(self.team)[0]
        self.assertEqual(copy.inherited_from_document_id, origin.id)
        self.assertNotEqual(copy.id, origin.id)
        self.assertEqual(copy.name, origin.name)
        self.assertEqual(copy.text, origin.text)
        self.assertEqual(copy.summary, origin.summary)
        self.assertEqual(copy.storage_path, origin.storage_path)
        self.assertEqual(copy.pricing_plans, origin.pricing_plans)
        self.assertTrue(copy.is_inherited)

    def test_deleting_inherited_copy_keeps_blob(self):
        path = "users/u1/documents/1-brochure.pdf"
        self.blobs.put(path, b"%PDF-1.4")
        origin = self.store.create_source(self.personal, _draft("brochure.pdf", storagePath=path))
        self.store.inherit_into_team("u1", self.team.thread_id, [origin.id])
        copy = self.store.list_sources(self.team)[0]

        self.assertTrue(self.store.delete_source(self.team, copy, confirm=lambda s: True))
        self.assertEqual(self.store.list_sources(self.team), [])
        self.assertTrue((self.blobs.root / path).exists())
        self.assertEqual(len(self.store.list_sources(self.personal)), 1)

    def test_deleting_personal_source_removes_blob(self):
        path = self.store.blob_path_for(self.personal, "a.pdf", timestamp_ms=1700000000000)
        self.assertEqual(path, "users/u1/documents/1700000000000-a.pdf")
        self.blobs.put(path, b"%PDF-1.4")
        source = self.store.create_source(self.personal, _draft("a.pdf", storagePath=path))
        self.assertTrue(self.store.delete_source(self.personal, source, confirm=lambda s: True))
        self.assertFalse((self.blobs.root / path).exists())

    def test_deleting_team_local_source_removes_blob(self):
        path = self.store.blob_path_for(self.team, "t.pdf", timestamp_ms=1)
        self.assertEqual(path, f"users/u1/chats/{self.team.thread_id}/documents/1-t.pdf")
        self.blobs.put(path, b"%PDF-1.4")
        source = self.store.create_source(self.team, _draft("t.pdf", storagePath=path))
        self.assertTrue(self.store.delete_source(self.team, source, confirm=lambda s: True))
        self.assertFalse((self.blobs.root / path).exists())

    def test_delete_requires_confirmation(self):
        source = self.store.create_source(self.personal, _draft("keep.pdf"))
        asked = []
        self.assertFalse(self.store.delete_source(self.personal, source, confirm=lambda s: asked.append(s.name) or False))
        self.assertEqual(asked, ["keep.pdf"])
        self.assertEqual(len(self.store.list_sources(self.personal)), 1)

    def test_pasted_source_record_shape(self):
        source = self.store.create_source(self.personal, SourceDraft(name="memo.txt", text="本文", sourceType="text"))
        record = self.db.get(f"users/u1/documents/{source.id}").data
        self.assertEqual(record["sourceType"], "text")
        self.assertEqual(record["storagePath"], "")
        self.assertNotIn("inheritedFromDocumentId", record)
        self.assertIsNotNone(source.created_at)
        self.assertIsInstance(self.personal.scope, PersonalScope)


if __name__ == "__main__":
    unittest.main()

import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from knowledgechat import extractors
from knowledgechat.blob_store import LocalBlobStore
from knowledgechat.document_store import DocumentDatabase
from knowledgechat.errors import PersistenceError
from knowledgechat.models import PersonalScope, TeamScope
from knowledgechat.organization import create_team, signup_member
from knowledgechat.workspace import ASK_FAILED_MESSAGE, KnowledgeWorkspace, UploadStatus


class _FakePage:
    def __init__(self, text):
        self._text = text

    def get_text(self, mode="text"):
        return self._text


class _FakePdfDoc:
    def __init__(self, pages):
        self._pages = pages

    def __iter__(self):
        return iter(self._pages)

    def close(self):
        pass


def _html_response(html):
    resp = MagicMock()
    resp.status_code = 200
    resp.headers = {"content-type": "text/html; charset=utf-8"}
    resp.text = html
    return resp


class _WorkspaceCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.db = DocumentDatabase(root / "docs.sqlite")
        self.blobs = LocalBlobStore(root / "blobs")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def _workspace(self, **kwargs):
        ws = KnowledgeWorkspace(self.db, self.blobs, "u1", **kwargs)
        ws.start()
        self.addCleanup(ws.close)
        return ws

    def _upload_price_pdf(self, ws):
        fake = _FakePdfDoc([_FakePage("プランA 3,000円/月"), _FakePage("プランB 5,000円/月")])
        with patch.object(extractors, "fitz") as mock_fitz:
            mock_fitz.open.return_value = fake
            return ws.upload_file("price.pdf", b"%PDF-1.4 fake", "application/pdf")


class TestPersonalWorkspace(_WorkspaceCase):
    def test_pdf_upload_creates_source_and_summary_message(self):
        statuses = []
        ws = self._workspace(on_upload_status=statuses.append)
        result = self._upload_price_pdf(ws)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(len(ws.personal_sources), 1)
        source = ws.personal_sources[0]
        self.assertEqual(source.name, "price.pdf")
        self.assertIsNone(source.source_type)
        self.assertTrue(source.storage_path.startswith("users/u1/documents/"))
        self.assertTrue(source.storage_path.endswith("-price.pdf"))
        self.assertTrue(source.download_url.startswith("file://"))
        self.assertEqual(
            [(p.name, p.price_monthly_yen) for p in source.pricing_plans],
            [("プランA", 3000), ("プランB", 5000)],
        )

        self.assertEqual(ws.messages[-1].sender, "assistant")
        self.assertTrue(ws.messages[-1].text.startswith("「price.pdf」をアップロードしました。"))
        self.assertIn("料金: プランA 3,000円/月 / プランB 5,000円/月", ws.messages[-1].text)

        self.assertEqual(statuses[0], UploadStatus("price.pdf", 0))
        self.assertIn(UploadStatus("price.pdf", 100), statuses)
        self.assertIsNone(statuses[-1])
        self.assertIsNone(ws.upload_status)

    def test_price_question_answered_from_plans(self):
        ws = self._workspace()
        self._upload_price_pdf(ws)
        result = ws.ask("料金は？")
        self.assertTrue(result.ok)
        self.assertEqual(result.message, "料金情報:\nプランA: 3,000円/月\nプランB: 5,000円/月")
        self.assertEqual([m.sender for m in ws.messages], ["assistant", "user", "assistant"])
        self.assertEqual(ws.messages[1].text, "料金は？")

    def test_unsupported_upload_is_rejected(self):
        ws = self._workspace()
        result = ws.upload_file("image.png", b"\x89PNG", "image/png")
        self.assertFalse(result.ok)
        self.assertIn("PDF", result.message)
        self.assertEqual(ws.personal_sources, [])

    def test_blank_question_is_rejected(self):
        ws = self._workspace()
        self.assertFalse(ws.ask("   ").ok)
        self.assertIsNone(ws.selection.thread_id)

    def test_pinned_source_narrows_answer_and_clears_on_delete(self):
        ws = self._workspace()
        self.assertTrue(ws.add_text("memo", "alpha beta gamma").ok)
        self.assertTrue(ws.add_text("other", "delta epsilon").ok)
        other = next(s for s in ws.personal_sources if s.name == "other.txt")

        self.assertTrue(ws.pin_source(other.id).ok)
        self.assertEqual(ws.ask("alpha").message, "other.txt の概要: delta epsilon")

        self.assertTrue(ws.pin_source(None).ok)
        self.assertTrue(ws.ask("alpha").message.startswith("「memo.txt」を参照: "))

        ws.pin_source(other.id)
        self.assertTrue(ws.delete_source(other.id, confirm=lambda s: True).ok)
        self.assertIsNone(ws.pinned_source_id)
        self.assertEqual([s.name for s in ws.personal_sources], ["memo.txt"])

    def test_pin_unknown_source(self):
        ws = self._workspace()
        self.assertFalse(ws.pin_source("nope").ok)

    def test_add_url_records_source_url(self):
        ws = self._workspace()
        session = MagicMock()
        session.get.return_value = _html_response(
            "<html><head><title>料金ページ</title></head><body><p>Pro 5,000円/月</p></body></html>"
        )
        result = ws.add_url("https://example.com/pricing", session=session)
        self.assertTrue(result.ok, result.message)
        source = ws.personal_sources[0]
        self.assertEqual(source.name, "料金ページ")
        self.assertEqual(source.source_type, "url")
        self.assertEqual(source.source_url, "https://example.com/pricing")
        self.assertEqual(source.storage_path, "")

    def test_add_url_to_private_host_fails_without_fetch(self):
        ws = self._workspace()
        session = MagicMock()
        result = ws.add_url("http://127.0.0.1/admin", session=session)
        self.assertFalse(result.ok)
        session.get.assert_not_called()
        self.assertEqual(ws.personal_sources, [])

    def test_malformed_url_returns_failure(self):
        ws = self._workspace()
        session = MagicMock()
        result = ws.add_url("http://[::1", session=session)
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "URLが不正です。")
        session.get.assert_not_called()
        self.assertEqual(ws.personal_sources, [])

    def test_new_chat_switches_thread(self):
        ws = self._workspace()
        ws.add_text("memo", "本文")
        first = ws.selection.thread_id
        self.assertTrue(ws.new_chat().ok)
        self.assertNotEqual(ws.selection.thread_id, first)
        self.assertEqual(ws.messages, [])
        self.assertEqual(len(ws.thread_list), 2)
        self.assertTrue(ws.select_thread(first).ok)
        self.assertEqual(len(ws.messages), 1)

    def test_ask_failure_posts_fallback_message(self):
        ws = self._workspace()
        ws.add_text("memo", "本文")
        with patch("knowledgechat.workspace.compose_answer", side_effect=PersistenceError("disk full")):
            result = ws.ask("本文について")
        self.assertFalse(result.ok)
        self.assertEqual(ws.messages[-1].text, ASK_FAILED_MESSAGE)


class TestTeamWorkspace(_WorkspaceCase):
    def setUp(self):
        super().setUp()
        self.profile = signup_member(self.db, "u1", "owner@acme.jp", "Owner", "Acme")
        self.team = create_team(self.db, self.profile, "Sales")

    def test_team_new_chat_inherits_personal_sources(self):
        ws = self._workspace(profile=self.profile)
        self.assertEqual([t.name for t in ws.teams], ["Sales"])
        ws.add_text("handbook", "team body")
        origin = ws.personal_sources[0]

        self.assertTrue(ws.select_team(self.team.id).ok)
        self.assertEqual(ws.selection.scope, TeamScope(team_id=self.team.id, team_name="Sales"))
        self.assertEqual(ws.visible_sources, [])
        self.assertEqual(ws.chat_title(), "Salesのチャット")

        self.assertTrue(ws.new_chat([origin.id]).ok)
        self.assertIsNotNone(ws.selection.thread_id)
        inherited = ws.visible_sources
        self.assertEqual([s.name for s in inherited], ["handbook.txt"])
        self.assertEqual(inherited[0].inherited_from_document_id, origin.id)

        self.assertTrue(ws.select_personal().ok)
        self.assertEqual([s.id for s in ws.visible_sources], [origin.id])

    def test_team_removal_reverts_to_personal(self):
        ws = self._workspace(profile=self.profile)
        ws.select_team(self.team.id)
        self.db.delete(f"companies/{self.profile.company_id}/teams/{self.team.id}")
        self.assertIsInstance(ws.selection.scope, PersonalScope)
        self.assertEqual(ws.teams, [])

    def test_unknown_team_is_rejected(self):
        ws = self._workspace(profile=self.profile)
        self.assertFalse(ws.select_team("missing").ok)
        self.assertIsInstance(ws.selection.scope, PersonalScope)


if __name__ == "__main__":
    unittest.main()

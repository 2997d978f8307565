import io
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from rich.console import Console

from knowledgechat import app
from knowledgechat.blob_store import LocalBlobStore
from knowledgechat.document_store import DocumentDatabase
from knowledgechat.organization import load_company, load_profile
from knowledgechat.workspace import KnowledgeWorkspace
from scripts import bootstrap_org


class TestCliHelpers(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.db = DocumentDatabase(root / "docs.sqlite")
        self.blobs = LocalBlobStore(root / "blobs")
        self.out = io.StringIO()
        console_patch = patch.object(app, "console", Console(file=self.out, width=200))
        console_patch.start()
        self.addCleanup(console_patch.stop)

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_resolve_profile_signs_up_new_user(self):
        with patch.object(app.Confirm, "ask", return_value=True), patch.object(
            app.Prompt, "ask", side_effect=["owner@acme.jp", "Owner", "Acme"]
        ):
            profile = app.resolve_profile(self.db, "u1")
        self.assertEqual(profile.role, "owner")
        self.assertEqual(load_profile(self.db, "u1").company_name, "Acme")

    def test_resolve_profile_reports_bad_email(self):
        with patch.object(app.Confirm, "ask", return_value=True), patch.object(
            app.Prompt, "ask", side_effect=["nope", "", "Acme"]
        ):
            self.assertIsNone(app.resolve_profile(self.db, "u1"))
        self.assertIn("メールアドレス形式が不正です。", self.out.getvalue())

    def test_show_sources_lists_pricing(self):
        ws = KnowledgeWorkspace(self.db, self.blobs, "u1")
        ws.start()
        self.addCleanup(ws.close)
        ws.add_text("price", "Basic 1,000円/月")
        app.show_sources(ws)
        rendered = self.out.getvalue()
        self.assertIn("price.txt", rendered)
        self.assertIn("Basic: 1,000円/月", rendered)


class TestBootstrapScript(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "docs.sqlite"

    def tearDown(self):
        self.tmp.cleanup()

    def test_bootstrap_writes_company(self):
        code = bootstrap_org.main([
            "--org-id", "acme", "--owner-uid", "u1", "--owner-email", "owner@acme.jp",
            "--owner-name", "Owner", "--seat-limit", "3", "--db-path", str(self.db_path),
        ])
        self.assertEqual(code, 0)
        db = DocumentDatabase(self.db_path)
        try:
            company = load_company(db, "acme")
            self.assertEqual(company.seat_limit, 3)
            self.assertEqual(company.owner_uid, "u1")
        finally:
            db.close()

    def test_bootstrap_rejects_bad_seat_limit(self):
        code = bootstrap_org.main([
            "--org-id", "acme", "--owner-uid", "u1", "--owner-email", "owner@acme.jp",
            "--owner-name", "Owner", "--seat-limit", "0", "--db-path", str(self.db_path),
        ])
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()

import unittest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from knowledgechat import api_server


def _html_response(html, content_type="text/html; charset=utf-8"):
    resp = MagicMock()
    resp.status_code = 200
    resp.headers = {"content-type": content_type}
    resp.text = html
    return resp


class TestApiServer(unittest.TestCase):
    def setUp(self):
        patcher = patch("knowledgechat.api_server.initialize_llm", return_value=None)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = TestClient(api_server.app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_pdf_analyze_fallback(self):
        resp = self.client.post("/api/pdf-analyze", json={"fileName": "price.pdf", "text": "プランA 3,000円/月"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["summary"], "プランA 3,000円/月")
        self.assertEqual(body["plans"], [{"name": "プランA", "priceMonthlyYen": 3000, "note": ""}])

    def test_pdf_analyze_requires_text(self):
        resp = self.client.post("/api/pdf-analyze", json={"fileName": "empty.pdf", "text": "  "})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("error", resp.json())

    def test_pdf_analyze_unexpected_failure_degrades(self):
        with patch("knowledgechat.api_server.analyze", side_effect=RuntimeError("boom")):
            resp = self.client.post("/api/pdf-analyze", json={"fileName": "x.pdf", "text": "本文"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"summary": api_server.NO_SUMMARY_MESSAGE, "plans": []})

    def test_url_extract_requires_url(self):
        resp = self.client.post("/api/url-extract", json={"url": "  "})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "url is required"})

    def test_url_extract_rejects_private_host(self):
        with patch("knowledgechat.extractors.requests.get") as mock_get:
            resp = self.client.post("/api/url-extract", json={"url": "http://192.168.0.10/"})
        self.assertEqual(resp.status_code, 400)
        mock_get.assert_not_called()

    def test_url_extract_success(self):
        html = "<html><title>Docs</title><body><script>x()</script><p>Hello &amp; welcome</p></body></html>"
        with patch("knowledgechat.extractors.requests.get", return_value=_html_response(html)):
            resp = self.client.post("/api/url-extract", json={"url": "https://example.com/docs"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["title"], "Docs")
        self.assertIn("Hello & welcome", body["text"])
        self.assertNotIn("x()", body["text"])

    def test_url_extract_non_html(self):
        with patch("knowledgechat.extractors.requests.get", return_value=_html_response("{}", "application/json")):
            resp = self.client.post("/api/url-extract", json={"url": "https://example.com/api"})
        self.assertEqual(resp.status_code, 400)

    def test_chat_requires_question(self):
        resp = self.client.post("/api/chat", json={"question": "", "sources": []})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "question is required"})

    def test_chat_answers_from_supplied_sources(self):
        payload = {
            "question": "料金は？",
            "selectedSourceName": "price.pdf",
            "sources": [
                {"name": "price.pdf", "text": "", "summary": "料金表", "pricingPlans": [{"name": "Basic", "priceMonthlyYen": 1000}]},
                "not-a-source",
            ],
        }
        resp = self.client.post("/api/chat", json=payload)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"answer": "料金情報:\nBasic: 1,000円/月"})

    def test_chat_failure_returns_generic_answer(self):
        with patch("knowledgechat.api_server.compose_answer", side_effect=RuntimeError("boom")):
            resp = self.client.post("/api/chat", json={"question": "hi", "sources": []})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"answer": "回答生成に失敗しました。"})

    def test_metrics_endpoint(self):
        self.client.post("/api/chat", json={"question": "hi", "sources": []})
        resp = self.client.get("/metrics")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        for key in ("latency", "throughput", "endpoints", "tiers", "memory", "errors"):
            self.assertIn(key, body)
        self.assertIn("/api/chat", body["endpoints"])


if __name__ == "__main__":
    unittest.main()

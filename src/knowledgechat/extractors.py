# /knowledgechat/extractors.py
"""
Turns uploaded files, pasted text and web pages into normalized plain text.
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Protocol
from urllib.parse import urlsplit

import fitz  # PyMuPDF
import requests

from .config import URL_FETCH_TIMEOUT_S, URL_FETCH_USER_AGENT, URL_MAX_TEXT_CHARS, URL_TITLE_MAX_CHARS
from .errors import ExtractionError, FetchError, ValidationError
from .models import SourceType
from .normalization import normalize
from .observability import get_logger

logger = get_logger(__name__)

TEXT_FILE_EXTENSIONS = {"txt", "md", "csv"}
DEFAULT_PASTED_TITLE = "テキストナレッジ"

_BLOCK_TAGS_RE = re.compile(r"<(script|style|noscript|svg)\b[\s\S]*?</\1\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_TITLE_RE = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)
_ENTITIES = (
    (re.compile(r"&nbsp;", re.IGNORECASE), " "),
    (re.compile(r"&lt;", re.IGNORECASE), "<"),
    (re.compile(r"&gt;", re.IGNORECASE), ">"),
    (re.compile(r"&quot;", re.IGNORECASE), '"'),
    (re.compile(r"&#39;", re.IGNORECASE), "'"),
    (re.compile(r"&amp;", re.IGNORECASE), "&"),
)


@dataclass(frozen=True)
class ExtractedContent:
    title: str
    text: str
    source_type: SourceType


class ContentExtractor(Protocol):
    def extract(self) -> ExtractedContent:
        ...


def _extension(file_name: str) -> str:
    return PurePosixPath(str(file_name or "")).suffix.lower().lstrip(".")


class PdfExtractor:
    def __init__(self, file_name: str, data: bytes):
        self.file_name = str(file_name or "document.pdf")
        self.data = bytes(data or b"")

    def extract(self) -> ExtractedContent:
        try:
            doc = fitz.open(stream=self.data, filetype="pdf")
        except Exception as exc:
            logger.warning("pdf_open_failed", file_name=self.file_name, error=str(exc))
            raise ExtractionError(f"PDFを読み込めませんでした: {self.file_name}") from exc

        pages: list[str] = []
        try:
            for page in doc:
                runs = [part for part in str(page.get_text("text") or "").split() if part]
                if runs:
                    pages.append(" ".join(runs))
        except Exception as exc:
            logger.warning("pdf_text_failed", file_name=self.file_name, error=str(exc))
            raise ExtractionError(f"PDFのテキスト抽出に失敗しました: {self.file_name}") from exc
        finally:
            doc.close()

        text = normalize("\n".join(pages))
        logger.info("pdf_extracted", file_name=self.file_name, pages=len(pages), chars=len(text))
        return ExtractedContent(title=self.file_name, text=text, source_type="pdf")


class TextFileExtractor:
    def __init__(self, file_name: str, data: bytes, content_type: str = ""):
        self.file_name = str(file_name or "document.txt")
        self.data = bytes(data or b"")
        self.content_type = str(content_type or "").lower()

    def extract(self) -> ExtractedContent:
        if not (self.content_type.startswith("text/") or _extension(self.file_name) in TEXT_FILE_EXTENSIONS):
            raise ValidationError("テキストファイル（txt / md / csv）を選択してください。")
        text = normalize(self.data.decode("utf-8-sig", errors="replace"))
        return ExtractedContent(title=self.file_name, text=text, source_type="text")


class PastedTextExtractor:
    def __init__(self, title: str, body: str):
        self.title = " ".join(str(title or "").split()) or DEFAULT_PASTED_TITLE
        self.body = str(body or "")

    def extract(self) -> ExtractedContent:
        text = normalize(self.body)
        if not text:
            raise ValidationError("テキストを入力してください。")
        return ExtractedContent(title=f"{self.title}.txt", text=text, source_type="text")


def is_private_host(hostname: str) -> bool:
    host = str(hostname or "").strip().lower().rstrip(".")
    if not host or host == "localhost" or host.endswith(".local"):
        return True
    if host == "0.0.0.0" or host.startswith("127."):
        return True
    if host.startswith("10.") or host.startswith("192.168."):
        return True
    if re.match(r"^172\.(1[6-9]|2\d|3[01])\.", host):
        return True
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified


def html_to_text(html: str) -> str:
    text = _BLOCK_TAGS_RE.sub(" ", html)
    text = _TAG_RE.sub(" ", text)
    for pattern, replacement in _ENTITIES:
        text = pattern.sub(replacement, text)
    return normalize(text)


def extract_title(html: str, fallback: str) -> str:
    match = _TITLE_RE.search(html)
    title = normalize(match.group(1))[:URL_TITLE_MAX_CHARS] if match else ""
    return title or fallback


class UrlExtractor:
    def __init__(self, url: str, session: requests.Session | None = None):
        self.url = str(url or "").strip()
        self.session = session

    def _validated(self) -> tuple[str, str]:
        if not self.url:
            raise FetchError("URLを入力してください。")
        try:
            parts = urlsplit(self.url)
            hostname = parts.hostname or ""
        except ValueError as exc:
            raise FetchError("URLが不正です。") from exc
        if parts.scheme.lower() not in {"http", "https"}:
            raise FetchError("http/https のURLのみ対応しています。")
        if is_private_host(hostname):
            raise FetchError("このホストにはアクセスできません。")
        return parts.geturl(), hostname

    def extract(self) -> ExtractedContent:
        url, hostname = self._validated()
        headers = {"User-Agent": URL_FETCH_USER_AGENT, "Accept": "text/html,application/xhtml+xml"}
        getter = self.session.get if self.session is not None else requests.get
        try:
            resp = getter(url, headers=headers, timeout=URL_FETCH_TIMEOUT_S, allow_redirects=True)
        except requests.RequestException as exc:
            logger.warning("url_fetch_failed", url=url, error=str(exc))
            raise FetchError("ページを取得できませんでした。") from exc

        if not 200 <= int(resp.status_code) < 300:
            raise FetchError(f"ページの取得に失敗しました: {resp.status_code}")
        content_type = str(resp.headers.get("content-type", "")).lower()
        if "text/html" not in content_type:
            raise FetchError("HTMLページのみ対応しています。")

        html = resp.text or ""
        title = extract_title(html, hostname)
        text = html_to_text(html)[:URL_MAX_TEXT_CHARS]
        if not text:
            raise ExtractionError("ページから本文を取得できませんでした。")
        logger.info("url_extracted", url=url, chars=len(text))
        return ExtractedContent(title=title, text=text, source_type="url")


def detect_upload_kind(file_name: str, content_type: str = "") -> SourceType:
    mime = str(content_type or "").lower()
    ext = _extension(file_name)
    if mime == "application/pdf" or ext == "pdf":
        return "pdf"
    if mime.startswith("text/") or ext in TEXT_FILE_EXTENSIONS:
        return "text"
    raise ValidationError("PDFまたはテキストファイル（txt / md / csv）を選択してください。")


def extractor_for_upload(file_name: str, data: bytes, content_type: str = "") -> ContentExtractor:
    if detect_upload_kind(file_name, content_type) == "pdf":
        return PdfExtractor(file_name, data)
    return TextFileExtractor(file_name, data, content_type)

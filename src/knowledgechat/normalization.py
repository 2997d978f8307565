"""
Text normalization shared by extraction, analysis and answer matching.
"""
from __future__ import annotations

import re
import unicodedata

_CJK_CHARS = (
    "々〇"            # ideographic iteration / zero marks
    "ぁ-ゖゝ-ゟ"        # hiragana, without the combining and spacing sound marks
    "ァ-ヺヽ-ヿ"  # katakana
    "ㇰ-ㇿ"           # katakana phonetic extensions
    "㐀-䶿"           # CJK extension A
    "一-鿿"           # CJK unified ideographs
    "豈-﫿"           # compatibility ideographs
    "\U00020000-\U0002fa1f"   # supplementary ideographs
)
_CJK_GAP_RE = re.compile(rf"(?<=[{_CJK_CHARS}])\s+(?=[{_CJK_CHARS}])")
_WHITESPACE_RE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(text or "")).strip()


def normalize(raw: str) -> str:
    """
    Canonicalizes extracted text.
    NFKC, then drops whitespace sitting between two CJK characters (PDF and
    HTML extraction inject spaces mid-word), then collapses whitespace runs.
    Idempotent.
    """
    text = unicodedata.normalize("NFKC", str(raw or ""))
    text = _CJK_GAP_RE.sub("", text)
    return collapse_whitespace(text)


def normalize_for_matching(raw: str) -> str:
    """Lowercased, whitespace-collapsed form used for substring matching."""
    return collapse_whitespace(str(raw or "").lower())


def question_tokens(question: str, *, min_len: int = 2) -> list[str]:
    """Splits a question on whitespace, keeping tokens of at least `min_len` characters."""
    safe_min_len = max(1, int(min_len))
    normalized = normalize_for_matching(question)
    if not normalized:
        return []
    return [token for token in normalized.split(" ") if len(token) >= safe_min_len]

# /knowledgechat/answer_engine.py
"""
Answers a question against the Sources visible in the active scope.

Tier 1 is the hosted model with a bounded context. When it is unavailable or
fails, a deterministic local pass answers from structured prices, price-like
text segments, or the best token-overlap snippet.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from langchain_core.prompts import ChatPromptTemplate

from .analysis import format_plan_line, format_price
from .config import (
    CHAT_MAX_SOURCES,
    CHAT_SUMMARY_CHARS,
    CHAT_TEXT_CHARS,
    SNIPPET_CHARS_AFTER,
    SNIPPET_CHARS_BEFORE,
)
from .errors import RemoteServiceError
from .llm import invoke_text, strip_reasoning
from .models import SourceDraft, dedupe_plans
from .normalization import collapse_whitespace, normalize, normalize_for_matching, question_tokens
from .observability import get_logger

logger = get_logger(__name__)

NO_SOURCES_MESSAGE = "先にPDFをアップロードしてください。"
NO_TEXT_MESSAGE = "回答に使えるテキストを見つけられませんでした。"
PRICE_HEADER = "料金情報:"
NONE_LABEL = "なし"

PRICE_INTENT_RE = re.compile(r"料金|価格|費用|プラン|月額|値段")
_PRICE_LINE_RE = re.compile(r"([0-9]{1,3}(?:,[0-9]{3})+|[0-9]{2,6})\s*円\s*/?\s*月")
_PRICE_BOUNDARY_RE = re.compile(r"円\s*/?\s*月")
_MAX_PRICE_LINES = 5

_CHAT_PROMPT = ChatPromptTemplate.from_template(
    """あなたは社内ナレッジアシスタントです。
基本は与えられたナレッジを根拠に回答しつつ、質問が一般論や作成依頼の場合は実務的な提案や雛形を追加してください。
不明な事実は断定しないでください。
{selected_line}

利用可能ナレッジ:
{context}

ユーザー質問: {question}"""
)

_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", flags=re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_BACKTICKS_RE = re.compile(r"`{1,3}")
_NUMBERED_RE = re.compile(r"\s+([0-9]+\.)\s+")
_SENTENCE_END_RE = re.compile(r"。\s+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class AnswerResult:
    text: str
    tier: str


# ---------------------------------------------------------------------------
# Remote tier
# ---------------------------------------------------------------------------

def build_chat_context(sources: Sequence[SourceDraft]) -> str:
    blocks: list[str] = []
    for idx, source in enumerate(list(sources)[:CHAT_MAX_SOURCES], start=1):
        if source.pricing_plans:
            pricing = " / ".join(
                f"{plan.name}: {format_price(plan.price_monthly_yen)}" + (f" ({plan.note})" if plan.note else "")
                for plan in source.pricing_plans
            )
        else:
            pricing = NONE_LABEL
        summary = collapse_whitespace(source.summary)[:CHAT_SUMMARY_CHARS] or NONE_LABEL
        text = collapse_whitespace(source.text)[:CHAT_TEXT_CHARS] or NONE_LABEL
        blocks.append(
            "\n".join(
                [
                    f"## Source {idx}: {source.name}",
                    f"Summary: {summary}",
                    f"Pricing: {pricing}",
                    f"Text: {text}",
                ]
            )
        )
    return "\n\n".join(blocks)


def format_assistant_message(text: str) -> str:
    """Flattens markdown the model tends to emit into chat-friendly plain text."""
    out = _HEADING_RE.sub("", str(text or ""))
    out = _BOLD_RE.sub(r"\1", out)
    out = _BACKTICKS_RE.sub("", out)
    out = _NUMBERED_RE.sub(r"\n\1 ", out)
    out = _SENTENCE_END_RE.sub("。\n", out)
    out = _BLANK_LINES_RE.sub("\n\n", out)
    return out.strip()


def remote_answer(question: str, selected_name: str | None, sources: Sequence[SourceDraft], llm) -> str:
    selected_line = f"現在選択中のナレッジ: {selected_name}" if selected_name else "選択中ナレッジ: なし"
    raw = invoke_text(
        llm,
        _CHAT_PROMPT,
        {
            "selected_line": selected_line,
            "context": build_chat_context(sources) or NONE_LABEL,
            "question": question,
        },
    )
    text = format_assistant_message(strip_reasoning(raw))
    if not text:
        raise RemoteServiceError("language model returned an empty answer")
    return text


# ---------------------------------------------------------------------------
# Local tier
# ---------------------------------------------------------------------------

def is_price_question(question: str) -> bool:
    return bool(PRICE_INTENT_RE.search(str(question or "")))


def extract_price_lines(text: str) -> list[str]:
    """Segments of the text that end in `<amount>円/月`, unique, first five."""
    normalized = normalize(text)
    segments: list[str] = []
    start = 0
    for match in _PRICE_BOUNDARY_RE.finditer(normalized):
        segments.append(normalized[start : match.end()])
        start = match.end()
    segments.append(normalized[start:])

    lines: list[str] = []
    for segment in segments:
        line = segment.strip()
        if line and _PRICE_LINE_RE.search(line) and line not in lines:
            lines.append(line)
            if len(lines) >= _MAX_PRICE_LINES:
                break
    return lines


def price_answer(sources: Sequence[SourceDraft]) -> str | None:
    plans = dedupe_plans(plan for source in sources for plan in source.pricing_plans if plan.name)
    if plans:
        return PRICE_HEADER + "\n" + "\n".join(format_plan_line(plan) for plan in plans)
    lines = [line for source in sources for line in extract_price_lines(source.text)]
    if lines:
        return PRICE_HEADER + "\n" + "\n".join(lines)
    return None


def _snippet(text: str, start: int, end: int) -> str:
    return collapse_whitespace(text[max(0, start) : min(len(text), end)])


def overlap_answer(question: str, sources: Sequence[SourceDraft]) -> str:
    tokens = question_tokens(question)
    best: SourceDraft | None = None
    best_score = -1
    best_snippet = ""

    for source in sources:
        haystack = normalize_for_matching(source.text)
        if not haystack:
            continue
        score = 0
        first_hit = -1
        for token in tokens:
            index = haystack.find(token)
            if index >= 0:
                score += 1
                if first_hit < 0 or index < first_hit:
                    first_hit = index
        if score > best_score:
            best_score = score
            best = source
            if first_hit >= 0:
                best_snippet = _snippet(source.text, first_hit - SNIPPET_CHARS_BEFORE, first_hit + SNIPPET_CHARS_AFTER)
            else:
                best_snippet = _snippet(source.text, 0, SNIPPET_CHARS_AFTER)

    if best is None:
        return NO_TEXT_MESSAGE
    if best.summary and best_score <= 0:
        return f"{best.name} の概要: {best.summary}"
    return f"「{best.name}」を参照: {best_snippet}"


def local_answer(question: str, sources: Sequence[SourceDraft]) -> str:
    if not sources:
        return NO_SOURCES_MESSAGE
    if is_price_question(question):
        priced = price_answer(sources)
        if priced:
            return priced
    return overlap_answer(question, sources)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def compose_answer(
    question: str,
    selected_source: SourceDraft | None,
    candidate_sources: Sequence[SourceDraft],
    llm=None,
) -> AnswerResult:
    sources = list(candidate_sources or [])
    if not sources:
        return AnswerResult(text=NO_SOURCES_MESSAGE, tier="none")

    if llm is not None:
        selected_name = selected_source.name if selected_source is not None else None
        try:
            return AnswerResult(text=remote_answer(question, selected_name, sources, llm), tier="remote")
        except RemoteServiceError as exc:
            logger.warning("answer_remote_failed", error=exc.message, sources=len(sources))

    return AnswerResult(text=local_answer(question, sources), tier="fallback")


def answer(
    question: str,
    selected_source: SourceDraft | None,
    candidate_sources: Sequence[SourceDraft],
    llm=None,
) -> str:
    return compose_answer(question, selected_source, candidate_sources, llm=llm).text

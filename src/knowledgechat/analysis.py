# /knowledgechat/analysis.py
"""
Summary and monthly-pricing extraction for ingested text.

The hosted model is asked for strict JSON; anything unusable (no model, call
failure, unparseable reply) falls back to a deterministic regex pass.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from langchain_core.prompts import ChatPromptTemplate

from .config import ANALYSIS_MAX_INPUT_CHARS, FALLBACK_SUMMARY_CHARS, MAX_PRICING_PLANS
from .errors import RemoteServiceError, ValidationError
from .llm import invoke_text
from .models import PricingPlan, dedupe_plans, parse_pricing_plans
from .normalization import normalize
from .observability import get_logger

logger = get_logger(__name__)

NO_SUMMARY_MESSAGE = "概要を抽出できませんでした。"
DEFAULT_PLAN_NAME = "プラン"
UNKNOWN_PRICE = "価格不明"

_PLAN_RE = re.compile(
    r"([A-Za-zぁ-んァ-ヶ一-龠ー・\s]{1,20})\s*([0-9]{1,3}(?:,[0-9]{3})+|[0-9]{2,6})\s*円\s*/?\s*月"
)

_ANALYSIS_PROMPT = ChatPromptTemplate.from_template(
    """以下は「{file_name}」の抽出テキストです。
次のJSONだけを返してください。説明文は不要です。
{{ "summary": "200文字以内の日本語要約", "plans": [{{ "name": "プラン名", "priceMonthlyYen": 30000, "note": "補足" }}] }}
priceMonthlyYen は月額料金が不明なら null。
plans は重複なし。最大8件。

{text}"""
)


@dataclass(frozen=True)
class AnalysisResult:
    summary: str
    plans: list[PricingPlan] = field(default_factory=list)
    tier: str = "fallback"

    def to_payload(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "plans": [plan.model_dump(by_alias=True) for plan in self.plans],
        }


def fallback_analyze(text: str) -> AnalysisResult:
    normalized = normalize(text)
    summary = normalized[:FALLBACK_SUMMARY_CHARS] or NO_SUMMARY_MESSAGE
    plans: list[PricingPlan] = []
    for match in _PLAN_RE.finditer(normalized):
        name = " ".join(match.group(1).split()) or DEFAULT_PLAN_NAME
        amount = int(match.group(2).replace(",", ""))
        plans.append(PricingPlan(name=name, priceMonthlyYen=amount, note=""))
    return AnalysisResult(summary=summary, plans=dedupe_plans(plans, MAX_PRICING_PLANS), tier="fallback")


def _json_objects(raw: str) -> Iterable[str]:
    """Yields balanced {...} substrings in order of their opening brace."""
    start = raw.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(raw)):
            ch = raw[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    yield raw[start : idx + 1]
                    break
        start = raw.find("{", start + 1)


def _coerce_payload(payload: Any) -> AnalysisResult | None:
    if not isinstance(payload, dict):
        return None
    summary = payload.get("summary")
    summary = summary.strip() if isinstance(summary, str) else ""
    plans = dedupe_plans(parse_pricing_plans(payload.get("plans")), MAX_PRICING_PLANS)
    if not summary and not plans:
        return None
    return AnalysisResult(summary=summary, plans=plans, tier="remote")


def parse_analysis(raw: str) -> AnalysisResult | None:
    """Direct JSON first, then the first balanced object that parses."""
    text = str(raw or "").strip()
    try:
        result = _coerce_payload(json.loads(text))
    except json.JSONDecodeError:
        result = None
    if result is not None:
        return result
    for candidate in _json_objects(text):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        result = _coerce_payload(payload)
        if result is not None:
            return result
    return None


def analyze(name: str, text: str, llm=None) -> AnalysisResult:
    normalized = normalize(text)
    if not normalized:
        raise ValidationError("text is required")
    file_name = str(name or "PDF")

    if llm is None:
        return fallback_analyze(normalized)

    try:
        raw = invoke_text(
            llm,
            _ANALYSIS_PROMPT,
            {"file_name": file_name, "text": normalized[:ANALYSIS_MAX_INPUT_CHARS]},
        )
    except RemoteServiceError as exc:
        logger.warning("analysis_remote_failed", file_name=file_name, error=exc.message)
        return fallback_analyze(normalized)

    parsed = parse_analysis(raw)
    if parsed is None:
        logger.warning("analysis_unparseable", file_name=file_name, reply_chars=len(raw))
        return fallback_analyze(normalized)
    if not parsed.summary:
        parsed = AnalysisResult(
            summary=fallback_analyze(normalized).summary,
            plans=parsed.plans,
            tier=parsed.tier,
        )
    logger.info("analysis_completed", file_name=file_name, plans=len(parsed.plans))
    return parsed


def format_price(value: int | float | None) -> str:
    if value is None:
        return UNKNOWN_PRICE
    if isinstance(value, float) and not value.is_integer():
        amount = f"{value:,.3f}".rstrip("0").rstrip(".")
    else:
        amount = f"{int(value):,}"
    return f"{amount}円/月"


def format_plan_line(plan: PricingPlan) -> str:
    line = f"{plan.name}: {format_price(plan.price_monthly_yen)}"
    if plan.note:
        line += f"（{plan.note}）"
    return line


def build_upload_summary_message(name: str, summary: str, plans: list[PricingPlan]) -> str:
    summary_line = str(summary or "").strip() or NO_SUMMARY_MESSAGE
    if plans:
        plan_line = "料金: " + " / ".join(f"{p.name} {format_price(p.price_monthly_yen)}" for p in plans)
    else:
        plan_line = "料金: 抽出なし"
    return f"「{name}」をアップロードしました。\n概要: {summary_line}\n{plan_line}"

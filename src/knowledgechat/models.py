"""
Domain records for sources, pricing plans, threads, messages and organizations.
Stored and wire field names are camelCase; Python attributes are snake_case.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SourceType = Literal["pdf", "text", "url"]
Sender = Literal["user", "assistant"]
MemberRole = Literal["owner", "member"]

_NUMERIC_STRIP = str.maketrans("", "", ",円 ")


def coerce_price(value: Any) -> int | float | None:
    """Returns a finite number or None. Booleans, NaN and inf never leak through."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        cleaned = value.strip().translate(_NUMERIC_STRIP)
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PricingPlan(_Record):
    name: str
    price_monthly_yen: int | float | None = Field(default=None, alias="priceMonthlyYen")
    note: str = ""

    @field_validator("name", mode="before")
    @classmethod
    def _name_required(cls, value: Any) -> str:
        name = " ".join(str(value if value is not None else "").split())
        if not name:
            raise ValueError("plan name must not be empty")
        return name

    @field_validator("price_monthly_yen", mode="before")
    @classmethod
    def _price_number_or_none(cls, value: Any) -> int | float | None:
        return coerce_price(value)

    @field_validator("note", mode="before")
    @classmethod
    def _note_text(cls, value: Any) -> str:
        return str(value if value is not None else "").strip()

    @property
    def dedupe_key(self) -> tuple[str, int | float | None]:
        return (self.name, self.price_monthly_yen)


def parse_pricing_plans(raw: Any) -> list[PricingPlan]:
    """Builds plans from loosely-typed rows, dropping rows without a usable name."""
    if not isinstance(raw, (list, tuple)):
        return []
    plans: list[PricingPlan] = []
    for item in raw:
        if isinstance(item, PricingPlan):
            plans.append(item)
            continue
        if not isinstance(item, dict):
            continue
        name = " ".join(str(item.get("name") or "").split())
        if not name:
            continue
        plans.append(
            PricingPlan(
                name=name,
                priceMonthlyYen=item.get("priceMonthlyYen", item.get("price_monthly_yen")),
                note=item.get("note", ""),
            )
        )
    return plans


def dedupe_plans(plans: Iterable[PricingPlan], limit: int | None = None) -> list[PricingPlan]:
    """Keeps the first plan per (name, price) pair, in input order."""
    seen: set[tuple[str, int | float | None]] = set()
    out: list[PricingPlan] = []
    for plan in plans:
        key = plan.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        out.append(plan)
        if limit is not None and len(out) >= limit:
            break
    return out


class SourceDraft(_Record):
    """Everything about a Source that is known before the store assigns id and timestamp."""

    name: str
    text: str = ""
    summary: str = ""
    pricing_plans: list[PricingPlan] = Field(default_factory=list, alias="pricingPlans")
    storage_path: str = Field(default="", alias="storagePath")
    download_url: str = Field(default="", alias="downloadUrl")
    source_type: SourceType | None = Field(default=None, alias="sourceType")
    source_url: str = Field(default="", alias="sourceUrl")
    inherited_from_document_id: str | None = Field(default=None, alias="inheritedFromDocumentId")

    @field_validator("pricing_plans", mode="before")
    @classmethod
    def _plans(cls, value: Any) -> list[PricingPlan]:
        return parse_pricing_plans(value)

    @field_validator("inherited_from_document_id", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> str | None:
        text = str(value or "").strip()
        return text or None

    @field_validator("source_type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> str | None:
        text = str(value or "").strip().lower()
        return text if text in {"pdf", "text", "url"} else None

    @field_validator("text", "summary", "storage_path", "download_url", "source_url", mode="before")
    @classmethod
    def _text_or_blank(cls, value: Any) -> str:
        return str(value if value is not None else "")

    def to_record(self) -> dict[str, Any]:
        record = self.model_dump(by_alias=True, include=set(SourceDraft.model_fields))
        if record.get("sourceType") is None:
            record.pop("sourceType", None)
        if record.get("inheritedFromDocumentId") is None:
            record.pop("inheritedFromDocumentId", None)
        return record


class Source(SourceDraft):
    id: str
    created_at: datetime | None = Field(default=None, alias="createdAt")

    @classmethod
    def from_record(cls, doc_id: str, data: dict[str, Any]) -> "Source":
        payload = dict(data or {})
        payload["id"] = str(doc_id)
        payload["name"] = str(payload.get("name") or "Untitled")
        payload["createdAt"] = parse_timestamp(payload.get("createdAt"))
        return cls.model_validate(payload)

    @property
    def is_inherited(self) -> bool:
        return bool(self.inherited_from_document_id)


# ---------------------------------------------------------------------------
# Scope: tagged variant, matched exhaustively via `scope_key`.
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PersonalScope:
    scope_type: Literal["personal"] = "personal"


@dataclass(frozen=True)
class TeamScope:
    team_id: str
    team_name: str = ""
    scope_type: Literal["team"] = "team"


Scope = PersonalScope | TeamScope


def scope_key(scope: Scope) -> tuple[str, str]:
    if isinstance(scope, PersonalScope):
        return ("personal", "")
    if isinstance(scope, TeamScope):
        return ("team", scope.team_id)
    raise TypeError(f"unknown scope: {scope!r}")


@dataclass(frozen=True)
class Thread:
    id: str
    scope: Scope
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, doc_id: str, data: dict[str, Any]) -> "Thread":
        if str(data.get("scopeType") or "personal") == "team":
            scope: Scope = TeamScope(
                team_id=str(data.get("teamId") or ""),
                team_name=str(data.get("teamName") or ""),
            )
        else:
            scope = PersonalScope()
        return cls(
            id=str(doc_id),
            scope=scope,
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )

    @property
    def sort_time(self) -> datetime | None:
        return self.updated_at or self.created_at

    def label(self) -> str:
        if isinstance(self.scope, TeamScope) and self.scope.team_name:
            return f"{self.scope.team_name}のチャット"
        stamp = self.created_at or datetime.now()
        return f"{stamp.month}月{stamp.day}日のチャット"


@dataclass(frozen=True)
class Message:
    id: str
    sender: Sender
    text: str
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, doc_id: str, data: dict[str, Any]) -> "Message":
        sender = str(data.get("sender") or "assistant")
        return cls(
            id=str(doc_id),
            sender="user" if sender == "user" else "assistant",
            text=str(data.get("text") or ""),
            created_at=parse_timestamp(data.get("createdAt")),
        )


class MemberProfile(_Record):
    uid: str
    email: str = ""
    display_name: str = Field(default="", alias="displayName")
    company_id: str = Field(default="", alias="companyId")
    company_name: str = Field(default="", alias="companyName")
    role: MemberRole = "member"


class Company(_Record):
    id: str
    name: str
    seat_limit: int = Field(default=10, alias="seatLimit")
    seats_used: int = Field(default=0, alias="seatsUsed")
    owner_uid: str = Field(default="", alias="ownerUid")


class Team(_Record):
    id: str
    name: str = "無題のチーム"
    company_id: str = Field(default="", alias="companyId")
    member_uids: list[str] = Field(default_factory=list, alias="memberUids")
    created_by_uid: str = Field(default="", alias="createdByUid")

    @field_validator("member_uids", mode="before")
    @classmethod
    def _uid_list(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [str(uid) for uid in value if str(uid or "").strip()]

"""Collection and document paths used by the document database and blob store."""
from __future__ import annotations


def user_doc(uid: str) -> str:
    return f"users/{uid}"


def personal_sources(uid: str) -> str:
    return f"users/{uid}/documents"


def threads(uid: str) -> str:
    return f"users/{uid}/chats"


def thread_doc(uid: str, chat_id: str) -> str:
    return f"users/{uid}/chats/{chat_id}"


def thread_sources(uid: str, chat_id: str) -> str:
    return f"users/{uid}/chats/{chat_id}/documents"


def thread_messages(uid: str, chat_id: str) -> str:
    return f"users/{uid}/chats/{chat_id}/messages"


COMPANIES = "companies"
USERS = "users"


def company_doc(company_id: str) -> str:
    return f"companies/{company_id}"


def company_members(company_id: str) -> str:
    return f"companies/{company_id}/members"


def company_teams(company_id: str) -> str:
    return f"companies/{company_id}/teams"


def company_invites(company_id: str) -> str:
    return f"companies/{company_id}/teamInvites"

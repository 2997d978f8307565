# /knowledgechat/organization.py
"""
Companies, member profiles, teams and invitations.
"""
from __future__ import annotations

import re
from typing import Callable, Sequence

from . import paths
from .config import DEFAULT_SEAT_LIMIT, MEMBER_LIST_LIMIT, TEAM_LIST_LIMIT
from .document_store import SERVER_TIMESTAMP, DocumentDatabase, Increment, Query, Subscription
from .errors import AuthorizationError, ValidationError
from .models import Company, MemberProfile, Team
from .observability import get_logger

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def signup_member(
    db: DocumentDatabase,
    uid: str,
    email: str,
    display_name: str,
    company_name: str,
) -> MemberProfile:
    """
    Registers a user's profile and company seat.

    The first member of a company creates it and becomes owner; later members
    join by exact company name while seats remain. Seat increment and profile
    write commit together.
    """
    uid = str(uid or "").strip()
    email = str(email or "").strip()
    company = str(company_name or "").strip()
    name = str(display_name or "").strip()
    if not uid:
        raise ValidationError("uid is required")
    if not _EMAIL_RE.match(email):
        raise ValidationError("メールアドレス形式が不正です。")
    if not company:
        raise ValidationError("会社名を入力してください。")

    with db.transaction() as tx:
        existing = tx.query(Query(paths.COMPANIES).where("name", "==", company).limit(1))
        if not existing:
            company_id = tx.create(
                paths.COMPANIES,
                {
                    "name": company,
                    "seatLimit": DEFAULT_SEAT_LIMIT,
                    "seatsUsed": 1,
                    "ownerUid": uid,
                    "createdAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
            role = "owner"
        else:
            snap = existing[0]
            seat_limit = int(snap.data.get("seatLimit") or DEFAULT_SEAT_LIMIT)
            seats_used = int(snap.data.get("seatsUsed") or 0)
            if seats_used >= seat_limit:
                raise AuthorizationError(
                    f"この会社の利用可能ID数（{seat_limit}）に達しています。管理者に連絡してください。"
                )
            company_id = snap.id
            tx.update(paths.company_doc(company_id), {"seatsUsed": Increment(1), "updatedAt": SERVER_TIMESTAMP})
            role = "member"

        profile = {
            "uid": uid,
            "email": email,
            "displayName": name or email,
            "companyId": company_id,
            "companyName": company,
            "role": role,
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        tx.set(paths.user_doc(uid), profile)

    logger.info("member_signed_up", uid=uid, company_id=company_id, role=role)
    return MemberProfile.model_validate(profile)


def load_profile(db: DocumentDatabase, uid: str) -> MemberProfile | None:
    snap = db.get(paths.user_doc(uid))
    if snap is None:
        return None
    return MemberProfile.model_validate({**snap.data, "uid": uid})


def load_company(db: DocumentDatabase, company_id: str) -> Company | None:
    snap = db.get(paths.company_doc(company_id))
    if snap is None:
        return None
    return Company.model_validate({**snap.data, "id": snap.id})


def create_team(
    db: DocumentDatabase,
    profile: MemberProfile,
    name: str,
    member_uids: Sequence[str] = (),
) -> Team:
    if not profile.company_id:
        raise AuthorizationError("companyId が未設定です。")
    team_name = str(name or "").strip()
    if not team_name:
        raise ValidationError("チーム名を入力してください。")

    members: list[str] = []
    for uid in [profile.uid, *member_uids]:
        uid = str(uid or "").strip()
        if uid and uid not in members:
            members.append(uid)

    created = db.add(
        paths.company_teams(profile.company_id),
        {
            "companyId": profile.company_id,
            "companyName": profile.company_name,
            "name": team_name,
            "memberUids": members,
            "memberCount": len(members),
            "createdByUid": profile.uid,
            "createdByName": profile.display_name,
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        },
    )
    logger.info("team_created", company_id=profile.company_id, team_id=created.id, members=len(members))
    return Team.model_validate({**created.data, "id": created.id})


def invite_member(db: DocumentDatabase, profile: MemberProfile, email: str) -> str:
    if not profile.company_id:
        raise AuthorizationError("companyId が未設定です。")
    address = str(email or "").strip().lower()
    if not _EMAIL_RE.match(address):
        raise ValidationError("メールアドレス形式が不正です。")
    created = db.add(
        paths.company_invites(profile.company_id),
        {
            "companyId": profile.company_id,
            "companyName": profile.company_name,
            "email": address,
            "status": "PENDING",
            "invitedByUid": profile.uid,
            "invitedByName": profile.display_name,
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        },
    )
    logger.info("member_invited", company_id=profile.company_id, invite_id=created.id)
    return created.id


def _sorted_teams(snaps) -> list[Team]:
    teams = [Team.model_validate({**s.data, "id": s.id}) for s in snaps]
    return sorted(teams, key=lambda team: team.name)


def list_teams(db: DocumentDatabase, profile: MemberProfile) -> list[Team]:
    if not profile.company_id:
        return []
    query = Query(paths.company_teams(profile.company_id)).where("memberUids", "array-contains", profile.uid)
    return _sorted_teams(db.run_query(query.limit(TEAM_LIST_LIMIT)))


def watch_teams(
    db: DocumentDatabase,
    profile: MemberProfile,
    callback: Callable[[list[Team]], None],
) -> Subscription | None:
    if not profile.company_id:
        callback([])
        return None
    query = Query(paths.company_teams(profile.company_id)).where("memberUids", "array-contains", profile.uid)
    return db.subscribe(query.limit(TEAM_LIST_LIMIT), lambda snaps: callback(_sorted_teams(snaps)))


def _sorted_members(snaps) -> list[MemberProfile]:
    members = [
        MemberProfile.model_validate(
            {**s.data, "uid": s.id, "displayName": s.data.get("displayName") or s.data.get("email") or s.id}
        )
        for s in snaps
    ]
    return sorted(members, key=lambda member: member.display_name)


def watch_members(
    db: DocumentDatabase,
    profile: MemberProfile,
    callback: Callable[[list[MemberProfile]], None],
) -> Subscription | None:
    if not profile.company_id:
        callback([])
        return None
    query = Query(paths.USERS).where("companyId", "==", profile.company_id).limit(MEMBER_LIST_LIMIT)
    return db.subscribe(query, lambda snaps: callback(_sorted_members(snaps)))


def bootstrap_organization(
    db: DocumentDatabase,
    org_id: str,
    owner_uid: str,
    owner_email: str,
    owner_name: str,
    org_name: str | None = None,
    seat_limit: int = DEFAULT_SEAT_LIMIT,
):
    """Merge-writes the company and its owner membership. Safe to re-run."""
    for label, value in (("org-id", org_id), ("owner-uid", owner_uid), ("owner-email", owner_email), ("owner-name", owner_name)):
        if not str(value or "").strip():
            raise ValidationError(f"Missing required argument: --{label}")
    if isinstance(seat_limit, bool) or not isinstance(seat_limit, int) or seat_limit <= 0:
        raise ValidationError("--seat-limit must be a positive integer")

    with db.transaction() as tx:
        tx.set(
            paths.company_doc(org_id),
            {
                "name": org_name or org_id,
                "ownerUid": owner_uid,
                "seatLimit": seat_limit,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )
        tx.set(
            f"{paths.company_members(org_id)}/{owner_uid}",
            {
                "uid": owner_uid,
                "email": owner_email,
                "displayName": owner_name,
                "role": "owner",
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )
    logger.info("organization_bootstrapped", org_id=org_id, owner_uid=owner_uid, seat_limit=seat_limit)

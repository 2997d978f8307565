# /knowledgechat/threads.py
"""
Chat threads and messages for a user's personal or team scope.

All operations take an explicit `ChatSelection` describing the active user,
scope and thread, so callers hold the selection state and swap it atomically.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Iterator, Sequence

from . import paths
from .document_store import SERVER_TIMESTAMP, DocumentDatabase, Query, Subscription
from .models import Message, PersonalScope, Scope, Sender, Team, TeamScope, Thread
from .observability import get_logger

if TYPE_CHECKING:
    from .knowledge_store import KnowledgeStore

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ChatSelection:
    uid: str
    scope: Scope = field(default_factory=PersonalScope)
    thread_id: str | None = None

    @property
    def is_team(self) -> bool:
        return isinstance(self.scope, TeamScope)

    def with_thread(self, thread_id: str | None) -> "ChatSelection":
        return replace(self, thread_id=thread_id)


def select_team(selection: ChatSelection, team: Team) -> ChatSelection:
    """Switching into a team always drops the current thread; the watcher picks a new one."""
    return ChatSelection(uid=selection.uid, scope=TeamScope(team_id=team.id, team_name=team.name), thread_id=None)


def select_personal(selection: ChatSelection) -> ChatSelection:
    if isinstance(selection.scope, PersonalScope):
        return selection
    return ChatSelection(uid=selection.uid, scope=PersonalScope(), thread_id=None)


def reconcile_teams(selection: ChatSelection, teams: Sequence[Team]) -> ChatSelection:
    """Falls back to the personal scope when the active team is no longer visible."""
    if not isinstance(selection.scope, TeamScope):
        return selection
    if any(team.id == selection.scope.team_id for team in teams):
        return selection
    logger.info("team_scope_reverted", uid=selection.uid, team_id=selection.scope.team_id)
    return select_personal(selection)


def sort_threads(threads: Sequence[Thread]) -> list[Thread]:
    return sorted(threads, key=lambda t: t.sort_time or _EPOCH, reverse=True)


def pick_thread(prev: str | None, threads: Sequence[Thread]) -> str | None:
    if prev and any(thread.id == prev for thread in threads):
        return prev
    return threads[0].id if threads else None


class ChatThreadManager:
    def __init__(self, db: DocumentDatabase):
        self.db = db
        self._guards: dict[str, list] = {}
        self._guards_lock = threading.Lock()

    # --- Thread lifecycle ---

    def create_thread(self, selection: ChatSelection) -> str:
        scope = selection.scope
        record = {
            "scopeType": "team" if isinstance(scope, TeamScope) else "personal",
            "teamId": scope.team_id if isinstance(scope, TeamScope) else "",
            "teamName": scope.team_name if isinstance(scope, TeamScope) else "",
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        created = self.db.add(paths.threads(selection.uid), record)
        logger.info("thread_created", uid=selection.uid, thread_id=created.id, scope=record["scopeType"])
        return created.id

    def create_team_thread(
        self,
        selection: ChatSelection,
        knowledge: "KnowledgeStore",
        inherit_source_ids: Sequence[str] = (),
    ) -> ChatSelection:
        """Opens a fresh team thread and copies the chosen personal Sources into it."""
        if not isinstance(selection.scope, TeamScope) or not selection.scope.team_id:
            raise ValueError("create_team_thread requires a team scope")
        created = selection.with_thread(self.create_thread(selection.with_thread(None)))
        if inherit_source_ids:
            knowledge.inherit_into_team(selection.uid, created.thread_id, inherit_source_ids)
        return created

    def ensure_active_thread(self, selection: ChatSelection) -> ChatSelection:
        if selection.thread_id:
            return selection
        return selection.with_thread(self.create_thread(selection))

    def touch_thread(self, selection: ChatSelection):
        if not selection.thread_id:
            return
        self.db.update(paths.thread_doc(selection.uid, selection.thread_id), {"updatedAt": SERVER_TIMESTAMP})

    # --- Messages ---

    def post_message(self, selection: ChatSelection, sender: Sender, text: str, *, touch: bool = True) -> str:
        if not selection.thread_id:
            raise ValueError("post_message requires an active thread")
        created = self.db.add(
            paths.thread_messages(selection.uid, selection.thread_id),
            {"sender": sender, "text": str(text), "createdAt": SERVER_TIMESTAMP},
        )
        if touch:
            self.touch_thread(selection)
        return created.id

    # --- Queries ---

    def threads_query(self, selection: ChatSelection) -> Query | None:
        base = Query(paths.threads(selection.uid))
        if isinstance(selection.scope, TeamScope):
            if not selection.scope.team_id:
                return None
            return base.where("scopeType", "==", "team").where("teamId", "==", selection.scope.team_id)
        return base.where("scopeType", "==", "personal")

    def list_threads(self, selection: ChatSelection) -> list[Thread]:
        query = self.threads_query(selection)
        if query is None:
            return []
        return sort_threads(Thread.from_record(snap.id, snap.data) for snap in self.db.run_query(query))

    def watch_threads(
        self,
        selection: ChatSelection,
        callback: Callable[[list[Thread]], None],
    ) -> Subscription | None:
        query = self.threads_query(selection)
        if query is None:
            callback([])
            return None
        return self.db.subscribe(
            query,
            lambda snaps: callback(sort_threads(Thread.from_record(s.id, s.data) for s in snaps)),
        )

    def list_messages(self, selection: ChatSelection) -> list[Message]:
        if not selection.thread_id:
            return []
        query = Query(paths.thread_messages(selection.uid, selection.thread_id)).order_by("createdAt", "asc")
        return [Message.from_record(s.id, s.data) for s in self.db.run_query(query)]

    def watch_messages(
        self,
        selection: ChatSelection,
        callback: Callable[[list[Message]], None],
    ) -> Subscription | None:
        if not selection.thread_id:
            callback([])
            return None
        query = Query(paths.thread_messages(selection.uid, selection.thread_id)).order_by("createdAt", "asc")
        return self.db.subscribe(query, lambda snaps: callback([Message.from_record(s.id, s.data) for s in snaps]))

    # --- Ask serialisation ---

    @contextmanager
    def in_flight(self, thread_id: str, *, blocking: bool = False) -> Iterator[bool]:
        """
        Per-thread guard for ask actions. Yields True when the guard was taken;
        with blocking=False a second concurrent ask yields False immediately.
        """
        with self._guards_lock:
            entry = self._guards.setdefault(thread_id, [threading.Lock(), 0])
            entry[1] += 1
        guard = entry[0]
        acquired = guard.acquire(blocking=blocking)
        try:
            yield acquired
        finally:
            if acquired:
                guard.release()
            with self._guards_lock:
                entry[1] -= 1
                # drop idle guards so the map tracks only threads in use
                if entry[1] == 0 and self._guards.get(thread_id) is entry:
                    del self._guards[thread_id]

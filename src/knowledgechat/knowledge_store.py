# /knowledgechat/knowledge_store.py
"""
Persisted Sources, partitioned by scope.

Personal Sources live under `users/{uid}/documents`; team Sources belong to one
team thread under `users/{uid}/chats/{chatId}/documents`. Inheriting into a team
thread writes an independent copy that remembers the personal Source id.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Sequence

from . import paths
from .blob_store import BlobStore
from .config import PERSONAL_SOURCE_LIMIT, TEAM_SOURCE_LIMIT
from .document_store import SERVER_TIMESTAMP, DocumentDatabase, DocumentSnapshot, Query, Subscription
from .errors import KnowledgeChatError
from .models import PersonalScope, Source, SourceDraft, TeamScope
from .observability import get_logger
from .threads import ChatSelection

logger = get_logger(__name__)

ConfirmCallback = Callable[[Source], bool]


def _to_sources(snaps: Sequence[DocumentSnapshot]) -> list[Source]:
    return [Source.from_record(snap.id, snap.data) for snap in snaps]


class KnowledgeStore:
    def __init__(self, db: DocumentDatabase, blobs: BlobStore):
        self.db = db
        self.blobs = blobs

    # --- Addressing ---

    @staticmethod
    def collection_for(selection: ChatSelection) -> str | None:
        if isinstance(selection.scope, TeamScope):
            if not selection.thread_id:
                return None
            return paths.thread_sources(selection.uid, selection.thread_id)
        if isinstance(selection.scope, PersonalScope):
            return paths.personal_sources(selection.uid)
        raise TypeError(f"unknown scope: {selection.scope!r}")

    def blob_path_for(self, selection: ChatSelection, file_name: str, timestamp_ms: int | None = None) -> str:
        stamp = int(timestamp_ms if timestamp_ms is not None else datetime.now(timezone.utc).timestamp() * 1000)
        collection = self.collection_for(selection)
        if collection is None:
            raise KnowledgeChatError("チームチャットが選択されていません。")
        return f"{collection}/{stamp}-{file_name}"

    def query_for(self, selection: ChatSelection) -> Query | None:
        collection = self.collection_for(selection)
        if collection is None:
            return None
        limit = TEAM_SOURCE_LIMIT if selection.is_team else PERSONAL_SOURCE_LIMIT
        return Query(collection).order_by("createdAt", "desc").limit(limit)

    # --- Writes ---

    def create_source(self, selection: ChatSelection, draft: SourceDraft) -> Source:
        collection = self.collection_for(selection)
        if collection is None:
            raise KnowledgeChatError("チームチャットが選択されていません。")
        record = draft.to_record()
        record["createdAt"] = SERVER_TIMESTAMP
        record["updatedAt"] = SERVER_TIMESTAMP
        created = self.db.add(collection, record)
        logger.info(
            "source_created",
            uid=selection.uid,
            collection=collection,
            source_id=created.id,
            source_type=draft.source_type or "pdf",
            plans=len(draft.pricing_plans),
        )
        return Source.from_record(created.id, created.data)

    def inherit_into_team(self, uid: str, chat_id: str, source_ids: Sequence[str]) -> list[str]:
        """Copies the named personal Sources into a team thread. Unknown ids are skipped."""
        wanted = [str(sid) for sid in source_ids if str(sid or "").strip()]
        if not wanted:
            return []
        target = paths.thread_sources(uid, chat_id)
        created: list[str] = []
        with self.db.transaction() as tx:
            for source_id in wanted:
                snap = tx.get(f"{paths.personal_sources(uid)}/{source_id}")
                if snap is None:
                    logger.warning("inherit_source_missing", uid=uid, source_id=source_id)
                    continue
                origin = Source.from_record(snap.id, snap.data)
                copy = SourceDraft(
                    name=origin.name,
                    text=origin.text,
                    summary=origin.summary,
                    pricingPlans=[plan.model_copy() for plan in origin.pricing_plans],
                    storagePath=origin.storage_path,
                    inheritedFromDocumentId=origin.id,
                ).to_record()
                copy["createdAt"] = SERVER_TIMESTAMP
                copy["updatedAt"] = SERVER_TIMESTAMP
                created.append(tx.create(target, copy))
        logger.info("sources_inherited", uid=uid, chat_id=chat_id, count=len(created))
        return created

    def delete_source(self, selection: ChatSelection, source: Source, confirm: ConfirmCallback) -> bool:
        """
        Deletes a Source after `confirm(source)` agrees. The blob goes too, except
        for inherited team copies whose blob still backs the personal original.
        Failures are logged and reported as False.
        """
        collection = self.collection_for(selection)
        if collection is None:
            return False
        if not confirm(source):
            return False
        try:
            owns_blob = isinstance(selection.scope, PersonalScope) or not source.is_inherited
            if source.storage_path and owns_blob:
                self.blobs.delete(source.storage_path)
            self.db.delete(f"{collection}/{source.id}")
        except KnowledgeChatError as exc:
            logger.error("source_delete_failed", uid=selection.uid, source_id=source.id, error=exc.message)
            return False
        logger.info("source_deleted", uid=selection.uid, source_id=source.id, blob_deleted=bool(source.storage_path and owns_blob))
        return True

    # --- Reads ---

    def list_sources(self, selection: ChatSelection) -> list[Source]:
        query = self.query_for(selection)
        if query is None:
            return []
        return _to_sources(self.db.run_query(query))

    def watch_sources(
        self,
        selection: ChatSelection,
        callback: Callable[[list[Source]], None],
    ) -> Subscription | None:
        query = self.query_for(selection)
        if query is None:
            callback([])
            return None
        return self.db.subscribe(query, lambda snaps: callback(_to_sources(snaps)))

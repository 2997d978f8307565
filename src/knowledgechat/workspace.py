# /knowledgechat/workspace.py
"""
Session-level orchestration of user actions for one signed-in user.

Holds the active `ChatSelection`, keeps live subscriptions for the visible
Sources, threads, messages and teams, and turns each user action (upload, paste,
URL, ask, new chat, scope switches, pin, delete) into store writes. Actions
never raise; they return an `ActionResult`.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Sequence

import requests

from .analysis import analyze, build_upload_summary_message
from .answer_engine import compose_answer
from .blob_store import BlobStore
from .document_store import DocumentDatabase, Subscription
from .errors import KnowledgeChatError, ValidationError
from .extractors import ContentExtractor, PastedTextExtractor, UrlExtractor, extractor_for_upload
from .knowledge_store import ConfirmCallback, KnowledgeStore
from .models import MemberProfile, Message, PersonalScope, Source, SourceDraft, Team, TeamScope, Thread
from .observability import get_logger
from .organization import watch_teams
from .threads import (
    ChatSelection,
    ChatThreadManager,
    pick_thread,
    reconcile_teams,
    select_personal,
    select_team,
)

logger = get_logger(__name__)

ASK_FAILED_MESSAGE = "回答の生成に失敗しました。もう一度お試しください。"


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    message: str = ""


@dataclass(frozen=True)
class UploadStatus:
    file_name: str
    progress: int


class SubscriptionSlot:
    """Holds at most one live query; replacing it always unsubscribes the old one first."""

    def __init__(self, name: str):
        self.name = name
        self._sub: Subscription | None = None

    def replace(self, factory: Callable[[], Subscription | None]):
        self.clear()
        self._sub = factory()

    def clear(self):
        if self._sub is not None:
            self._sub.unsubscribe()
            self._sub = None

    @property
    def active(self) -> bool:
        return self._sub is not None and self._sub.active


class KnowledgeWorkspace:
    def __init__(
        self,
        db: DocumentDatabase,
        blobs: BlobStore,
        uid: str,
        llm=None,
        profile: MemberProfile | None = None,
        on_upload_status: Callable[[UploadStatus | None], None] | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.db = db
        self.llm = llm
        self.profile = profile
        self.threads = ChatThreadManager(db)
        self.knowledge = KnowledgeStore(db, blobs)
        self._on_upload_status = on_upload_status
        self._on_change = on_change
        self._lock = threading.RLock()

        self.selection = ChatSelection(uid=uid)
        self.personal_sources: list[Source] = []
        self.team_sources: list[Source] = []
        self.thread_list: list[Thread] = []
        self.messages: list[Message] = []
        self.teams: list[Team] = []
        self.pinned_source_id: str | None = None
        self.upload_status: UploadStatus | None = None

        self._personal_slot = SubscriptionSlot("personal_sources")
        self._team_sources_slot = SubscriptionSlot("team_sources")
        self._threads_slot = SubscriptionSlot("threads")
        self._messages_slot = SubscriptionSlot("messages")
        self._teams_slot = SubscriptionSlot("teams")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        personal = ChatSelection(uid=self.selection.uid)
        self._personal_slot.replace(lambda: self.knowledge.watch_sources(personal, self._on_personal_sources))
        if self.profile is not None:
            self._teams_slot.replace(lambda: watch_teams(self.db, self.profile, self._on_teams))
        self._bind_scope()

    def close(self):
        for slot in (self._messages_slot, self._team_sources_slot, self._threads_slot, self._teams_slot, self._personal_slot):
            slot.clear()

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def visible_sources(self) -> list[Source]:
        with self._lock:
            if isinstance(self.selection.scope, TeamScope):
                return list(self.team_sources)
            return list(self.personal_sources)

    @property
    def pinned_source(self) -> Source | None:
        with self._lock:
            if not self.pinned_source_id:
                return None
            return next((s for s in self.visible_sources if s.id == self.pinned_source_id), None)

    def active_team(self) -> Team | None:
        scope = self.selection.scope
        if not isinstance(scope, TeamScope):
            return None
        return next((team for team in self.teams if team.id == scope.team_id), None)

    def chat_title(self) -> str:
        team = self.active_team()
        if team is not None:
            return f"{team.name}のチャット"
        thread = next((t for t in self.thread_list if t.id == self.selection.thread_id), None)
        if thread is None:
            thread = Thread(id="default", scope=PersonalScope())
        return thread.label()

    # ------------------------------------------------------------------
    # Subscription callbacks
    # ------------------------------------------------------------------

    def _changed(self):
        if self._on_change is not None:
            self._on_change()

    def _drop_missing_pin(self):
        if self.pinned_source_id and not any(s.id == self.pinned_source_id for s in self.visible_sources):
            self.pinned_source_id = None

    def _on_personal_sources(self, sources: list[Source]):
        with self._lock:
            self.personal_sources = sources
            self._drop_missing_pin()
        self._changed()

    def _on_team_sources(self, sources: list[Source]):
        with self._lock:
            self.team_sources = sources
            self._drop_missing_pin()
        self._changed()

    def _on_messages(self, messages: list[Message]):
        with self._lock:
            self.messages = messages
        self._changed()

    def _on_threads(self, threads: list[Thread]):
        with self._lock:
            self.thread_list = threads
            chosen = pick_thread(self.selection.thread_id, threads)
            if chosen != self.selection.thread_id:
                self.selection = self.selection.with_thread(chosen)
                self._bind_thread()
        self._changed()

    def _on_teams(self, teams: list[Team]):
        with self._lock:
            self.teams = teams
            reconciled = reconcile_teams(self.selection, teams)
            if reconciled != self.selection:
                self.selection = reconciled
                self.pinned_source_id = None
                self._bind_scope()
        self._changed()

    # ------------------------------------------------------------------
    # Subscription wiring
    # ------------------------------------------------------------------

    def _bind_scope(self):
        with self._lock:
            self.thread_list = []
            selection = self.selection
            self._threads_slot.replace(lambda: self.threads.watch_threads(selection, self._on_threads))
            self._bind_thread()

    def _bind_thread(self):
        with self._lock:
            selection = self.selection
            self.messages = []
            self._messages_slot.replace(lambda: self.threads.watch_messages(selection, self._on_messages))
            if isinstance(selection.scope, TeamScope):
                self.team_sources = []
                self._team_sources_slot.replace(lambda: self.knowledge.watch_sources(selection, self._on_team_sources))
            else:
                self._team_sources_slot.clear()
                self.team_sources = []
            self._drop_missing_pin()

    def _set_thread(self, thread_id: str | None):
        with self._lock:
            if thread_id == self.selection.thread_id:
                return
            self.selection = self.selection.with_thread(thread_id)
            self._bind_thread()

    def _ensure_thread(self) -> ChatSelection:
        with self._lock:
            if isinstance(self.selection.scope, TeamScope) and self.active_team() is None:
                raise ValidationError("チームが選択されていません。")
            selection = self.threads.ensure_active_thread(self.selection)
            self._set_thread(selection.thread_id)
            return self.selection

    def _report_status(self, status: UploadStatus | None):
        self.upload_status = status
        if self._on_upload_status is not None:
            self._on_upload_status(status)

    # ------------------------------------------------------------------
    # Scope actions
    # ------------------------------------------------------------------

    def select_team(self, team_id: str) -> ActionResult:
        team = next((t for t in self.teams if t.id == team_id), None)
        if team is None:
            return ActionResult(False, "チームが見つかりません。")
        with self._lock:
            self.selection = select_team(self.selection, team)
            self.pinned_source_id = None
            self._bind_scope()
        return ActionResult(True, f"{team.name}のチャットに切り替えました。")

    def select_personal(self) -> ActionResult:
        with self._lock:
            if isinstance(self.selection.scope, PersonalScope):
                return ActionResult(True)
            self.selection = select_personal(self.selection)
            self.pinned_source_id = None
            self._bind_scope()
        return ActionResult(True, "個人チャットに切り替えました。")

    def select_thread(self, thread_id: str) -> ActionResult:
        if not any(t.id == thread_id for t in self.thread_list):
            return ActionResult(False, "チャットが見つかりません。")
        self._set_thread(thread_id)
        return ActionResult(True)

    def new_chat(self, inherit_source_ids: Sequence[str] = ()) -> ActionResult:
        try:
            with self._lock:
                if isinstance(self.selection.scope, TeamScope):
                    if self.active_team() is None:
                        return ActionResult(False, "チームが選択されていません。")
                    created = self.threads.create_team_thread(self.selection, self.knowledge, inherit_source_ids)
                else:
                    created = self.selection.with_thread(self.threads.create_thread(self.selection))
                self._set_thread(created.thread_id)
        except KnowledgeChatError as exc:
            logger.error("chat_create_failed", uid=self.selection.uid, error=exc.message)
            return ActionResult(False, "チャットを作成できませんでした。")
        return ActionResult(True, "新しいチャットを作成しました。")

    def pin_source(self, source_id: str | None) -> ActionResult:
        with self._lock:
            if source_id is None:
                self.pinned_source_id = None
                return ActionResult(True)
            source = next((s for s in self.visible_sources if s.id == source_id), None)
            if source is None:
                return ActionResult(False, "ナレッジが見つかりません。")
            self.pinned_source_id = source.id
        return ActionResult(True, f"「{source.name}」を選択しました。")

    # ------------------------------------------------------------------
    # Ingestion actions
    # ------------------------------------------------------------------

    def _ingest(
        self,
        extractor: ContentExtractor,
        *,
        status_name: str,
        file_data: bytes | None = None,
        content_type: str = "",
        source_url: str = "",
    ) -> ActionResult:
        try:
            selection = self._ensure_thread()
            self._report_status(UploadStatus(status_name, 100 if file_data is None else 0))
            content = extractor.extract()
            name = content.title
            analysis = analyze(name, content.text, llm=self.llm)

            storage_path = ""
            download_url = ""
            if file_data is not None:
                storage_path = self.knowledge.blob_path_for(selection, name)
                self.knowledge.blobs.put(
                    storage_path,
                    file_data,
                    content_type=content_type,
                    on_progress=lambda pct: self._report_status(UploadStatus(status_name, pct)),
                )
                download_url = self.knowledge.blobs.url_for(storage_path)

            draft = SourceDraft(
                name=name,
                text=content.text,
                summary=analysis.summary,
                pricingPlans=analysis.plans,
                storagePath=storage_path,
                downloadUrl=download_url,
                sourceType=None if content.source_type == "pdf" else content.source_type,
                sourceUrl=source_url,
            )
            self.knowledge.create_source(selection, draft)
            message = build_upload_summary_message(name, analysis.summary, analysis.plans)
            self.threads.post_message(selection, "assistant", message)
        except KnowledgeChatError as exc:
            logger.error("ingest_failed", uid=self.selection.uid, name=status_name, error=exc.message)
            return ActionResult(False, exc.message)
        finally:
            self._report_status(None)
        return ActionResult(True, message)

    def upload_file(self, file_name: str, data: bytes, content_type: str = "") -> ActionResult:
        try:
            extractor = extractor_for_upload(file_name, data, content_type)
        except ValidationError as exc:
            return ActionResult(False, exc.message)
        return self._ingest(extractor, status_name=file_name, file_data=bytes(data or b""), content_type=content_type)

    def add_text(self, title: str, body: str) -> ActionResult:
        extractor = PastedTextExtractor(title, body)
        return self._ingest(extractor, status_name=extractor.title)

    def add_url(self, url: str, session: requests.Session | None = None) -> ActionResult:
        url = str(url or "").strip()
        if not url:
            return ActionResult(False, "URLを入力してください。")
        return self._ingest(UrlExtractor(url, session=session), status_name="URL", source_url=url)

    def delete_source(self, source_id: str, confirm: ConfirmCallback) -> ActionResult:
        source = next((s for s in self.visible_sources if s.id == source_id), None)
        if source is None:
            return ActionResult(False, "ナレッジが見つかりません。")
        if not self.knowledge.delete_source(self.selection, source, confirm):
            return ActionResult(False, "削除しませんでした。")
        with self._lock:
            if self.pinned_source_id == source.id:
                self.pinned_source_id = None
        return ActionResult(True, f"「{source.name}」を削除しました。")

    # ------------------------------------------------------------------
    # Ask
    # ------------------------------------------------------------------

    def ask(self, question: str) -> ActionResult:
        question = str(question or "").strip()
        if not question:
            return ActionResult(False, "質問を入力してください。")
        try:
            selection = self._ensure_thread()
        except KnowledgeChatError as exc:
            return ActionResult(False, exc.message)

        with self.threads.in_flight(selection.thread_id) as acquired:
            if not acquired:
                return ActionResult(False, "回答を生成中です。しばらくお待ちください。")
            try:
                self.threads.post_message(selection, "user", question, touch=False)
                pinned = self.pinned_source
                targets = [pinned] if pinned is not None else self.visible_sources
                result = compose_answer(question, pinned, targets, llm=self.llm)
                self.threads.post_message(selection, "assistant", result.text)
            except KnowledgeChatError as exc:
                logger.error("ask_failed", uid=selection.uid, thread_id=selection.thread_id, error=exc.message)
                try:
                    self.threads.post_message(selection, "assistant", ASK_FAILED_MESSAGE, touch=False)
                except KnowledgeChatError as fallback_exc:
                    logger.error("ask_fallback_failed", uid=selection.uid, error=fallback_exc.message)
                return ActionResult(False, ASK_FAILED_MESSAGE)
        return ActionResult(True, result.text)

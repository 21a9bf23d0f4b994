"""Capture → classify → stage → commit engine with optimistic local state.

Each owner gets an in-memory workspace: the optimistic library state, the
staging area and the per-capture state machine. The persistent store is only
written after a staged capture is confirmed (task completions from a pure
status-update capture are the one exception).
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import ValidationError

from bitacora import config
from bitacora.db.store import PersistentStore
from bitacora.errors import (
    BitacoraError,
    CaptureRejected,
    ClassificationFailure,
    NotFoundError,
    PersistenceFailure,
)
from bitacora.models import (
    AnalysisMeta,
    Attachment,
    Book,
    CaptureResult,
    CaptureState,
    ClassificationResponse,
    Entity,
    Entry,
    Folder,
    SearchFilters,
    StagedTopic,
    TaskItem,
    TopicCommitResult,
)
from bitacora.observability import otel
from bitacora.services import state as transitions
from bitacora.services.cache import VersionedCache, dumps_models, owner_key
from bitacora.services.classifier import ClassificationService, build_request, sanitize_text
from bitacora.services.resolvers import EntityResolver, OpenTaskRef, TaskActionResolver
from bitacora.services.staging import StagingArea
from bitacora.services.state import LibrarySnapshot, OptimisticState

logger = logging.getLogger("bitacora.sync")

T = TypeVar("T")

PROCESSING_SUMMARY = "Processing..."
FAILED_SUMMARY = "Failed to process, saved raw text."
NEW_BOOK_CONTEXT = "New topic detected."
_EDITABLE_TASK_FIELDS = ("description", "assignee", "dueDate", "priority", "isDone", "completionNotes")
_TERMINAL_CAPTURE_STATES = ("COMMITTED", "DISCARDED")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _CaptureRecord:
    capture_id: str
    state: CaptureState
    original_text: str
    created_at: int
    topic_ids: list[str] = field(default_factory=list)
    error: str = ""


@dataclass
class _Workspace:
    owner_id: str
    state: OptimisticState = field(default_factory=OptimisticState)
    staging: StagingArea = field(default_factory=StagingArea)
    captures: dict[str, _CaptureRecord] = field(default_factory=dict)
    loaded: bool = False


class SyncEngine:
    """Owner-scoped ingestion and synchronization engine."""

    def __init__(
        self,
        store: PersistentStore,
        classifier: ClassificationService,
        cache: VersionedCache,
        entity_resolver: EntityResolver | None = None,
        task_resolver: TaskActionResolver | None = None,
    ):
        self.store = store
        self.classifier = classifier
        self.cache = cache
        self.entity_resolver = entity_resolver or EntityResolver()
        self.task_resolver = task_resolver or TaskActionResolver()
        self._workspaces: dict[str, _Workspace] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40
        self._max_capture_history = 200

    # ── Workspaces ─────────────────────────────────────────────────

    def _workspace(self, owner_id: str) -> _Workspace:
        if not owner_id:
            raise PersistenceFailure("Owner id is required")
        workspace = self._workspaces.get(owner_id)
        if workspace is None:
            workspace = _Workspace(owner_id=owner_id)
            self._workspaces[owner_id] = workspace
        return workspace

    async def _ensure_loaded(self, ws: _Workspace) -> None:
        if ws.loaded:
            return
        try:
            await self.refresh_data(ws.owner_id, use_cache=True)
        except PersistenceFailure as exc:
            logger.warning("Library load failed for owner=%s, continuing with local state: %s", ws.owner_id, exc)

    def get_library(self, owner_id: str) -> LibrarySnapshot:
        return self._workspace(owner_id).state.current

    async def load_library(self, owner_id: str) -> LibrarySnapshot:
        """Current library; the first call serves cache and revalidates in the background."""
        ws = self._workspace(owner_id)
        if not ws.loaded:
            await self.refresh_data(owner_id, use_cache=True, background=True)
        return ws.state.current

    def list_staged(self, owner_id: str) -> list[StagedTopic]:
        return self._workspace(owner_id).staging.list_all()

    def get_capture_state(self, owner_id: str, capture_id: str) -> CaptureState:
        record = self._workspace(owner_id).captures.get(capture_id)
        if record is None:
            raise NotFoundError(f"Capture {capture_id} not found")
        return record.state

    def get_book_name(self, owner_id: str, book_id: str) -> str:
        book = self._workspace(owner_id).state.current.find_book(book_id)
        return book.name if book else "Unknown"

    def _prune_captures(self, ws: _Workspace) -> None:
        excess = len(ws.captures) - self._max_capture_history
        if excess <= 0:
            return
        finished = [cid for cid, rec in ws.captures.items() if rec.state in _TERMINAL_CAPTURE_STATES]
        for capture_id in finished[:excess]:
            ws.captures.pop(capture_id, None)

    def _set_capture_state(self, record: _CaptureRecord, new_state: CaptureState) -> None:
        if record.state != new_state:
            logger.debug("Capture [%s] %s -> %s", record.capture_id, record.state, new_state)
        record.state = new_state

    # ── Capture ────────────────────────────────────────────────────

    async def capture(
        self,
        owner_id: str,
        text: str | None,
        attachment: Attachment | None = None,
        target_book_id: str | None = None,
    ) -> CaptureResult:
        """Classify a raw capture and stage it (or apply it directly when it only completes tasks)."""
        ws = self._workspace(owner_id)
        clean_text = sanitize_text(text, attachment is not None)
        if not clean_text and attachment is None:
            raise CaptureRejected("Capture needs text or an attachment")

        await self._ensure_loaded(ws)
        if target_book_id and ws.state.current.find_book(target_book_id) is None:
            raise NotFoundError(f"Book {target_book_id} not found")

        t0 = time.monotonic()
        capture_id = str(uuid.uuid4())
        record = _CaptureRecord(
            capture_id=capture_id,
            state="CAPTURED",
            original_text=clean_text,
            created_at=_now_ms(),
        )
        ws.captures[capture_id] = record
        self._prune_captures(ws)
        placeholder = Entry(
            id=capture_id,
            originalText=clean_text,
            attachmentRef=attachment.fileName if attachment else None,
            bookId=target_book_id or config.INBOX_BOOK_ID,
            summary=PROCESSING_SUMMARY,
            status="PROCESSING",
            createdAt=record.created_at,
        )
        ws.state.commit(partial(transitions.add_entry, entry=placeholder))

        operation_id = await self._start_operation(
            "capture",
            owner_id,
            "api",
            {"captureId": capture_id, "targetBookId": target_book_id or "", "hasAttachment": attachment is not None},
        )
        self._set_capture_state(record, "CLASSIFYING")
        await self._update_operation(operation_id, phase="classifying", message="Classifying capture")

        snapshot = ws.state.current
        request = build_request(
            clean_text,
            attachment,
            snapshot.books,
            [e for e in snapshot.entries if e.status == "COMPLETED"],
        )
        with otel.start_span("bitacora.capture.classify", {"owner_id": owner_id, "capture_id": capture_id}):
            try:
                response = await self.classifier.classify(request)
            except ClassificationFailure as exc:
                return await self._fail_capture(ws, record, operation_id, str(exc), t0)

        if record.state == "DISCARDED":
            logger.info("Dropping classification for discarded capture [%s]", capture_id)
            await self._finish_operation(operation_id, status="cancelled")
            return CaptureResult(captureId=capture_id, state="DISCARDED")

        if target_book_id:
            response = _collapse_topics(response)
        topics = self._build_staged_topics(ws, capture_id, clean_text, response, target_book_id)

        if self._is_update_only(ws, topics):
            return await self._apply_update_only(ws, record, topics, response, operation_id, t0)

        ws.state.commit(partial(transitions.remove_entry, entry_id=capture_id))
        for topic in topics:
            ws.state.commit(partial(transitions.add_entry, entry=_staged_entry(topic, record.created_at)))
        staged = ws.staging.stage(capture_id, topics)
        record.topic_ids = [t.entryId for t in staged]
        self._set_capture_state(record, "STAGED")

        duration_ms = int((time.monotonic() - t0) * 1000)
        otel.record_capture("STAGED", duration_ms, owner_id=owner_id)
        await self._finish_operation(
            operation_id,
            status="completed",
            stats={"topics": len(staged), "newBooks": sum(1 for t in staged if t.isNewBook)},
        )
        return CaptureResult(
            captureId=capture_id,
            state="STAGED",
            isMultiTopic=response.isMultiTopic or len(staged) > 1,
            overallContext=response.overallContext,
            topics=staged,
            placeholder=ws.state.current.find_entry(capture_id),
        )

    async def _fail_capture(
        self,
        ws: _Workspace,
        record: _CaptureRecord,
        operation_id: str,
        error: str,
        t0: float,
    ) -> CaptureResult:
        logger.warning("Classification failed for capture [%s]: %s", record.capture_id, error)
        otel.record_classification_failure(owner_id=ws.owner_id)
        if record.state == "DISCARDED":
            await self._finish_operation(operation_id, status="cancelled")
            return CaptureResult(captureId=record.capture_id, state="DISCARDED", error=error)

        ws.state.commit(
            partial(
                transitions.update_entry,
                entry_id=record.capture_id,
                fields={"status": "ERROR", "summary": FAILED_SUMMARY},
            )
        )
        record.error = error
        self._set_capture_state(record, "ERROR")
        otel.record_capture("ERROR", (time.monotonic() - t0) * 1000, owner_id=ws.owner_id)
        await self._finish_operation(operation_id, status="failed", error=error)
        return CaptureResult(
            captureId=record.capture_id,
            state="ERROR",
            placeholder=ws.state.current.find_entry(record.capture_id),
            error=error,
        )

    def _build_staged_topics(
        self,
        ws: _Workspace,
        capture_id: str,
        text: str,
        response: ClassificationResponse,
        target_book_id: str | None,
    ) -> list[StagedTopic]:
        books = ws.state.current.books
        new_book_ids: dict[str, str] = {}
        topics: list[StagedTopic] = []
        for index, proposal in enumerate(response.topics):
            if target_book_id:
                book: Optional[Book] = ws.state.current.find_book(target_book_id)
            else:
                book = self.entity_resolver.resolve(proposal.targetBookName, books)
            if book is not None:
                book_id, book_name, is_new = book.id, book.name, False
            else:
                name = proposal.targetBookName.strip()
                book_id = new_book_ids.setdefault(name.lower(), str(uuid.uuid4()))
                book_name, is_new = name, True

            topics.append(
                StagedTopic(
                    captureId=capture_id,
                    entryId=capture_id if index == 0 else str(uuid.uuid4()),
                    bookId=book_id,
                    bookName=book_name,
                    isNewBook=is_new,
                    type=proposal.type,
                    summary=proposal.summary,
                    tasks=[
                        TaskItem(
                            description=t.description,
                            assignee=t.assignee,
                            dueDate=t.dueDate,
                            priority=t.priority or "MEDIUM",
                        )
                        for t in proposal.tasks
                    ],
                    entities=[Entity(name=e.name, type=e.type) for e in proposal.entities],
                    originalText=(proposal.content or "").strip() or text,
                    taskActions=proposal.taskActions,
                )
            )
        return topics

    def _is_update_only(self, ws: _Workspace, topics: list[StagedTopic]) -> bool:
        entries = _committed_entries(ws)
        for topic in topics:
            if topic.tasks or not topic.taskActions:
                return False
            for action in topic.taskActions:
                if action.action != "complete":
                    return False
                if self.task_resolver.resolve(action.taskDescription, entries) is not None:
                    continue
                if not self.task_resolver.matches_done(action.taskDescription, entries):
                    return False
        return True

    async def _apply_update_only(
        self,
        ws: _Workspace,
        record: _CaptureRecord,
        topics: list[StagedTopic],
        response: ClassificationResponse,
        operation_id: str,
        t0: float,
    ) -> CaptureResult:
        await self._update_operation(operation_id, phase="applying", message="Applying task actions")
        completed = 0
        failed = 0
        for topic in topics:
            for action in topic.taskActions:
                if action.action != "complete":
                    continue
                ref = self.task_resolver.resolve(action.taskDescription, _committed_entries(ws))
                if ref is None:
                    continue
                if await self._complete_task(ws, ref, action.completionNotes):
                    completed += 1
                else:
                    failed += 1

        duration_ms = (time.monotonic() - t0) * 1000
        if failed:
            error = f"{failed} task update(s) could not be saved"
            ws.state.commit(
                partial(
                    transitions.update_entry,
                    entry_id=record.capture_id,
                    fields={"status": "ERROR", "summary": FAILED_SUMMARY},
                )
            )
            record.error = error
            self._set_capture_state(record, "ERROR")
            otel.record_capture("ERROR", duration_ms, owner_id=ws.owner_id)
            await self._finish_operation(operation_id, status="failed", stats={"completedTasks": completed}, error=error)
            return CaptureResult(
                captureId=record.capture_id,
                state="ERROR",
                overallContext=response.overallContext,
                placeholder=ws.state.current.find_entry(record.capture_id),
                completedTasks=completed,
                error=error,
            )

        ws.state.commit(partial(transitions.remove_entry, entry_id=record.capture_id))
        self._set_capture_state(record, "COMMITTED")
        await self._write_cache(ws)
        otel.record_capture("COMMITTED", duration_ms, owner_id=ws.owner_id)
        await self._finish_operation(operation_id, status="completed", stats={"completedTasks": completed})
        return CaptureResult(
            captureId=record.capture_id,
            state="COMMITTED",
            overallContext=response.overallContext,
            completedTasks=completed,
        )

    # ── Confirm / discard ──────────────────────────────────────────

    async def confirm(
        self,
        owner_id: str,
        capture_id: str,
        edited_topics: list[StagedTopic] | None = None,
    ) -> list[TopicCommitResult]:
        """Persist every staged topic of a capture; failures are reported per topic."""
        ws = self._workspace(owner_id)
        record = ws.captures.get(capture_id)
        if record is not None and record.state == "COMMITTING":
            raise CaptureRejected(f"Capture {capture_id} is already being committed")
        topics = ws.staging.for_capture(capture_id)
        staged_ids = {t.entryId for t in topics}
        for edited in edited_topics or []:
            if edited.entryId not in staged_ids:
                raise NotFoundError(f"Topic {edited.entryId} is not staged under capture {capture_id}")
            if not edited.isNewBook and ws.state.current.find_book(edited.bookId) is None:
                raise NotFoundError(f"Book {edited.bookId} not found")
        for edited in edited_topics or []:
            ws.staging.replace(edited)
            ws.state.commit(
                partial(
                    transitions.add_entry,
                    entry=_staged_entry(edited, _created_at(ws, edited.entryId)),
                )
            )
        topics = ws.staging.for_capture(capture_id)

        if record is not None:
            self._set_capture_state(record, "COMMITTING")
        operation_id = await self._start_operation(
            "confirm", owner_id, "api", {"captureId": capture_id, "topics": len(topics)}
        )

        results: list[TopicCommitResult] = []
        try:
            for topic in topics:
                await self._update_operation(operation_id, phase="committing", message=f"Committing {topic.bookName}")
                with otel.start_span("bitacora.confirm.topic", {"owner_id": owner_id, "entry_id": topic.entryId}):
                    result = await self._commit_topic(ws, topic)
                otel.record_commit(result.status, owner_id=owner_id)
                results.append(result)
        except Exception as exc:
            # Leave the capture retriable instead of stuck in COMMITTING.
            if record is not None:
                self._set_capture_state(record, "ERROR")
                record.error = str(exc)
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            raise

        failed = [r for r in results if r.status == "failed"]
        if record is not None:
            self._set_capture_state(record, "ERROR" if failed else "COMMITTED")
            record.error = "; ".join(r.error or "" for r in failed)
        await self._write_cache(ws)
        await self._finish_operation(
            operation_id,
            status="failed" if failed else "completed",
            stats={
                "committed": len(results) - len(failed),
                "failed": len(failed),
                "booksCreated": sum(1 for r in results if r.bookCreated),
                "completedTasks": sum(r.completedTasks for r in results),
            },
            error="; ".join(r.error or "" for r in failed),
        )
        return results

    async def _commit_topic(self, ws: _Workspace, topic: StagedTopic) -> TopicCommitResult:
        owner_id = ws.owner_id
        book_created = False
        created_at = _created_at(ws, topic.entryId)
        try:
            if topic.isNewBook:
                if ws.state.current.find_book(topic.bookId) is None:
                    book = await self._with_retry(
                        "create_book",
                        lambda: self.store.create_book(topic.bookId, owner_id, topic.bookName, context=NEW_BOOK_CONTEXT),
                    )
                    ws.state.commit(partial(transitions.add_book, book=book))
                    book_created = True
                topic = ws.staging.replace(topic.model_copy(update={"isNewBook": False}))
        except PersistenceFailure as exc:
            return self._topic_failed(ws, topic, str(exc), book_created)

        entry = _staged_entry(topic, created_at).model_copy(update={"status": "COMPLETED"})
        meta = AnalysisMeta(
            targetBookName=topic.bookName,
            type=topic.type,
            summary=topic.summary,
            tasks=topic.tasks,
            entities=topic.entities,
        )
        mutation_id = ws.state.apply(partial(transitions.add_entry, entry=entry), label="save_entry")
        try:
            saved = await self._with_retry("save_entry", lambda: self.store.save_entry(entry, owner_id, meta))
        except PersistenceFailure as exc:
            ws.state.revert(mutation_id)
            return self._topic_failed(ws, topic, str(exc), book_created)
        ws.state.settle(mutation_id)
        ws.state.commit(partial(transitions.add_entry, entry=saved))
        ws.staging.remove(topic.entryId)

        completed = 0
        for action in topic.taskActions:
            if action.action != "complete":
                continue
            ref = self.task_resolver.resolve(action.taskDescription, _committed_entries(ws))
            if ref is not None and await self._complete_task(ws, ref, action.completionNotes):
                completed += 1

        self._spawn_context_rewrite(ws, saved.bookId, saved.summary)
        logger.info("Committed topic %s into book %s (owner=%s)", saved.id, saved.bookId, owner_id)
        return TopicCommitResult(
            entryId=saved.id,
            bookId=saved.bookId,
            status="committed",
            bookCreated=book_created,
            completedTasks=completed,
        )

    def _topic_failed(self, ws: _Workspace, topic: StagedTopic, error: str, book_created: bool) -> TopicCommitResult:
        logger.error("Commit failed for topic %s (owner=%s): %s", topic.entryId, ws.owner_id, error)
        ws.state.commit(partial(transitions.update_entry, entry_id=topic.entryId, fields={"status": "ERROR"}))
        return TopicCommitResult(
            entryId=topic.entryId,
            bookId=topic.bookId,
            status="failed",
            bookCreated=book_created,
            error=error,
        )

    async def discard(self, owner_id: str, entry_id: str) -> None:
        """Drop a staged topic or an uncommitted placeholder without touching the store."""
        ws = self._workspace(owner_id)
        if entry_id in ws.staging:
            topic = ws.staging.remove(entry_id)
            ws.state.commit(partial(transitions.remove_entry, entry_id=entry_id))
            record = ws.captures.get(topic.captureId)
            if record is not None and not ws.staging.has_capture(topic.captureId) and record.state != "COMMITTED":
                self._set_capture_state(record, "DISCARDED")
            logger.info("Discarded staged topic %s (owner=%s)", entry_id, owner_id)
            return

        if _is_unstaged_placeholder(ws, entry_id):
            record = ws.captures[entry_id]
            self._set_capture_state(record, "DISCARDED")
            ws.state.commit(partial(transitions.remove_entry, entry_id=entry_id))
            logger.info("Discarded capture placeholder %s (owner=%s)", entry_id, owner_id)
            return
        raise NotFoundError(f"Nothing staged under {entry_id}")

    # ── Task mutations ─────────────────────────────────────────────

    async def _complete_task(self, ws: _Workspace, ref: OpenTaskRef, notes: str | None) -> bool:
        if ref.task.isDone:
            return False
        fields: dict[str, Any] = {"isDone": True}
        if notes:
            fields["completionNotes"] = notes
        mutation_id = ws.state.apply(
            partial(transitions.update_task, entry_id=ref.entry_id, task_index=ref.task_index, fields=fields),
            label="complete_task",
        )
        if not ref.task.id:
            ws.state.settle(mutation_id)
            return True
        task_id = ref.task.id
        try:
            await self._with_retry("update_task_status", lambda: self.store.update_task_status(task_id, True, notes))
        except PersistenceFailure as exc:
            ws.state.revert(mutation_id)
            logger.warning("Could not complete task %s: %s", task_id, exc)
            return False
        ws.state.settle(mutation_id)
        logger.info("Completed task %s from capture", task_id)
        return True

    def _task_at(self, ws: _Workspace, entry_id: str, task_index: int) -> TaskItem:
        entry = ws.state.current.find_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Entry {entry_id} not found")
        if not 0 <= task_index < len(entry.tasks):
            raise NotFoundError(f"Task {task_index} not found in entry {entry_id}")
        return entry.tasks[task_index]

    async def _mutate_task(
        self,
        ws: _Workspace,
        entry_id: str,
        transition: transitions.Transition,
        task: TaskItem,
        store_call: Callable[[str], Awaitable[Any]],
        label: str,
    ) -> Optional[Entry]:
        mutation_id = ws.state.apply(transition, label=label)
        if task.id:
            task_id = task.id
            try:
                await self._with_retry(label, lambda: store_call(task_id))
            except PersistenceFailure:
                ws.state.revert(mutation_id)
                raise
        ws.state.settle(mutation_id)
        await self._write_cache(ws)
        return ws.state.current.find_entry(entry_id)

    async def toggle_task(self, owner_id: str, entry_id: str, task_index: int) -> Optional[Entry]:
        ws = self._workspace(owner_id)
        task = self._task_at(ws, entry_id, task_index)
        return await self.update_task_status(owner_id, entry_id, task_index, not task.isDone)

    async def update_task_status(
        self,
        owner_id: str,
        entry_id: str,
        task_index: int,
        is_done: bool,
        notes: str | None = None,
    ) -> Optional[Entry]:
        ws = self._workspace(owner_id)
        task = self._task_at(ws, entry_id, task_index)
        fields: dict[str, Any] = {"isDone": is_done}
        if notes is not None:
            fields["completionNotes"] = notes
        return await self._mutate_task(
            ws,
            entry_id,
            partial(transitions.update_task, entry_id=entry_id, task_index=task_index, fields=fields),
            task,
            lambda task_id: self.store.update_task_status(task_id, is_done, notes),
            "update_task_status",
        )

    async def update_task_fields(
        self,
        owner_id: str,
        entry_id: str,
        task_index: int,
        fields: dict[str, Any],
    ) -> Optional[Entry]:
        ws = self._workspace(owner_id)
        task = self._task_at(ws, entry_id, task_index)
        changes = {k: v for k, v in fields.items() if k in _EDITABLE_TASK_FIELDS}
        if not changes:
            return ws.state.current.find_entry(entry_id)
        try:
            merged = TaskItem.model_validate({**task.model_dump(), **changes})
        except ValidationError as exc:
            raise CaptureRejected(f"Invalid task fields: {exc.errors()[:1]}") from exc
        normalized = {k: getattr(merged, k) for k in changes}
        return await self._mutate_task(
            ws,
            entry_id,
            partial(transitions.update_task, entry_id=entry_id, task_index=task_index, fields=normalized),
            task,
            lambda task_id: self.store.update_task_fields(task_id, normalized),
            "update_task_fields",
        )

    async def delete_task(self, owner_id: str, entry_id: str, task_index: int) -> Optional[Entry]:
        ws = self._workspace(owner_id)
        task = self._task_at(ws, entry_id, task_index)
        return await self._mutate_task(
            ws,
            entry_id,
            partial(transitions.remove_task, entry_id=entry_id, task_index=task_index),
            task,
            self.store.delete_task,
            "delete_task",
        )

    # ── Entries ────────────────────────────────────────────────────

    async def delete_entry(self, owner_id: str, entry_id: str) -> None:
        ws = self._workspace(owner_id)
        if entry_id in ws.staging or _is_unstaged_placeholder(ws, entry_id):
            await self.discard(owner_id, entry_id)
            return
        if ws.state.current.find_entry(entry_id) is None:
            raise NotFoundError(f"Entry {entry_id} not found")

        mutation_id = ws.state.apply(partial(transitions.remove_entry, entry_id=entry_id), label="delete_entry")
        try:
            await self._with_retry("delete_entry", lambda: self.store.delete_entry_from_db(entry_id, owner_id))
        except PersistenceFailure:
            ws.state.revert(mutation_id)
            try:
                await self.refresh_data(owner_id, use_cache=False)
            except PersistenceFailure as exc:
                logger.warning("Reload after failed delete also failed: %s", exc)
            raise
        ws.state.settle(mutation_id)
        await self._write_cache(ws)

    def update_entry_summary(self, owner_id: str, entry_id: str, summary: str) -> Entry:
        ws = self._workspace(owner_id)
        if ws.state.current.find_entry(entry_id) is None:
            raise NotFoundError(f"Entry {entry_id} not found")
        ws.state.commit(partial(transitions.update_entry, entry_id=entry_id, fields={"summary": summary}))
        if entry_id in ws.staging:
            ws.staging.replace(ws.staging.get(entry_id).model_copy(update={"summary": summary}))
        return ws.state.current.find_entry(entry_id)

    async def search_entries(self, owner_id: str, filters: SearchFilters) -> list[Entry]:
        self._workspace(owner_id)
        try:
            return await self.store.search_entries_in_db(owner_id, filters)
        except PersistenceFailure as exc:
            logger.error("Search failed for owner=%s: %s", owner_id, exc)
            return []

    # ── Books & folders ────────────────────────────────────────────

    async def create_book(
        self,
        owner_id: str,
        name: str,
        description: str | None = None,
        context: str | None = None,
        folder_id: str | None = None,
    ) -> Book:
        ws = self._workspace(owner_id)
        book_id = str(uuid.uuid4())
        book = await self._with_retry(
            "create_book",
            lambda: self.store.create_book(book_id, owner_id, name.strip(), description, context, folder_id),
        )
        ws.state.commit(partial(transitions.add_book, book=book))
        await self._write_cache(ws)
        return book

    async def update_book(self, owner_id: str, book_id: str, fields: dict[str, Any]) -> Book:
        ws = self._workspace(owner_id)
        if ws.state.current.find_book(book_id) is None:
            raise NotFoundError(f"Book {book_id} not found")
        mutation_id = ws.state.apply(partial(transitions.update_book, book_id=book_id, fields=fields), label="update_book")
        try:
            await self._with_retry("update_book", lambda: self.store.update_book(book_id, owner_id, fields))
        except PersistenceFailure:
            ws.state.revert(mutation_id)
            raise
        ws.state.settle(mutation_id)
        await self._write_cache(ws)
        return ws.state.current.find_book(book_id)

    async def update_book_folder(self, owner_id: str, book_id: str, folder_id: str | None) -> Book:
        return await self.update_book(owner_id, book_id, {"folderId": folder_id})

    async def create_folder(self, owner_id: str, name: str, color: str | None = None) -> Folder:
        ws = self._workspace(owner_id)
        folder_id = str(uuid.uuid4())
        folder = await self._with_retry(
            "create_folder", lambda: self.store.create_folder(folder_id, owner_id, name.strip(), color)
        )
        ws.state.commit(partial(transitions.add_folder, folder=folder))
        await self._write_cache(ws)
        return folder

    async def update_folder(self, owner_id: str, folder_id: str, fields: dict[str, Any]) -> None:
        ws = self._workspace(owner_id)
        mutation_id = ws.state.apply(
            partial(transitions.update_folder, folder_id=folder_id, fields=fields), label="update_folder"
        )
        try:
            await self._with_retry("update_folder", lambda: self.store.update_folder(folder_id, owner_id, fields))
        except PersistenceFailure:
            ws.state.revert(mutation_id)
            raise
        ws.state.settle(mutation_id)
        await self._write_cache(ws)

    async def delete_folder(self, owner_id: str, folder_id: str) -> None:
        ws = self._workspace(owner_id)
        mutation_id = ws.state.apply(partial(transitions.remove_folder, folder_id=folder_id), label="delete_folder")
        try:
            await self._with_retry("delete_folder", lambda: self.store.delete_folder(folder_id, owner_id))
        except PersistenceFailure:
            ws.state.revert(mutation_id)
            raise
        ws.state.settle(mutation_id)
        await self._write_cache(ws)

    # ── Refresh & cache ────────────────────────────────────────────

    async def refresh_data(
        self,
        owner_id: str,
        use_cache: bool = True,
        background: bool = False,
    ) -> LibrarySnapshot:
        """Serve cached library data first, then overwrite it from the store.

        With ``background=True`` and a cache hit, the live fetch is scheduled
        as a detached task and the cached snapshot is returned immediately.
        """
        ws = self._workspace(owner_id)
        if use_cache:
            cached = await self._read_cache(owner_id)
            if cached is not None:
                books, entries, folders = cached
                ws.state.commit(
                    partial(transitions.replace_library, books=books, entries=entries, folders=folders)
                )
                ws.loaded = True
                if background:
                    self._spawn(self._revalidate(ws), name=f"revalidate-{owner_id}")
                    return ws.state.current

        await self._fetch_live(ws)
        return ws.state.current

    async def _revalidate(self, ws: _Workspace) -> None:
        try:
            await self._fetch_live(ws)
        except PersistenceFailure as exc:
            logger.warning("Background refresh failed for owner=%s: %s", ws.owner_id, exc)

    async def _fetch_live(self, ws: _Workspace) -> None:
        owner_id = ws.owner_id
        operation_id = await self._start_operation("refresh", owner_id, "api", {})
        try:
            books, entries, folders = await asyncio.gather(
                self.store.load_all_books(owner_id),
                self.store.load_all_entries(owner_id),
                self.store.load_all_folders(owner_id),
            )
        except PersistenceFailure as exc:
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            raise
        ws.state.commit(partial(transitions.replace_library, books=books, entries=entries, folders=folders))
        ws.loaded = True
        await self._write_cache(ws)
        await self._finish_operation(
            operation_id,
            status="completed",
            stats={"books": len(books), "entries": len(entries), "folders": len(folders)},
        )

    async def _read_cache(self, owner_id: str) -> Optional[tuple[list[Book], list[Entry], list[Folder]]]:
        books_raw = await self.cache.get(owner_key("books", owner_id))
        entries_raw = await self.cache.get(owner_key("entries", owner_id))
        if books_raw is None or entries_raw is None:
            return None
        folders_raw = await self.cache.get(owner_key("folders", owner_id)) or []
        try:
            return (
                [Book.model_validate(b) for b in books_raw],
                [Entry.model_validate(e) for e in entries_raw],
                [Folder.model_validate(f) for f in folders_raw],
            )
        except (ValidationError, TypeError) as exc:
            logger.warning("Ignoring unreadable cached library for owner=%s: %s", owner_id, exc)
            return None

    async def _write_cache(self, ws: _Workspace) -> None:
        base = ws.state.base
        committed = [e for e in base.entries if e.status == "COMPLETED"]
        await self.cache.set(owner_key("books", ws.owner_id), dumps_models(list(base.books)))
        await self.cache.set(owner_key("entries", ws.owner_id), dumps_models(committed))
        await self.cache.set(owner_key("folders", ws.owner_id), dumps_models(list(base.folders)))

    # ── Background work ────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _spawn_context_rewrite(self, ws: _Workspace, book_id: str, summary: str) -> None:
        self._spawn(self._rewrite_book_context(ws, book_id, summary), name=f"context-{book_id}")

    async def _rewrite_book_context(self, ws: _Workspace, book_id: str, summary: str) -> None:
        book = ws.state.current.find_book(book_id)
        if book is None:
            return
        try:
            new_context = await self.classifier.rewrite_book_context(book.name, book.context, summary)
        except BitacoraError as exc:
            logger.warning("Context rewrite failed for book %s: %s", book_id, exc)
            return
        new_context = (new_context or "").strip()
        if not new_context or new_context == book.context:
            return
        try:
            await self.store.update_book(book_id, ws.owner_id, {"context": new_context})
        except PersistenceFailure as exc:
            logger.warning("Could not save rewritten context for book %s: %s", book_id, exc)
            return
        ws.state.commit(partial(transitions.update_book, book_id=book_id, fields={"context": new_context}))
        logger.debug("Book %s context rewritten", book_id)

    async def drain_background(self) -> None:
        """Wait for detached tasks (context rewrites, revalidation) to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _with_retry(self, action: str, call: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await call()
            except PersistenceFailure as exc:
                logger.warning("%s failed (attempt %d/%d): %s", action, attempt, config.COMMIT_MAX_ATTEMPTS, exc)
                if attempt >= config.COMMIT_MAX_ATTEMPTS:
                    raise
            attempt += 1

    # ── Operation tracking ─────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        """Return live operation payload for the cache status API."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
                "backgroundTaskCount": len(self._background_tasks),
                "stagedTopicCount": sum(len(ws.staging) for ws in self._workspaces.values()),
            }

    async def _start_operation(
        self,
        kind: str,
        owner_id: str,
        trigger: str,
        metadata: dict[str, Any],
    ) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "ownerId": owner_id,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (owner=%s trigger=%s)", op_id, kind, owner_id, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            operation["updatedAt"] = now
        logger.debug("Operation update [%s] %s - %s", operation_id, phase or "progress", message or "")

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["phase"] = "done"
            operation["updatedAt"] = now.isoformat()
            operation["finishedAt"] = now.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)


def _staged_entry(topic: StagedTopic, created_at: int) -> Entry:
    return Entry(
        id=topic.entryId,
        originalText=topic.originalText,
        bookId=topic.bookId,
        type=topic.type,
        summary=topic.summary,
        tasks=topic.tasks,
        entities=topic.entities,
        status="PROCESSING",
        createdAt=created_at,
    )


def _created_at(ws: _Workspace, entry_id: str) -> int:
    entry = ws.state.current.find_entry(entry_id)
    return entry.createdAt if entry and entry.createdAt else _now_ms()


def _collapse_topics(response: ClassificationResponse) -> ClassificationResponse:
    """Merge every proposed topic into one; used when the caller picked the book."""
    if len(response.topics) == 1:
        return response
    first = response.topics[0]
    merged = first.model_copy(
        update={
            "summary": " ".join(t.summary for t in response.topics if t.summary),
            "content": None,
            "tasks": [task for t in response.topics for task in t.tasks],
            "entities": [entity for t in response.topics for entity in t.entities],
            "taskActions": [action for t in response.topics for action in t.taskActions],
        }
    )
    return response.model_copy(update={"isMultiTopic": False, "topics": [merged]})


def _committed_entries(ws: _Workspace) -> list[Entry]:
    return [e for e in ws.state.current.entries if e.status == "COMPLETED"]


def _is_unstaged_placeholder(ws: _Workspace, entry_id: str) -> bool:
    record = ws.captures.get(entry_id)
    return (
        record is not None
        and not record.topic_ids
        and record.state in ("CAPTURED", "CLASSIFYING", "ERROR")
    )

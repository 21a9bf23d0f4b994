"""Persistent store interface and its SQLite implementation.

The sync engine only talks to :class:`PersistentStore`. Every call is scoped
by an owner id; database errors surface as :class:`PersistenceFailure`.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, time as dt_time, timezone
from typing import Any, AsyncIterator, Optional

import aiosqlite

from bitacora import config
from bitacora.db.repositories import (
    SqliteBookRepository,
    SqliteEntryRepository,
    SqliteFolderRepository,
)
from bitacora.errors import PersistenceFailure
from bitacora.models import AnalysisMeta, Book, Entity, Entry, Folder, SearchFilters, TaskItem

logger = logging.getLogger("bitacora.db")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _date_bound_ms(value: str | None, end_of_day: bool = False) -> int | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if len(value) <= 10:
        bound = dt_time.max if end_of_day else dt_time.min
        parsed = datetime.combine(parsed.date(), bound)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _require_owner(owner_id: str) -> None:
    if not owner_id:
        raise PersistenceFailure("Owner id is required for every store call")


# ── Row → model conversion ─────────────────────────────────────────

def row_to_book(row: dict) -> Book:
    return Book(
        id=row["id"],
        name=(row.get("name") or "")[:200],
        description=(row["description"][:500] if row.get("description") else None),
        context=(row.get("context") or "")[:1000],
        folderId=row.get("folder_id") or None,
        createdAt=int(row.get("created_at") or 0),
        updatedAt=int(row["updated_at"]) if row.get("updated_at") else None,
    )


def row_to_folder(row: dict) -> Folder:
    return Folder(
        id=row["id"],
        name=row.get("name") or "",
        color=row.get("color") or None,
        createdAt=int(row.get("created_at") or 0),
        updatedAt=int(row["updated_at"]) if row.get("updated_at") else None,
    )


def row_to_task(row: dict) -> TaskItem:
    return TaskItem(
        id=row["id"],
        description=row.get("description") or "",
        assignee=row.get("assignee") or None,
        dueDate=row.get("due_date") or None,
        priority=row.get("priority") or "MEDIUM",
        isDone=bool(row.get("is_done")),
        completionNotes=row.get("completion_notes") or None,
    )


def row_to_entity(row: dict) -> Entity:
    return Entity(name=row.get("name") or "", type=row.get("type") or "TOPIC")


def row_to_entry(row: dict, tasks: list[TaskItem], entities: list[Entity]) -> Entry:
    return Entry(
        id=row["id"],
        originalText=row.get("original_text") or "",
        attachmentRef=row.get("attachment_ref") or None,
        bookId=row["book_id"],
        type=row.get("type") or "NOTE",
        summary=row.get("summary") or "",
        tasks=tasks,
        entities=entities,
        status=row.get("status") or "COMPLETED",
        createdAt=int(row.get("created_at") or 0),
    )


class PersistentStore(ABC):
    """Narrow, owner-scoped data-access contract consumed by the sync engine."""

    @abstractmethod
    async def create_book(
        self,
        book_id: str,
        owner_id: str,
        name: str,
        description: Optional[str] = None,
        context: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Book:
        raise NotImplementedError

    @abstractmethod
    async def update_book(self, book_id: str, owner_id: str, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def save_entry(self, entry: Entry, owner_id: str, analysis: AnalysisMeta) -> Entry:
        """Persist an entry with its tasks; returns it with store-assigned task ids."""
        raise NotImplementedError

    @abstractmethod
    async def update_task_status(self, task_id: str, is_done: bool, notes: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_task_fields(self, task_id: str, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_task(self, task_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_entry_from_db(self, entry_id: str, owner_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def load_all_books(self, owner_id: str) -> list[Book]:
        raise NotImplementedError

    @abstractmethod
    async def load_all_entries(self, owner_id: str) -> list[Entry]:
        raise NotImplementedError

    @abstractmethod
    async def load_all_folders(self, owner_id: str) -> list[Folder]:
        raise NotImplementedError

    @abstractmethod
    async def search_entries_in_db(self, owner_id: str, filters: SearchFilters) -> list[Entry]:
        raise NotImplementedError

    @abstractmethod
    async def create_folder(self, folder_id: str, owner_id: str, name: str, color: Optional[str] = None) -> Folder:
        raise NotImplementedError

    @abstractmethod
    async def update_folder(self, folder_id: str, owner_id: str, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_folder(self, folder_id: str, owner_id: str) -> None:
        raise NotImplementedError


class SqlitePersistentStore(PersistentStore):
    """Persistent store over the aiosqlite repositories."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.book_repo = SqliteBookRepository(db)
        self.entry_repo = SqliteEntryRepository(db)
        self.folder_repo = SqliteFolderRepository(db)
        # One connection is shared; store calls must not interleave with a pending transaction.
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _guard(self, action: str) -> AsyncIterator[None]:
        try:
            async with self._lock:
                yield
        except PersistenceFailure:
            raise
        except aiosqlite.Error as exc:
            logger.error("Store call failed (%s): %s", action, exc)
            raise PersistenceFailure(f"{action} failed: {exc}") from exc

    # ── Books ──────────────────────────────────────────────────────

    async def create_book(self, book_id, owner_id, name, description=None, context=None, folder_id=None) -> Book:
        _require_owner(owner_id)
        async with self._guard("create_book"):
            await self.book_repo.create(
                {
                    "id": book_id,
                    "name": name,
                    "description": description,
                    "context": context,
                    "folderId": folder_id,
                },
                owner_id,
            )
            row = await self.book_repo.get_by_id(book_id, owner_id)
        if not row:
            raise PersistenceFailure(f"Book {book_id} was not created")
        return row_to_book(row)

    async def update_book(self, book_id, owner_id, fields) -> None:
        _require_owner(owner_id)
        async with self._guard("update_book"):
            updated = await self.book_repo.update(book_id, owner_id, fields)
        if not updated:
            raise PersistenceFailure(f"Book {book_id} not found")

    async def load_all_books(self, owner_id) -> list[Book]:
        _require_owner(owner_id)
        async with self._guard("load_all_books"):
            rows = await self.book_repo.list_all(owner_id)
            if not rows:
                await self.book_repo.create(
                    {
                        "id": config.INBOX_BOOK_ID,
                        "name": config.INBOX_BOOK_NAME,
                        "description": config.INBOX_BOOK_CONTEXT,
                        "context": config.INBOX_BOOK_CONTEXT,
                    },
                    owner_id,
                )
                rows = await self.book_repo.list_all(owner_id)
        return [row_to_book(row) for row in rows]

    # ── Entries ────────────────────────────────────────────────────

    async def save_entry(self, entry, owner_id, analysis) -> Entry:
        _require_owner(owner_id)
        async with self._guard("save_entry"):
            book_id = entry.bookId
            new_book: dict | None = None
            if not await self.book_repo.get_by_id(book_id, owner_id):
                wanted = analysis.targetBookName.strip().lower()
                existing = [
                    row for row in await self.book_repo.list_all(owner_id)
                    if (row.get("name") or "").strip().lower() == wanted
                ]
                if existing:
                    book_id = existing[0]["id"]
                else:
                    new_book = {"id": book_id, "name": analysis.targetBookName, "context": "New topic detected."}

            stored_tasks = [
                task.model_copy(update={"id": task.id or f"T-{uuid.uuid4().hex}"})
                for task in entry.tasks
            ]
            payload = entry.model_dump()
            payload["bookId"] = book_id
            try:
                if new_book is not None:
                    await self.book_repo.create(new_book, owner_id, commit=False)
                await self.entry_repo.create(payload, owner_id, commit=False)
                for position, task in enumerate(stored_tasks):
                    await self.entry_repo.add_task(task.model_dump(), entry.id, position, commit=False)
                for entity in entry.entities:
                    await self.entry_repo.add_entity(entity.model_dump(), entry.id, commit=False)
                await self.db.commit()
            except aiosqlite.Error:
                await self.db.rollback()
                raise

        return entry.model_copy(update={"bookId": book_id, "tasks": stored_tasks})

    async def delete_entry_from_db(self, entry_id, owner_id) -> None:
        _require_owner(owner_id)
        async with self._guard("delete_entry"):
            deleted = await self.entry_repo.delete(entry_id, owner_id)
        if not deleted:
            raise PersistenceFailure(f"Entry {entry_id} not found")

    async def _hydrate(self, rows: list[dict]) -> list[Entry]:
        entries: list[Entry] = []
        for row in rows:
            tasks = [row_to_task(t) for t in await self.entry_repo.get_tasks(row["id"])]
            entities = [row_to_entity(e) for e in await self.entry_repo.get_entities(row["id"])]
            entries.append(row_to_entry(row, tasks, entities))
        return entries

    async def load_all_entries(self, owner_id) -> list[Entry]:
        _require_owner(owner_id)
        async with self._guard("load_all_entries"):
            rows = await self.entry_repo.list_all(owner_id)
            return await self._hydrate(rows)

    async def search_entries_in_db(self, owner_id, filters) -> list[Entry]:
        _require_owner(owner_id)
        async with self._guard("search_entries"):
            rows = await self.entry_repo.search(
                owner_id,
                {
                    "query": filters.query,
                    "book_id": filters.bookId,
                    "type": filters.type,
                    "created_from": _date_bound_ms(filters.dateFrom),
                    "created_to": _date_bound_ms(filters.dateTo, end_of_day=True),
                    "assignee": filters.assignee,
                },
            )
            return await self._hydrate(rows)

    # ── Tasks ──────────────────────────────────────────────────────

    async def update_task_status(self, task_id, is_done, notes=None) -> None:
        fields: dict[str, Any] = {"isDone": is_done}
        if notes is not None:
            fields["completionNotes"] = notes
        await self.update_task_fields(task_id, fields)

    async def update_task_fields(self, task_id, fields) -> None:
        async with self._guard("update_task"):
            updated = await self.entry_repo.update_task(task_id, fields)
        if not updated:
            raise PersistenceFailure(f"Task {task_id} not found or nothing to update")

    async def delete_task(self, task_id) -> None:
        async with self._guard("delete_task"):
            deleted = await self.entry_repo.delete_task(task_id)
        if not deleted:
            raise PersistenceFailure(f"Task {task_id} not found")

    # ── Folders ────────────────────────────────────────────────────

    async def load_all_folders(self, owner_id) -> list[Folder]:
        _require_owner(owner_id)
        async with self._guard("load_all_folders"):
            rows = await self.folder_repo.list_all(owner_id)
        return [row_to_folder(row) for row in rows]

    async def create_folder(self, folder_id, owner_id, name, color=None) -> Folder:
        _require_owner(owner_id)
        async with self._guard("create_folder"):
            await self.folder_repo.create({"id": folder_id, "name": name, "color": color}, owner_id)
            row = await self.folder_repo.get_by_id(folder_id, owner_id)
        if not row:
            raise PersistenceFailure(f"Folder {folder_id} was not created")
        return row_to_folder(row)

    async def update_folder(self, folder_id, owner_id, fields) -> None:
        _require_owner(owner_id)
        async with self._guard("update_folder"):
            updated = await self.folder_repo.update(folder_id, owner_id, fields)
        if not updated:
            raise PersistenceFailure(f"Folder {folder_id} not found")

    async def delete_folder(self, folder_id, owner_id) -> None:
        _require_owner(owner_id)
        async with self._guard("delete_folder"):
            await self.book_repo.clear_folder(folder_id, owner_id)
            await self.folder_repo.delete(folder_id, owner_id)

"""Optimistic in-memory library state.

State is an immutable :class:`LibrarySnapshot`. Every change is a pure
transition ``snapshot -> snapshot``. :class:`OptimisticState` keeps the
committed base snapshot plus the ordered list of pending (not yet
acknowledged by the store) transitions; the visible state is the base with
the pending transitions replayed on top. Reverting a mutation drops it from
the pending list and replays the rest.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from bitacora.models import Book, Entry, Folder

LOCAL_ONLY_STATUSES = ("PROCESSING", "ERROR")


@dataclass(frozen=True)
class LibrarySnapshot:
    books: tuple[Book, ...] = ()
    entries: tuple[Entry, ...] = ()
    folders: tuple[Folder, ...] = ()

    def find_entry(self, entry_id: str) -> Optional[Entry]:
        return next((e for e in self.entries if e.id == entry_id), None)

    def find_book(self, book_id: str) -> Optional[Book]:
        return next((b for b in self.books if b.id == book_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "books": [b.model_dump(mode="json") for b in self.books],
            "entries": [e.model_dump(mode="json") for e in self.entries],
            "folders": [f.model_dump(mode="json") for f in self.folders],
        }


Transition = Callable[[LibrarySnapshot], LibrarySnapshot]


# ── Transitions ────────────────────────────────────────────────────

def add_entry(snapshot: LibrarySnapshot, entry: Entry) -> LibrarySnapshot:
    others = tuple(e for e in snapshot.entries if e.id != entry.id)
    return replace(snapshot, entries=(entry,) + others)


def update_entry(snapshot: LibrarySnapshot, entry_id: str, fields: dict[str, Any]) -> LibrarySnapshot:
    return replace(
        snapshot,
        entries=tuple(
            e.model_copy(update=fields) if e.id == entry_id else e for e in snapshot.entries
        ),
    )


def remove_entry(snapshot: LibrarySnapshot, entry_id: str) -> LibrarySnapshot:
    return replace(snapshot, entries=tuple(e for e in snapshot.entries if e.id != entry_id))


def update_task(
    snapshot: LibrarySnapshot, entry_id: str, task_index: int, fields: dict[str, Any]
) -> LibrarySnapshot:
    def patch(entry: Entry) -> Entry:
        if entry.id != entry_id or not 0 <= task_index < len(entry.tasks):
            return entry
        tasks = list(entry.tasks)
        tasks[task_index] = tasks[task_index].model_copy(update=fields)
        return entry.model_copy(update={"tasks": tasks})

    return replace(snapshot, entries=tuple(patch(e) for e in snapshot.entries))


def remove_task(snapshot: LibrarySnapshot, entry_id: str, task_index: int) -> LibrarySnapshot:
    def patch(entry: Entry) -> Entry:
        if entry.id != entry_id or not 0 <= task_index < len(entry.tasks):
            return entry
        tasks = [t for i, t in enumerate(entry.tasks) if i != task_index]
        return entry.model_copy(update={"tasks": tasks})

    return replace(snapshot, entries=tuple(patch(e) for e in snapshot.entries))


def add_book(snapshot: LibrarySnapshot, book: Book) -> LibrarySnapshot:
    if snapshot.find_book(book.id) is not None:
        return update_book(snapshot, book.id, book.model_dump())
    return replace(snapshot, books=snapshot.books + (book,))


def update_book(snapshot: LibrarySnapshot, book_id: str, fields: dict[str, Any]) -> LibrarySnapshot:
    return replace(
        snapshot,
        books=tuple(b.model_copy(update=fields) if b.id == book_id else b for b in snapshot.books),
    )


def add_folder(snapshot: LibrarySnapshot, folder: Folder) -> LibrarySnapshot:
    others = tuple(f for f in snapshot.folders if f.id != folder.id)
    return replace(snapshot, folders=others + (folder,))


def update_folder(snapshot: LibrarySnapshot, folder_id: str, fields: dict[str, Any]) -> LibrarySnapshot:
    return replace(
        snapshot,
        folders=tuple(f.model_copy(update=fields) if f.id == folder_id else f for f in snapshot.folders),
    )


def remove_folder(snapshot: LibrarySnapshot, folder_id: str) -> LibrarySnapshot:
    return replace(
        snapshot,
        folders=tuple(f for f in snapshot.folders if f.id != folder_id),
        books=tuple(
            b.model_copy(update={"folderId": None}) if b.folderId == folder_id else b
            for b in snapshot.books
        ),
    )


def replace_library(
    snapshot: LibrarySnapshot,
    books: list[Book],
    entries: list[Entry],
    folders: Optional[list[Folder]] = None,
) -> LibrarySnapshot:
    """Swap in store data, keeping local placeholders the store never saw."""
    stored_ids = {e.id for e in entries}
    local_only = tuple(
        e for e in snapshot.entries
        if e.status in LOCAL_ONLY_STATUSES and e.id not in stored_ids
    )
    return LibrarySnapshot(
        books=tuple(books),
        entries=local_only + tuple(entries),
        folders=tuple(folders) if folders is not None else snapshot.folders,
    )


# ── Container ──────────────────────────────────────────────────────

@dataclass
class _Pending:
    mutation_id: str
    transition: Transition
    label: str = ""


class OptimisticState:
    def __init__(self, base: Optional[LibrarySnapshot] = None):
        self.base = base or LibrarySnapshot()
        self._pending: list[_Pending] = []
        self._current: Optional[LibrarySnapshot] = None

    @property
    def current(self) -> LibrarySnapshot:
        if self._current is None:
            self._current = self._replay()
        return self._current

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _replay(self) -> LibrarySnapshot:
        snapshot = self.base
        for pending in self._pending:
            snapshot = pending.transition(snapshot)
        return snapshot

    def apply(self, transition: Transition, label: str = "") -> str:
        """Apply an optimistic transition; returns its mutation id."""
        mutation_id = f"MUT-{uuid.uuid4().hex[:12]}"
        current = self.current
        self._pending.append(_Pending(mutation_id, transition, label))
        self._current = transition(current)
        return mutation_id

    def settle(self, mutation_id: str) -> None:
        """The store acknowledged the mutation: fold it into the base."""
        pending = self._take(mutation_id)
        if pending is None:
            return
        self.base = pending.transition(self.base)
        self._current = self._replay()

    def revert(self, mutation_id: str) -> None:
        """The store rejected the mutation: drop it and replay the rest."""
        if self._take(mutation_id) is None:
            return
        self._current = self._replay()

    def commit(self, transition: Transition) -> None:
        """Apply a transition directly to the base (no store round trip pending)."""
        self.base = transition(self.base)
        self._current = self._replay()

    def _take(self, mutation_id: str) -> Optional[_Pending]:
        for index, pending in enumerate(self._pending):
            if pending.mutation_id == mutation_id:
                return self._pending.pop(index)
        return None

"""Deterministic-then-fuzzy matching of classifier output against the library."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from bitacora.models import Book, Entry, TaskItem

logger = logging.getLogger("bitacora.sync")


class EntityResolver:
    """Maps a proposed topic name onto an existing book.

    Exact case-insensitive name equality wins first. Otherwise the first book
    in iteration order matching a fuzzy rule is returned. ``None`` means the
    caller should create a new book.
    """

    MIN_TOKEN_LENGTH = 3

    def resolve(self, proposed_name: str, books: Sequence[Book]) -> Optional[Book]:
        wanted = (proposed_name or "").strip().lower()
        if not wanted:
            return None

        for book in books:
            if book.name.strip().lower() == wanted:
                return book

        tokens = [t for t in wanted.split() if len(t) >= self.MIN_TOKEN_LENGTH]
        for book in books:
            name = book.name.strip().lower()
            context = (book.context or "").lower()
            if any(token in name or token in context for token in tokens):
                return book
            if name and (name in wanted or wanted in name):
                return book
        return None


@dataclass(frozen=True)
class OpenTaskRef:
    entry_id: str
    task_index: int
    task: TaskItem


def iter_open_tasks(entries: Iterable[Entry]) -> Iterable[OpenTaskRef]:
    for entry in entries:
        for index, task in enumerate(entry.tasks):
            if not task.isDone:
                yield OpenTaskRef(entry_id=entry.id, task_index=index, task=task)


class TaskActionResolver:
    """Finds the open task referenced by a ``complete`` action.

    Matching is permissive: either description contained in the other,
    case-insensitively. Done tasks never match, so repeating a completion is
    a no-op.
    """

    def resolve(self, task_description: str, entries: Iterable[Entry]) -> Optional[OpenTaskRef]:
        wanted = (task_description or "").strip().lower()
        if not wanted:
            return None
        for ref in iter_open_tasks(entries):
            if _descriptions_match(ref.task.description, wanted):
                return ref
        logger.debug("No open task matches %r", task_description)
        return None

    def matches_done(self, task_description: str, entries: Iterable[Entry]) -> bool:
        """True when the reference names a task that is already done."""
        wanted = (task_description or "").strip().lower()
        if not wanted:
            return False
        return any(
            task.isDone and _descriptions_match(task.description, wanted)
            for entry in entries
            for task in entry.tasks
        )


def _descriptions_match(description: str, wanted: str) -> bool:
    candidate = description.strip().lower()
    return bool(candidate) and (candidate in wanted or wanted in candidate)

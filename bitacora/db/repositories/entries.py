"""SQLite implementation of EntryRepository (entries plus their tasks and entities)."""
from __future__ import annotations

import time

import aiosqlite

_TASK_COLUMNS = {
    "description": "description",
    "assignee": "assignee",
    "dueDate": "due_date",
    "priority": "priority",
    "isDone": "is_done",
    "completionNotes": "completion_notes",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class SqliteEntryRepository:
    """SQLite-backed entry storage with tasks and entities sub-tables.

    Write methods accept ``commit=False`` so a caller can group an entry and
    its children into one transaction.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, entry_data: dict, owner_id: str, commit: bool = True) -> None:
        now = _now_ms()
        await self.db.execute(
            """INSERT INTO entries (
                id, owner_id, original_text, attachment_ref, book_id,
                type, summary, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry_data["id"], owner_id,
                entry_data.get("originalText", ""),
                entry_data.get("attachmentRef"),
                entry_data["bookId"],
                entry_data.get("type", "NOTE"),
                entry_data.get("summary", ""),
                entry_data.get("status", "COMPLETED"),
                entry_data.get("createdAt") or now,
                now,
            ),
        )
        if commit:
            await self.db.commit()

    async def get_by_id(self, entry_id: str, owner_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM entries WHERE id = ? AND owner_id = ?", (entry_id, owner_id)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_all(self, owner_id: str, limit: int | None = None) -> list[dict]:
        query = "SELECT * FROM entries WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC"
        params: tuple = (owner_id,)
        if limit:
            query += " LIMIT ?"
            params = (owner_id, limit)
        async with self.db.execute(query, params) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def search(self, owner_id: str, filters: dict) -> list[dict]:
        clauses = ["e.owner_id = ?"]
        params: list = [owner_id]

        query_text = (filters.get("query") or "").strip()
        if query_text:
            clauses.append("(e.original_text LIKE ? OR e.summary LIKE ?)")
            pattern = f"%{query_text}%"
            params.extend([pattern, pattern])
        if filters.get("book_id"):
            clauses.append("e.book_id = ?")
            params.append(filters["book_id"])
        if filters.get("type"):
            clauses.append("e.type = ?")
            params.append(filters["type"])
        if filters.get("created_from") is not None:
            clauses.append("e.created_at >= ?")
            params.append(filters["created_from"])
        if filters.get("created_to") is not None:
            clauses.append("e.created_at <= ?")
            params.append(filters["created_to"])
        if filters.get("assignee"):
            clauses.append(
                "EXISTS (SELECT 1 FROM tasks t WHERE t.entry_id = e.id AND t.assignee LIKE ?)"
            )
            params.append(f"%{filters['assignee']}%")

        sql = (
            "SELECT e.* FROM entries e WHERE "
            + " AND ".join(clauses)
            + " ORDER BY e.created_at DESC, e.rowid DESC"
        )
        async with self.db.execute(sql, tuple(params)) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def update(self, entry_id: str, owner_id: str, fields: dict) -> bool:
        assignments = []
        params: list = []
        for key, column in (("summary", "summary"), ("status", "status"), ("type", "type")):
            if key in fields:
                assignments.append(f"{column} = ?")
                params.append(fields[key])
        if not assignments:
            return False
        assignments.append("updated_at = ?")
        params.extend([_now_ms(), entry_id, owner_id])
        cur = await self.db.execute(
            f"UPDATE entries SET {', '.join(assignments)} WHERE id = ? AND owner_id = ?",
            tuple(params),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def delete(self, entry_id: str, owner_id: str) -> bool:
        cur = await self.db.execute(
            "DELETE FROM entries WHERE id = ? AND owner_id = ?", (entry_id, owner_id)
        )
        await self.db.commit()
        return cur.rowcount > 0

    # ── Tasks ──────────────────────────────────────────────────────

    async def add_task(self, task_data: dict, entry_id: str, position: int, commit: bool = True) -> None:
        await self.db.execute(
            """INSERT INTO tasks (
                id, entry_id, position, description, assignee, due_date,
                priority, is_done, completion_notes, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task_data["id"], entry_id, position,
                task_data.get("description", ""),
                task_data.get("assignee"),
                task_data.get("dueDate"),
                task_data.get("priority") or "MEDIUM",
                1 if task_data.get("isDone") else 0,
                task_data.get("completionNotes"),
                _now_ms(),
            ),
        )
        if commit:
            await self.db.commit()

    async def get_tasks(self, entry_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM tasks WHERE entry_id = ? ORDER BY position, rowid",
            (entry_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def get_task(self, task_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def update_task(self, task_id: str, fields: dict) -> bool:
        assignments = []
        params: list = []
        for key, column in _TASK_COLUMNS.items():
            if key not in fields:
                continue
            value = fields[key]
            if key == "isDone":
                value = 1 if value else 0
            assignments.append(f"{column} = ?")
            params.append(value)
        if not assignments:
            return False
        params.append(task_id)
        cur = await self.db.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def delete_task(self, task_id: str) -> bool:
        cur = await self.db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        await self.db.commit()
        return cur.rowcount > 0

    # ── Entities ───────────────────────────────────────────────────

    async def add_entity(self, entity_data: dict, entry_id: str, commit: bool = True) -> None:
        await self.db.execute(
            "INSERT INTO entities (entry_id, name, type) VALUES (?, ?, ?)",
            (entry_id, entity_data.get("name", ""), entity_data.get("type", "TOPIC")),
        )
        if commit:
            await self.db.commit()

    async def get_entities(self, entry_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM entities WHERE entry_id = ? ORDER BY id", (entry_id,)
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

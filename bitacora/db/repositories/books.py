"""SQLite implementation of BookRepository."""
from __future__ import annotations

import time

import aiosqlite

_UPDATABLE_COLUMNS = {
    "name": "name",
    "description": "description",
    "context": "context",
    "folderId": "folder_id",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class SqliteBookRepository:
    """SQLite-backed book storage, scoped by owner."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, book_data: dict, owner_id: str, commit: bool = True) -> None:
        now = _now_ms()
        await self.db.execute(
            """INSERT INTO books (
                id, owner_id, name, description, context, folder_id,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                book_data["id"], owner_id,
                book_data.get("name", ""),
                book_data.get("description"),
                book_data.get("context") or "",
                book_data.get("folderId"),
                book_data.get("createdAt") or now,
                now,
            ),
        )
        if commit:
            await self.db.commit()

    async def get_by_id(self, book_id: str, owner_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM books WHERE id = ? AND owner_id = ?", (book_id, owner_id)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_all(self, owner_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM books WHERE owner_id = ? ORDER BY created_at, rowid",
            (owner_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def update(self, book_id: str, owner_id: str, fields: dict) -> bool:
        assignments = []
        params: list = []
        for key, column in _UPDATABLE_COLUMNS.items():
            if key in fields:
                assignments.append(f"{column} = ?")
                params.append(fields[key])
        if not assignments:
            return False
        assignments.append("updated_at = ?")
        params.extend([_now_ms(), book_id, owner_id])
        cur = await self.db.execute(
            f"UPDATE books SET {', '.join(assignments)} WHERE id = ? AND owner_id = ?",
            tuple(params),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def clear_folder(self, folder_id: str, owner_id: str) -> None:
        await self.db.execute(
            "UPDATE books SET folder_id = NULL, updated_at = ? WHERE folder_id = ? AND owner_id = ?",
            (_now_ms(), folder_id, owner_id),
        )
        await self.db.commit()

    async def delete(self, book_id: str, owner_id: str) -> bool:
        cur = await self.db.execute(
            "DELETE FROM books WHERE id = ? AND owner_id = ?", (book_id, owner_id)
        )
        await self.db.commit()
        return cur.rowcount > 0

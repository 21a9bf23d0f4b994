"""SQLite implementation of FolderRepository."""
from __future__ import annotations

import time

import aiosqlite


class SqliteFolderRepository:
    """SQLite-backed folder storage, scoped by owner."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, folder_data: dict, owner_id: str) -> None:
        now = int(time.time() * 1000)
        await self.db.execute(
            """INSERT INTO folders (id, owner_id, name, color, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                folder_data["id"], owner_id,
                folder_data.get("name", ""),
                folder_data.get("color"),
                folder_data.get("createdAt") or now,
                now,
            ),
        )
        await self.db.commit()

    async def get_by_id(self, folder_id: str, owner_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM folders WHERE id = ? AND owner_id = ?", (folder_id, owner_id)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_all(self, owner_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM folders WHERE owner_id = ? ORDER BY name",
            (owner_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def update(self, folder_id: str, owner_id: str, fields: dict) -> bool:
        assignments = []
        params: list = []
        for key in ("name", "color"):
            if key in fields:
                assignments.append(f"{key} = ?")
                params.append(fields[key])
        if not assignments:
            return False
        assignments.append("updated_at = ?")
        params.extend([int(time.time() * 1000), folder_id, owner_id])
        cur = await self.db.execute(
            f"UPDATE folders SET {', '.join(assignments)} WHERE id = ? AND owner_id = ?",
            tuple(params),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def delete(self, folder_id: str, owner_id: str) -> bool:
        cur = await self.db.execute(
            "DELETE FROM folders WHERE id = ? AND owner_id = ?", (folder_id, owner_id)
        )
        await self.db.commit()
        return cur.rowcount > 0

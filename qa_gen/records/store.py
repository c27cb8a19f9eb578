"""SQLite-backed domain-record store: projects and generated test items.

Test items are never hard-deleted: deletion and "clear before
regenerating" both set ``is_deleted``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from qa_gen.models import Project, TestItem, new_id, now_iso

logger = logging.getLogger(__name__)


class ProjectNotFound(Exception):
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"project {project_id} not found")


def _project_from_row(row: Any) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        target_system=row["target_system"],
        test_item_count=row["test_item_count"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class RecordStore:
    """Projects and test items, one short-lived connection per call."""

    def __init__(self, db_path: str = "./data/qa_gen.db") -> None:
        self._db_path = db_path

    async def init(self) -> None:
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    target_system TEXT NOT NULL DEFAULT '',
                    test_item_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'setup',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS test_items (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    test_id TEXT NOT NULL,
                    category_major TEXT NOT NULL,
                    order_index INTEGER NOT NULL DEFAULT 0,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_test_items_project "
                "ON test_items(project_id, is_deleted, order_index)"
            )
            await db.commit()
        logger.info("Record store initialized at %s", self._db_path)

    # ── Projects ─────────────────────────────────────────────────────

    async def create_project(self, name: str, target_system: str = "") -> Project:
        import aiosqlite

        project = Project(id=new_id(), name=name, target_system=target_system)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO projects (id, name, target_system, test_item_count, status, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    project.id, project.name, project.target_system, 0,
                    project.status, project.created_at, project.updated_at,
                ),
            )
            await db.commit()
        return project

    async def get_project(self, project_id: str) -> Project | None:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            row = await (
                await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            ).fetchone()
        return _project_from_row(row) if row else None

    async def require_project(self, project_id: str) -> Project:
        project = await self.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    async def update_project(
        self,
        project_id: str,
        test_item_count: int,
        status: str = "generated",
    ) -> None:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "UPDATE projects SET test_item_count = ?, status = ?, updated_at = ? WHERE id = ?",
                (test_item_count, status, now_iso(), project_id),
            )
            await db.commit()

    # ── Test items ───────────────────────────────────────────────────

    async def save_test_items(self, items: list[TestItem]) -> int:
        """Bulk-insert items; returns the number written."""
        if not items:
            return 0
        import aiosqlite

        created = now_iso()
        async with aiosqlite.connect(self._db_path) as db:
            await db.executemany(
                "INSERT OR REPLACE INTO test_items "
                "(id, project_id, test_id, category_major, order_index, is_deleted, data, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        item.id,
                        item.project_id,
                        item.test_id,
                        item.category_major,
                        item.order_index,
                        1 if item.is_deleted else 0,
                        json.dumps(item.to_dict(), ensure_ascii=False),
                        created,
                    )
                    for item in items
                ],
            )
            await db.commit()
        logger.debug("Saved %d test items", len(items))
        return len(items)

    async def list_test_items(
        self,
        project_id: str,
        include_deleted: bool = False,
    ) -> list[TestItem]:
        import aiosqlite

        query = "SELECT data, is_deleted FROM test_items WHERE project_id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        query += " ORDER BY order_index, rowid"
        async with aiosqlite.connect(self._db_path) as db:
            rows = await (await db.execute(query, (project_id,))).fetchall()

        items = []
        for data, is_deleted in rows:
            item = TestItem.from_dict(json.loads(data))
            item.is_deleted = bool(is_deleted)
            items.append(item)
        return items

    async def count_test_items(self, project_id: str) -> int:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            row = await (
                await db.execute(
                    "SELECT COUNT(*) FROM test_items WHERE project_id = ? AND is_deleted = 0",
                    (project_id,),
                )
            ).fetchone()
        return row[0]

    async def soft_delete_test_item(self, item_id: str) -> bool:
        """Mark one item deleted. Returns False if it does not exist."""
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE test_items SET is_deleted = 1 WHERE id = ?", (item_id,)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def clear_test_items(self, project_id: str) -> int:
        """Soft-delete every live item of a project before a fresh generation."""
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE test_items SET is_deleted = 1 WHERE project_id = ? AND is_deleted = 0",
                (project_id,),
            )
            await db.commit()
            cleared = cursor.rowcount
        logger.info("Cleared %d test items of project %s", cleared, project_id)
        return cleared

    async def id_counters(self, project_id: str) -> dict[str, int]:
        """Highest numeric testId suffix per ``categoryMajor`` among live items."""
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            rows = await (
                await db.execute(
                    "SELECT category_major, test_id FROM test_items "
                    "WHERE project_id = ? AND is_deleted = 0",
                    (project_id,),
                )
            ).fetchall()

        counters: dict[str, int] = {}
        for major, test_id in rows:
            suffix = test_id.rsplit("-", 1)[-1]
            if suffix.isdigit():
                counters[major] = max(counters.get(major, 0), int(suffix))
        return counters

    async def next_order_index(self, project_id: str) -> int:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            row = await (
                await db.execute(
                    "SELECT MAX(order_index) FROM test_items WHERE project_id = ? AND is_deleted = 0",
                    (project_id,),
                )
            ).fetchone()
        return 0 if row[0] is None else row[0] + 1

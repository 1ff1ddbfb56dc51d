# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import aiosqlite

from ..errors import StorageError
from .base import DbAdapter

if TYPE_CHECKING:
    from collections.abc import Sequence


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens connection per-operation for thread safety."""

    def __init__(self, db_path: str):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file. ``:memory:`` is accepted but, since
                connections are per-operation, data does not survive between
                calls; use a file (``tmp_path``) in tests.
        """
        self.db_path = db_path or ":memory:"

    async def connect(self) -> None:
        """SQLite connections are opened per-operation, this is a no-op."""
        pass

    async def close(self) -> None:
        """SQLite connections are closed per-operation, this is a no-op."""
        pass

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(query, params or {})
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as exc:
            raise StorageError(f"sqlite execute failed: {exc}") from exc

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(query, params or {}) as cursor:
                    row = await cursor.fetchone()
                    if row is None:
                        return None
                    cols = [c[0] for c in cursor.description]
                    return dict(zip(cols, row, strict=True))
        except aiosqlite.Error as exc:
            raise StorageError(f"sqlite query failed: {exc}") from exc

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(query, params or {}) as cursor:
                    rows = await cursor.fetchall()
                    cols = [c[0] for c in cursor.description]
                    return [dict(zip(cols, row, strict=True)) for row in rows]
        except aiosqlite.Error as exc:
            raise StorageError(f"sqlite query failed: {exc}") from exc

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executescript(script)
                await db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"sqlite script failed: {exc}") from exc

    async def execute_atomic(
        self, statements: Sequence[tuple[str, dict[str, Any]]]
    ) -> int:
        """Run every statement on one connection and commit once."""
        if not statements:
            return 0
        try:
            async with aiosqlite.connect(self.db_path) as db:
                total = 0
                try:
                    for query, params in statements:
                        cursor = await db.execute(query, params)
                        total += max(cursor.rowcount, 0)
                except aiosqlite.Error:
                    await db.rollback()
                    raise
                await db.commit()
                return total
        except aiosqlite.Error as exc:
            raise StorageError(f"sqlite batch failed: {exc}") from exc

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table base class with JSON and timestamp column handling."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from ..models import ensure_utc

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .base import DbAdapter

# Fixed-width UTC format so that text comparison orders like time.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_ts(value: datetime | None) -> str | None:
    """Serialize an aware or naive (UTC) datetime for storage."""
    if value is None:
        return None
    return ensure_utc(value).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str | datetime | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


class Table:
    """Base class for async table managers.

    Subclasses declare ``name``, the ``schema`` DDL and the columns holding
    JSON (``json_columns``) or timestamps (``timestamp_columns``), and
    implement domain-specific operations on top of the helpers below.

    Attributes:
        name: Table name in database.
        adapter: Database adapter used for every query.
    """

    name: ClassVar[str]
    schema: ClassVar[str]
    json_columns: ClassVar[tuple[str, ...]] = ()
    timestamp_columns: ClassVar[tuple[str, ...]] = ()

    def __init__(self, adapter: DbAdapter) -> None:
        self.adapter = adapter
        if not getattr(self, "name", None):
            raise ValueError(f"{type(self).__name__} must define 'name'")

    async def create_schema(self) -> None:
        """Create table (and indexes) if not exists."""
        await self.adapter.execute_script(self.schema)

    # -------------------------------------------------------------------------
    # Encoding/Decoding
    # -------------------------------------------------------------------------

    def encode(self, data: dict[str, Any]) -> dict[str, Any]:
        """Encode JSON and timestamp fields for storage."""
        result = dict(data)
        for key, value in result.items():
            if isinstance(value, Enum):
                result[key] = value.value
        for col_name in self.json_columns:
            if result.get(col_name) is not None:
                result[col_name] = json.dumps(result[col_name])
        for col_name in self.timestamp_columns:
            if isinstance(result.get(col_name), datetime):
                result[col_name] = format_ts(result[col_name])
        return result

    def decode(self, row: dict[str, Any]) -> dict[str, Any]:
        """Decode JSON and timestamp fields from storage."""
        result = dict(row)
        for col_name in self.json_columns:
            if isinstance(result.get(col_name), str):
                result[col_name] = json.loads(result[col_name])
        for col_name in self.timestamp_columns:
            if col_name in result:
                result[col_name] = parse_ts(result[col_name])
        return result

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        row = await self.adapter.fetch_one(query, params)
        return self.decode(row) if row else None

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        rows = await self.adapter.fetch_all(query, params)
        return [self.decode(row) for row in rows]

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        return await self.adapter.execute(query, params)

    async def upsert(
        self,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
        update_extras: Sequence[str] | None = None,
    ) -> int:
        """Insert or update on conflict."""
        return await self.adapter.upsert(
            self.name, self.encode(data), conflict_columns, update_extras
        )


__all__ = ["TIMESTAMP_FORMAT", "Table", "format_ts", "parse_ts"]

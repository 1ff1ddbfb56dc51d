# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Automation states table manager: one progress row per (automation, lead)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..sql import Table, format_ts


class AutomationStatesTable(Table):
    """Progress of leads through automations.

    ``next_step_time`` is stored in a fixed-width UTC format so due states
    can be selected and ordered in SQL.
    """

    name = "automation_states"
    timestamp_columns = ("next_step_time",)
    schema = """
        CREATE TABLE IF NOT EXISTS automation_states (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            automation_id TEXT NOT NULL,
            lead_id TEXT NOT NULL,
            next_step_index INTEGER NOT NULL DEFAULT 0,
            next_step_time TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            error_message TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (automation_id, lead_id)
        );
        CREATE INDEX IF NOT EXISTS idx_states_due
            ON automation_states (tenant_id, status, next_step_time);
    """

    async def insert_if_missing(self, state: dict[str, Any]) -> int:
        """Insert a new state; an existing (automation, lead) pair is left alone."""
        data = self.encode(state)
        columns = ", ".join(data)
        placeholders = ", ".join(f":{c}" for c in data)
        return await self.execute(
            f"INSERT INTO automation_states ({columns}) VALUES ({placeholders}) "
            "ON CONFLICT (automation_id, lead_id) DO NOTHING",
            data,
        )

    async def get(self, tenant_id: str, state_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM automation_states WHERE id = :id AND tenant_id = :tenant_id",
            {"id": state_id, "tenant_id": tenant_id},
        )

    async def get_for_lead(self, automation_id: str, lead_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM automation_states WHERE automation_id = :automation_id AND lead_id = :lead_id",
            {"automation_id": automation_id, "lead_id": lead_id},
        )

    async def list_active(
        self,
        tenant_id: str,
        due_before: datetime | None = None,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[dict[str, Any]]:
        """Return active states of active automations, oldest ``next_step_time`` first.

        ``after`` is the ``(next_step_time, id)`` of the last row of the
        previous page; rows are returned strictly after it.
        """
        query = """
            SELECT s.* FROM automation_states s
            JOIN automations a ON a.id = s.automation_id AND a.tenant_id = s.tenant_id
            WHERE s.tenant_id = :tenant_id AND s.status = 'active' AND a.status = 'active'
        """
        params: dict[str, Any] = {"tenant_id": tenant_id}
        if due_before is not None:
            query += " AND s.next_step_time <= :due_before"
            params["due_before"] = format_ts(due_before)
        if after is not None:
            query += (
                " AND (s.next_step_time > :after_time"
                " OR (s.next_step_time = :after_time AND s.id > :after_id))"
            )
            params["after_time"] = format_ts(after[0])
            params["after_id"] = after[1]
        query += " ORDER BY s.next_step_time, s.id"
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = int(limit)
        return await self.fetch_all(query, params)

    async def list_all(self, tenant_id: str, status: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM automation_states WHERE tenant_id = :tenant_id"
        params: dict[str, Any] = {"tenant_id": tenant_id}
        if status:
            query += " AND status = :status"
            params["status"] = status
        return await self.fetch_all(query + " ORDER BY next_step_time, id", params)

    def update_statement(self, state: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Build the UPDATE for one state, to be run inside a batch."""
        params = self.encode(
            {
                "id": state["id"],
                "tenant_id": state["tenant_id"],
                "next_step_index": state["next_step_index"],
                "next_step_time": state["next_step_time"],
                "status": state["status"],
                "error_message": state.get("error_message"),
            }
        )
        query = """
            UPDATE automation_states
            SET next_step_index = :next_step_index,
                next_step_time = :next_step_time,
                status = :status,
                error_message = :error_message,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND tenant_id = :tenant_id
        """
        return query, params

    async def reactivate(self, tenant_id: str, state_id: str) -> int:
        """Move an ``error`` state back to ``active``; index and time are untouched."""
        return await self.execute(
            """
            UPDATE automation_states
            SET status = 'active', error_message = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND tenant_id = :tenant_id AND status = 'error'
            """,
            {"id": state_id, "tenant_id": tenant_id},
        )


__all__ = ["AutomationStatesTable"]

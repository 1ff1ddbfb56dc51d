# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Leads table manager (recipients of automations)."""

from __future__ import annotations

from typing import Any

from ..sql import Table


class LeadsTable(Table):
    name = "leads"
    schema = """
        CREATE TABLE IF NOT EXISTS leads (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            email TEXT,
            phone TEXT,
            name TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """

    async def add(self, lead: dict[str, Any]) -> None:
        await self.upsert(
            {
                "id": lead["id"],
                "tenant_id": lead["tenant_id"],
                "email": lead.get("email"),
                "phone": lead.get("phone"),
                "name": lead.get("name"),
            },
            conflict_columns=["id"],
        )

    async def get(self, tenant_id: str, lead_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM leads WHERE id = :id AND tenant_id = :tenant_id",
            {"id": lead_id, "tenant_id": tenant_id},
        )


__all__ = ["LeadsTable"]

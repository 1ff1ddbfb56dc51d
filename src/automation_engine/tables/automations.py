# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Automations table manager: tenant-scoped step lists stored as JSON."""

from __future__ import annotations

from typing import Any

from ..sql import Table


class AutomationsTable(Table):
    """Automation definitions.

    JSON-encoded fields: steps (ordered list of tagged steps), delivery
    (provider selection and sender identity overrides).
    """

    name = "automations"
    json_columns = ("steps", "delivery")
    schema = """
        CREATE TABLE IF NOT EXISTS automations (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            name TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            steps TEXT NOT NULL,
            delivery TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        CREATE INDEX IF NOT EXISTS idx_automations_tenant ON automations (tenant_id, status);
    """

    async def add(self, automation: dict[str, Any]) -> None:
        await self.upsert(
            {
                "id": automation["id"],
                "tenant_id": automation["tenant_id"],
                "name": automation.get("name"),
                "status": automation.get("status") or "active",
                "steps": automation.get("steps") or [],
                "delivery": automation.get("delivery"),
            },
            conflict_columns=["id"],
            update_extras=["updated_at = CURRENT_TIMESTAMP"],
        )

    async def get(self, tenant_id: str, automation_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM automations WHERE id = :id AND tenant_id = :tenant_id",
            {"id": automation_id, "tenant_id": tenant_id},
        )

    async def list_active(self, tenant_id: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "SELECT * FROM automations WHERE tenant_id = :tenant_id AND status = 'active' ORDER BY id",
            {"tenant_id": tenant_id},
        )


__all__ = ["AutomationsTable"]

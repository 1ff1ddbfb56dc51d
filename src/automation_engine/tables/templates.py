# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Templates table manager (subject and HTML body referenced by send steps)."""

from __future__ import annotations

from typing import Any

from ..sql import Table


class TemplatesTable(Table):
    name = "templates"
    schema = """
        CREATE TABLE IF NOT EXISTS templates (
            id TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            subject TEXT NOT NULL DEFAULT '',
            html TEXT NOT NULL DEFAULT '',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (tenant_id, id)
        );
    """

    async def add(self, template: dict[str, Any]) -> None:
        await self.upsert(
            {
                "id": template["id"],
                "tenant_id": template["tenant_id"],
                "subject": template.get("subject") or "",
                "html": template.get("html") or "",
            },
            conflict_columns=["tenant_id", "id"],
        )

    async def get(self, tenant_id: str, template_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM templates WHERE id = :id AND tenant_id = :tenant_id",
            {"id": template_id, "tenant_id": tenant_id},
        )


__all__ = ["TemplatesTable"]

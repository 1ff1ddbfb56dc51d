# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tenants table manager with JSON credential handling."""

from __future__ import annotations

from typing import Any

from ..sql import Table


class TenantsTable(Table):
    """Tenants table: company accounts read by the engine.

    JSON-encoded fields: credentials (provider name -> credential mapping).
    """

    name = "tenants"
    json_columns = ("credentials",)
    schema = """
        CREATE TABLE IF NOT EXISTS tenants (
            id TEXT PRIMARY KEY,
            name TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            plan_id TEXT,
            provider TEXT,
            credentials TEXT,
            contact_email TEXT,
            contact_name TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """

    async def add(self, tenant: dict[str, Any]) -> None:
        """Insert or update a tenant."""
        await self.upsert(
            {
                "id": tenant["id"],
                "name": tenant.get("name"),
                "status": tenant.get("status") or "active",
                "plan_id": tenant.get("plan_id"),
                "provider": tenant.get("provider"),
                "credentials": tenant.get("credentials") or {},
                "contact_email": tenant.get("contact_email"),
                "contact_name": tenant.get("contact_name"),
            },
            conflict_columns=["id"],
            update_extras=["updated_at = CURRENT_TIMESTAMP"],
        )

    async def get(self, tenant_id: str) -> dict[str, Any] | None:
        """Fetch a tenant by ID."""
        return await self.fetch_one(
            "SELECT * FROM tenants WHERE id = :tenant_id", {"tenant_id": tenant_id}
        )

    async def list_all(self, active_only: bool = False) -> list[dict[str, Any]]:
        """Return all tenants, optionally only those with status ``active``."""
        if active_only:
            return await self.fetch_all(
                "SELECT * FROM tenants WHERE status = 'active' ORDER BY id"
            )
        return await self.fetch_all("SELECT * FROM tenants ORDER BY id")


__all__ = ["TenantsTable"]

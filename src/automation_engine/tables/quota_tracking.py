# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Quota tracking table manager: one row of rolling counters per tenant."""

from __future__ import annotations

from typing import Any

from ..sql import Table


class QuotaTrackingTable(Table):
    """Per-tenant send counters and circuit breaker timestamps."""

    name = "quota_tracking"
    timestamp_columns = (
        "last_daily_reset_at",
        "last_hourly_reset_at",
        "circuit_breaker_tripped_at",
        "last_send_at",
    )
    schema = """
        CREATE TABLE IF NOT EXISTS quota_tracking (
            tenant_id TEXT PRIMARY KEY,
            sent_today INTEGER NOT NULL DEFAULT 0,
            sent_this_hour INTEGER NOT NULL DEFAULT 0,
            last_daily_reset_at TEXT NOT NULL,
            last_hourly_reset_at TEXT NOT NULL,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            circuit_breaker_tripped_at TEXT,
            last_send_at TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """

    async def get(self, tenant_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM quota_tracking WHERE tenant_id = :tenant_id",
            {"tenant_id": tenant_id},
        )

    async def put(self, tenant_id: str, tracking: dict[str, Any]) -> None:
        """Store the full tracking value, replacing the previous one."""
        await self.upsert(
            {"tenant_id": tenant_id, **tracking},
            conflict_columns=["tenant_id"],
            update_extras=["updated_at = CURRENT_TIMESTAMP"],
        )

    async def insert_if_missing(self, tenant_id: str, tracking: dict[str, Any]) -> None:
        """Create the initial row unless another writer got there first."""
        data = self.encode({"tenant_id": tenant_id, **tracking})
        columns = ", ".join(data)
        placeholders = ", ".join(f":{c}" for c in data)
        await self.execute(
            f"INSERT INTO quota_tracking ({columns}) VALUES ({placeholders}) "
            "ON CONFLICT (tenant_id) DO NOTHING",
            data,
        )


__all__ = ["QuotaTrackingTable"]

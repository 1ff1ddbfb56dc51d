# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Storage collaborator interfaces used by the processor and coordinator.

:class:`~automation_engine.persistence.Persistence` implements all of them;
tests substitute small in-memory doubles.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence, runtime_checkable

from .models import (
    AutomationDefinition,
    AutomationState,
    Lead,
    QuotaTracking,
    Template,
    Tenant,
)


@runtime_checkable
class TenantStore(Protocol):
    async def list_active_tenants(self) -> list[Tenant]: ...

    async def get_quota_tracking(self, tenant_id: str, now: datetime | None = None) -> QuotaTracking:
        """Return the tracking of ``tenant_id``, creating a zeroed one if absent."""
        ...

    async def put_quota_tracking(self, tenant_id: str, tracking: QuotaTracking) -> None: ...


@runtime_checkable
class AutomationStore(Protocol):
    async def list_active_automations(self, tenant_id: str) -> list[AutomationDefinition]: ...

    async def list_active_states(
        self,
        tenant_id: str,
        due_before: datetime | None = None,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[AutomationState]: ...

    async def batch_update_states(self, updates: Sequence[AutomationState]) -> None:
        """Persist all ``updates`` atomically or raise ``StorageError``."""
        ...


@runtime_checkable
class LeadLookup(Protocol):
    async def get_lead(self, tenant_id: str, lead_id: str) -> Lead | None: ...


@runtime_checkable
class TemplateLookup(Protocol):
    async def get_template(self, tenant_id: str, template_id: str) -> Template | None: ...


class EngineStore(TenantStore, AutomationStore, LeadLookup, TemplateLookup, Protocol):
    """Everything a tenant run needs from storage."""


__all__ = [
    "AutomationStore",
    "EngineStore",
    "LeadLookup",
    "TemplateLookup",
    "TenantStore",
]

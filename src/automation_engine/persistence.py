# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQL-backed persistence layer for the automation engine.

This module provides the Persistence class that implements every storage
collaborator of the engine on top of the async SQL adapters:

- Tenants and their lazily created quota tracking
- Automation definitions and per-lead automation states
- Leads and templates resolved at send time
- Atomic batch commit of state updates at the end of a tenant run

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/automation_engine.db")
        await persistence.init_db()

        await persistence.add_tenant({
            "id": "acme",
            "plan_id": "plan_starter",
            "provider": "brevo",
            "credentials": {"brevo": {"api_key": "..."}},
        })
        state = await persistence.enroll_lead("acme", "welcome", "lead-1")
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Sequence

from .errors import OrphanReference
from .logger import get_logger
from .models import (
    AutomationDefinition,
    AutomationState,
    AutomationStatus,
    Lead,
    QuotaTracking,
    Template,
    Tenant,
    utc_now,
)
from .sql import DbAdapter, create_adapter
from .tables import (
    AutomationStatesTable,
    AutomationsTable,
    LeadsTable,
    QuotaTrackingTable,
    TemplatesTable,
    TenantsTable,
)

logger = get_logger("Persistence")


def _connection_string(db_path: str) -> str:
    # Relative paths are SQLite files, like absolute ones.
    if not db_path or db_path == ":memory:" or ":" in db_path or db_path.startswith("/"):
        return db_path or ":memory:"
    return f"sqlite:{db_path}"


class Persistence:
    """Async persistence for tenants, automations, states and quota tracking.

    Each operation goes through the configured :class:`DbAdapter`; driver
    failures surface as :class:`~automation_engine.errors.StorageError`.

    Attributes:
        db_path: Database location (SQLite path or PostgreSQL URL).
        adapter: The SQL adapter created from ``db_path``.
    """

    def __init__(self, db_path: str = "/data/automation_engine.db", adapter: DbAdapter | None = None):
        self.db_path = db_path
        self.adapter = adapter or create_adapter(_connection_string(db_path))
        self.tenants = TenantsTable(self.adapter)
        self.quota_tracking = QuotaTrackingTable(self.adapter)
        self.automations = AutomationsTable(self.adapter)
        self.states = AutomationStatesTable(self.adapter)
        self.leads = LeadsTable(self.adapter)
        self.templates = TemplatesTable(self.adapter)

    async def init_db(self) -> None:
        """Connect the adapter and create all tables."""
        await self.adapter.connect()
        for table in (
            self.tenants,
            self.quota_tracking,
            self.automations,
            self.states,
            self.leads,
            self.templates,
        ):
            await table.create_schema()

    async def close(self) -> None:
        await self.adapter.close()

    # ----------------------------------------------------------------- tenants
    async def add_tenant(self, tenant: Tenant | dict[str, Any]) -> Tenant:
        model = tenant if isinstance(tenant, Tenant) else Tenant.model_validate(tenant)
        await self.tenants.add(model.model_dump())
        return model

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        row = await self.tenants.get(tenant_id)
        return Tenant.model_validate(row) if row else None

    async def list_tenants(self) -> list[Tenant]:
        return [Tenant.model_validate(row) for row in await self.tenants.list_all()]

    async def list_active_tenants(self) -> list[Tenant]:
        """Return tenants whose status is ``active``."""
        rows = await self.tenants.list_all(active_only=True)
        return [Tenant.model_validate(row) for row in rows]

    # ------------------------------------------------------------ quota tracking
    async def get_quota_tracking(self, tenant_id: str, now: datetime | None = None) -> QuotaTracking:
        """Return the tenant's tracking, creating zeroed counters on first access."""
        row = await self.quota_tracking.get(tenant_id)
        if row is None:
            initial = QuotaTracking.initial(now or utc_now())
            await self.quota_tracking.insert_if_missing(tenant_id, initial.model_dump())
            logger.debug("Initialized quota tracking for tenant %s", tenant_id)
            row = await self.quota_tracking.get(tenant_id)
            if row is None:
                return initial
        return QuotaTracking.model_validate(row)

    async def peek_quota_tracking(self, tenant_id: str, now: datetime | None = None) -> QuotaTracking:
        """Return the tenant's tracking without creating a row when none exists."""
        row = await self.quota_tracking.get(tenant_id)
        if row is None:
            return QuotaTracking.initial(now or utc_now())
        return QuotaTracking.model_validate(row)

    async def put_quota_tracking(self, tenant_id: str, tracking: QuotaTracking) -> None:
        await self.quota_tracking.put(tenant_id, tracking.model_dump())

    # ------------------------------------------------------------- automations
    async def add_automation(self, automation: AutomationDefinition | dict[str, Any]) -> AutomationDefinition:
        model = (
            automation
            if isinstance(automation, AutomationDefinition)
            else AutomationDefinition.model_validate(automation)
        )
        await self.automations.add(model.model_dump(mode="json"))
        return model

    async def get_automation(self, tenant_id: str, automation_id: str) -> AutomationDefinition | None:
        row = await self.automations.get(tenant_id, automation_id)
        return AutomationDefinition.model_validate(row) if row else None

    async def list_active_automations(self, tenant_id: str) -> list[AutomationDefinition]:
        rows = await self.automations.list_active(tenant_id)
        return [AutomationDefinition.model_validate(row) for row in rows]

    # ------------------------------------------------------------------ states
    async def list_active_states(
        self,
        tenant_id: str,
        due_before: datetime | None = None,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[AutomationState]:
        """Return active states of active automations, oldest first.

        ``after`` continues a previous page from its last ``(next_step_time, id)``.
        """
        rows = await self.states.list_active(tenant_id, due_before=due_before, limit=limit, after=after)
        return [AutomationState.model_validate(row) for row in rows]

    async def list_states(self, tenant_id: str, status: str | None = None) -> list[AutomationState]:
        rows = await self.states.list_all(tenant_id, status=status)
        return [AutomationState.model_validate(row) for row in rows]

    async def get_state(self, tenant_id: str, state_id: str) -> AutomationState | None:
        row = await self.states.get(tenant_id, state_id)
        return AutomationState.model_validate(row) if row else None

    async def batch_update_states(self, updates: Sequence[AutomationState]) -> None:
        """Write all state updates in one transaction.

        Raises:
            StorageError: If the transaction fails; nothing is committed.
        """
        if not updates:
            return
        statements = [
            self.states.update_statement(state.model_dump()) for state in updates
        ]
        await self.adapter.execute_atomic(statements)

    async def enroll_lead(
        self,
        tenant_id: str,
        automation_id: str,
        lead_id: str,
        now: datetime | None = None,
    ) -> AutomationState:
        """Start ``lead_id`` at step 0 of ``automation_id``, due immediately.

        Enrolling a lead already present in the automation returns the
        existing state unchanged.

        Raises:
            OrphanReference: If the automation or the lead does not exist.
        """
        if await self.automations.get(tenant_id, automation_id) is None:
            raise OrphanReference(f"automation '{automation_id}' not found for tenant '{tenant_id}'")
        if await self.leads.get(tenant_id, lead_id) is None:
            raise OrphanReference(f"lead '{lead_id}' not found for tenant '{tenant_id}'")
        state = AutomationState(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            automation_id=automation_id,
            lead_id=lead_id,
            next_step_index=0,
            next_step_time=now or utc_now(),
            status=AutomationStatus.ACTIVE,
        )
        await self.states.insert_if_missing(state.model_dump())
        row = await self.states.get_for_lead(automation_id, lead_id)
        return AutomationState.model_validate(row) if row else state

    async def reactivate_state(self, tenant_id: str, state_id: str) -> bool:
        """Move an ``error`` state back to ``active`` at the same step.

        Returns:
            True if a state in ``error`` was reactivated.
        """
        changed = await self.states.reactivate(tenant_id, state_id)
        if changed:
            logger.info("Reactivated automation state %s for tenant %s", state_id, tenant_id)
        return changed > 0

    # ------------------------------------------------------- leads / templates
    async def add_lead(self, lead: Lead | dict[str, Any]) -> Lead:
        model = lead if isinstance(lead, Lead) else Lead.model_validate(lead)
        await self.leads.add(model.model_dump())
        return model

    async def get_lead(self, tenant_id: str, lead_id: str) -> Lead | None:
        row = await self.leads.get(tenant_id, lead_id)
        return Lead.model_validate(row) if row else None

    async def add_template(self, template: Template | dict[str, Any]) -> Template:
        model = template if isinstance(template, Template) else Template.model_validate(template)
        await self.templates.add(model.model_dump())
        return model

    async def get_template(self, tenant_id: str, template_id: str) -> Template | None:
        row = await self.templates.get(tenant_id, template_id)
        return Template.model_validate(row) if row else None


__all__ = ["Persistence"]

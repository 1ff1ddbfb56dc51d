# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Plan catalogue mapping subscription plans to send quotas.

Unknown plan identifiers never raise: they degrade to
:data:`DEFAULT_QUOTAS`, the most conservative set in the catalogue.
"""

from __future__ import annotations

from .logger import get_logger
from .models import PlanQuotas, Tenant

logger = get_logger("AutomationEngine.plans")

PLAN_QUOTAS: dict[str, PlanQuotas] = {
    "plan_free": PlanQuotas(
        max_sends_per_day=50,
        max_sends_per_hour=10,
        max_consecutive_failures_before_stop=3,
    ),
    "plan_starter": PlanQuotas(
        max_sends_per_day=500,
        max_sends_per_hour=100,
        max_consecutive_failures_before_stop=5,
    ),
    "plan_pro": PlanQuotas(
        max_sends_per_day=5000,
        max_sends_per_hour=1000,
        max_consecutive_failures_before_stop=10,
    ),
    "plan_enterprise": PlanQuotas(
        max_sends_per_day=50000,
        max_sends_per_hour=10000,
        max_consecutive_failures_before_stop=20,
    ),
}

DEFAULT_QUOTAS = PLAN_QUOTAS["plan_free"]


def quotas_for_plan(plan_id: str | None) -> PlanQuotas:
    """Return the quotas of ``plan_id`` or :data:`DEFAULT_QUOTAS`."""
    if plan_id and plan_id in PLAN_QUOTAS:
        return PLAN_QUOTAS[plan_id]
    return DEFAULT_QUOTAS


def quotas_for_tenant(tenant: Tenant) -> PlanQuotas:
    """Resolve a tenant's quotas, warning when its plan is not in the catalogue."""
    if tenant.plan_id not in PLAN_QUOTAS:
        logger.warning(
            "Unknown plan ID %s for tenant %s; using default quotas",
            tenant.plan_id,
            tenant.id,
        )
    return quotas_for_plan(tenant.plan_id)


__all__ = ["DEFAULT_QUOTAS", "PLAN_QUOTAS", "quotas_for_plan", "quotas_for_tenant"]

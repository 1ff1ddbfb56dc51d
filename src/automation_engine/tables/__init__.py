# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers for the automation engine schema."""

from .automation_states import AutomationStatesTable
from .automations import AutomationsTable
from .leads import LeadsTable
from .quota_tracking import QuotaTrackingTable
from .templates import TemplatesTable
from .tenants import TenantsTable

__all__ = [
    "AutomationStatesTable",
    "AutomationsTable",
    "LeadsTable",
    "QuotaTrackingTable",
    "TemplatesTable",
    "TenantsTable",
]

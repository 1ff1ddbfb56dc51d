# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Multi-tenant automation execution engine.

This package advances per-lead automation sequences (delay and send steps)
for many independent tenants on a recurring run, with:

- Per-tenant daily/hourly send quotas derived from the subscription plan
- A failure-triggered circuit breaker with a single-trial half-open policy
- Pluggable delivery providers (Brevo, Sender.net, SMTP)
- Atomic batch commit of state progress per tenant
- Prometheus metrics, a FastAPI control plane and a click CLI

Example:
    One run triggered by an external scheduler::

        from automation_engine.service import AutomationService

        service = AutomationService(db_path="/data/automation_engine.db")
        await service.init()
        summary = await service.run_once()

Authors:
    Softwell S.r.l.
"""

__version__ = "0.1.0"

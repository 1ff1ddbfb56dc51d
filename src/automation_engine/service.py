# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Automation service: wires persistence, providers, processor and coordinator.

The service is what the HTTP API, the CLI and ``main.py`` talk to. It
exposes ``run_once`` for external triggers and, when the scheduler is
active, runs the coordinator periodically in a background task.

Example:
    One-shot run from a cron job::

        service = AutomationService(db_path="/data/automation_engine.db")
        await service.init()
        summary = await service.run_once()
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from .config import EngineSettings
from .coordinator import DEFAULT_MAX_CONCURRENCY, RunCoordinator, RunSummary
from .errors import AutomationEngineError
from .logger import get_logger
from .persistence import Persistence
from .processor import DEFAULT_PAGE_SIZE, TenantRunProcessor
from .prometheus import EngineMetrics
from .providers import DEFAULT_PROVIDER, ProviderRegistry
from .providers.base import DEFAULT_SEND_TIMEOUT


class AutomationService:
    """Long-lived owner of the engine components.

    Args:
        db_path: SQLite path or PostgreSQL URL.
        providers: Provider registry; built from ``send_timeout`` when omitted.
        metrics: Prometheus metrics shared by all components.
        default_provider: Platform default provider.
        send_timeout: Upper bound in seconds for one send.
        max_concurrency: Tenants processed in parallel.
        state_page_size: Active states read per query while walking a tenant.
        circuit_breaker_cooldown: Breaker cooldown in seconds.
        start_active: Run the periodic scheduler once started.
        run_interval: Seconds between scheduled runs.
        run_deadline: Seconds after which a run starts no new tenant.
        log_delivery_activity: Log successful sends at INFO.
    """

    def __init__(
        self,
        db_path: str = "/data/automation_engine.db",
        *,
        providers: ProviderRegistry | None = None,
        metrics: EngineMetrics | None = None,
        default_provider: str = DEFAULT_PROVIDER,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        state_page_size: int = DEFAULT_PAGE_SIZE,
        circuit_breaker_cooldown: float = 1800,
        start_active: bool = False,
        run_interval: float = 300.0,
        run_deadline: float | None = None,
        log_delivery_activity: bool = False,
    ):
        self.logger = get_logger("AutomationService")
        self.persistence = Persistence(db_path)
        self.metrics = metrics or EngineMetrics()
        self.providers = providers or ProviderRegistry.default(timeout=send_timeout)
        self.processor = TenantRunProcessor(
            self.persistence,
            self.providers,
            self.metrics,
            default_provider=default_provider,
            send_timeout=send_timeout,
            page_size=state_page_size,
            cooldown=timedelta(seconds=circuit_breaker_cooldown),
            log_delivery_activity=log_delivery_activity,
        )
        self.coordinator = RunCoordinator(
            self.persistence,
            self.processor,
            self.metrics,
            max_concurrency=max_concurrency,
        )
        self._active = start_active
        self._run_interval = float(run_interval)
        self._run_deadline = run_deadline
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._cancel_event = asyncio.Event()
        self._task_scheduler: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: EngineSettings, **overrides: Any) -> AutomationService:
        kwargs: dict[str, Any] = dict(
            db_path=settings.db_path,
            default_provider=settings.default_provider,
            send_timeout=settings.send_timeout_seconds,
            max_concurrency=settings.max_concurrency,
            state_page_size=settings.state_page_size,
            circuit_breaker_cooldown=settings.circuit_breaker_cooldown_seconds,
            start_active=settings.scheduler_active,
            run_interval=settings.run_interval_seconds,
            run_deadline=settings.run_deadline_seconds,
            log_delivery_activity=settings.log_delivery_activity,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def active(self) -> bool:
        return self._active

    async def init(self) -> None:
        await self.persistence.init_db()

    async def start(self) -> None:
        """Initialize storage and spawn the scheduler loop."""
        await self.init()
        self._stop.clear()
        self._cancel_event.clear()
        self._task_scheduler = asyncio.create_task(self._scheduler_loop(), name="automation-scheduler")

    async def stop(self) -> None:
        """Stop the scheduler; a tenant already started still commits its batch."""
        self._stop.set()
        self._cancel_event.set()
        self._wake_event.set()
        if self._task_scheduler:
            await asyncio.gather(self._task_scheduler, return_exceptions=True)
            self._task_scheduler = None
        await self.persistence.close()

    async def run_once(self, deadline_seconds: float | None = None) -> RunSummary:
        """Process every eligible tenant once."""
        seconds = deadline_seconds if deadline_seconds is not None else self._run_deadline
        deadline = time.monotonic() + seconds if seconds else None
        return await self.coordinator.run_once(deadline=deadline, cancel_event=self._cancel_event)

    async def _scheduler_loop(self) -> None:
        while not self._stop.is_set():
            if self._active:
                try:
                    await self.run_once()
                except Exception as exc:  # pragma: no cover
                    self.logger.exception("Unhandled error in scheduler loop: %s", exc)
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._run_interval)
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

    async def status(self) -> dict[str, Any]:
        last = self.coordinator.last_summary
        return {
            "ok": True,
            "active": self._active,
            "providers": self.providers.names(),
            "last_run": last.as_dict() if last else None,
        }

    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``run now``: Run all eligible tenants immediately and return the summary
        - ``suspend`` / ``activate``: Pause or resume the scheduler
        - ``addTenant``, ``listTenants``, ``getTracking``: Tenant management
        - ``addAutomation``, ``addLead``, ``addTemplate``: Automation content
        - ``enrollLead``, ``listStates``, ``reactivateState``: Automation states

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = payload or {}
        try:
            match cmd:
                case "run now":
                    summary = await self.run_once(payload.get("deadline_seconds"))
                    return {"ok": True, "summary": summary.as_dict()}
                case "suspend":
                    self._active = False
                    return {"ok": True, "active": False}
                case "activate":
                    self._active = True
                    self._wake_event.set()
                    return {"ok": True, "active": True}
                case "addTenant":
                    tenant = await self.persistence.add_tenant(payload)
                    return {"ok": True, "tenant_id": tenant.id}
                case "listTenants":
                    tenants = await self.persistence.list_tenants()
                    return {
                        "ok": True,
                        "tenants": [
                            t.model_dump(exclude={"credentials"}) | {"providers": sorted(t.credentials)}
                            for t in tenants
                        ],
                    }
                case "getTracking":
                    tenant_id = payload["tenant_id"]
                    if await self.persistence.get_tenant(tenant_id) is None:
                        return {"ok": False, "error": f"tenant '{tenant_id}' not found"}
                    tracking = await self.persistence.peek_quota_tracking(tenant_id)
                    return {"ok": True, "tracking": tracking.model_dump(mode="json")}
                case "addAutomation":
                    automation = await self.persistence.add_automation(payload)
                    return {"ok": True, "automation_id": automation.id}
                case "addLead":
                    lead = await self.persistence.add_lead(payload)
                    return {"ok": True, "lead_id": lead.id}
                case "addTemplate":
                    template = await self.persistence.add_template(payload)
                    return {"ok": True, "template_id": template.id}
                case "enrollLead":
                    state = await self.persistence.enroll_lead(
                        payload["tenant_id"], payload["automation_id"], payload["lead_id"]
                    )
                    return {"ok": True, "state": state.model_dump(mode="json")}
                case "listStates":
                    states = await self.persistence.list_states(payload["tenant_id"], payload.get("status"))
                    return {"ok": True, "states": [s.model_dump(mode="json") for s in states]}
                case "reactivateState":
                    changed = await self.persistence.reactivate_state(payload["tenant_id"], payload["state_id"])
                    if not changed:
                        return {"ok": False, "error": "state not found or not in error"}
                    return {"ok": True}
                case _:
                    return {"ok": False, "error": f"unknown command: {cmd}"}
        except AutomationEngineError as exc:
            return {"ok": False, "error": str(exc), "error_code": exc.code}
        except (ValidationError, KeyError) as exc:
            return {"ok": False, "error": str(exc), "error_code": "invalid_request"}


__all__ = ["AutomationService"]

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Run coordinator: one bounded pass over every eligible tenant.

``run_once`` is invoked by an external scheduler (cron, the HTTP
``/commands/run-now`` endpoint or the CLI). Tenants are processed in
parallel up to ``max_concurrency``; each tenant is isolated, so an error in
one is recorded in the summary and never aborts the others.

Cancellation and deadlines are honoured only between tenants: a tenant that
has started always reaches its batch commit (or its storage error).

Overlapping invocations in the same process are guarded by a per-tenant
lock; a tenant already being processed is reported in ``skipped_busy``.
Invocations in different processes need an external lock keyed by tenant.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .logger import get_logger
from .models import Tenant, utc_now
from .processor import TenantRunProcessor, TenantRunResult
from .prometheus import EngineMetrics
from .providers import DEFAULT_PROVIDER
from .stores import TenantStore

DEFAULT_MAX_CONCURRENCY = 4


@dataclass
class RunSummary:
    """Aggregate outcome of one ``run_once`` invocation."""

    tenants_processed: int = 0
    steps_advanced: int = 0
    skipped_quota: int = 0
    skipped_circuit_breaker: int = 0
    skipped_busy: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    tenants: dict[str, TenantRunResult] = field(default_factory=dict)
    details: list[str] = field(default_factory=list)
    message: str = ""
    cancelled: bool = False
    started_at: datetime | None = None
    duration_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenants_processed": self.tenants_processed,
            "steps_advanced": self.steps_advanced,
            "skipped_quota": self.skipped_quota,
            "skipped_circuit_breaker": self.skipped_circuit_breaker,
            "skipped_busy": list(self.skipped_busy),
            "errors": dict(self.errors),
            "tenants": {tid: res.as_dict() for tid, res in self.tenants.items()},
            "details": list(self.details),
            "message": self.message,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_seconds": self.duration_seconds,
        }


def is_eligible(tenant: Tenant, default_provider: str = DEFAULT_PROVIDER) -> bool:
    """Active tenants with credentials for their selected (or the default) provider."""
    if not tenant.is_active:
        return False
    return bool(tenant.credentials_for(tenant.provider or default_provider))


class RunCoordinator:
    """Runs the :class:`TenantRunProcessor` for every eligible tenant.

    Args:
        store: Tenant store listing active tenants.
        processor: Processor shared by all tenants.
        metrics: Optional Prometheus metrics; defaults to the processor's.
        max_concurrency: Upper bound of tenants processed at the same time.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: TenantStore,
        processor: TenantRunProcessor,
        metrics: EngineMetrics | None = None,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.processor = processor
        self.metrics = metrics or processor.metrics
        self.max_concurrency = max(1, int(max_concurrency))
        self.clock = clock
        self.logger = get_logger("RunCoordinator")
        self._tenant_locks: dict[str, asyncio.Lock] = {}
        self.last_summary: RunSummary | None = None

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = self._tenant_locks[tenant_id] = asyncio.Lock()
        return lock

    def is_busy(self, tenant_id: str) -> bool:
        lock = self._tenant_locks.get(tenant_id)
        return bool(lock and lock.locked())

    async def run_once(
        self,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunSummary:
        """Process every eligible tenant once and return the aggregate summary.

        Args:
            deadline: Optional ``time.monotonic()`` value after which no new
                tenant is started.
            cancel_event: Optional event; once set, no new tenant is started.
        """
        started = time.monotonic()
        summary = RunSummary(started_at=self.clock())
        default_provider = self.processor.default_provider
        tenants = [
            t for t in await self.store.list_active_tenants() if is_eligible(t, default_provider)
        ]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        def should_stop() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return deadline is not None and time.monotonic() >= deadline

        async def run_tenant(tenant: Tenant) -> None:
            async with semaphore:
                # Checked after acquiring a slot, so a queued tenant never starts late.
                if should_stop():
                    summary.cancelled = True
                    return
                lock = self._lock_for(tenant.id)
                if lock.locked():
                    self.logger.info("Tenant %s is already being processed; skipping", tenant.id)
                    summary.skipped_busy.append(tenant.id)
                    return
                async with lock:
                    try:
                        result = await self.processor.process(tenant, self.clock())
                    except Exception as exc:
                        self.logger.exception("Error processing tenant %s", tenant.id)
                        summary.errors[tenant.id] = str(exc) or type(exc).__name__
                        self.metrics.inc_tenant_error(tenant.id)
                        return
                summary.tenants[tenant.id] = result

        await asyncio.gather(*(run_tenant(t) for t in tenants))

        # Report in tenant order regardless of completion order.
        for tenant in tenants:
            result = summary.tenants.get(tenant.id)
            if result is None:
                if tenant.id in summary.errors:
                    summary.details.append(
                        f"Tenant {tenant.name or tenant.id} ({tenant.id}): error: {summary.errors[tenant.id]}"
                    )
                continue
            summary.tenants_processed += 1
            summary.steps_advanced += result.steps_advanced
            summary.skipped_quota += result.skipped_quota
            summary.skipped_circuit_breaker += result.skipped_circuit_breaker
            summary.details.append(result.detail())

        summary.duration_seconds = round(time.monotonic() - started, 3)
        summary.message = (
            f"Automation run {'cancelled' if summary.cancelled else 'completed'}. "
            f"Processed {summary.steps_advanced} steps, skipped {summary.skipped_quota} (quota), "
            f"{summary.skipped_circuit_breaker} (circuit breaker) across {summary.tenants_processed} tenants."
        )
        if summary.errors:
            summary.message += f" {len(summary.errors)} tenant(s) failed."
        self.logger.info(summary.message)
        self.metrics.set_last_run(time.time())
        self.last_summary = summary
        return summary


__all__ = ["DEFAULT_MAX_CONCURRENCY", "RunCoordinator", "RunSummary", "is_eligible"]

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tenant run processor: one pass over one tenant's active automation states.

A run for a tenant proceeds as follows:

1. Resolve quotas from the plan, load (or lazily create) the quota tracking,
   apply window resets and persist them when something changed.
2. If the circuit breaker is open, skip the tenant without reading any
   automation or state.
3. Load active automations, then walk every active state of an active
   automation in pages of ``page_size`` rows, oldest ``next_step_time`` first.
   States already past the end of their sequence are completed whether or
   not they are due.
4. Advance every due state by one step. The tracking value is threaded
   through the loop so later sends see the counters of earlier ones, and it
   is persisted after every send because a send cannot be rolled back.
5. Commit all state changes in one atomic batch.

Per-state problems (quota, configuration, orphans, delivery failures) become
state-level outcomes. Only storage errors escape, aborting the tenant before
its batch is committed.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable

from . import circuit_breaker
from .errors import CircuitOpen, ConfigurationError, DeliveryFailure, OrphanReference, QuotaExceeded
from .logger import get_logger
from .models import (
    AutomationDefinition,
    AutomationState,
    DelayStep,
    OutboundMessage,
    PlanQuotas,
    QuotaTracking,
    SendStep,
    Tenant,
    utc_now,
)
from .plans import quotas_for_tenant
from .prometheus import EngineMetrics
from .providers import DEFAULT_PROVIDER, DeliveryProvider, ProviderRegistry
from .providers.base import DEFAULT_SEND_TIMEOUT
from .quota import is_quota_exceeded, record_failure, record_success, reset_if_window_elapsed
from .state_machine import advance_delay, advance_send, complete, current_step, is_due, mark_error
from .stores import EngineStore

DEFAULT_PAGE_SIZE = 50


@dataclass
class TenantRunResult:
    """Outcome counters of one tenant run."""

    tenant_id: str
    tenant_name: str | None = None
    steps_advanced: int = 0
    skipped_quota: int = 0
    skipped_circuit_breaker: int = 0
    sends: int = 0
    delivery_failures: int = 0
    configuration_errors: int = 0
    orphans: int = 0
    states_committed: int = 0
    tracking: QuotaTracking | None = field(default=None, repr=False)

    def detail(self) -> str:
        """Human readable one-line summary for run reports."""
        parts = [f"{self.steps_advanced} steps processed"]
        if self.skipped_quota:
            parts.append(f"{self.skipped_quota} skipped (quota exceeded)")
        if self.skipped_circuit_breaker:
            parts.append(f"{self.skipped_circuit_breaker} skipped (circuit breaker open)")
        label = self.tenant_name or self.tenant_id
        return f"Tenant {label} ({self.tenant_id}): " + ", ".join(parts)

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "steps_advanced": self.steps_advanced,
            "skipped_quota": self.skipped_quota,
            "skipped_circuit_breaker": self.skipped_circuit_breaker,
            "sends": self.sends,
            "delivery_failures": self.delivery_failures,
            "configuration_errors": self.configuration_errors,
            "orphans": self.orphans,
            "states_committed": self.states_committed,
        }


@dataclass
class _PreparedSend:
    provider: DeliveryProvider
    credentials: dict[str, Any]
    message: OutboundMessage


class TenantRunProcessor:
    """Advances the due automation states of a single tenant.

    One instance may serve many tenants; it keeps no per-tenant state
    between calls. The caller must not run two ``process`` calls for the
    same tenant concurrently (see :class:`~automation_engine.coordinator.RunCoordinator`).

    Args:
        store: Storage collaborator (tenants, automations, leads, templates).
        providers: Registry used to resolve the provider of each send.
        metrics: Optional Prometheus metrics.
        default_provider: Platform default when neither the automation nor
            the tenant selects a provider.
        send_timeout: Upper bound in seconds for a single send.
        page_size: Number of states read per query while walking a tenant's
            active states. Every active state is visited on each run.
        cooldown: Circuit breaker cooldown.
        log_delivery_activity: Log successful sends at INFO instead of DEBUG.
        quotas_resolver: Maps a tenant to its quotas; defaults to the plan catalogue.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: EngineStore,
        providers: ProviderRegistry,
        metrics: EngineMetrics | None = None,
        *,
        default_provider: str = DEFAULT_PROVIDER,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        cooldown: timedelta = circuit_breaker.DEFAULT_COOLDOWN,
        log_delivery_activity: bool = False,
        quotas_resolver: Callable[[Tenant], PlanQuotas] = quotas_for_tenant,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.providers = providers
        self.metrics = metrics or EngineMetrics()
        self.default_provider = default_provider
        self.send_timeout = float(send_timeout)
        self.page_size = max(1, int(page_size))
        self.cooldown = cooldown
        self.log_delivery_activity = log_delivery_activity
        self.quotas_resolver = quotas_resolver
        self.clock = clock
        self.logger = get_logger("TenantRunProcessor")

    async def process(self, tenant: Tenant, now: datetime | None = None) -> TenantRunResult:
        """Run one pass over ``tenant``.

        Raises:
            StorageError: When reading or committing fails. Sends already made
                are reflected in the persisted tracking; state changes are not.
        """
        now = now or self.clock()
        result = TenantRunResult(tenant_id=tenant.id, tenant_name=tenant.name)
        quotas = self.quotas_resolver(tenant)

        tracking = await self.store.get_quota_tracking(tenant.id, now)
        reset = reset_if_window_elapsed(tracking, now)
        if reset is not tracking:
            self.logger.debug("Quota window reset for tenant %s", tenant.id)
            tracking = reset
            await self.store.put_quota_tracking(tenant.id, tracking)

        if circuit_breaker.is_open(tracking, quotas, now, self.cooldown):
            tracking = await self._trip(tenant, tracking, quotas, now)
            self.logger.warning(
                "Circuit breaker OPEN for tenant %s (%d consecutive failures); skipping run",
                tenant.id,
                tracking.consecutive_failures,
            )
            result.skipped_circuit_breaker = 1
            result.tracking = tracking
            self.metrics.inc_skipped_circuit(tenant.id)
            return result
        if tracking.circuit_breaker_tripped_at is not None:
            self.logger.info(
                "Circuit breaker cooldown expired for tenant %s; allowing one trial send",
                tenant.id,
            )

        automations = {a.id: a for a in await self.store.list_active_automations(tenant.id)}

        updates: list[AutomationState] = []
        async with aclosing(self._active_states(tenant.id)) as states:
            async for state in states:
                automation = automations.get(state.automation_id)
                if automation is None:
                    self.logger.info(
                        "Skipping state %s of tenant %s: automation %s not found",
                        state.id,
                        tenant.id,
                        state.automation_id,
                    )
                    result.orphans += 1
                    continue

                step = current_step(state, automation)
                if step is None:
                    updates.append(complete(state))
                    result.steps_advanced += 1
                    continue

                if not is_due(state, now):
                    continue

                if isinstance(step, DelayStep):
                    updates.append(self._finish_if_exhausted(advance_delay(state, step, now), automation))
                    result.steps_advanced += 1
                    continue

                try:
                    self.check_send_allowed(tracking, quotas, now)
                except QuotaExceeded as exc:
                    self.logger.warning(
                        "Tenant %s quota exceeded (%s); skipping send for state %s",
                        tenant.id,
                        exc,
                        state.id,
                    )
                    result.skipped_quota += 1
                    self.metrics.inc_skipped_quota(tenant.id)
                    continue
                except CircuitOpen as exc:
                    self.logger.warning(
                        "Circuit breaker OPEN for tenant %s (%s); stopping sends for this run",
                        tenant.id,
                        exc,
                    )
                    result.skipped_circuit_breaker = 1
                    self.metrics.inc_skipped_circuit(tenant.id)
                    break

                try:
                    prepared = await self._prepare_send(tenant, automation, state, step)
                except OrphanReference as exc:
                    self.logger.info("Skipping state %s of tenant %s: %s", state.id, tenant.id, exc)
                    result.orphans += 1
                    continue
                except ConfigurationError as exc:
                    self.logger.warning(
                        "Configuration error for tenant %s, state %s: %s", tenant.id, state.id, exc
                    )
                    result.configuration_errors += 1
                    self.metrics.inc_configuration_error(tenant.id)
                    continue

                tracking, updated = await self._deliver(
                    tenant, state, automation, prepared, tracking, quotas, now, result
                )
                if updated is not None:
                    updates.append(updated)

        await self.store.batch_update_states(updates)
        result.states_committed = len(updates)
        result.tracking = tracking
        self.metrics.inc_steps_advanced(tenant.id, result.steps_advanced)
        return result

    def check_send_allowed(self, tracking: QuotaTracking, quotas: PlanQuotas, now: datetime) -> None:
        """Gate one send on the tenant's quota and circuit breaker.

        Raises:
            QuotaExceeded: The daily or hourly ceiling is reached.
            CircuitOpen: The breaker is tripped and still cooling down.
        """
        if is_quota_exceeded(tracking, quotas):
            raise QuotaExceeded(
                f"daily {tracking.sent_today}/{quotas.max_sends_per_day}, "
                f"hourly {tracking.sent_this_hour}/{quotas.max_sends_per_hour}"
            )
        if circuit_breaker.is_open(tracking, quotas, now, self.cooldown):
            raise CircuitOpen(f"{tracking.consecutive_failures} consecutive failures")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _active_states(self, tenant_id: str) -> AsyncIterator[AutomationState]:
        """Yield every active state of the tenant, one page per query."""
        after: tuple[datetime, str] | None = None
        while True:
            page = await self.store.list_active_states(tenant_id, limit=self.page_size, after=after)
            for state in page:
                yield state
            if len(page) < self.page_size:
                return
            last = page[-1]
            after = (last.next_step_time, last.id)

    async def _trip(
        self, tenant: Tenant, tracking: QuotaTracking, quotas: PlanQuotas, now: datetime
    ) -> QuotaTracking:
        tripped = circuit_breaker.trip_if_needed(tracking, quotas, now)
        if tripped is not tracking:
            self.logger.error(
                "Circuit breaker TRIPPED for tenant %s after %d consecutive failures; cooldown %s",
                tenant.id,
                tripped.consecutive_failures,
                self.cooldown,
            )
            await self.store.put_quota_tracking(tenant.id, tripped)
        return tripped

    @staticmethod
    def _finish_if_exhausted(state: AutomationState, automation: AutomationDefinition) -> AutomationState:
        if current_step(state, automation) is None:
            return complete(state)
        return state

    def select_provider_name(self, tenant: Tenant, automation: AutomationDefinition) -> str:
        """Automation choice, then tenant choice, then the platform default."""
        if automation.delivery and automation.delivery.provider:
            return automation.delivery.provider
        return tenant.provider or self.default_provider

    async def _prepare_send(
        self,
        tenant: Tenant,
        automation: AutomationDefinition,
        state: AutomationState,
        step: SendStep,
    ) -> _PreparedSend:
        lead = await self.store.get_lead(tenant.id, state.lead_id)
        if lead is None:
            raise OrphanReference(f"lead {state.lead_id} not found")
        if not lead.email:
            raise OrphanReference(f"lead {state.lead_id} has no email address")
        template = await self.store.get_template(tenant.id, step.template_ref)
        if template is None:
            raise OrphanReference(f"template {step.template_ref} not found")

        provider_name = self.select_provider_name(tenant, automation)
        provider = self.providers.get(provider_name)
        if provider is None:
            raise ConfigurationError(f"unknown provider '{provider_name}'")
        if not provider.supports(step.channel):
            raise ConfigurationError(
                f"provider '{provider_name}' does not support channel '{step.channel.value}'"
            )
        credentials = tenant.credentials_for(provider.name)
        missing = provider.missing_fields(credentials)
        if not credentials or missing:
            raise ConfigurationError(
                f"incomplete {provider_name} credentials: missing {', '.join(missing) or 'all fields'}"
            )

        delivery = automation.delivery
        sender_email = (
            (delivery.sender_email if delivery else None)
            or credentials.get("sender_email")
            or credentials.get("from_email")
            or tenant.contact_email
        )
        if not sender_email:
            raise ConfigurationError(f"no sender email configured for provider '{provider_name}'")
        sender_name = (
            (delivery.sender_name if delivery else None)
            or credentials.get("sender_name")
            or credentials.get("from_name")
            or tenant.contact_name
            or tenant.name
        )
        message = OutboundMessage(
            to=lead.email,
            to_name=lead.name,
            subject=template.subject,
            html=template.html,
            sender_email=sender_email,
            sender_name=sender_name,
        )
        return _PreparedSend(provider=provider, credentials=credentials, message=message)

    async def _deliver(
        self,
        tenant: Tenant,
        state: AutomationState,
        automation: AutomationDefinition,
        prepared: _PreparedSend,
        tracking: QuotaTracking,
        quotas: PlanQuotas,
        now: datetime,
        result: TenantRunResult,
    ) -> tuple[QuotaTracking, AutomationState | None]:
        """Send one message and return the new tracking and the state update, if any."""
        provider = prepared.provider
        timed_out = False
        error: str | None = None
        message_id: str | None = None
        try:
            async with asyncio.timeout(self.send_timeout):
                message_id = await provider.send(prepared.credentials, prepared.message)
        except TimeoutError:
            timed_out = True
            error = f"timed out after {self.send_timeout:g}s"
        except DeliveryFailure as exc:
            timed_out = exc.timed_out
            error = str(exc)
        except Exception as exc:
            error = str(exc) or type(exc).__name__

        if error is None:
            tracking = record_success(tracking, now)
            await self.store.put_quota_tracking(tenant.id, tracking)
            result.sends += 1
            result.steps_advanced += 1
            self.metrics.inc_sent(tenant.id)
            log = self.logger.info if self.log_delivery_activity else self.logger.debug
            log(
                "Sent via %s for tenant %s, lead %s (message %s). Quota: %d/%d daily, %d/%d hourly",
                provider.name,
                tenant.id,
                state.lead_id,
                message_id,
                tracking.sent_today,
                quotas.max_sends_per_day,
                tracking.sent_this_hour,
                quotas.max_sends_per_hour,
            )
            return tracking, self._finish_if_exhausted(advance_send(state, now), automation)

        previous_trip = tracking.circuit_breaker_tripped_at
        tracking = record_failure(tracking, quotas, now, self.cooldown)
        await self.store.put_quota_tracking(tenant.id, tracking)
        result.delivery_failures += 1
        self.metrics.inc_delivery_failure(tenant.id)
        self.logger.error(
            "Delivery via %s failed for tenant %s, lead %s: %s",
            provider.name,
            tenant.id,
            state.lead_id,
            error,
        )
        if tracking.circuit_breaker_tripped_at != previous_trip:
            self.logger.error(
                "Circuit breaker TRIPPED for tenant %s after %d consecutive failures; cooldown %s",
                tenant.id,
                tracking.consecutive_failures,
                self.cooldown,
            )
        if timed_out:
            # Left active at the same step; retried on the next run.
            return tracking, None
        return tracking, mark_error(state, f"delivery failed: {error}")


__all__ = ["DEFAULT_PAGE_SIZE", "TenantRunProcessor", "TenantRunResult"]

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the multi-tenant automation engine.

This module defines the data models used throughout the engine for
validation, serialization, and type safety.

Models:
    - Tenant: Company account with plan and provider credentials
    - PlanQuotas: Send ceilings and failure threshold derived from the plan
    - QuotaTracking: Per-tenant rolling counters (immutable value)
    - DelayStep / SendStep: The two kinds of automation step
    - AutomationDefinition: Ordered step list owned by a tenant
    - AutomationState: Progress of one lead through one automation
    - Lead, Template: Read-only collaborators resolved at send time
    - OutboundMessage: Provider-neutral message handed to a provider

Timestamps are timezone-aware UTC datetimes; naive values are interpreted
as UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TenantStatus(str, Enum):
    """Lifecycle status of a tenant. Only ``active`` tenants are processed."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class ProviderName(str, Enum):
    """Closed set of delivery providers known to the engine."""

    BREVO = "brevo"
    SENDER = "sender"
    SMTP = "smtp"


class Channel(str, Enum):
    """Outbound channel of a send step."""

    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class StepUnit(str, Enum):
    """Unit of a delay step. Durations use fixed-length arithmetic."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class AutomationStatus(str, Enum):
    """Status of an automation state. ``completed`` and ``error`` are terminal for the engine."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Tenants and quotas
# ---------------------------------------------------------------------------


class Tenant(BaseModel):
    """Company account as seen by the engine (read-only).

    Attributes:
        id: Unique tenant identifier.
        name: Human-readable tenant name.
        status: Lifecycle status; only ``active`` tenants are processed.
        plan_id: Subscription plan identifier used to derive quotas.
        provider: Provider selected by the tenant, if any.
        credentials: Provider name to credential mapping. Opaque to the
            engine beyond presence and completeness checks.
        contact_email: Fallback sender address.
        contact_name: Fallback sender display name.
    """

    model_config = ConfigDict(extra="ignore")

    id: Annotated[
        str,
        Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$",
              description="Unique tenant identifier")
    ]
    name: str | None = None
    status: str = TenantStatus.ACTIVE.value
    plan_id: str | None = None
    provider: str | None = None
    credentials: dict[str, dict[str, Any]] = Field(default_factory=dict)
    contact_email: str | None = None
    contact_name: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE.value

    def credentials_for(self, provider: str) -> dict[str, Any]:
        """Return the credentials configured for ``provider`` (empty when absent)."""
        return dict(self.credentials.get(provider) or {})


class PlanQuotas(BaseModel):
    """Quota set derived from a tenant's plan.

    Attributes:
        max_sends_per_day: Ceiling on sends per UTC calendar day.
        max_sends_per_hour: Ceiling on sends per rolling hour window.
        max_consecutive_failures_before_stop: Failures that trip the breaker.
    """

    model_config = ConfigDict(frozen=True)

    max_sends_per_day: int = Field(ge=0)
    max_sends_per_hour: int = Field(ge=0)
    max_consecutive_failures_before_stop: int = Field(ge=1)


class QuotaTracking(BaseModel):
    """Rolling send counters of one tenant.

    The model is immutable: tracker operations return updated copies so the
    value can be threaded through a tenant run and persisted explicitly.
    """

    model_config = ConfigDict(frozen=True)

    sent_today: int = Field(default=0, ge=0)
    sent_this_hour: int = Field(default=0, ge=0)
    last_daily_reset_at: datetime
    last_hourly_reset_at: datetime
    consecutive_failures: int = Field(default=0, ge=0)
    circuit_breaker_tripped_at: datetime | None = None
    last_send_at: datetime | None = None

    @field_validator(
        "last_daily_reset_at",
        "last_hourly_reset_at",
        "circuit_breaker_tripped_at",
        "last_send_at",
    )
    @classmethod
    def _to_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @classmethod
    def initial(cls, now: datetime) -> QuotaTracking:
        """Zeroed tracking whose windows start at ``now``."""
        return cls(last_daily_reset_at=now, last_hourly_reset_at=now)


# ---------------------------------------------------------------------------
# Automations
# ---------------------------------------------------------------------------


class DelayStep(BaseModel):
    """Wait ``duration`` units before the next step."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["delay"] = "delay"
    duration: int = Field(ge=0)
    unit: StepUnit = StepUnit.HOURS

    def as_timedelta(self) -> timedelta:
        if self.unit == StepUnit.DAYS:
            return timedelta(hours=24 * self.duration)
        if self.unit == StepUnit.MINUTES:
            return timedelta(minutes=self.duration)
        return timedelta(hours=self.duration)


class SendStep(BaseModel):
    """Send the referenced template to the lead over ``channel``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["send"] = "send"
    channel: Channel = Channel.EMAIL
    template_ref: str = Field(min_length=1)


Step = Annotated[Union[DelayStep, SendStep], Field(discriminator="type")]


class DeliveryConfig(BaseModel):
    """Per-automation provider selection and sender identity overrides."""

    model_config = ConfigDict(extra="forbid")

    provider: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None


class AutomationDefinition(BaseModel):
    """Ordered step list applied to leads that enter the automation."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    name: str | None = None
    status: str = "active"
    steps: list[Step] = Field(default_factory=list)
    delivery: DeliveryConfig | None = None

    def step_at(self, index: int) -> DelayStep | SendStep | None:
        """Return the step at ``index`` or ``None`` when the list is exhausted."""
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None


class AutomationState(BaseModel):
    """Progress record of one lead through one automation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    automation_id: str = Field(min_length=1)
    lead_id: str = Field(min_length=1)
    next_step_index: int = Field(default=0, ge=0)
    next_step_time: datetime
    status: AutomationStatus = AutomationStatus.ACTIVE
    error_message: str | None = None

    @field_validator("next_step_time")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def is_terminal(self) -> bool:
        return self.status in (AutomationStatus.COMPLETED, AutomationStatus.ERROR)


# ---------------------------------------------------------------------------
# Send-time collaborators
# ---------------------------------------------------------------------------


class Lead(BaseModel):
    """Recipient of an automation."""

    model_config = ConfigDict(extra="ignore")

    id: str
    tenant_id: str | None = None
    email: str | None = None
    phone: str | None = None
    name: str | None = None


class Template(BaseModel):
    """Message content referenced by send steps."""

    model_config = ConfigDict(extra="ignore")

    id: str
    tenant_id: str
    subject: str = ""
    html: str = ""


class OutboundMessage(BaseModel):
    """Provider-neutral message passed to :meth:`DeliveryProvider.send`."""

    model_config = ConfigDict(frozen=True)

    to: str
    to_name: str | None = None
    subject: str
    html: str
    sender_email: str | None = None
    sender_name: str | None = None


__all__ = [
    "AutomationDefinition",
    "AutomationState",
    "AutomationStatus",
    "Channel",
    "DelayStep",
    "DeliveryConfig",
    "Lead",
    "OutboundMessage",
    "PlanQuotas",
    "ProviderName",
    "QuotaTracking",
    "SendStep",
    "Step",
    "StepUnit",
    "Template",
    "Tenant",
    "TenantStatus",
    "ensure_utc",
    "utc_now",
]

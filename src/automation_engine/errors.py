# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy of the automation engine.

Every error carries a machine readable ``code`` so that run summaries and the
HTTP surface can report failures without parsing messages.

- :class:`ConfigurationError`: incomplete provider credentials or an
  unsupported channel. The step is skipped without touching quotas.
- :class:`QuotaExceeded`: daily or hourly ceiling reached for the tenant.
- :class:`CircuitOpen`: the tenant's circuit breaker blocks sending.
- :class:`DeliveryFailure`: the provider rejected the message or timed out.
- :class:`OrphanReference`: lead, template or automation vanished mid-flight.
- :class:`StorageError`: the persistence layer is unavailable; the tenant's
  batch is aborted and retried on the next run.
"""

from __future__ import annotations


class AutomationEngineError(RuntimeError):
    """Base class for all engine errors."""

    code = "automation_engine_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)


class ConfigurationError(AutomationEngineError):
    """Raised when a tenant lacks complete credentials for the selected provider."""

    code = "configuration_error"


class QuotaExceeded(AutomationEngineError):
    """Raised when a send would exceed the tenant's daily or hourly quota."""

    code = "quota_exceeded"


class CircuitOpen(AutomationEngineError):
    """Raised when the tenant's circuit breaker blocks sending."""

    code = "circuit_open"


class DeliveryFailure(AutomationEngineError):
    """Raised when a provider rejects a message or does not answer in time."""

    code = "delivery_failure"

    def __init__(self, message: str = "", *, provider: str | None = None, timed_out: bool = False):
        super().__init__(message)
        self.provider = provider
        self.timed_out = timed_out


class OrphanReference(AutomationEngineError):
    """Raised when a state references a lead, template or automation that no longer exists."""

    code = "orphan_reference"


class StorageError(AutomationEngineError):
    """Raised when the persistence layer cannot read or commit state."""

    code = "storage_error"


__all__ = [
    "AutomationEngineError",
    "CircuitOpen",
    "ConfigurationError",
    "DeliveryFailure",
    "OrphanReference",
    "QuotaExceeded",
    "StorageError",
]

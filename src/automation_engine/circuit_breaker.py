# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-tenant circuit breaker derived from :class:`QuotaTracking`.

The breaker is open while the tenant has at least
``max_consecutive_failures_before_stop`` consecutive failures and either no
trip timestamp is recorded yet (the threshold was just crossed) or the
cooldown since the trip has not elapsed.

Once the cooldown elapses the breaker reports closed without clearing the
failure count. Exactly one further send is then let through:

- success resets the count via ``record_success`` and the breaker is closed;
- failure refreshes the trip timestamp via ``record_failure`` and the breaker
  is open for another full cooldown.

This is a half-open policy with a budget of a single trial.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .models import ensure_utc

if TYPE_CHECKING:
    from .models import PlanQuotas, QuotaTracking

DEFAULT_COOLDOWN = timedelta(minutes=30)


def cooldown_elapsed(tripped_at: datetime, now: datetime, cooldown: timedelta = DEFAULT_COOLDOWN) -> bool:
    return ensure_utc(now) - ensure_utc(tripped_at) >= cooldown


def is_open(
    tracking: QuotaTracking,
    quotas: PlanQuotas,
    now: datetime,
    cooldown: timedelta = DEFAULT_COOLDOWN,
) -> bool:
    """Return ``True`` when the tenant must not send."""
    if tracking.consecutive_failures < quotas.max_consecutive_failures_before_stop:
        return False
    tripped_at = tracking.circuit_breaker_tripped_at
    if tripped_at is None:
        return True
    return not cooldown_elapsed(tripped_at, now, cooldown)


def trip_if_needed(tracking: QuotaTracking, quotas: PlanQuotas, now: datetime) -> QuotaTracking:
    """Stamp the trip time when the threshold is crossed without a timestamp."""
    if (
        tracking.consecutive_failures >= quotas.max_consecutive_failures_before_stop
        and tracking.circuit_breaker_tripped_at is None
    ):
        return tracking.model_copy(update={"circuit_breaker_tripped_at": ensure_utc(now)})
    return tracking


__all__ = ["DEFAULT_COOLDOWN", "cooldown_elapsed", "is_open", "trip_if_needed"]

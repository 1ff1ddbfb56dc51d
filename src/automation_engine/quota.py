# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Quota tracker: pure operations over :class:`QuotaTracking` values.

Every function takes the current tracking value and returns a new one; none
of them touches storage or keeps process state. The tenant run processor
threads the value through its loop and persists it explicitly.

The daily window follows the UTC calendar day; the hourly window is a
rolling hour measured from the last hourly reset.

Example:
    Gating a send::

        tracking = reset_if_window_elapsed(tracking, now)
        if not is_quota_exceeded(tracking, quotas):
            ...  # send
            tracking = record_success(tracking, now)
"""

from __future__ import annotations

from datetime import datetime, timedelta

from .circuit_breaker import DEFAULT_COOLDOWN, cooldown_elapsed
from .models import PlanQuotas, QuotaTracking, ensure_utc

HOURLY_WINDOW = timedelta(hours=1)


def reset_if_window_elapsed(tracking: QuotaTracking, now: datetime) -> QuotaTracking:
    """Zero the counters whose window has elapsed.

    The daily counter resets when ``now`` falls on a different UTC calendar
    day than the last daily reset; the hourly counter resets once an hour
    has passed since the last hourly reset. Both resets are independent and
    may fire in the same call. Calling again with the same ``now`` is a no-op.
    """
    now = ensure_utc(now)
    updates: dict[str, object] = {}
    if now.date() != tracking.last_daily_reset_at.date():
        updates["sent_today"] = 0
        updates["last_daily_reset_at"] = now
    if now - tracking.last_hourly_reset_at >= HOURLY_WINDOW:
        updates["sent_this_hour"] = 0
        updates["last_hourly_reset_at"] = now
    if not updates:
        return tracking
    return tracking.model_copy(update=updates)


def is_quota_exceeded(tracking: QuotaTracking, quotas: PlanQuotas) -> bool:
    """Return ``True`` when one more send would break a ceiling."""
    return (
        tracking.sent_today >= quotas.max_sends_per_day
        or tracking.sent_this_hour >= quotas.max_sends_per_hour
    )


def record_success(tracking: QuotaTracking, now: datetime) -> QuotaTracking:
    """Count a delivered message and close the circuit breaker."""
    return tracking.model_copy(
        update={
            "sent_today": tracking.sent_today + 1,
            "sent_this_hour": tracking.sent_this_hour + 1,
            "consecutive_failures": 0,
            "circuit_breaker_tripped_at": None,
            "last_send_at": ensure_utc(now),
        }
    )


def record_failure(
    tracking: QuotaTracking,
    quotas: PlanQuotas,
    now: datetime,
    cooldown: timedelta = DEFAULT_COOLDOWN,
) -> QuotaTracking:
    """Count a delivery failure, tripping the breaker at the threshold.

    The trip timestamp is set when the threshold is reached and no trip is
    recorded yet. A failure after the cooldown has elapsed is the single
    trial of a half-open breaker: it refreshes the timestamp so the breaker
    re-opens for another full cooldown.
    """
    now = ensure_utc(now)
    failures = tracking.consecutive_failures + 1
    updates: dict[str, object] = {"consecutive_failures": failures}
    if failures >= quotas.max_consecutive_failures_before_stop:
        tripped_at = tracking.circuit_breaker_tripped_at
        if tripped_at is None or cooldown_elapsed(tripped_at, now, cooldown):
            updates["circuit_breaker_tripped_at"] = now
    return tracking.model_copy(update=updates)


__all__ = [
    "HOURLY_WINDOW",
    "is_quota_exceeded",
    "record_failure",
    "record_success",
    "reset_if_window_elapsed",
]

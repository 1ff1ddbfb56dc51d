# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transitions of an :class:`AutomationState`.

States move ``active -> active`` (step advanced), ``active -> completed``
(step list exhausted) or ``active -> error`` (delivery failure). Nothing
leaves ``completed`` or ``error`` here; reactivation is an external action.
``next_step_index`` never decreases.

All functions are pure and return a new state.
"""

from __future__ import annotations

from datetime import datetime

from .models import AutomationDefinition, AutomationState, AutomationStatus, DelayStep, SendStep, ensure_utc


class InvalidTransition(ValueError):
    """Raised when a transition is requested on a terminal state."""


def _require_active(state: AutomationState) -> None:
    if state.status != AutomationStatus.ACTIVE:
        raise InvalidTransition(f"state {state.id} is {state.status.value}, not active")


def is_due(state: AutomationState, now: datetime) -> bool:
    """Return ``True`` when ``state`` is active and its next step time has come."""
    return state.status == AutomationStatus.ACTIVE and state.next_step_time <= ensure_utc(now)


def current_step(state: AutomationState, automation: AutomationDefinition) -> DelayStep | SendStep | None:
    return automation.step_at(state.next_step_index)


def advance_delay(state: AutomationState, step: DelayStep, now: datetime) -> AutomationState:
    """Schedule the next step ``step.duration`` from ``now`` and move past the delay."""
    _require_active(state)
    return state.model_copy(
        update={
            "next_step_index": state.next_step_index + 1,
            "next_step_time": ensure_utc(now) + step.as_timedelta(),
        }
    )


def advance_send(state: AutomationState, now: datetime) -> AutomationState:
    """Move past a delivered send step; the following step is due immediately."""
    _require_active(state)
    return state.model_copy(
        update={
            "next_step_index": state.next_step_index + 1,
            "next_step_time": ensure_utc(now),
        }
    )


def complete(state: AutomationState) -> AutomationState:
    _require_active(state)
    return state.model_copy(update={"status": AutomationStatus.COMPLETED, "error_message": None})


def mark_error(state: AutomationState, message: str) -> AutomationState:
    """Mark a delivery failure, keeping the index so a reactivation retries the step."""
    _require_active(state)
    return state.model_copy(update={"status": AutomationStatus.ERROR, "error_message": message})


__all__ = [
    "InvalidTransition",
    "advance_delay",
    "advance_send",
    "complete",
    "current_step",
    "is_due",
    "mark_error",
]

"""
Trial Service - trial-expiration state machine and feature gating.

Pure derivations from an entitlement snapshot and the wall clock. The only
side effect in this module is WarningTracker.mark_shown.
"""
import math
from datetime import date, datetime, timedelta
from typing import Optional

from models.entitlement import (
    EntitlementSnapshot,
    TrialState,
    WARNING_INFO,
    WARNING_WARNING,
    WARNING_CRITICAL,
    WARNING_EXPIRED,
)

WARNING_FLAG_KEY = "trial-warning-shown"

# Features that stay available once the trial has lapsed without a subscription
READ_ONLY_FEATURES = frozenset({
    "view_jobs",
    "view_customers",
    "view_evidence",
    "view_reports",
    "settings",
})

_DAY = timedelta(days=1)
_HOUR = timedelta(hours=1)


def _ceil_units(diff: timedelta, unit: timedelta) -> int:
    return max(0, math.ceil(diff / unit))


def _warning_level(is_expired: bool, days_left: int) -> Optional[str]:
    if is_expired:
        return WARNING_EXPIRED
    if days_left <= 1:
        return WARNING_CRITICAL
    if days_left <= 3:
        return WARNING_WARNING
    if days_left <= 7:
        return WARNING_INFO
    return None


def compute_trial_state(snapshot: EntitlementSnapshot, now: datetime, shown_today: bool) -> TrialState:
    """
    Derive the trial state shown to the user.

    Args:
        snapshot: Latest entitlement snapshot
        now: Current wall-clock time (timezone-aware)
        shown_today: Whether a warning has already been dismissed today

    Returns:
        TrialState with warning level, remaining time and access decision
    """
    if snapshot.subscribed:
        return TrialState(has_active_access=True, trial_end=snapshot.trial_end)

    if snapshot.trial_end is None:
        # No trial clock at all: nothing to warn about, nothing to grant
        return TrialState(is_expired=True, has_active_access=False)

    diff = snapshot.trial_end - now
    is_expired = diff <= timedelta(0)
    days_left = _ceil_units(diff, _DAY)
    level = _warning_level(is_expired, days_left)

    return TrialState(
        is_expired=is_expired,
        days_left=days_left,
        hours_left=_ceil_units(diff, _HOUR),
        warning_level=level,
        should_show_warning=level is not None and not shown_today,
        has_active_access=snapshot.in_trial and not is_expired,
        trial_end=snapshot.trial_end,
    )


def can_access_feature(snapshot: EntitlementSnapshot, state: TrialState, feature: str) -> bool:
    """Full access while subscribed or inside a live trial, read-only features otherwise."""
    if snapshot.subscribed:
        return True
    if snapshot.in_trial and not state.is_expired:
        return True
    return feature in READ_ONLY_FEATURES


def trial_status_message(state: TrialState) -> str:
    if state.is_expired:
        return "Trial Expired"
    if state.days_left <= 1:
        return f"Trial ends in {state.hours_left} hours"
    if state.days_left <= 7:
        return f"{state.days_left} days left in trial"
    return "Active Trial"


class WarningTracker:
    """
    Once-per-calendar-day de-duplication of trial warnings.

    The marker is the date of the last dismissal, not the level that was
    shown: after any warning is dismissed, an escalation later the same day
    (warning -> critical) stays silent until the next day.
    """

    def __init__(self, store, key: str = WARNING_FLAG_KEY):
        self.store = store
        self.key = key

    def has_shown_today(self, today: date) -> bool:
        return self.store.get(self.key) == today.isoformat()

    def mark_shown(self, today: date) -> None:
        self.store.set(self.key, today.isoformat())

"""Organization plan states and trial arithmetic.

Pure domain functions -- no DB access. Callers pass the plan row's
timestamps (already normalized to UTC) and the current time.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from planguard.domain.periods import add_years

FREE_PLAN_SLUG = "free"
TRIAL_EXPIRED_NOTE = "Trial period expired"


class PlanStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class DenialReason(StrEnum):
    """Why a metered action would be refused, most fundamental first."""

    NONE = "none"
    PLAN_INACTIVE = "plan_inactive"
    FEATURE_UNAVAILABLE = "feature_unavailable"
    LIMIT_EXCEEDED = "limit_exceeded"


@dataclass(frozen=True)
class TrialInfo:
    is_in_trial: bool
    is_trial_expired: bool
    trial_start: datetime | None
    trial_end: datetime | None
    days_remaining: int


NO_TRIAL = TrialInfo(
    is_in_trial=False,
    is_trial_expired=False,
    trial_start=None,
    trial_end=None,
    days_remaining=0,
)


def trial_info(trial_start: datetime | None, trial_end: datetime | None, now: datetime) -> TrialInfo:
    """Summarize a plan's trial window at time now.

    A plan without both trial dates has no trial. days_remaining rounds
    up partial days and is 0 once the trial has ended.
    """
    if trial_start is None or trial_end is None:
        return NO_TRIAL

    in_trial = trial_start <= now <= trial_end
    expired = now > trial_end
    days_remaining = 0
    if not expired:
        days_remaining = max(math.ceil((trial_end - now) / timedelta(days=1)), 0)

    return TrialInfo(
        is_in_trial=in_trial,
        is_trial_expired=expired,
        trial_start=trial_start,
        trial_end=trial_end,
        days_remaining=days_remaining,
    )


def plan_ends_at(billing_cycle: BillingCycle | str, started_at: datetime) -> datetime | None:
    """End of the paid term for a plan starting at started_at (None for lifetime)."""
    cycle = BillingCycle(billing_cycle)
    if cycle == BillingCycle.LIFETIME:
        return None
    if cycle == BillingCycle.YEARLY:
        return add_years(started_at, 1)

    # Monthly: same day next month, clamped to the month's last day
    year = started_at.year + (started_at.month // 12)
    month = started_at.month % 12 + 1
    day = started_at.day
    while True:
        try:
            return started_at.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def append_note(existing: str | None, note: str) -> str:
    if not existing:
        return note
    return f"{existing}\n{note}"

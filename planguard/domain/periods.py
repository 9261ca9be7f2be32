"""Usage period boundaries.

Pure domain functions, UTC in and UTC out. Bounded periods end one
microsecond before the next period starts, so a bucket is current while
``period_ends_at > now``.

- daily: [start of day, end of day]
- weekly: Monday 00:00 through Sunday end of day
- monthly: calendar month
- yearly: anniversary of the anchor date (earliest plan start), not the calendar year
- lifetime: unbounded (no window)
"""

import calendar
from datetime import UTC, datetime, timedelta

from planguard.domain.features import Period

_TICK = timedelta(microseconds=1)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(moment: datetime) -> datetime:
    return start_of_day(moment) + timedelta(days=1) - _TICK


def add_years(moment: datetime, years: int) -> datetime:
    """Shift by whole years, clamping Feb 29 to Feb 28 in non-leap years."""
    target_year = moment.year + years
    try:
        return moment.replace(year=target_year)
    except ValueError:
        return moment.replace(year=target_year, day=28)


def period_bounds(
    period: Period | str,
    now: datetime,
    anchor: datetime | None = None,
) -> tuple[datetime, datetime] | None:
    """Return (starts_at, ends_at) of the period containing now, None for lifetime.

    Args:
        period: Reset cadence of the feature
        now: Current UTC time
        anchor: Yearly anchor date; defaults to the start of today
    """
    period = Period(period)
    now = now.astimezone(UTC) if now.tzinfo else now.replace(tzinfo=UTC)

    if period == Period.LIFETIME:
        return None

    if period == Period.DAILY:
        return start_of_day(now), end_of_day(now)

    if period == Period.WEEKLY:
        monday = start_of_day(now) - timedelta(days=now.weekday())
        return monday, monday + timedelta(days=7) - _TICK

    if period == Period.MONTHLY:
        first = start_of_day(now).replace(day=1)
        last_day = calendar.monthrange(now.year, now.month)[1]
        return first, end_of_day(first.replace(day=last_day))

    # Yearly: always shift from the anchor itself so Feb 29 anchors stay stable
    base = start_of_day(anchor or now)
    years = now.year - base.year
    starts_at = add_years(base, years)
    while starts_at > now:
        years -= 1
        starts_at = add_years(base, years)
    return starts_at, add_years(base, years + 1) - _TICK

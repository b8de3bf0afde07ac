"""Budget period windows.

A window is the inclusive date range ``[start, end]`` a budget's spend is
measured over. ``end`` is always today in UTC. Fixed cadences step forward
from the budget's anchor date; rolling windows look back a fixed day count.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

from dateutil.relativedelta import relativedelta

from finsync.errors import ConfigurationError

if TYPE_CHECKING:
    from finsync.adapters.db.models import Budget

DAY_STEPS: dict[str, int] = {"weekly": 7, "biweekly": 14}
MONTH_STEPS: dict[str, int] = {"monthly": 1, "quarterly": 3, "yearly": 12}
PERIODS = frozenset({"rolling", *DAY_STEPS, *MONTH_STEPS})


@dataclass(frozen=True, slots=True)
class DateWindow:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def utc_today(now: datetime | None = None) -> date:
    """Truncate ``now`` to a UTC calendar day. Naive values are taken as UTC."""
    if now is None:
        now = datetime.now(UTC)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    else:
        now = now.astimezone(UTC)
    return now.date()


def resolve_window(
    period: str,
    anchor_or_day_count: date | int | None,
    now: datetime | None = None,
) -> DateWindow:
    """Resolve the current window for a budget period.

    Args:
        period: One of rolling, weekly, biweekly, monthly, quarterly, yearly
        anchor_or_day_count: Day count for rolling, anchor date otherwise
        now: Reference instant, defaults to the current time

    Returns:
        DateWindow with inclusive start and end

    Raises:
        ConfigurationError: Unknown period, missing day count or anchor
    """
    end = utc_today(now)

    if period == "rolling":
        if (
            isinstance(anchor_or_day_count, bool)
            or not isinstance(anchor_or_day_count, int)
            or anchor_or_day_count <= 0
        ):
            raise ConfigurationError(
                "Rolling budgets require a positive day count"
            )
        return DateWindow(start=end - timedelta(days=anchor_or_day_count), end=end)

    if period not in PERIODS:
        raise ConfigurationError(f"Unknown budget period: {period!r}")

    # datetime is a date subclass; take its calendar day
    if isinstance(anchor_or_day_count, datetime):
        anchor = anchor_or_day_count.date()
    elif isinstance(anchor_or_day_count, date):
        anchor = anchor_or_day_count
    else:
        raise ConfigurationError(
            f"{period.capitalize()} budgets require an anchor date"
        )

    if period in DAY_STEPS:
        return DateWindow(
            start=_day_step_start(anchor, end, DAY_STEPS[period]), end=end
        )
    return DateWindow(
        start=_month_step_start(anchor, end, MONTH_STEPS[period]), end=end
    )


def window_for_budget(budget: Budget, now: datetime | None = None) -> DateWindow:
    """Resolve the current window from a stored budget's period settings."""
    if budget.period == "rolling":
        return resolve_window(budget.period, budget.rolling_days, now)
    return resolve_window(budget.period, budget.anchor_date, now)


def _day_step_start(anchor: date, end: date, step_days: int) -> date:
    steps = (end - anchor).days // step_days
    return anchor + timedelta(days=steps * step_days)


def _month_step_start(anchor: date, end: date, step_months: int) -> date:
    months = (end.year - anchor.year) * 12 + (end.month - anchor.month)
    steps = months // step_months
    start = anchor + relativedelta(months=steps * step_months)
    if start > end:
        start = anchor + relativedelta(months=(steps - 1) * step_months)
    return start

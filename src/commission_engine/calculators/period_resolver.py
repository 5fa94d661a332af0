"""Payout period resolution.

Two concerns live here:

- bucketing a metric date into the canonical start of its payout period
  (``period_start_for``), used by summaries that group by frequency
- expanding a plan's explicit payout periods, or its effective window when it
  has none, into concrete evaluation windows (``resolve_periods``)

All arithmetic happens on calendar dates; datetimes are first normalised to
their UTC date so results never drift with the local timezone.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.calculators.types import ComputationScope, PayoutFrequency, PayoutWindow
from commission_engine.models import PayoutPeriod

if TYPE_CHECKING:
    from commission_engine.models import Plan

INVALID_PERIOD_START = "0000-01-01"
OPEN_START = date(1, 1, 1)
OPEN_END = date(9999, 12, 31)
PLAN_WINDOW_LABEL = "Plan Window"

_YMD = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_QUARTER_START_MONTH = (1, 1, 1, 4, 4, 4, 7, 7, 7, 10, 10, 10)


def to_utc_date(value: Any) -> date | None:
    """Coerce a date-like value or string to a calendar date.

    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    try:
        if _YMD.match(text):
            return date.fromisoformat(text)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def period_start_for(
    value: Any,
    frequency: str | PayoutFrequency | None,
    anchor_start: Any = None,
) -> str:
    """Return the ``YYYY-MM-DD`` start of the payout period containing ``value``.

    Unknown or empty frequencies fall back to monthly. An unparseable date
    yields ``0000-01-01`` instead of raising.
    """
    d = to_utc_date(value)
    if d is None:
        return INVALID_PERIOD_START

    freq = frequency.value if isinstance(frequency, PayoutFrequency) else (frequency or "monthly")
    freq = freq.strip().lower()

    try:
        if freq == PayoutFrequency.ANNUAL.value:
            start = date(d.year, 1, 1)
        elif freq == PayoutFrequency.QUARTERLY.value:
            start = date(d.year, _QUARTER_START_MONTH[d.month - 1], 1)
        elif freq == PayoutFrequency.SEMI_ANNUAL.value:
            start = date(d.year, 1 if d.month < 7 else 7, 1)
        elif freq == PayoutFrequency.WEEKLY.value:
            # Monday start; Sunday closes the week
            start = d - timedelta(days=d.weekday())
        elif freq == PayoutFrequency.BI_WEEKLY.value:
            anchor = to_utc_date(anchor_start) or d
            index = (d - anchor).days // 14
            start = anchor + timedelta(days=14 * index)
        else:
            start = date(d.year, d.month, 1)
    except OverflowError:
        return INVALID_PERIOD_START

    return start.isoformat()


def plan_window(plan: Plan) -> PayoutWindow:
    """The synthetic window spanning a plan's effective range."""
    start = to_utc_date(plan.effective_start)
    end = to_utc_date(plan.effective_end)
    return PayoutWindow(
        start=start or OPEN_START,
        end=end or OPEN_END,
        label=PLAN_WINDOW_LABEL,
        due_date=end or start or OPEN_END,
    )


def resolve_periods(plan: Plan, periods: Sequence[PayoutPeriod]) -> list[PayoutWindow]:
    """Expand explicit payout periods, or fall back to the plan window."""
    if not periods:
        return [plan_window(plan)]

    windows = []
    for period in periods:
        start = to_utc_date(period.start_date) or OPEN_START
        end = to_utc_date(period.end_date) or OPEN_END
        windows.append(
            PayoutWindow(
                start=start,
                end=end,
                label=period.label or "",
                due_date=to_utc_date(period.due_date) or end,
            )
        )
    return windows


class PeriodResolver:
    """Resolves evaluation windows for one plan.

    Window selection by computation scope:
    1. ``plan`` scope: the plan window only
    2. ``payout`` scope: the explicit payout periods, or the plan window
       when the plan defines none
    """

    def __init__(self, plan: Plan, periods: Sequence[PayoutPeriod]):
        self.plan = plan
        self.explicit_count = len(periods)
        self.plan_window = plan_window(plan)
        self.payout_windows = resolve_periods(plan, periods)

    @classmethod
    async def load(cls, session: AsyncSession, plan: Plan) -> PeriodResolver:
        """Load a plan's explicit payout periods in start order."""
        result = await session.execute(
            select(PayoutPeriod)
            .where(PayoutPeriod.plan_id == plan.id)
            .order_by(PayoutPeriod.start_date, PayoutPeriod.id)
        )
        return cls(plan, list(result.scalars().all()))

    @property
    def periods_used(self) -> int:
        """Number of payout periods a run covers (the plan window counts as one)."""
        return self.explicit_count or 1

    def windows_for(self, scope: str | None) -> list[PayoutWindow]:
        """Windows a computation with the given scope is evaluated over."""
        if scope == ComputationScope.PLAN.value:
            return [self.plan_window]
        return list(self.payout_windows)

    def bucket(self, metric_date: Any) -> str:
        """Period start for a metric date under the plan's frequency."""
        return period_start_for(
            metric_date, self.plan.payout_frequency, self.plan.effective_start
        )

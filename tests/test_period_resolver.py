"""Unit tests for payout period resolution."""

from datetime import date, datetime, timedelta, timezone

import pytest

from commission_engine.calculators.period_resolver import (
    INVALID_PERIOD_START,
    PLAN_WINDOW_LABEL,
    PeriodResolver,
    period_start_for,
    plan_window,
    resolve_periods,
    to_utc_date,
)
from commission_engine.calculators.types import PayoutFrequency
from commission_engine.models import PayoutPeriod, Plan


def make_plan(start=date(2024, 1, 1), end=date(2024, 12, 31), frequency="monthly") -> Plan:
    return Plan(
        id=1,
        name="Plan",
        payout_frequency=frequency,
        effective_start=start,
        effective_end=end,
    )


class TestPeriodStartFor:
    """Test bucketing a date into the start of its payout period."""

    @pytest.mark.parametrize(
        "frequency,value,expected",
        [
            ("monthly", date(2024, 3, 15), "2024-03-01"),
            ("quarterly", date(2024, 3, 15), "2024-01-01"),
            ("quarterly", date(2024, 8, 31), "2024-07-01"),
            ("quarterly", date(2024, 12, 1), "2024-10-01"),
            ("semi-annual", date(2024, 6, 30), "2024-01-01"),
            ("semi-annual", date(2024, 7, 1), "2024-07-01"),
            ("annual", date(2024, 11, 5), "2024-01-01"),
            ("weekly", date(2024, 3, 13), "2024-03-11"),
        ],
    )
    def test_calendar_frequencies(self, frequency, value, expected):
        assert period_start_for(value, frequency) == expected

    def test_weekly_sunday_belongs_to_preceding_monday(self):
        """Sunday closes the week that started the previous Monday."""
        assert period_start_for(date(2024, 3, 17), "weekly") == "2024-03-11"
        assert period_start_for(date(2024, 3, 18), "weekly") == "2024-03-18"

    def test_frequency_is_case_insensitive(self):
        assert period_start_for(date(2024, 5, 20), "Quarterly") == "2024-04-01"
        assert period_start_for(date(2024, 5, 20), PayoutFrequency.ANNUAL) == "2024-01-01"

    @pytest.mark.parametrize("frequency", [None, "", "fortnightly", "daily"])
    def test_unknown_frequency_falls_back_to_monthly(self, frequency):
        assert period_start_for(date(2024, 5, 20), frequency) == "2024-05-01"

    def test_unparseable_date_returns_sentinel(self):
        assert period_start_for("not-a-date", "monthly") == INVALID_PERIOD_START
        assert period_start_for(None, "monthly") == INVALID_PERIOD_START
        assert period_start_for("", "weekly") == INVALID_PERIOD_START

    def test_datetime_is_bucketed_by_utc_date(self):
        """Late evening in UTC-5 is already the next day in UTC."""
        value = datetime(2024, 3, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert period_start_for(value, "monthly") == "2024-04-01"
        assert period_start_for("2024-03-31T23:30:00-05:00", "monthly") == "2024-04-01"
        assert period_start_for("2024-03-31T23:30:00Z", "monthly") == "2024-03-01"

    def test_ymd_string_parsed_directly(self):
        assert period_start_for("2024-02-29", "monthly") == "2024-02-01"

    def test_deterministic(self):
        values = [date(2024, 1, 1) + timedelta(days=n) for n in range(0, 400, 7)]
        for frequency in ("monthly", "quarterly", "weekly", "bi-weekly"):
            first = [period_start_for(v, frequency, "2024-01-01") for v in values]
            second = [period_start_for(v, frequency, "2024-01-01") for v in values]
            assert first == second


class TestBiWeekly:
    """Test anchored two-week cycles."""

    ANCHOR = date(2024, 1, 1)

    def test_anchor_day_is_cycle_start(self):
        assert period_start_for(self.ANCHOR, "bi-weekly", self.ANCHOR) == "2024-01-01"

    def test_last_day_of_first_cycle(self):
        assert period_start_for(date(2024, 1, 14), "bi-weekly", self.ANCHOR) == "2024-01-01"

    def test_first_day_of_second_cycle(self):
        assert period_start_for(date(2024, 1, 15), "bi-weekly", self.ANCHOR) == "2024-01-15"

    def test_dates_before_anchor_use_negative_cycles(self):
        assert period_start_for(date(2023, 12, 31), "bi-weekly", self.ANCHOR) == "2023-12-18"
        assert period_start_for(date(2023, 12, 18), "bi-weekly", self.ANCHOR) == "2023-12-18"

    def test_missing_anchor_uses_value(self):
        assert period_start_for(date(2024, 6, 5), "bi-weekly") == "2024-06-05"
        assert period_start_for(date(2024, 6, 5), "bi-weekly", "garbage") == "2024-06-05"

    def test_anchor_accepts_strings(self):
        assert period_start_for("2024-02-20", "bi-weekly", "2024-01-01") == "2024-02-12"


class TestToUtcDate:
    def test_date_passthrough(self):
        assert to_utc_date(date(2024, 1, 2)) == date(2024, 1, 2)

    def test_naive_datetime_uses_its_date(self):
        assert to_utc_date(datetime(2024, 1, 2, 23, 59)) == date(2024, 1, 2)

    def test_invalid(self):
        assert to_utc_date("2024-13-45") is None


class TestResolvePeriods:
    """Test expansion of a plan into evaluation windows."""

    def test_no_periods_gives_plan_window(self):
        windows = resolve_periods(make_plan(), [])

        assert len(windows) == 1
        assert windows[0].label == PLAN_WINDOW_LABEL
        assert windows[0].start == date(2024, 1, 1)
        assert windows[0].end == date(2024, 12, 31)
        assert windows[0].due_date == date(2024, 12, 31)

    def test_plan_window_due_date_falls_back_to_start(self):
        window = plan_window(make_plan(end=None))

        assert window.end == date(9999, 12, 31)
        assert window.due_date == date(2024, 1, 1)

    def test_open_plan_window(self):
        window = plan_window(make_plan(start=None, end=None))

        assert window.start == date(1, 1, 1)
        assert window.end == date(9999, 12, 31)
        assert window.due_date == date(9999, 12, 31)

    def test_explicit_periods_keep_order_and_default_due_date(self):
        periods = [
            PayoutPeriod(start_date=date(2024, 1, 1), end_date=date(2024, 1, 31), label="Jan"),
            PayoutPeriod(
                start_date=date(2024, 2, 1),
                end_date=date(2024, 2, 29),
                label="Feb",
                due_date=date(2024, 3, 15),
            ),
        ]
        windows = resolve_periods(make_plan(), periods)

        assert [w.label for w in windows] == ["Jan", "Feb"]
        assert windows[0].due_date == date(2024, 1, 31)
        assert windows[1].due_date == date(2024, 3, 15)

    def test_window_context(self):
        window = plan_window(make_plan())
        assert window.as_context() == {
            "start": "2024-01-01",
            "end": "2024-12-31",
            "label": "Plan Window",
            "dueDate": "2024-12-31",
        }


class TestPeriodResolver:
    def test_scope_selects_windows(self):
        periods = [
            PayoutPeriod(start_date=date(2024, 1, 1), end_date=date(2024, 1, 31), label="Jan"),
            PayoutPeriod(start_date=date(2024, 2, 1), end_date=date(2024, 2, 29), label="Feb"),
        ]
        resolver = PeriodResolver(make_plan(), periods)

        assert [w.label for w in resolver.windows_for("payout")] == ["Jan", "Feb"]
        assert [w.label for w in resolver.windows_for("plan")] == [PLAN_WINDOW_LABEL]
        assert resolver.periods_used == 2

    def test_periods_used_counts_plan_window_as_one(self):
        resolver = PeriodResolver(make_plan(), [])

        assert resolver.periods_used == 1
        assert resolver.windows_for("payout")[0].label == PLAN_WINDOW_LABEL

    def test_bucket_uses_plan_frequency_and_anchor(self):
        resolver = PeriodResolver(make_plan(start=date(2024, 1, 3), frequency="bi-weekly"), [])

        assert resolver.bucket(date(2024, 1, 20)) == "2024-01-17"

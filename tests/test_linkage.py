"""Tests for cross-timeframe linkage."""

from __future__ import annotations

import datetime as dt

import pandas as pd
import pytest

from annotate import annotate_daily, annotate_periods
from errors import LinkageError
from linkage import link_daily, link_periods, link_timeframe, linked_columns
from normalize import normalize_bars
from periods import PERIOD_TIMEFRAMES, Timeframe, aggregate_periods


@pytest.fixture
def annotated(sample_bars):
    daily = normalize_bars(sample_bars)
    periods = {tf: annotate_periods(aggregate_periods(daily, tf), tf) for tf in PERIOD_TIMEFRAMES}
    return annotate_daily(daily), periods


class TestLinkedColumns:
    def test_week_columns(self):
        assert linked_columns(Timeframe.EXPIRY_WEEK) == [
            "expiry_week_date",
            "expiry_week_return_points",
            "expiry_week_return_pct",
            "expiry_week_positive",
            "expiry_week_number_monthly",
            "expiry_week_number_yearly",
            "expiry_week_even_number_monthly",
            "expiry_week_even_number_yearly",
        ]

    def test_month_columns(self):
        assert linked_columns(Timeframe.MONTH) == [
            "month_date", "month_return_points", "month_return_pct", "month_positive",
        ]


class TestLinkDaily:
    def test_every_row_gets_its_enclosing_period(self, annotated):
        daily, periods = annotated
        linked = link_daily(daily, periods)
        assert len(linked) == len(daily)
        for tf in PERIOD_TIMEFRAMES:
            for column in linked_columns(tf):
                assert column in linked.columns

        row = linked.loc["2022-06-15"]
        month = periods[Timeframe.MONTH].loc["2022-06-01"]
        assert row["month_date"] == pd.Timestamp("2022-06-01")
        assert row["month_return_pct"] == month["return_pct"]
        assert row["expiry_week_date"] == pd.Timestamp("2022-06-17")
        assert row["monday_week_date"] == pd.Timestamp("2022-06-13")
        assert row["year_return_pct"] == periods[Timeframe.YEAR].loc["2022-01-01", "return_pct"]

    def test_null_period_return_stays_null(self, annotated):
        daily, periods = annotated
        linked = link_daily(daily, periods)
        first_year = linked[linked["year"] == 2021]
        assert first_year["year_return_pct"].isna().all()
        assert first_year["year_positive"].isna().all()
        assert not linked[linked["year"] == 2022]["year_return_pct"].isna().any()

    def test_relinking_does_not_duplicate_columns(self, annotated):
        daily, periods = annotated
        once = link_daily(daily, periods)
        twice = link_daily(once, periods)
        assert list(twice.columns) == list(once.columns)

    def test_missing_key_raises(self, annotated):
        daily, periods = annotated
        months = periods[Timeframe.MONTH].drop(pd.Timestamp("2022-03-01"))
        with pytest.raises(LinkageError, match="2022-03-01"):
            link_timeframe(daily, months, Timeframe.MONTH)


class TestLinkPeriods:
    def test_weeks_link_through_last_trading_day(self, annotated):
        _, periods = annotated
        linked = link_periods(periods)
        weeks = linked[Timeframe.EXPIRY_WEEK]
        last = weeks.iloc[-1]
        # the final expiry-week key lies after the data but its month exists
        assert last.name > pd.Timestamp("2023-12-29")
        assert last["month_date"] == pd.Timestamp("2023-12-01")
        assert last["year_date"] == pd.Timestamp("2023-01-01")

    def test_month_links_to_year(self, annotated):
        _, periods = annotated
        months = link_periods(periods)[Timeframe.MONTH]
        assert (months["year_date"].dt.year == months.index.year).all()
        assert months.loc["2023-05-01", "year_return_pct"] == periods[Timeframe.YEAR].loc["2023-01-01", "return_pct"]

    def test_period_frames_are_not_mutated(self, annotated):
        _, periods = annotated
        before = list(periods[Timeframe.MONTH].columns)
        link_periods(periods)
        assert list(periods[Timeframe.MONTH].columns) == before
        assert dt.date(2021, 1, 1) == periods[Timeframe.YEAR].index[0].date()

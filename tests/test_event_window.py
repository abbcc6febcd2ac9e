"""Tests for event-window studies."""

from __future__ import annotations

import datetime as dt

import pandas as pd
import pytest

from backend import build_series
from errors import ConfigError
from event_window import (
    EntryTiming,
    EventAnchor,
    EventWindowConfig,
    ExitTiming,
    analyze_events,
    average_curve,
    next_trading_position,
    trend_anchors,
)
from filtering import FilterConfig


@pytest.fixture
def ramp(make_bars):
    """Twenty business days from Mon 2024-01-01, closes 100..119, opens 0.5 below."""
    closes = [100.0 + i for i in range(20)]
    bars = make_bars(closes, start="2024-01-01", opens=[c - 0.5 for c in closes])
    return build_series(bars).daily


class TestEventWindowConfig:
    def test_defaults(self):
        config = EventWindowConfig()
        assert config.entry is EntryTiming.PREV_CLOSE
        assert config.exit is ExitTiming.WINDOW_CLOSE
        assert list(config.offsets) == list(range(-5, 6))

    def test_string_timings(self):
        config = EventWindowConfig(2, 3, entry="T0_OPEN", exit="T0_CLOSE")
        assert config.entry is EntryTiming.OPEN
        assert config.exit is ExitTiming.CLOSE

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"days_before": -1},
            {"entry": "T+1_OPEN"},
            {"entry": "T0_CLOSE", "exit": "T0_CLOSE"},
            {"entry": "T0_CLOSE", "days_after": 0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            EventWindowConfig(**kwargs)


class TestAnchorResolution:
    def test_weekend_snaps_forward(self, ramp):
        # 2024-01-06 is a Saturday
        pos = next_trading_position(ramp.index, dt.date(2024, 1, 6))
        assert ramp.index[pos] == pd.Timestamp("2024-01-08")

    def test_past_the_end(self, ramp):
        assert next_trading_position(ramp.index, dt.date(2024, 3, 1)) is None


class TestAnalyzeEvents:
    def test_occurrence_and_trade(self, ramp):
        config = EventWindowConfig(days_before=2, days_after=3)
        result = analyze_events(ramp, [EventAnchor(dt.date(2024, 1, 6), name="weekend")], config)
        assert len(result.occurrences) == 1
        occ = result.occurrences[0]
        assert occ.event_date == dt.date(2024, 1, 8)
        assert occ.entry_date == dt.date(2024, 1, 5)
        assert occ.entry_price == 104.0
        assert occ.exit_date == dt.date(2024, 1, 11)
        assert occ.exit_price == 108.0
        assert occ.trade_return == pytest.approx((108.0 / 104.0 - 1) * 100)
        assert sorted(occ.returns) == [-2, -1, 0, 1, 2, 3]
        assert occ.returns[0] == pytest.approx(round(1 / 104 * 100, 2))
        # holding span is T0..T+3; highs are max(open, close) * 1.01
        assert occ.mfe == pytest.approx((108.0 * 1.01 / 104.0 - 1) * 100)
        assert occ.mae == pytest.approx((104.5 * 0.99 / 104.0 - 1) * 100)

    @pytest.mark.parametrize(
        "entry, exit_, expected_entry, expected_exit",
        [
            ("T0_OPEN", "T0_CLOSE", 104.5, 105.0),
            ("T0_CLOSE", "TN_CLOSE", 105.0, 108.0),
            ("T-1_CLOSE", "T0_CLOSE", 104.0, 105.0),
        ],
    )
    def test_entry_exit_timing(self, ramp, entry, exit_, expected_entry, expected_exit):
        config = EventWindowConfig(1, 3, entry=entry, exit=exit_)
        occ = analyze_events(ramp, [dt.date(2024, 1, 8)], config).occurrences[0]
        assert occ.entry_price == expected_entry
        assert occ.exit_price == expected_exit

    def test_edge_anchors_are_excluded_not_padded(self, ramp):
        config = EventWindowConfig(days_before=3, days_after=3)
        anchors = [dt.date(2024, 1, 2), dt.date(2024, 1, 10), dt.date(2024, 1, 25), dt.date(2024, 2, 20)]
        result = analyze_events(ramp, anchors, config)
        assert [o.event_date for o in result.occurrences] == [dt.date(2024, 1, 10)]
        assert result.exclusion_counts == {
            "window starts before series": 1,
            "window ends after series": 1,
            "after end of series": 1,
        }

    def test_curve_counts_shrink_where_returns_are_null(self, ramp):
        # the first bar has no return, so offset -1 of an anchor on the 2nd bar is null
        config = EventWindowConfig(days_before=1, days_after=1)
        result = analyze_events(ramp, [dt.date(2024, 1, 2), dt.date(2024, 1, 9)], config)
        assert len(result.occurrences) == 2
        by_offset = {p.offset: p for p in result.curve}
        assert by_offset[-1].count == 1
        assert by_offset[0].count == 2
        assert by_offset[1].count == 2

    def test_curve_is_compounded(self, ramp):
        config = EventWindowConfig(days_before=2, days_after=2)
        result = analyze_events(ramp, [dt.date(2024, 1, 9), dt.date(2024, 1, 16)], config)
        growth = 1.0
        for point in result.curve:
            growth *= 1 + point.mean_return / 100
            assert point.cumulative == pytest.approx((growth - 1) * 100)

    def test_statistics_over_trade_returns(self, ramp):
        config = EventWindowConfig(days_before=1, days_after=2)
        result = analyze_events(ramp, [dt.date(2024, 1, 3), dt.date(2024, 1, 10), dt.date(2024, 1, 17)], config)
        assert result.statistics.count == 3
        assert result.statistics.win_rate == 100.0
        assert result.statistics.cagr is not None
        assert set(result.segments) == {"pre_event", "event_day", "post_event"}
        assert result.segments["event_day"].count == 3
        assert result.segments["post_event"].count == 6

    def test_filters_apply_to_event_day(self, ramp):
        config = EventWindowConfig(days_before=1, days_after=1)
        filters = FilterConfig(weekdays=["Wednesday"])
        anchors = [dt.date(2024, 1, 9), dt.date(2024, 1, 10)]
        result = analyze_events(ramp, anchors, config, filters=filters)
        assert [o.event_date.weekday() for o in result.occurrences] == [2]
        assert result.exclusion_counts == {"filtered out": 1}

    def test_no_anchors(self, ramp):
        result = analyze_events(ramp, [], EventWindowConfig(1, 1))
        assert result.occurrences == []
        assert result.statistics.count == 0
        assert all(p.count == 0 and p.mean_return is None for p in result.curve)


class TestAverageCurve:
    def test_empty_offsets_stay_flat(self):
        assert [(p.offset, p.cumulative) for p in average_curve([], range(-1, 2))] == [(-1, 0.0), (0, 0.0), (1, 0.0)]


class TestTrendAnchors:
    def test_counts_restart_after_hit(self, make_bars):
        closes = [10, 11, 12, 13, 14, 15, 16, 15, 16, 17, 18]
        daily = build_series(make_bars(closes, start="2024-01-01")).daily
        anchors = trend_anchors(daily, consecutive_days=3, bullish=True)
        # up days at positions 1..6 and 8..10
        assert [a.date for a in anchors] == [
            daily.index[3].date(),
            daily.index[6].date(),
            daily.index[10].date(),
        ]
        assert anchors[0].category == "trend"

    def test_bearish(self, make_bars):
        daily = build_series(make_bars([10, 9, 8, 9], start="2024-01-01")).daily
        assert [a.date for a in trend_anchors(daily, 2, bullish=False)] == [daily.index[2].date()]

    def test_invalid_length(self, ramp):
        with pytest.raises(ConfigError):
            trend_anchors(ramp, 0)

"""
Return annotation for the daily and period sequences: period-over-period
returns, positivity, even/odd flags and week-number counters.
"""
from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

import pandas as pd

from normalize import position_counter
from periods import Timeframe

RETURN_DECIMALS = 2


def round_half_away(value: float | None, ndigits: int = RETURN_DECIMALS) -> float | None:
    """
    Round half away from zero: 0.125 -> 0.13, -0.125 -> -0.13.

    The float is first taken at its shortest repr, so a value printed as
    1.005 rounds to 1.01 even though its binary form sits just below it.
    """
    if value is None or not math.isfinite(value):
        return None
    quantum = Decimal(1).scaleb(-ndigits)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


def compute_returns(
    closes: Sequence[float],
) -> tuple[list[float | None], list[float | None], list[bool | None]]:
    """Point return, rounded percentage return and positive flag for each close."""
    points: list[float | None] = [None]
    pcts: list[float | None] = [None]
    positive: list[bool | None] = [None]
    for prev, cur in zip(closes[:-1], closes[1:]):
        diff = cur - prev
        points.append(diff)
        pcts.append(round_half_away(diff / prev * 100) if prev != 0 else None)
        positive.append(diff > 0)
    return points[: len(closes)], pcts[: len(closes)], positive[: len(closes)]


def parity(values: pd.Series) -> pd.Series:
    """True where the integer value is even; null where the value is null."""
    ints = values.astype("Int64")
    return (ints % 2 == 0).astype("boolean")


def annotate_returns(frame: pd.DataFrame) -> pd.DataFrame:
    """Return a copy with return_points / return_pct / positive columns added."""
    out = frame.copy()
    points, pcts, positive = compute_returns(out["Close"].tolist())
    out["return_points"] = pd.array(points, dtype="Float64")
    out["return_pct"] = pd.array(pcts, dtype="Float64")
    out["positive"] = pd.array(positive, dtype="boolean")
    return out


def annotate_daily(daily: pd.DataFrame) -> pd.DataFrame:
    """Returns plus calendar/trading parity flags for the normalized daily frame."""
    out = annotate_returns(daily)
    out["even_calendar_month_day"] = parity(out["calendar_month_day"])
    out["even_calendar_year_day"] = parity(out["calendar_year_day"])
    out["even_trading_month_day"] = parity(out["trading_month_day"])
    out["even_trading_year_day"] = parity(out["trading_year_day"])
    out["even_month"] = parity(out["month"])
    out["even_year"] = parity(out["year"])
    return out


def annotate_periods(frame: pd.DataFrame, timeframe: Timeframe | str) -> pd.DataFrame:
    """
    Returns and parity for an aggregated period frame.

    Week frames also get week_number_monthly / week_number_yearly, restarted
    at 1 whenever the period key enters a new month / year.
    """
    timeframe = Timeframe(timeframe)
    out = annotate_returns(frame)
    out["even_month"] = parity(out["month"])
    out["even_year"] = parity(out["year"])

    if timeframe.is_week:
        keys = out.index
        out["week_number_monthly"] = pd.array(
            position_counter(list(zip(keys.year, keys.month))), dtype="Int64"
        )
        out["week_number_yearly"] = pd.array(position_counter(list(keys.year)), dtype="Int64")
        out["even_week_number_monthly"] = parity(out["week_number_monthly"])
        out["even_week_number_yearly"] = parity(out["week_number_yearly"])
    return out

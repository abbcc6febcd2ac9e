"""
Cross-timeframe linkage: attach the enclosing week/month/year record's
returns to each daily row (and each week/month row) by exact key lookup.
"""
from __future__ import annotations

import logging
from typing import Mapping

import pandas as pd

from errors import LinkageError
from periods import PERIOD_TIMEFRAMES, Timeframe, period_keys

logger = logging.getLogger(__name__)

LINK_PREFIXES = {
    Timeframe.MONDAY_WEEK: "monday_week",
    Timeframe.EXPIRY_WEEK: "expiry_week",
    Timeframe.MONTH: "month",
    Timeframe.YEAR: "year",
}

RETURN_FIELDS = ["return_points", "return_pct", "positive"]
WEEK_FIELDS = {
    "week_number_monthly": "number_monthly",
    "week_number_yearly": "number_yearly",
    "even_week_number_monthly": "even_number_monthly",
    "even_week_number_yearly": "even_number_yearly",
}


def linked_columns(timeframe: Timeframe) -> list[str]:
    """Names of the columns link_timeframe() adds for ``timeframe``."""
    prefix = LINK_PREFIXES[timeframe]
    names = ["date", *RETURN_FIELDS]
    if timeframe.is_week:
        names.extend(WEEK_FIELDS.values())
    return [f"{prefix}_{name}" for name in names]


def link_timeframe(
    frame: pd.DataFrame,
    period: pd.DataFrame,
    timeframe: Timeframe | str,
    dates: pd.DatetimeIndex | None = None,
) -> pd.DataFrame:
    """
    Return a copy of ``frame`` carrying its enclosing ``timeframe`` record.

    Keys are computed from ``dates`` (default: the frame's index) with the
    same period_keys() the aggregator uses, then resolved through the period
    frame's hash index. Null period returns stay null on the linked rows.
    Raises LinkageError if any key is absent.
    """
    timeframe = Timeframe(timeframe)
    dates = frame.index if dates is None else pd.DatetimeIndex(dates)
    keys = period_keys(dates, timeframe)

    missing = ~keys.isin(period.index)
    if missing.any():
        raise LinkageError(
            f"{int(missing.sum())} rows have no {timeframe.value} period "
            f"(first missing key {keys[missing][0].date()})"
        )

    fields = RETURN_FIELDS + (list(WEEK_FIELDS) if timeframe.is_week else [])
    linked = period[fields].reindex(keys)
    linked.index = frame.index
    linked.insert(0, "date", keys.to_numpy())
    linked.columns = linked_columns(timeframe)

    base = frame.drop(columns=list(linked.columns), errors="ignore")
    return pd.concat([base, linked], axis=1)


def link_daily(daily: pd.DataFrame, periods: Mapping[Timeframe, pd.DataFrame]) -> pd.DataFrame:
    """Attach Monday-week, Expiry-week, month and year records to each daily row."""
    out = daily
    for timeframe in PERIOD_TIMEFRAMES:
        out = link_timeframe(out, periods[timeframe], timeframe)
    logger.debug("Linked %d daily rows to %d period frames", len(out), len(PERIOD_TIMEFRAMES))
    return out


def link_periods(periods: Mapping[Timeframe, pd.DataFrame]) -> dict[Timeframe, pd.DataFrame]:
    """
    Attach month and year records to week frames, and year records to months.

    A week is resolved through its last trading date, so an Expiry-week keyed
    on a Friday past the end of the data still finds a month that exists.
    """
    linked: dict[Timeframe, pd.DataFrame] = dict(periods)
    month, year = periods[Timeframe.MONTH], periods[Timeframe.YEAR]
    for timeframe in (Timeframe.MONDAY_WEEK, Timeframe.EXPIRY_WEEK):
        frame = periods[timeframe]
        last = pd.DatetimeIndex(frame["last_date"])
        frame = link_timeframe(frame, month, Timeframe.MONTH, dates=last)
        linked[timeframe] = link_timeframe(frame, year, Timeframe.YEAR, dates=last)
    linked[Timeframe.MONTH] = link_timeframe(
        month, year, Timeframe.YEAR, dates=pd.DatetimeIndex(month["last_date"])
    )
    return linked

"""
Period aggregation: map daily bars to their Monday-week, Expiry-week, month
and year keys and collapse each bucket into one OHLCV record.
"""
from __future__ import annotations

import datetime as dt
import logging
from enum import Enum

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

FRIDAY = 4


class Timeframe(str, Enum):
    DAILY = "daily"
    MONDAY_WEEK = "monday_week"
    EXPIRY_WEEK = "expiry_week"
    MONTH = "month"
    YEAR = "year"

    @property
    def is_week(self) -> bool:
        return self in (Timeframe.MONDAY_WEEK, Timeframe.EXPIRY_WEEK)


PERIOD_TIMEFRAMES = (Timeframe.MONDAY_WEEK, Timeframe.EXPIRY_WEEK, Timeframe.MONTH, Timeframe.YEAR)


def period_keys(index: pd.DatetimeIndex, timeframe: Timeframe | str) -> pd.DatetimeIndex:
    """
    Canonical period start keys for every date in ``index``.

    - Monday-week: the Monday on or before the date.
    - Expiry-week: the Friday after the date. Monday-Thursday map to the
      Friday of the same week, weekends to the following Friday, and a
      Friday to the next Friday, so a bucket runs Friday..Thursday.
    - Month: the 1st of the month. Year: January 1st.
    """
    timeframe = Timeframe(timeframe)
    days = pd.DatetimeIndex(index).normalize()
    if timeframe is Timeframe.MONDAY_WEEK:
        offset = -days.weekday.to_numpy()
    elif timeframe is Timeframe.EXPIRY_WEEK:
        ahead = (FRIDAY - days.weekday.to_numpy()) % 7
        offset = np.where(ahead == 0, 7, ahead)
    elif timeframe is Timeframe.MONTH:
        offset = -(days.day.to_numpy() - 1)
    elif timeframe is Timeframe.YEAR:
        offset = -(days.dayofyear.to_numpy() - 1)
    else:
        raise ValueError("daily rows have no period key")
    return pd.DatetimeIndex(days + pd.to_timedelta(offset, unit="D"), name="Date")


def period_key(day: dt.date, timeframe: Timeframe | str) -> dt.date:
    """Scalar form of period_keys()."""
    return period_keys(pd.DatetimeIndex([pd.Timestamp(day)]), timeframe)[0].date()


def aggregate_periods(daily: pd.DataFrame, timeframe: Timeframe | str) -> pd.DataFrame:
    """
    Collapse the daily frame into one record per period key, ascending.

    Open=first, High=max, Low=min, Close=last, Volume=sum, OpenInterest=the
    final bar's value (null when that bar has none),
    plus the first/last constituent trading dates and their count.
    """
    timeframe = Timeframe(timeframe)
    keys = period_keys(daily.index, timeframe)
    source = daily[["Open", "High", "Low", "Close", "Volume", "OpenInterest"]].copy()
    source["_date"] = daily.index

    frame = source.groupby(keys, sort=True).agg(
        Open=("Open", "first"),
        High=("High", "max"),
        Low=("Low", "min"),
        Close=("Close", "last"),
        Volume=("Volume", "sum"),
        OpenInterest=("OpenInterest", lambda s: s.iloc[-1]),
        first_date=("_date", "first"),
        last_date=("_date", "last"),
        trading_days=("Close", "count"),
    )
    frame["OpenInterest"] = frame["OpenInterest"].astype("Float64")
    frame.index = pd.DatetimeIndex(frame.index, name="Date")
    frame["month"] = frame.index.month
    frame["year"] = frame.index.year

    logger.debug("Aggregated %d daily rows into %d %s periods", len(daily), len(frame), timeframe.value)
    return frame


def aggregate_all(daily: pd.DataFrame) -> dict[Timeframe, pd.DataFrame]:
    """Aggregate the daily frame into all four period frames."""
    return {tf: aggregate_periods(daily, tf) for tf in PERIOD_TIMEFRAMES}

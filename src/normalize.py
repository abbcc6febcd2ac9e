"""
Daily normalization: validate one symbol's bars, order them by date and add
the calendar fields and trading-day position counters.
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Hashable, Iterable, Mapping, Sequence

import pandas as pd

from bars import Bar
from errors import DuplicateDateError, InvalidBarError

logger = logging.getLogger(__name__)

# Fixed English names so output never depends on the process locale.
WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

PRICE_COLUMNS = ["Open", "High", "Low", "Close", "Volume", "OpenInterest"]


def _coerce_bar(item: Bar | Mapping, index: int) -> Bar:
    if isinstance(item, Bar):
        return item
    try:
        return Bar.from_mapping(item)
    except InvalidBarError as exc:
        raise InvalidBarError(str(exc), index=index) from exc


def _validate(bars: Sequence[Bar]) -> None:
    if not bars:
        raise InvalidBarError("no bars supplied")

    tickers = {bar.ticker for bar in bars}
    if len(tickers) > 1:
        raise InvalidBarError(f"bars span several tickers: {sorted(tickers)}")

    for i, bar in enumerate(bars):
        for name in ("open", "high", "low", "close", "volume"):
            value = getattr(bar, name)
            if not math.isfinite(value):
                raise InvalidBarError(f"non-finite {name} on {bar.date}", index=i)
        if bar.close <= 0:
            raise InvalidBarError(f"non-positive close {bar.close} on {bar.date}", index=i)

    counts = Counter(bar.date for bar in bars)
    duplicates = sorted(d for d, n in counts.items() if n > 1)
    if duplicates:
        raise DuplicateDateError(duplicates)


def position_counter(groups: Sequence[Hashable]) -> list[int | None]:
    """
    Count positions inside consecutive runs of equal group ids.

    The first element has no predecessor and gets None. A change of group
    restarts at 1; otherwise the previous count is incremented. A None count
    stays None until the first group change, since a run already in progress
    when the series starts has an unknown position.
    """
    counts: list[int | None] = []
    for i, group in enumerate(groups):
        if i == 0:
            counts.append(None)
        elif group != groups[i - 1]:
            counts.append(1)
        else:
            prev = counts[-1]
            counts.append(None if prev is None else prev + 1)
    return counts


def normalize_bars(bars: Iterable[Bar | Mapping]) -> pd.DataFrame:
    """
    Build the date-ordered daily frame for one symbol.

    Raises InvalidBarError / DuplicateDateError before any computation when
    the batch is malformed. The ticker is kept in ``frame.attrs["symbol"]``.
    """
    records = [_coerce_bar(item, i) for i, item in enumerate(bars)]
    _validate(records)
    records.sort(key=lambda b: b.date)

    index = pd.DatetimeIndex([pd.Timestamp(b.date) for b in records], name="Date")
    df = pd.DataFrame(
        {
            "Open": [b.open for b in records],
            "High": [b.high for b in records],
            "Low": [b.low for b in records],
            "Close": [b.close for b in records],
            "Volume": [b.volume for b in records],
            "OpenInterest": pd.array([b.open_interest for b in records], dtype="Float64"),
        },
        index=index,
    )

    df["weekday"] = index.weekday
    df["weekday_name"] = [WEEKDAY_NAMES[d] for d in index.weekday]
    df["calendar_month_day"] = index.day
    df["calendar_year_day"] = index.dayofyear
    df["month"] = index.month
    df["year"] = index.year

    months = list(zip(index.year, index.month))
    df["trading_month_day"] = pd.array(position_counter(months), dtype="Int64")
    df["trading_year_day"] = pd.array(position_counter(list(index.year)), dtype="Int64")

    df.attrs["symbol"] = records[0].ticker
    logger.debug("Normalized %d bars for %s (%s to %s)",
                 len(df), records[0].ticker, index[0].date(), index[-1].date())
    return df

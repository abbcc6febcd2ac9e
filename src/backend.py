"""
Seasonality engine entry points: build the annotated multi-timeframe series
for one symbol and answer analysis requests over it.
"""
from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Hashable, Iterable, Mapping

import numpy as np
import pandas as pd

from annotate import RETURN_DECIMALS, annotate_daily, annotate_periods
from bars import Bar, read_bars_csv
from errors import EmptyFilterResultError
from event_window import EventAnchor, EventWindowConfig, EventWindowResult, analyze_events
from filtering import DEFAULT_IQR_MULTIPLIER, DEFAULT_ZSCORE_THRESHOLD, FilterConfig, apply_filters
from linkage import link_daily, link_periods
from metrics import DAYS_PER_YEAR, StatisticsResult, compute_statistics, cumulative_curve
from normalize import normalize_bars
from periods import PERIOD_TIMEFRAMES, Timeframe, aggregate_periods

logger = logging.getLogger(__name__)

CACHE_MAX_ENTRIES = 256
AGGREGATE_HOW = ("avg", "sum", "max", "min")

__all__ = [
    "RETURN_DECIMALS",
    "DAYS_PER_YEAR",
    "DEFAULT_ZSCORE_THRESHOLD",
    "DEFAULT_IQR_MULTIPLIER",
    "CACHE_MAX_ENTRIES",
    "SeasonalSeries",
    "AnalysisResult",
    "GroupSummary",
    "ResultCache",
    "default_cache",
    "build_series",
    "load_series",
    "run_analysis",
    "run_event_analysis",
    "aggregate_returns",
    "to_records",
]


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True, eq=False)
class SeasonalSeries:
    """The five annotated, linked sequences for one symbol."""
    symbol: str
    daily: pd.DataFrame
    monday_week: pd.DataFrame
    expiry_week: pd.DataFrame
    month: pd.DataFrame
    year: pd.DataFrame

    def frame(self, timeframe: Timeframe | str) -> pd.DataFrame:
        return getattr(self, Timeframe(timeframe).value)

    @property
    def fingerprint(self) -> str:
        """Cheap identity of the underlying bars, so cached results go stale on new data."""
        daily = self.daily
        return f"{len(daily)}:{daily.index[0].date()}:{daily.index[-1].date()}:{float(daily['Close'].sum()):.6f}"


@dataclass
class AnalysisResult:
    symbol: str
    timeframe: Timeframe
    records: list[dict[str, Any]]
    statistics: StatisticsResult
    cumulative: list[dict[str, Any]]  # [{"date", "value"}], compounded from 100
    warnings: list[str] = field(default_factory=list)


@dataclass
class GroupSummary:
    """Returns of one group (e.g. all Mondays) reduced by the requested rule."""
    key: Hashable
    value: float
    count: int
    positive_count: int
    negative_count: int
    average: float
    total: float

    @property
    def win_rate(self) -> float:
        return self.positive_count / self.count * 100 if self.count else 0.0


# =============================================================================
# Pipeline
# =============================================================================

def build_series(bars: Iterable[Bar | Mapping]) -> SeasonalSeries:
    """
    Normalize, aggregate, annotate and link one symbol's daily bars.

    Raises InvalidBarError / DuplicateDateError for a malformed batch.
    """
    daily = normalize_bars(bars)
    symbol = daily.attrs["symbol"]

    periods = {tf: annotate_periods(aggregate_periods(daily, tf), tf) for tf in PERIOD_TIMEFRAMES}
    daily = link_daily(annotate_daily(daily), periods)
    periods = link_periods(periods)

    for frame in (daily, *periods.values()):
        frame.attrs["symbol"] = symbol

    logger.info(
        "Built %s series: %d days, %d Monday-weeks, %d expiry-weeks, %d months, %d years",
        symbol, len(daily),
        len(periods[Timeframe.MONDAY_WEEK]), len(periods[Timeframe.EXPIRY_WEEK]),
        len(periods[Timeframe.MONTH]), len(periods[Timeframe.YEAR]),
    )
    return SeasonalSeries(
        symbol=symbol,
        daily=daily,
        monday_week=periods[Timeframe.MONDAY_WEEK],
        expiry_week=periods[Timeframe.EXPIRY_WEEK],
        month=periods[Timeframe.MONTH],
        year=periods[Timeframe.YEAR],
    )


def load_series(
    source: str | Path | IO[str],
    ticker: str | None = None,
    skip_invalid: bool = False,
) -> SeasonalSeries:
    """Read an uploaded CSV and build its series."""
    return build_series(read_bars_csv(source, ticker=ticker, skip_invalid=skip_invalid))


# =============================================================================
# Result Cache
# =============================================================================

class ResultCache:
    """
    Bounded in-process LRU cache of analysis results.

    Keys are an md5 over (symbol, timeframe, filters, extra), grouped by
    symbol so clear_symbol() can drop everything for a re-uploaded ticker.
    Recomputing a missing entry concurrently is harmless: results are pure.
    """

    def __init__(self, max_entries: int = CACHE_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], Any] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(
        symbol: str,
        timeframe: Timeframe | str,
        filters: FilterConfig | None = None,
        extra: Any = None,
    ) -> tuple[str, str]:
        payload = {
            "timeframe": Timeframe(timeframe).value,
            "filters": filters.to_dict() if filters is not None else None,
            "extra": extra,
        }
        blob = json.dumps(payload, sort_keys=True, default=str)
        return symbol.upper(), hashlib.md5(blob.encode("utf-8")).hexdigest()

    def get(self, key: tuple[str, str]) -> Any | None:
        if key not in self._entries:
            self.misses += 1
            return None
        self.hits += 1
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: tuple[str, str], value: Any) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear_symbol(self, symbol: str) -> int:
        """Drop every entry for ``symbol``; returns how many were removed."""
        stale = [key for key in self._entries if key[0] == symbol.upper()]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


default_cache = ResultCache()


# =============================================================================
# Record Export
# =============================================================================

def _plain(value: Any) -> Any:
    if value is None or value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def to_records(frame: pd.DataFrame) -> list[dict[str, Any]]:
    """JSON-friendly rows: ISO dates, plain Python scalars, nulls as None."""
    records = []
    for date, row in zip(frame.index, frame.to_dict("records")):
        record = {"date": date.date().isoformat()}
        record.update({name: _plain(value) for name, value in row.items()})
        records.append(record)
    return records


# =============================================================================
# Analysis Requests
# =============================================================================

def run_analysis(
    series: SeasonalSeries,
    timeframe: Timeframe | str,
    filters: FilterConfig | None = None,
    risk_free_rate: float = 0.0,
    cache: ResultCache | None = None,
) -> AnalysisResult:
    """
    Filter one timeframe of ``series`` and summarize its returns.

    A filter set that removes every record is not an error here: the result
    is empty with zero counts and a warning.
    """
    timeframe = Timeframe(timeframe)
    key = None
    if cache is not None:
        key = cache.make_key(series.symbol, timeframe, filters,
                             extra={"rf": risk_free_rate, "data": series.fingerprint})
        cached = cache.get(key)
        if cached is not None:
            logger.info("Cache hit for %s %s analysis", series.symbol, timeframe.value)
            return cached

    frame = series.frame(timeframe)
    warnings: list[str] = []
    try:
        selected = apply_filters(frame, filters, timeframe, strict=True)
    except EmptyFilterResultError as exc:
        warnings.append(str(exc))
        selected = frame.iloc[0:0]

    returns = selected["return_pct"]
    statistics = compute_statistics(returns, risk_free_rate=risk_free_rate)

    valid = returns.dropna()
    curve = cumulative_curve(float(r) for r in valid)
    cumulative = [{"date": d.date().isoformat(), "value": v} for d, v in zip(valid.index, curve)]

    result = AnalysisResult(
        symbol=series.symbol,
        timeframe=timeframe,
        records=to_records(selected),
        statistics=statistics,
        cumulative=cumulative,
        warnings=warnings,
    )
    logger.info("%s %s analysis: %d of %d records selected",
                series.symbol, timeframe.value, len(selected), len(frame))
    if cache is not None:
        cache.put(key, result)
    return result


def run_event_analysis(
    series: SeasonalSeries,
    anchors: Iterable[EventAnchor | dt.date],
    config: EventWindowConfig,
    filters: FilterConfig | None = None,
) -> EventWindowResult:
    """Event-window study over the daily sequence of ``series``."""
    return analyze_events(series.daily, anchors, config, filters=filters)


def aggregate_returns(
    frame: pd.DataFrame,
    field: str = "weekday",
    how: str = "avg",
    value_column: str = "return_pct",
) -> list[GroupSummary]:
    """
    Group returns by ``field`` (weekday, calendar_month_day, trading_year_day,
    month, ...) and reduce each group with ``how``.

    Rows with a null return or a null group key are left out. Groups come
    back in ascending key order.
    """
    if how not in AGGREGATE_HOW:
        raise ValueError(f"how must be one of {AGGREGATE_HOW}, got {how!r}")
    if field not in frame.columns:
        raise KeyError(f"no column {field!r} to group by")

    data = frame[[field, value_column]].dropna()
    summaries = []
    for key, group in data.groupby(field, sort=True):
        values = [float(v) for v in group[value_column]]
        total = sum(values)
        average = total / len(values)
        reduced = {"avg": average, "sum": total, "max": max(values), "min": min(values)}[how]
        summaries.append(GroupSummary(
            key=_plain(key),
            value=reduced,
            count=len(values),
            positive_count=sum(1 for v in values if v > 0),
            negative_count=sum(1 for v in values if v < 0),
            average=average,
            total=total,
        ))
    return summaries

"""
Filter engine: compile a FilterConfig into AND-composed predicates over an
annotated frame, then trim outliers relative to the retained rows.

Order is fixed: last-N window, selection predicates, outlier rejection.
Filtering never mutates its input and preserves row order.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Collection, Iterable, Mapping

import numpy as np
import pandas as pd

from errors import ConfigError, EmptyFilterResultError
from linkage import LINK_PREFIXES
from normalize import WEEKDAY_NAMES
from periods import Timeframe

logger = logging.getLogger(__name__)

DEFAULT_ZSCORE_THRESHOLD = 3.0
DEFAULT_IQR_MULTIPLIER = 1.5

Predicate = Callable[[pd.DataFrame], pd.Series]


class Selection(str, Enum):
    ANY = "any"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    EVEN = "even"
    ODD = "odd"


class OutlierMethod(str, Enum):
    NONE = "none"
    ZSCORE = "zscore"
    IQR = "iqr"


_DIRECTIONS = (Selection.ANY, Selection.POSITIVE, Selection.NEGATIVE)
_PARITIES = (Selection.ANY, Selection.EVEN, Selection.ODD)

_DIRECTION_FIELDS = (
    "day_direction",
    "monday_week_direction",
    "expiry_week_direction",
    "month_direction",
    "year_direction",
)
_PARITY_FIELDS = (
    "year_parity",
    "month_parity",
    "calendar_month_day_parity",
    "calendar_year_day_parity",
    "trading_month_day_parity",
    "trading_year_day_parity",
    "week_number_monthly_parity",
    "week_number_yearly_parity",
)


def _int_tuple(values: Iterable[Any], name: str, low: int, high: int) -> tuple[int, ...]:
    out = []
    for value in values:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name}: {value!r} is not an integer") from None
        if not low <= number <= high:
            raise ConfigError(f"{name}: {number} outside {low}..{high}")
        out.append(number)
    return tuple(sorted(set(out)))


def _weekday_number(value: Any) -> int:
    if isinstance(value, str) and not value.strip().isdigit():
        lookup = {name.lower(): i for i, name in enumerate(WEEKDAY_NAMES)}
        lookup.update({name[:3].lower(): i for i, name in enumerate(WEEKDAY_NAMES)})
        try:
            return lookup[value.strip().lower()]
        except KeyError:
            raise ConfigError(f"weekdays: unknown weekday {value!r}") from None
    return value


def _decade_digit(value: Any) -> Any:
    # 10 is accepted as an alias for 0 (years ending in 0)
    return 0 if value in (10, "10") else value


@dataclass(frozen=True)
class FilterConfig:
    """
    Per-request selection of records.

    Empty sets and ``Selection.ANY`` mean "no constraint". ``week_type``
    picks which linked week counters the week-number selectors read on
    daily rows.
    ``return_ranges`` maps a timeframe to an inclusive (min, max) band on
    that timeframe's return percentage.
    """
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    last_n: int | None = None

    years: tuple[int, ...] = ()
    months: tuple[int, ...] = ()
    weekdays: tuple[int, ...] = ()
    decade_digits: tuple[int, ...] = ()
    week_numbers_monthly: tuple[int, ...] = ()
    week_numbers_yearly: tuple[int, ...] = ()
    leap_years_only: bool = False

    week_type: Timeframe = Timeframe.EXPIRY_WEEK
    day_direction: Selection = Selection.ANY
    monday_week_direction: Selection = Selection.ANY
    expiry_week_direction: Selection = Selection.ANY
    month_direction: Selection = Selection.ANY
    year_direction: Selection = Selection.ANY

    year_parity: Selection = Selection.ANY
    month_parity: Selection = Selection.ANY
    calendar_month_day_parity: Selection = Selection.ANY
    calendar_year_day_parity: Selection = Selection.ANY
    trading_month_day_parity: Selection = Selection.ANY
    trading_year_day_parity: Selection = Selection.ANY
    week_number_monthly_parity: Selection = Selection.ANY
    week_number_yearly_parity: Selection = Selection.ANY

    return_ranges: Mapping[Timeframe, tuple[float, float]] = field(default_factory=dict)
    max_abs_return: float | None = None

    outlier_method: OutlierMethod = OutlierMethod.NONE
    zscore_threshold: float = DEFAULT_ZSCORE_THRESHOLD
    iqr_multiplier: float = DEFAULT_IQR_MULTIPLIER

    def __post_init__(self) -> None:
        def _set(name: str, value: Any) -> None:
            object.__setattr__(self, name, value)

        try:
            _set("week_type", Timeframe(self.week_type))
            _set("outlier_method", OutlierMethod(self.outlier_method))
            for name in _DIRECTION_FIELDS + _PARITY_FIELDS:
                _set(name, Selection(getattr(self, name)))
        except ValueError as exc:
            raise ConfigError(str(exc)) from None

        if not self.week_type.is_week:
            raise ConfigError(f"week_type must be a week timeframe, got {self.week_type.value}")
        for name in _DIRECTION_FIELDS:
            if getattr(self, name) not in _DIRECTIONS:
                raise ConfigError(f"{name} accepts any/positive/negative")
        for name in _PARITY_FIELDS:
            if getattr(self, name) not in _PARITIES:
                raise ConfigError(f"{name} accepts any/even/odd")

        _set("years", _int_tuple(self.years, "years", 1, 9999))
        _set("months", _int_tuple(self.months, "months", 1, 12))
        _set("weekdays", _int_tuple((_weekday_number(d) for d in self.weekdays), "weekdays", 0, 6))
        _set("decade_digits", _int_tuple((_decade_digit(d) for d in self.decade_digits),
                                         "decade_digits", 0, 9))
        _set("week_numbers_monthly", _int_tuple(self.week_numbers_monthly, "week_numbers_monthly", 1, 6))
        _set("week_numbers_yearly", _int_tuple(self.week_numbers_yearly, "week_numbers_yearly", 1, 54))

        if self.last_n is not None and self.last_n < 1:
            raise ConfigError("last_n must be positive")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ConfigError("start_date is after end_date")
        if self.max_abs_return is not None and self.max_abs_return < 0:
            raise ConfigError("max_abs_return must be non-negative")
        if self.zscore_threshold <= 0:
            raise ConfigError("zscore_threshold must be positive")
        if self.iqr_multiplier < 0:
            raise ConfigError("iqr_multiplier must be non-negative")

        ranges: dict[Timeframe, tuple[float, float]] = {}
        for key, band in dict(self.return_ranges).items():
            try:
                timeframe = Timeframe(key)
            except ValueError as exc:
                raise ConfigError(str(exc)) from None
            low, high = float(band[0]), float(band[1])
            if low > high:
                raise ConfigError(f"return_ranges[{timeframe.value}]: min {low} above max {high}")
            ranges[timeframe] = (low, high)
        _set("return_ranges", ranges)

    def to_dict(self) -> dict[str, Any]:
        """Plain JSON-friendly view, stable across equal configs (used for cache keys)."""
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, dt.date):
                value = value.isoformat()
            elif isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, dict):
                value = {k.value: list(v) for k, v in sorted(value.items(), key=lambda kv: kv[0].value)}
            out[f.name] = value
        return out

    def cache_token(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


# =============================================================================
# Predicate compilation
# =============================================================================

def as_mask(values: pd.Series) -> pd.Series:
    """Collapse a possibly-nullable boolean series to plain bool; null -> False."""
    return values.astype("boolean").fillna(False).astype(bool)


def _target_column(
    frame_tf: Timeframe, target: Timeframe, field_name: str, columns: Collection[str]
) -> str | None:
    """Column holding ``field_name`` of the ``target`` timeframe on a ``frame_tf`` frame."""
    if target is frame_tf:
        name = field_name
    elif target is Timeframe.DAILY:
        return None
    else:
        name = f"{LINK_PREFIXES[target]}_{field_name}"
    return name if name in columns else None


def _is_leap(years: pd.Series) -> pd.Series:
    return ((years % 4 == 0) & (years % 100 != 0)) | (years % 400 == 0)


def compile_filters(
    config: FilterConfig,
    timeframe: Timeframe | str,
    columns: Collection[str],
) -> list[tuple[str, Predicate]]:
    """
    Build the selection predicates that apply to a frame of ``timeframe``.

    Selectors whose columns the frame does not carry (e.g. weekdays on a
    monthly frame) are skipped.
    """
    timeframe = Timeframe(timeframe)
    week_tf = timeframe if timeframe.is_week else config.week_type
    predicates: list[tuple[str, Predicate]] = []

    def add(name: str, column: str | None, build: Callable[[str], Predicate]) -> None:
        if column is None or column not in columns:
            logger.debug("Selector %s does not apply to %s rows", name, timeframe.value)
            return
        predicates.append((name, build(column)))

    if config.start_date is not None:
        start = pd.Timestamp(config.start_date)
        predicates.append(("start_date", lambda df: pd.Series(df.index >= start, index=df.index)))
    if config.end_date is not None:
        end = pd.Timestamp(config.end_date)
        predicates.append(("end_date", lambda df: pd.Series(df.index <= end, index=df.index)))

    if config.years:
        add("years", "year", lambda c: lambda df: df[c].isin(config.years))
    if config.months and timeframe is not Timeframe.YEAR:
        add("months", "month", lambda c: lambda df: df[c].isin(config.months))
    if config.weekdays:
        add("weekdays", "weekday" if timeframe is Timeframe.DAILY else None,
            lambda c: lambda df: df[c].isin(config.weekdays))
    if config.decade_digits:
        add("decade_digits", "year", lambda c: lambda df: (df[c] % 10).isin(config.decade_digits))
    if config.leap_years_only:
        add("leap_years_only", "year", lambda c: lambda df: _is_leap(df[c]))

    week_numbers = {
        "week_numbers_monthly": (config.week_numbers_monthly, "number_monthly"),
        "week_numbers_yearly": (config.week_numbers_yearly, "number_yearly"),
    }
    for name, (values, suffix) in week_numbers.items():
        if values:
            column = f"week_{suffix}" if timeframe.is_week else f"{LINK_PREFIXES[week_tf]}_{suffix}"
            add(name, column, lambda c, v=values: lambda df: df[c].isin(v))

    directions = {
        "day_direction": (config.day_direction, Timeframe.DAILY),
        "monday_week_direction": (config.monday_week_direction, Timeframe.MONDAY_WEEK),
        "expiry_week_direction": (config.expiry_week_direction, Timeframe.EXPIRY_WEEK),
        "month_direction": (config.month_direction, Timeframe.MONTH),
        "year_direction": (config.year_direction, Timeframe.YEAR),
    }
    for name, (selection, target) in directions.items():
        if selection is Selection.ANY:
            continue
        wanted = selection is Selection.POSITIVE
        add(name, _target_column(timeframe, target, "positive", columns),
            lambda c, w=wanted: lambda df: df[c] == w)

    week_parity = "even_week_number" if timeframe.is_week else f"{LINK_PREFIXES[week_tf]}_even_number"
    parities = {
        "year_parity": (config.year_parity, "even_year"),
        "month_parity": (config.month_parity, None if timeframe is Timeframe.YEAR else "even_month"),
        "calendar_month_day_parity": (config.calendar_month_day_parity, "even_calendar_month_day"),
        "calendar_year_day_parity": (config.calendar_year_day_parity, "even_calendar_year_day"),
        "trading_month_day_parity": (config.trading_month_day_parity, "even_trading_month_day"),
        "trading_year_day_parity": (config.trading_year_day_parity, "even_trading_year_day"),
        "week_number_monthly_parity": (config.week_number_monthly_parity, f"{week_parity}_monthly"),
        "week_number_yearly_parity": (config.week_number_yearly_parity, f"{week_parity}_yearly"),
    }
    for name, (selection, column) in parities.items():
        if selection is Selection.ANY:
            continue
        wanted = selection is Selection.EVEN
        add(name, column, lambda c, w=wanted: lambda df: df[c] == w)

    for target, (low, high) in config.return_ranges.items():
        add(f"return_range[{target.value}]", _target_column(timeframe, target, "return_pct", columns),
            lambda c, lo=low, hi=high: lambda df: df[c].between(lo, hi))

    if config.max_abs_return is not None:
        limit = config.max_abs_return
        add("max_abs_return", "return_pct", lambda c: lambda df: df[c].abs() <= limit)

    return predicates


# =============================================================================
# Outlier rejection
# =============================================================================

def outlier_mask(values: pd.Series, config: FilterConfig) -> pd.Series:
    """
    True for rows to keep. Bounds come from the non-null values passed in;
    null values are never treated as outliers.
    """
    keep = pd.Series(True, index=values.index)
    if config.outlier_method is OutlierMethod.NONE:
        return keep

    arr = values.astype("Float64").to_numpy(dtype=float, na_value=np.nan)
    valid = ~np.isnan(arr)
    sample = arr[valid]
    if len(sample) < 2 or sample.max() == sample.min():
        return keep

    if config.outlier_method is OutlierMethod.ZSCORE:
        std = float(np.std(sample, ddof=1))
        z = np.abs((arr - float(np.mean(sample))) / std)
        inside = z <= config.zscore_threshold
    else:
        q1, q3 = np.percentile(sample, [25, 75])
        spread = config.iqr_multiplier * (q3 - q1)
        inside = (arr >= q1 - spread) & (arr <= q3 + spread)

    return pd.Series(~valid | inside, index=values.index)


# =============================================================================
# Entry point
# =============================================================================

def apply_filters(
    frame: pd.DataFrame,
    config: FilterConfig | None,
    timeframe: Timeframe | str = Timeframe.DAILY,
    strict: bool = False,
) -> pd.DataFrame:
    """
    Return the ordered subsequence of ``frame`` selected by ``config``.

    Args:
        frame: Annotated (and linked) frame of ``timeframe`` rows.
        config: Filters; None keeps everything.
        timeframe: Which sequence ``frame`` is.
        strict: Raise EmptyFilterResultError instead of returning an empty frame.
    """
    if config is None:
        return frame.copy()

    out = frame
    if config.last_n is not None:
        out = out.iloc[-config.last_n:]

    predicates = compile_filters(config, timeframe, out.columns)
    mask = pd.Series(True, index=out.index)
    for _name, predicate in predicates:
        mask &= as_mask(predicate(out))
    out = out[mask.to_numpy()]

    if "return_pct" in out.columns:
        out = out[outlier_mask(out["return_pct"], config).to_numpy()]

    logger.debug("Filters kept %d of %d %s rows (%d predicates)",
                 len(out), len(frame), Timeframe(timeframe).value, len(predicates))
    if strict and out.empty:
        raise EmptyFilterResultError(
            f"filters removed all {len(frame)} {Timeframe(timeframe).value} rows"
        )
    return out.copy()

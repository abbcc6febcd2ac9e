"""
Event-window studies: returns around anchor dates, averaged across
occurrences, plus a simulated trade per occurrence.
"""
from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

import pandas as pd

from errors import ConfigError
from filtering import FilterConfig, as_mask, compile_filters
from metrics import StatisticsResult, clean_returns, compute_statistics
from periods import Timeframe

logger = logging.getLogger(__name__)


class EntryTiming(str, Enum):
    PREV_CLOSE = "T-1_CLOSE"
    OPEN = "T0_OPEN"
    CLOSE = "T0_CLOSE"


class ExitTiming(str, Enum):
    CLOSE = "T0_CLOSE"
    WINDOW_CLOSE = "TN_CLOSE"


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class EventAnchor:
    """An externally supplied event date, e.g. a budget day or an election."""
    date: dt.date
    name: str | None = None
    category: str | None = None


@dataclass(frozen=True)
class EventWindowConfig:
    """T-days_before..T+days_after window and the trade timing inside it."""
    days_before: int = 5
    days_after: int = 5
    entry: EntryTiming = EntryTiming.PREV_CLOSE
    exit: ExitTiming = ExitTiming.WINDOW_CLOSE

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "entry", EntryTiming(self.entry))
            object.__setattr__(self, "exit", ExitTiming(self.exit))
        except ValueError as exc:
            raise ConfigError(str(exc)) from None
        if self.days_before < 0 or self.days_after < 0:
            raise ConfigError("days_before and days_after must be non-negative")
        exits_at_t0 = self.exit is ExitTiming.CLOSE or self.days_after == 0
        if self.entry is EntryTiming.CLOSE and exits_at_t0:
            raise ConfigError("entry and exit both fall on the T0 close")

    @property
    def offsets(self) -> range:
        return range(-self.days_before, self.days_after + 1)


@dataclass
class EventOccurrence:
    anchor: EventAnchor
    event_date: dt.date  # T0, the first trading day on/after the anchor
    returns: dict[int, float | None]  # offset -> return_pct
    entry_date: dt.date
    entry_price: float
    exit_date: dt.date
    exit_price: float
    trade_return: float
    mfe: float  # best high over the holding span, % from entry
    mae: float  # worst low over the holding span, % from entry


@dataclass
class EventCurvePoint:
    offset: int
    mean_return: float | None
    count: int
    cumulative: float  # compounded mean return from the window start, %


@dataclass
class EventWindowResult:
    config: EventWindowConfig
    occurrences: list[EventOccurrence]
    curve: list[EventCurvePoint]
    statistics: StatisticsResult
    segments: dict[str, StatisticsResult] = field(default_factory=dict)
    excluded: list[tuple[EventAnchor, str]] = field(default_factory=list)

    @property
    def exclusion_counts(self) -> dict[str, int]:
        return dict(Counter(reason for _, reason in self.excluded))


# =============================================================================
# Anchor Resolution
# =============================================================================

def next_trading_position(index: pd.DatetimeIndex, date: dt.date) -> int | None:
    """Position of the first trading day on/after ``date``."""
    pos = int(index.searchsorted(pd.Timestamp(date)))
    if pos >= len(index):
        return None
    return pos


def _exclusion_reason(pos: int | None, size: int, config: EventWindowConfig) -> str | None:
    if pos is None:
        return "after end of series"
    if pos - config.days_before < 0:
        return "window starts before series"
    if config.entry is EntryTiming.PREV_CLOSE and pos == 0:
        return "no bar before event day"
    if pos + config.days_after >= size:
        return "window ends after series"
    return None


def _selection_mask(daily: pd.DataFrame, filters: FilterConfig | None) -> pd.Series | None:
    if filters is None:
        return None
    mask = pd.Series(True, index=daily.index)
    for _name, predicate in compile_filters(filters, Timeframe.DAILY, daily.columns):
        mask &= as_mask(predicate(daily))
    return mask


# =============================================================================
# Occurrences and Curve
# =============================================================================

def _build_occurrence(
    daily: pd.DataFrame, pos: int, anchor: EventAnchor, config: EventWindowConfig
) -> EventOccurrence:
    index = daily.index
    returns = daily["return_pct"]
    window = {k: returns.iloc[pos + k] for k in config.offsets}

    if config.entry is EntryTiming.PREV_CLOSE:
        entry_pos, entry_price, hold_from = pos - 1, float(daily["Close"].iloc[pos - 1]), pos
    elif config.entry is EntryTiming.OPEN:
        entry_pos, entry_price, hold_from = pos, float(daily["Open"].iloc[pos]), pos
    else:
        entry_pos, entry_price, hold_from = pos, float(daily["Close"].iloc[pos]), pos + 1

    exit_pos = pos if config.exit is ExitTiming.CLOSE else pos + config.days_after
    exit_price = float(daily["Close"].iloc[exit_pos])

    held = daily.iloc[hold_from:exit_pos + 1]
    return EventOccurrence(
        anchor=anchor,
        event_date=index[pos].date(),
        returns={k: None if pd.isna(v) else float(v) for k, v in window.items()},
        entry_date=index[entry_pos].date(),
        entry_price=entry_price,
        exit_date=index[exit_pos].date(),
        exit_price=exit_price,
        trade_return=(exit_price / entry_price - 1) * 100,
        mfe=(float(held["High"].max()) / entry_price - 1) * 100,
        mae=(float(held["Low"].min()) / entry_price - 1) * 100,
    )


def average_curve(occurrences: list[EventOccurrence], offsets: Iterable[int]) -> list[EventCurvePoint]:
    """
    Mean return at each offset over the occurrences that have one.

    Offsets with no values keep the cumulative line flat.
    """
    curve = []
    growth = 1.0
    for k in offsets:
        values = clean_returns(occ.returns.get(k) for occ in occurrences)
        mean = sum(values) / len(values) if values else None
        if mean is not None:
            growth *= 1 + mean / 100
        curve.append(EventCurvePoint(offset=k, mean_return=mean, count=len(values),
                                     cumulative=(growth - 1) * 100))
    return curve


def segment_statistics(occurrences: list[EventOccurrence]) -> dict[str, StatisticsResult]:
    """Statistics over the pooled returns before, on and after the event day."""
    pooled: dict[str, list[float | None]] = {"pre_event": [], "event_day": [], "post_event": []}
    for occ in occurrences:
        for k, value in occ.returns.items():
            key = "pre_event" if k < 0 else "event_day" if k == 0 else "post_event"
            pooled[key].append(value)
    return {name: compute_statistics(values) for name, values in pooled.items()}


def analyze_events(
    daily: pd.DataFrame,
    anchors: Iterable[EventAnchor | dt.date],
    config: EventWindowConfig,
    filters: FilterConfig | None = None,
) -> EventWindowResult:
    """
    Run an event-window study over an annotated daily frame.

    Anchors on non-trading days snap forward to the next trading day.
    Anchors whose window or trade needs bars outside the series are
    excluded rather than padded, as are anchors whose T0 row fails the
    selection predicates of ``filters``.
    """
    mask = _selection_mask(daily, filters)
    occurrences: list[EventOccurrence] = []
    excluded: list[tuple[EventAnchor, str]] = []

    resolved = [a if isinstance(a, EventAnchor) else EventAnchor(date=a) for a in anchors]
    for anchor in sorted(resolved, key=lambda a: a.date):
        pos = next_trading_position(daily.index, anchor.date)
        reason = _exclusion_reason(pos, len(daily), config)
        if reason is None and mask is not None and not mask.iloc[pos]:
            reason = "filtered out"
        if reason is not None:
            logger.debug("Excluding anchor %s (%s): %s", anchor.date, anchor.name, reason)
            excluded.append((anchor, reason))
            continue
        occurrences.append(_build_occurrence(daily, pos, anchor, config))

    statistics = compute_statistics(
        [occ.trade_return for occ in occurrences],
        dates=[occ.event_date for occ in occurrences],
    )
    logger.info("Event study: %d occurrences, %d excluded", len(occurrences), len(excluded))
    return EventWindowResult(
        config=config,
        occurrences=occurrences,
        curve=average_curve(occurrences, config.offsets),
        statistics=statistics,
        segments=segment_statistics(occurrences),
        excluded=excluded,
    )


# =============================================================================
# Derived Anchors
# =============================================================================

def trend_anchors(daily: pd.DataFrame, consecutive_days: int = 3, bullish: bool = True) -> list[EventAnchor]:
    """
    Dates that complete ``consecutive_days`` up (or down) days in a row.

    The count restarts after each hit, so overlapping runs are not
    reported twice.
    """
    if consecutive_days < 1:
        raise ConfigError("consecutive_days must be positive")
    direction = "up" if bullish else "down"
    anchors = []
    count = 0
    for date, value in zip(daily.index, daily["return_pct"].tolist()):
        trending = not pd.isna(value) and (value > 0 if bullish else value < 0)
        if not trending:
            count = 0
            continue
        count += 1
        if count == consecutive_days:
            anchors.append(EventAnchor(date=date.date(), name=f"{consecutive_days} {direction} days",
                                       category="trend"))
            count = 0
    return anchors

"""
Statistics over a filtered sequence of percentage returns.

Every metric is a plain function over the non-null returns in sequence
order. A metric that is undefined for its input raises
InsufficientDataError; compute_statistics() turns those into None plus a
reason so one bad metric never sinks the whole summary.
"""
from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Sequence

import numpy as np
import pandas as pd

from errors import InsufficientDataError

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class StatisticsResult:
    """Scalar summary of a return series. Undefined metrics are None, see ``reasons``."""
    count: int = 0
    positive_count: int = 0
    negative_count: int = 0
    win_rate: float | None = None
    mean: float | None = None
    median: float | None = None
    stdev: float | None = None
    total: float | None = None
    average_gain: float | None = None
    average_loss: float | None = None
    max_gain: float | None = None
    max_loss: float | None = None
    cumulative_return: float | None = None
    cagr: float | None = None
    sharpe: float | None = None
    sortino: float | None = None
    calmar: float | None = None
    max_drawdown: float | None = None
    profit_factor: float | None = None
    longest_win_streak: int = 0
    longest_loss_streak: int = 0
    latest_percentile_rank: float | None = None
    latest_z_score: float | None = None
    reasons: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Streak:
    """A run of consecutive records whose return stayed above/below a threshold."""
    start_date: dt.date
    end_date: dt.date
    start_close: float
    end_close: float
    length: int
    pct_change: float


# =============================================================================
# Input Cleaning
# =============================================================================

def _is_null(value: Any) -> bool:
    if value is None or value is pd.NA:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return False


def clean_returns(values: Iterable[Any]) -> list[float]:
    """Drop nulls (None, NaN, pd.NA) and coerce the rest to float."""
    return [float(v) for v in values if not _is_null(v)]


def clean_pairs(values: Sequence[Any], dates: Sequence[Any]) -> tuple[list[float], list[dt.date]]:
    """Drop nulls from ``values`` together with their dates."""
    if len(values) != len(dates):
        raise ValueError(f"{len(values)} returns but {len(dates)} dates")
    kept = [(float(v), pd.Timestamp(d).date()) for v, d in zip(values, dates) if not _is_null(v)]
    return [v for v, _ in kept], [d for _, d in kept]


def _require(returns: Sequence[float], metric: str, minimum: int = 1) -> None:
    if len(returns) < minimum:
        noun = "return" if minimum == 1 else "returns"
        raise InsufficientDataError(metric, f"needs at least {minimum} {noun}, got {len(returns)}")


# =============================================================================
# Central Tendency and Dispersion
# =============================================================================

def win_rate(returns: Sequence[float]) -> float:
    """Share of strictly positive returns, in percent."""
    _require(returns, "win_rate")
    return sum(1 for r in returns if r > 0) / len(returns) * 100


def mean_return(returns: Sequence[float]) -> float:
    _require(returns, "mean")
    return sum(returns) / len(returns)


def median_return(returns: Sequence[float]) -> float:
    _require(returns, "median")
    return float(np.median(returns))


def sample_stdev(returns: Sequence[float]) -> float:
    """Standard deviation with the n-1 denominator; exactly 0.0 for a constant series."""
    _require(returns, "stdev", 2)
    if max(returns) == min(returns):
        return 0.0
    return float(np.std(returns, ddof=1))


def average_gain(returns: Sequence[float]) -> float:
    gains = [r for r in returns if r > 0]
    if not gains:
        raise InsufficientDataError("average_gain", "no positive returns")
    return sum(gains) / len(gains)


def average_loss(returns: Sequence[float]) -> float:
    losses = [r for r in returns if r < 0]
    if not losses:
        raise InsufficientDataError("average_loss", "no negative returns")
    return sum(losses) / len(losses)


def percentile_rank(returns: Sequence[float], value: float) -> float:
    """Percentage of returns strictly below ``value``."""
    _require(returns, "percentile_rank")
    return sum(1 for r in returns if r < value) / len(returns) * 100


def z_score(returns: Sequence[float], value: float) -> float:
    stdev = sample_stdev(returns)
    if stdev == 0:
        raise InsufficientDataError("z_score", "stdev is zero")
    return (value - mean_return(returns)) / stdev


# =============================================================================
# Compounding
# =============================================================================

def cumulative_curve(returns: Iterable[float], start: float = 100.0) -> list[float]:
    """Compounded value after each return, from a base of ``start``."""
    value = start
    curve = []
    for r in returns:
        value *= 1 + r / 100
        curve.append(value)
    return curve


def cumulative_return(returns: Sequence[float]) -> float:
    """Total compounded return in percent (not the simple sum)."""
    _require(returns, "cumulative_return")
    return (math.prod(1 + r / 100 for r in returns) - 1) * 100


def cagr(returns: Sequence[float], dates: Sequence[dt.date]) -> float:
    """
    Compound annual growth rate in percent.

    The exponent is DAYS_PER_YEAR over the calendar-day span between the
    first and last dates, so gaps left by filtering stretch the horizon
    instead of being ignored.
    """
    _require(returns, "cagr", 2)
    if len(dates) != len(returns):
        raise ValueError(f"{len(returns)} returns but {len(dates)} dates")
    span = (max(dates) - min(dates)).days
    if span <= 0:
        raise InsufficientDataError("cagr", "first and last dates coincide")
    growth = math.prod(1 + r / 100 for r in returns)
    if growth <= 0:
        raise InsufficientDataError("cagr", "compounded value fell to zero or below")
    try:
        return (math.pow(growth, DAYS_PER_YEAR / span) - 1) * 100
    except OverflowError:
        raise InsufficientDataError("cagr", f"annualizing over {span} days overflows") from None


def max_drawdown(returns: Sequence[float]) -> float:
    """
    Deepest peak-to-trough decline of the compounded equity curve, in percent.

    Always <= 0. The curve starts at 1 and that starting value counts as a
    peak, so a first-day loss is already a drawdown.
    """
    _require(returns, "max_drawdown")
    value = peak = 1.0
    worst = 0.0
    for r in returns:
        value *= 1 + r / 100
        peak = max(peak, value)
        worst = min(worst, (value - peak) / peak * 100)
    return worst


# =============================================================================
# Risk-Adjusted Ratios
# =============================================================================

def sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.0) -> float:
    stdev = sample_stdev(returns)
    if stdev == 0:
        raise InsufficientDataError("sharpe", "stdev is zero")
    return (mean_return(returns) - risk_free_rate) / stdev


def downside_deviation(returns: Sequence[float], target: float = 0.0) -> float:
    """Root mean square of shortfalls below ``target``, over all n returns."""
    _require(returns, "downside_deviation")
    return math.sqrt(sum(min(r - target, 0.0) ** 2 for r in returns) / len(returns))


def sortino_ratio(returns: Sequence[float], risk_free_rate: float = 0.0) -> float:
    downside = downside_deviation(returns, target=risk_free_rate)
    if downside == 0:
        raise InsufficientDataError("sortino", "no returns below the target")
    return (mean_return(returns) - risk_free_rate) / downside


def calmar_ratio(cagr_pct: float, max_drawdown_pct: float) -> float:
    if max_drawdown_pct == 0:
        raise InsufficientDataError("calmar", "max drawdown is zero")
    return cagr_pct / abs(max_drawdown_pct)


def profit_factor(returns: Sequence[float]) -> float:
    """Gross gains over gross losses."""
    _require(returns, "profit_factor")
    gains = sum(r for r in returns if r > 0)
    losses = sum(r for r in returns if r < 0)
    if losses == 0:
        raise InsufficientDataError("profit_factor", "no negative returns")
    return abs(gains) / abs(losses)


# =============================================================================
# Streaks
# =============================================================================

def longest_streak(returns: Iterable[float], positive: bool = True) -> int:
    """Longest run of consecutive strictly positive (or strictly negative) returns."""
    best = current = 0
    for r in returns:
        if (r > 0) if positive else (r < 0):
            current += 1
            best = max(best, current)
        else:
            current = 0
    return best


def find_streaks(
    frame: pd.DataFrame,
    min_length: int = 5,
    threshold: float = 0.0,
    above: bool = False,
) -> list[Streak]:
    """
    Runs of at least ``min_length`` consecutive rows whose return_pct is
    above (or below) ``threshold``, with the close move across the run.

    Null returns break a run.
    """
    if min_length < 1:
        raise ValueError("min_length must be positive")

    streaks: list[Streak] = []
    closes = frame["Close"].tolist()
    dates = list(frame.index)
    start: int | None = None

    def close_run(end: int) -> None:
        if start is not None and end - start + 1 >= min_length:
            first, last = closes[start], closes[end]
            streaks.append(Streak(
                start_date=dates[start].date(),
                end_date=dates[end].date(),
                start_close=first,
                end_close=last,
                length=end - start + 1,
                pct_change=(last - first) / first * 100,
            ))

    for i, value in enumerate(frame["return_pct"].tolist()):
        hit = not _is_null(value) and (value > threshold if above else value < threshold)
        if hit:
            if start is None:
                start = i
        else:
            close_run(i - 1)
            start = None
    close_run(len(closes) - 1)
    return streaks


# =============================================================================
# Summary
# =============================================================================

def compute_statistics(
    returns: Sequence[Any] | pd.Series,
    dates: Sequence[Any] | None = None,
    risk_free_rate: float = 0.0,
) -> StatisticsResult:
    """
    Compute every metric over ``returns`` (nulls excluded).

    Args:
        returns: Percentage returns in sequence order. A Series with a
            DatetimeIndex supplies its own dates.
        dates: Date of each return, used for CAGR.
        risk_free_rate: Per-period rate for Sharpe and Sortino, in percent.

    Returns:
        StatisticsResult; metrics that cannot be computed are None and
        their reason is recorded under the metric name.
    """
    if dates is None and isinstance(returns, pd.Series) and isinstance(returns.index, pd.DatetimeIndex):
        dates = list(returns.index)
    raw = returns.tolist() if isinstance(returns, pd.Series) else list(returns)
    if dates is not None:
        values, clean_dates = clean_pairs(raw, list(dates))
    else:
        values, clean_dates = clean_returns(raw), None

    result = StatisticsResult(
        count=len(values),
        positive_count=sum(1 for r in values if r > 0),
        negative_count=sum(1 for r in values if r < 0),
        longest_win_streak=longest_streak(values, positive=True),
        longest_loss_streak=longest_streak(values, positive=False),
    )

    def metric(name: str, fn: Callable[..., float], *args: Any) -> float | None:
        try:
            return fn(*args)
        except InsufficientDataError as exc:
            result.reasons[name] = exc.reason
            return None

    result.win_rate = metric("win_rate", win_rate, values)
    result.mean = metric("mean", mean_return, values)
    result.median = metric("median", median_return, values)
    result.stdev = metric("stdev", sample_stdev, values)
    result.total = float(sum(values)) if values else None
    if not values:
        result.reasons["total"] = "needs at least 1 return, got 0"
    result.average_gain = metric("average_gain", average_gain, values)
    result.average_loss = metric("average_loss", average_loss, values)
    result.max_gain = max(values) if values else None
    result.max_loss = min(values) if values else None
    result.cumulative_return = metric("cumulative_return", cumulative_return, values)
    result.max_drawdown = metric("max_drawdown", max_drawdown, values)
    result.sharpe = metric("sharpe", sharpe_ratio, values, risk_free_rate)
    result.sortino = metric("sortino", sortino_ratio, values, risk_free_rate)
    result.profit_factor = metric("profit_factor", profit_factor, values)

    if clean_dates is None:
        result.reasons["cagr"] = "no dates supplied"
    else:
        result.cagr = metric("cagr", cagr, values, clean_dates)

    if result.cagr is None or result.max_drawdown is None:
        result.reasons["calmar"] = "needs both cagr and max_drawdown"
    else:
        result.calmar = metric("calmar", calmar_ratio, result.cagr, result.max_drawdown)

    if values:
        result.latest_percentile_rank = percentile_rank(values, values[-1])
        result.latest_z_score = metric("latest_z_score", z_score, values, values[-1])
    else:
        result.reasons["latest_percentile_rank"] = "needs at least 1 return, got 0"
        result.reasons["latest_z_score"] = "needs at least 2 returns, got 0"

    logger.debug("Statistics over %d returns (%d undefined metrics)", result.count, len(result.reasons))
    return result

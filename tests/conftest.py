"""Shared test fixtures."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import numpy as np
import pandas as pd
import pytest

import backend
from bars import Bar


def _bars(dates, closes, ticker="TEST", opens=None):
    bars = []
    for i, (date, close) in enumerate(zip(dates, closes)):
        open_ = opens[i] if opens is not None else close
        bars.append(Bar(
            date=pd.Timestamp(date).date(),
            ticker=ticker,
            open=float(open_),
            high=float(max(open_, close)) * 1.01,
            low=float(min(open_, close)) * 0.99,
            close=float(close),
            volume=1000.0 + i,
        ))
    return bars


@pytest.fixture
def make_bars():
    """Factory: bars on the given dates (or business days from ``start``) with these closes."""
    def factory(closes, start="2024-01-01", dates=None, ticker="TEST", opens=None):
        if dates is None:
            dates = pd.bdate_range(start, periods=len(closes))
        return _bars(dates, closes, ticker=ticker, opens=opens)
    return factory


@pytest.fixture
def sample_bars() -> list[Bar]:
    """Three years of business-day bars following a seeded random walk."""
    dates = pd.bdate_range("2021-01-01", "2023-12-29")
    np.random.seed(42)
    returns = np.random.randn(len(dates)) * 0.01
    closes = 100 * np.cumprod(1 + returns)
    opens = np.concatenate([[100.0], closes[:-1]])
    return _bars(dates, closes, opens=opens)


@pytest.fixture
def sample_series(sample_bars) -> backend.SeasonalSeries:
    return backend.build_series(sample_bars)


@pytest.fixture(autouse=True)
def clear_result_cache():
    """Clear the shared result cache before each test to avoid cross-test pollution."""
    backend.default_cache.clear()

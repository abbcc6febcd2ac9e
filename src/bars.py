"""
Bar input layer: the immutable daily bar record and the parsers that build it
from storage mappings, uploaded CSV files and OHLC DataFrames.
"""
from __future__ import annotations

import datetime as dt
import logging
import math
import re
from dataclasses import dataclass
from typing import IO, Any, Iterable, Mapping

import pandas as pd

from errors import InvalidBarError

logger = logging.getLogger(__name__)

MONTH_LOOKUP = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

# Tried in order; the first pattern that yields a real calendar date wins.
# Day-first layouts come before the US month-first fallback.
_DATE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$"), "dmy"),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), "dmy"),
    (re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$"), "ymd"),
    (re.compile(r"^(\d{1,2})-([A-Za-z]+)-(\d{2})$"), "dmy"),
    (re.compile(r"^(\d{1,2})\s+([A-Za-z]+)\s+(\d{2})$"), "dmy"),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2})$"), "dmy"),
    (re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{2})$"), "dmy"),
    (re.compile(r"^(\d{1,2})-([A-Za-z]+)-(\d{4})$"), "dmy"),
    (re.compile(r"^(\d{1,2})\s+([A-Za-z]+)\s+(\d{4})$"), "dmy"),
    (re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$"), "dmy"),
    (re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$"), "ymd"),
    (re.compile(r"^([A-Za-z]+)\s+(\d{1,2}),?\s+(\d{4})$"), "mdy"),
    (re.compile(r"^(\d{4})(\d{2})(\d{2})$"), "ymd"),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), "mdy"),
]

_COLUMN_ALIASES = {
    "date": "date", "timestamp": "date", "datetime": "date",
    "ticker": "ticker", "symbol": "ticker",
    "open": "open",
    "high": "high",
    "low": "low",
    "close": "close", "price": "close",
    "volume": "volume", "vol": "volume",
    "openinterest": "open_interest", "oi": "open_interest",
}

REQUIRED_PRICE_FIELDS = ("open", "high", "low", "close")


@dataclass(frozen=True)
class Bar:
    """One daily OHLCV bar for a single ticker."""
    date: dt.date
    ticker: str
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    open_interest: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.date, dt.datetime):
            object.__setattr__(self, "date", self.date.date())
        elif not isinstance(self.date, dt.date):
            raise InvalidBarError(f"invalid or missing date: {self.date!r}")
        numeric = ("open", "high", "low", "close", "volume")
        if self.open_interest is not None:
            numeric += ("open_interest",)
        for name in numeric:
            value = getattr(self, name)
            try:
                object.__setattr__(self, name, float(value))
            except (TypeError, ValueError) as exc:
                raise InvalidBarError(f"non-numeric {name} {value!r} on {self.date}") from exc

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any], ticker: str | None = None) -> "Bar":
        """Build a Bar from a loosely keyed mapping (storage row or CSV line).

        Keys are matched case- and punctuation-insensitively, so ``Date``,
        ``openInterest``, ``open_interest`` and ``OI`` all resolve.
        A missing or blank volume reads as 0.0; one that is present but not a
        finite number is rejected like a bad price.
        Raises InvalidBarError when the date or a price field is missing.
        """
        fields: dict[str, Any] = {}
        for key, value in row.items():
            canonical = _COLUMN_ALIASES.get(_normalize_column(str(key)))
            if canonical is not None and canonical not in fields:
                fields[canonical] = value

        date = parse_date(fields.get("date"))
        if date is None:
            raise InvalidBarError(f"invalid or missing date: {fields.get('date')!r}")

        prices: dict[str, float] = {}
        for name in REQUIRED_PRICE_FIELDS:
            value = parse_number(fields.get(name))
            if value is None:
                raise InvalidBarError(f"invalid or missing {name} on {date}")
            prices[name] = value

        volume = 0.0
        raw_volume = fields.get("volume")
        if raw_volume is not None and str(raw_volume).strip():
            volume = parse_number(raw_volume)
            if volume is None:
                raise InvalidBarError(f"invalid volume {raw_volume!r} on {date}")

        symbol = str(fields.get("ticker") or ticker or "").strip().upper()
        return cls(
            date=date,
            ticker=symbol,
            volume=volume,
            open_interest=parse_number(fields.get("open_interest")),
            **prices,
        )


def _normalize_column(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def _pivot_year(text: str) -> int:
    year = int(text)
    if len(text) == 2:
        year += 2000 if year <= 49 else 1900
    return year


def _date_from_parts(day: str, month: str, year: str) -> dt.date | None:
    month_num = int(month) if month.isdigit() else MONTH_LOOKUP.get(month.lower())
    if month_num is None:
        return None
    year_num = _pivot_year(year)
    if not 1900 <= year_num <= 2100:
        return None
    try:
        return dt.date(year_num, month_num, int(day))
    except ValueError:
        return None


def parse_date(value: Any) -> dt.date | None:
    """Parse a bar date from a date object or one of the supported text layouts.

    Text is tried against day-first numeric layouts, ISO, month-name layouts
    (2-digit years pivot at 50) and compact YYYYMMDD, then US month-first,
    then pandas' own parser. Returns None when nothing matches.
    """
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value

    text = str(value).strip()
    if not text:
        return None

    for pattern, order in _DATE_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        a, b, c = match.groups()
        if order == "dmy":
            parsed = _date_from_parts(a, b, c)
        elif order == "ymd":
            parsed = _date_from_parts(c, b, a)
        else:
            parsed = _date_from_parts(b, a, c)
        if parsed is not None:
            return parsed

    fallback = pd.to_datetime(text, errors="coerce")
    if pd.isna(fallback) or not 1900 <= fallback.year <= 2100:
        return None
    return fallback.date()


def parse_number(value: Any, default: float | None = None) -> float | None:
    """Parse a numeric cell, tolerating thousands separators. Non-finite -> default."""
    if value is None:
        return default
    if isinstance(value, str):
        cleaned = value.replace(",", "").strip()
        if not cleaned:
            return default
        try:
            number = float(cleaned)
        except ValueError:
            return default
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return default
    if not math.isfinite(number):
        return default
    return number


def read_bars_csv(
    source: str | IO[str],
    ticker: str | None = None,
    skip_invalid: bool = False,
    drop_duplicates: bool = False,
) -> list[Bar]:
    """
    Read daily bars from an uploaded CSV file or buffer.

    Args:
        source: Path or text buffer.
        ticker: Ticker used for rows without a ticker/symbol column.
        skip_invalid: Skip rows with a bad date or price (logged) instead of
            raising InvalidBarError.
        drop_duplicates: Keep only the last row for each date.

    Returns:
        Bars in file order.
    """
    raw = pd.read_csv(source, dtype=str, keep_default_na=False)
    bars: list[Bar] = []
    skipped = 0
    for line_no, row in enumerate(raw.to_dict(orient="records"), start=1):
        try:
            bars.append(Bar.from_mapping(row, ticker=ticker))
        except InvalidBarError as exc:
            if not skip_invalid:
                raise InvalidBarError(str(exc), index=line_no) from exc
            skipped += 1
            logger.debug("Skipping CSV row %d: %s", line_no, exc)

    if skipped:
        logger.warning("Skipped %d invalid rows of %d", skipped, len(raw))

    if drop_duplicates:
        latest: dict[dt.date, Bar] = {}
        for bar in bars:
            latest[bar.date] = bar
        bars = sorted(latest.values(), key=lambda b: b.date)
    return bars


def bars_from_frame(df: pd.DataFrame, ticker: str) -> list[Bar]:
    """Convert an OHLC DataFrame indexed by date (e.g. a vendor download) to bars."""
    if df.empty:
        return []
    df = df.copy()
    if isinstance(df.columns, pd.MultiIndex):
        df.columns = df.columns.get_level_values(0)
    idx = pd.to_datetime(df.index, errors="coerce")
    if idx.tz is not None:
        idx = idx.tz_localize(None)
    df.index = idx
    df = df[df.index.notna()]
    df = df.rename(columns=lambda c: _normalize_column(str(c)))

    rows: Iterable[tuple[Any, ...]] = zip(df.index, df.to_dict(orient="records"))
    return [Bar.from_mapping({**record, "date": stamp}, ticker=ticker) for stamp, record in rows]

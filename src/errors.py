"""
Exception hierarchy for the seasonality engine.

All engine exceptions derive from SeasonalityError so callers can catch
everything raised by the engine uniformly.
"""
from __future__ import annotations


class SeasonalityError(Exception):
    """Base class for engine errors."""


class ConfigError(SeasonalityError, ValueError):
    """Raised when a filter or event configuration is invalid."""


class InvalidBarError(SeasonalityError, ValueError):
    """Raised when a bar is malformed, misses a required field or has close <= 0.

    Fatal: the whole batch is rejected before any aggregation happens.
    """

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message if index is None else f"bar {index}: {message}")
        self.index = index


class DuplicateDateError(SeasonalityError, ValueError):
    """Raised when two bars of the same symbol share a date."""

    def __init__(self, dates: list) -> None:
        shown = ", ".join(str(d) for d in dates[:5])
        more = f" (+{len(dates) - 5} more)" if len(dates) > 5 else ""
        super().__init__(f"duplicate bar dates: {shown}{more}")
        self.dates = dates


class LinkageError(SeasonalityError, RuntimeError):
    """Raised when a row has no enclosing period record.

    Never expected in correct code; signals an aggregator/linker mismatch.
    """


class InsufficientDataError(SeasonalityError):
    """Raised when a single statistic cannot be computed.

    Non-fatal: compute_statistics() turns it into a null metric with a reason.
    """

    def __init__(self, metric: str, reason: str) -> None:
        super().__init__(f"{metric}: {reason}")
        self.metric = metric
        self.reason = reason


class EmptyFilterResultError(SeasonalityError):
    """Raised by strict filtering when a FilterConfig removes every record."""


__all__ = [
    "SeasonalityError",
    "ConfigError",
    "InvalidBarError",
    "DuplicateDateError",
    "LinkageError",
    "InsufficientDataError",
    "EmptyFilterResultError",
]

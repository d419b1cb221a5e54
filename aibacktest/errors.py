"""
Exception hierarchy for the backtest engine.

Business outcomes such as an order expiring or the oracle declining to
trade are not errors and never raise.  The classes below cover the
conditions that callers have to react to: a bad configuration, missing
market data, a failed analysis step, storage problems and genuine bugs
in the state machines.
"""

from __future__ import annotations


class BacktestError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(BacktestError):
    """The run configuration is invalid.  Raised before any session exists."""

    def __init__(self, errors) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {', '.join(self.errors)}")


class DataFetchError(BacktestError):
    """Market data could not be retrieved or failed validation."""


class AnalysisError(BacktestError):
    """The decision oracle or its market context could not be obtained."""


class ChartError(BacktestError):
    """A chart image could not be rendered."""


class PersistenceError(BacktestError):
    """A session snapshot could not be written, read or removed."""


class InvalidStateError(BacktestError):
    """An order, position or session was asked for an illegal transition."""

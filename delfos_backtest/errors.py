"""Error taxonomy for the backtest engine.

Recoverable errors (configuration, sample size, data gaps) degrade a run
gracefully. Faults are fatal to the stage that raised them and are recorded
on the run record by the orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class BacktestError(Exception):
    """Base class for all backtest engine errors."""


class ConfigurationError(BacktestError):
    """Invalid or missing run parameters. The engine is never started."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class InsufficientSampleError(BacktestError):
    """Too few trades to build a meaningful return distribution."""

    def __init__(self, trade_count: int, minimum: int):
        super().__init__(
            f"Monte Carlo requires at least {minimum} trades, got {trade_count}"
        )
        self.trade_count = trade_count
        self.minimum = minimum


class DataGapError(BacktestError):
    """Missing market data for part of a symbol's range. Logged, never fatal."""

    def __init__(
        self,
        symbol: str,
        gap_start: datetime | None,
        gap_end: datetime | None,
    ):
        if gap_start is None and gap_end is None:
            message = f"No bars available for {symbol} in the requested range"
        else:
            message = f"Missing bars for {symbol} between {gap_start} and {gap_end}"
        super().__init__(message)
        self.symbol = symbol
        self.gap_start = gap_start
        self.gap_end = gap_end


class EngineFault(BacktestError):
    """Unexpected failure during bar replay."""


class SimulationFault(BacktestError):
    """Unexpected failure during Monte Carlo resampling."""


class RunCancelledError(BacktestError):
    """A run was cancelled cooperatively."""


class RunNotFoundError(BacktestError, LookupError):
    """No run exists with the given identifier."""

    def __init__(self, run_id: str):
        super().__init__(f"Backtest run not found: {run_id}")
        self.run_id = run_id


class InvalidTransitionError(BacktestError, ValueError):
    """A run status transition violated the state machine."""

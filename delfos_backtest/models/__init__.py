"""Domain models for bars, signals, positions and trades."""

from delfos_backtest.models.bar import Bar, ensure_utc
from delfos_backtest.models.position import Position
from delfos_backtest.models.signal import Signal, SignalType
from delfos_backtest.models.trade import CloseReason, Side, Trade

__all__ = [
    "Bar",
    "CloseReason",
    "Position",
    "Side",
    "Signal",
    "SignalType",
    "Trade",
    "ensure_utc",
]

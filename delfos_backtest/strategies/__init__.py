"""Pluggable signal functions."""

from delfos_backtest.strategies.ema_breakout import EmaBreakoutStrategy
from delfos_backtest.strategies.interface import MarketState, Strategy

__all__ = ["EmaBreakoutStrategy", "MarketState", "Strategy"]

"""Technical indicators used by the reference strategy."""

from delfos_backtest.indicators.atr import calculate_atr, true_ranges
from delfos_backtest.indicators.ema import calculate_ema

__all__ = ["calculate_atr", "calculate_ema", "true_ranges"]

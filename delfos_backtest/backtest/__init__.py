"""Backtest engine, Monte Carlo simulator and metrics calculator."""

from delfos_backtest.backtest.cost_model import CostModel
from delfos_backtest.backtest.engine import BacktestEngine, BacktestResult
from delfos_backtest.backtest.equity import Drawdown, EquityCurve
from delfos_backtest.backtest.metrics import MetricsCalculator, MetricsSnapshot
from delfos_backtest.backtest.monte_carlo import (
    MonteCarloScenario,
    MonteCarloSimulator,
    MonteCarloSummary,
    estimate_trades_per_day,
    extract_trade_returns,
)

__all__ = [
    "BacktestEngine",
    "BacktestResult",
    "CostModel",
    "Drawdown",
    "EquityCurve",
    "MetricsCalculator",
    "MetricsSnapshot",
    "MonteCarloScenario",
    "MonteCarloSimulator",
    "MonteCarloSummary",
    "estimate_trades_per_day",
    "extract_trade_returns",
]

"""Relational record sink for runs, ledgers, scenarios and metrics."""

from delfos_backtest.persistence.engine import build_engine, build_session_factory
from delfos_backtest.persistence.models import (
    BacktestMetricsRecord,
    BacktestRunRecord,
    BacktestTradeRecord,
    Base,
    MonteCarloScenarioRecord,
)
from delfos_backtest.persistence.repository import BacktestRepository

__all__ = [
    "BacktestMetricsRecord",
    "BacktestRepository",
    "BacktestRunRecord",
    "BacktestTradeRecord",
    "Base",
    "MonteCarloScenarioRecord",
    "build_engine",
    "build_session_factory",
]

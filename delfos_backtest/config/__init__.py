"""Configuration: run parameter sets and engine settings."""

from delfos_backtest.config.params import (
    CostParams,
    ParameterSnapshot,
    RiskParams,
    StrategyParams,
    resolve_params,
)
from delfos_backtest.config.settings import EngineSettings, load_settings

__all__ = [
    "CostParams",
    "EngineSettings",
    "ParameterSnapshot",
    "RiskParams",
    "StrategyParams",
    "load_settings",
    "resolve_params",
]

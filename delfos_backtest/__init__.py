"""Delfos backtest engine: historical replay and Monte Carlo risk simulation."""

__version__ = "0.1.0"

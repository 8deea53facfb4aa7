"""Prometheus instrumentation."""

from delfos_backtest.monitoring.metrics import EngineMetrics, MetricsConfig

__all__ = ["EngineMetrics", "MetricsConfig"]

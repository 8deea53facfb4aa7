"""Run lifecycle orchestration."""

from delfos_backtest.orchestration.orchestrator import RunOrchestrator

__all__ = ["RunOrchestrator"]

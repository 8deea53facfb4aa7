"""Run lifecycle."""

from delfos_backtest.core.state_machine import (
    VALID_TRANSITIONS,
    MonteCarloStatus,
    RunStateMachine,
    RunStatus,
)

__all__ = ["VALID_TRANSITIONS", "MonteCarloStatus", "RunStateMachine", "RunStatus"]

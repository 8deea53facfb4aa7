"""Circuit breakers that force-close positions and pause entries."""

from delfos_backtest.breakers.manager import BreakerManager
from delfos_backtest.breakers.models import ActiveBreaker, BreakerEvent, BreakerType

__all__ = [
    "ActiveBreaker",
    "BreakerEvent",
    "BreakerManager",
    "BreakerType",
]

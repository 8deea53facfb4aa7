"""Data models for the circuit breaker system."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BreakerType(str, Enum):
    """Circuit breakers evaluated during a backtest."""

    POSITION_DRAWDOWN = "position_drawdown"
    DAILY_LOSS = "daily_loss"
    CAMPAIGN_DRAWDOWN = "campaign_drawdown"
    ASSET_STOP_LIMIT = "asset_stop_limit"

    @property
    def level(self) -> str:
        """Breaker scope: asset for per-symbol breakers, global for account-wide ones."""
        if self in (BreakerType.POSITION_DRAWDOWN, BreakerType.ASSET_STOP_LIMIT):
            return "asset"
        return "global"


@dataclass
class ActiveBreaker:
    """An entry pause currently in force.

    ``expires_at`` of None means the pause lasts for the rest of the run.
    ``symbol`` of None means the pause applies to every symbol.
    """

    breaker_type: BreakerType
    triggered_at: datetime
    expires_at: datetime | None
    reason: str
    symbol: str | None = None
    context: dict[str, float] = field(default_factory=dict)

    def applies_to(self, symbol: str) -> bool:
        return self.symbol is None or self.symbol == symbol


@dataclass(frozen=True)
class BreakerEvent:
    """A breaker trip recorded in the backtest result."""

    breaker_type: BreakerType
    triggered_at: datetime
    reason: str
    symbol: str | None = None
    expires_at: datetime | None = None
    context: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "breaker_type": self.breaker_type.value,
            "triggered_at": self.triggered_at.isoformat(),
            "reason": self.reason,
            "symbol": self.symbol,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class BreakerStats:
    """Breaker activity of one run, by level."""

    asset_triggered: int = 0
    global_triggered: int = 0
    entries_blocked: int = 0

    @classmethod
    def from_events(cls, events: list[BreakerEvent], entries_blocked: int = 0) -> "BreakerStats":
        return cls(
            asset_triggered=sum(1 for e in events if e.breaker_type.level == "asset"),
            global_triggered=sum(1 for e in events if e.breaker_type.level == "global"),
            entries_blocked=entries_blocked,
        )

"""Trade ledger models."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class Side(str, Enum):
    """Position direction."""

    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self is Side.LONG else -1


class CloseReason(str, Enum):
    """Why a position was closed."""

    SIGNAL = "signal"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    TAKE_PROFIT = "take_profit"
    BREAKER = "breaker"
    END_OF_PERIOD = "end_of_period"

    @property
    def is_stop(self) -> bool:
        """Stop-outs count towards the per-asset daily stop limit."""
        return self in (CloseReason.STOP_LOSS, CloseReason.TRAILING_STOP)


@dataclass(frozen=True)
class Trade:
    """A closed trade. Write-once, owned by exactly one run.

    Attributes:
        symbol: Traded symbol
        side: long or short
        entry_time: Fill time of the entry
        entry_price: Entry fill price (slippage included)
        exit_time: Fill time of the exit
        exit_price: Exit fill price (slippage included)
        quantity: Position size in units
        notional: Entry notional (entry_price * quantity)
        entry_equity: Account equity when the position was opened
        gross_pnl: P&L before fees and funding
        fees: Entry + exit fees and funding
        slippage: Cost attributed to slippage on both fills
        net_pnl: Realized P&L (gross_pnl - fees)
        close_reason: Why the position was closed
        breaker_type: Breaker that forced the close, if any
    """

    symbol: str
    side: Side
    entry_time: datetime
    entry_price: Decimal
    exit_time: datetime
    exit_price: Decimal
    quantity: Decimal
    notional: Decimal
    entry_equity: Decimal
    gross_pnl: Decimal
    fees: Decimal
    slippage: Decimal
    net_pnl: Decimal
    close_reason: CloseReason
    breaker_type: str | None = None
    signal_strength: float = 0.0
    atr_at_entry: Decimal | None = None
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None

    def __post_init__(self) -> None:
        """Validate ledger invariants."""
        if self.exit_time < self.entry_time:
            raise ValueError(
                f"Trade exit {self.exit_time} precedes entry {self.entry_time}"
            )
        if self.quantity <= 0:
            raise ValueError("Trade quantity must be positive")

    @property
    def return_on_equity(self) -> Decimal:
        """Net P&L relative to equity at entry."""
        if self.entry_equity <= 0:
            return Decimal("0")
        return self.net_pnl / self.entry_equity

    @property
    def is_winner(self) -> bool:
        return self.net_pnl > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_time": self.entry_time.isoformat(),
            "entry_price": str(self.entry_price),
            "exit_time": self.exit_time.isoformat(),
            "exit_price": str(self.exit_price),
            "quantity": str(self.quantity),
            "notional": str(self.notional),
            "entry_equity": str(self.entry_equity),
            "gross_pnl": str(self.gross_pnl),
            "fees": str(self.fees),
            "slippage": str(self.slippage),
            "net_pnl": str(self.net_pnl),
            "close_reason": self.close_reason.value,
            "breaker_type": self.breaker_type,
            "signal_strength": self.signal_strength,
            "atr_at_entry": str(self.atr_at_entry) if self.atr_at_entry is not None else None,
            "stop_loss": str(self.stop_loss) if self.stop_loss is not None else None,
            "take_profit": str(self.take_profit) if self.take_profit is not None else None,
        }

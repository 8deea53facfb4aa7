"""Signal models for trading decisions."""

from dataclasses import dataclass
from enum import Enum


class SignalType(str, Enum):
    """Trading signal types."""

    HOLD = "HOLD"  # No action
    ENTER_LONG = "ENTER_LONG"
    ENTER_SHORT = "ENTER_SHORT"
    EXIT = "EXIT"  # Exit current position


@dataclass(frozen=True)
class Signal:
    """Trading signal with metadata.

    ``volatility`` is the strategy's volatility estimate (e.g. ATR) in price
    units. The engine derives stop and take-profit distances from it; when it
    is missing the risk parameters' default stop percentage is used.
    """

    signal_type: SignalType
    symbol: str
    strength: float = 0.0
    volatility: float | None = None
    rationale: str = ""

    def __post_init__(self) -> None:
        """Validate signal data."""
        if self.strength < 0.0:
            raise ValueError("Strength must be non-negative")
        if self.volatility is not None and self.volatility < 0.0:
            raise ValueError("Volatility must be non-negative")

    @classmethod
    def hold(cls, symbol: str, rationale: str = "") -> "Signal":
        """Shortcut for a no-action signal."""
        return cls(signal_type=SignalType.HOLD, symbol=symbol, rationale=rationale)

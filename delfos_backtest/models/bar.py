"""Market data model for OHLCV bars."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from delfos_backtest.models.money import ZERO


@dataclass(frozen=True)
class Bar:
    """OHLCV bar for a single symbol."""

    symbol: str
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = ZERO

    def __post_init__(self) -> None:
        """Validate bar data integrity."""
        if self.high < max(self.open, self.close, self.low):
            raise ValueError("High must be >= open, close, and low")
        if self.low > min(self.open, self.close, self.high):
            raise ValueError("Low must be <= open, close, and high")
        if self.low <= ZERO:
            raise ValueError("Prices must be positive")
        if self.volume < ZERO:
            raise ValueError("Volume must be non-negative")
        if self.timestamp.tzinfo is None:
            raise ValueError("Bar timestamp must be timezone-aware")


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

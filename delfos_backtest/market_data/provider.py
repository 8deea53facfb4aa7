"""Abstract market data source interface."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterator

from delfos_backtest.models.bar import Bar


class MarketDataSource(ABC):
    """Read-only source of time-ordered bars per symbol.

    Attributes:
        bar_interval: Expected spacing between consecutive bars. When set,
            the engine reports larger jumps as data gaps.
    """

    bar_interval: timedelta | None = None

    @abstractmethod
    def iter_bars(self, symbol: str, start: datetime, end: datetime) -> Iterator[Bar]:
        """
        Iterate bars for a symbol within a date range.

        Args:
            symbol: Trading symbol (e.g., "BTC/USDT")
            start: Inclusive range start (timezone-aware)
            end: Inclusive range end (timezone-aware)

        Returns:
            Iterator of bars, oldest first, strictly increasing timestamps
        """
        ...

"""In-memory market data source."""

from datetime import datetime, timedelta
from typing import Iterable, Iterator

from delfos_backtest.market_data.provider import MarketDataSource
from delfos_backtest.models.bar import Bar


class InMemoryMarketDataSource(MarketDataSource):
    """Serves bars held in memory. Used by tests and by embedding callers.

    Example:
        >>> source = InMemoryMarketDataSource({"BTC/USDT": bars}, bar_interval=timedelta(hours=1))
        >>> list(source.iter_bars("BTC/USDT", start, end))
    """

    def __init__(
        self,
        bars: dict[str, Iterable[Bar]],
        bar_interval: timedelta | None = None,
    ):
        """Initialize the source.

        Args:
            bars: Mapping of symbol to its bars (any order)
            bar_interval: Expected spacing between bars, for gap detection
        """
        self._bars: dict[str, list[Bar]] = {}
        for symbol, symbol_bars in bars.items():
            ordered = sorted(symbol_bars, key=lambda b: b.timestamp)
            for bar in ordered:
                if bar.symbol != symbol:
                    raise ValueError(f"Bar for {bar.symbol} filed under {symbol}")
            self._bars[symbol] = ordered
        self.bar_interval = bar_interval

    @property
    def symbols(self) -> list[str]:
        return list(self._bars)

    def iter_bars(self, symbol: str, start: datetime, end: datetime) -> Iterator[Bar]:
        """Yield bars for the symbol with start <= timestamp <= end."""
        for bar in self._bars.get(symbol, []):
            if bar.timestamp < start:
                continue
            if bar.timestamp > end:
                break
            yield bar

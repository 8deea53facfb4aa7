"""Market data sources consumed by the backtest engine."""

from delfos_backtest.market_data.csv_provider import CsvMarketDataSource, symbol_to_filename
from delfos_backtest.market_data.memory_provider import InMemoryMarketDataSource
from delfos_backtest.market_data.provider import MarketDataSource

__all__ = [
    "CsvMarketDataSource",
    "InMemoryMarketDataSource",
    "MarketDataSource",
    "symbol_to_filename",
]

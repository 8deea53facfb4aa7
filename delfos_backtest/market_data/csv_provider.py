"""CSV market data source backed by pandas."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Iterator

import pandas as pd

from delfos_backtest.market_data.provider import MarketDataSource
from delfos_backtest.models.bar import Bar

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("timestamp", "open", "high", "low", "close")


def symbol_to_filename(symbol: str) -> str:
    """Map a symbol to its CSV file name ("BTC/USDT" -> "BTC_USDT.csv")."""
    return symbol.replace("/", "_").replace(":", "_") + ".csv"


class CsvMarketDataSource(MarketDataSource):
    """Market data source reading one OHLCV CSV file per symbol.

    Files live in ``data_dir`` and are named after the symbol (see
    :func:`symbol_to_filename`). Columns: timestamp (ISO-8601, UTC assumed
    when naive), open, high, low, close and optionally volume.

    Example:
        >>> source = CsvMarketDataSource("./data", bar_interval=timedelta(minutes=1))
        >>> bars = list(source.iter_bars("BTC/USDT", start, end))
    """

    def __init__(self, data_dir: str | Path, bar_interval: timedelta | None = None):
        """Initialize the source.

        Args:
            data_dir: Directory containing one CSV file per symbol
            bar_interval: Expected spacing between bars, for gap detection
        """
        self.data_dir = Path(data_dir)
        self.bar_interval = bar_interval
        self._frames: dict[str, pd.DataFrame] = {}

    def _load(self, symbol: str) -> pd.DataFrame | None:
        if symbol in self._frames:
            return self._frames[symbol]

        data_file = self.data_dir / symbol_to_filename(symbol)
        if not data_file.exists():
            logger.warning(f"No data file for {symbol}: {data_file}")
            return None

        # Prices are read as strings so they reach Decimal without float rounding
        df = pd.read_csv(data_file, dtype=str)
        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"{data_file} is missing columns: {', '.join(missing)}")
        if "volume" not in df.columns:
            df["volume"] = "0"

        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        df = df.sort_values("timestamp").drop_duplicates("timestamp").reset_index(drop=True)

        logger.info(f"Loaded {len(df)} bars for {symbol} from {data_file.name}")
        self._frames[symbol] = df
        return df

    def iter_bars(self, symbol: str, start: datetime, end: datetime) -> Iterator[Bar]:
        """Yield bars for the symbol with start <= timestamp <= end."""
        df = self._load(symbol)
        if df is None:
            return

        window = df[(df["timestamp"] >= pd.Timestamp(start)) & (df["timestamp"] <= pd.Timestamp(end))]
        for row in window.itertuples(index=False):
            yield Bar(
                symbol=symbol,
                timestamp=row.timestamp.to_pydatetime(),
                open=Decimal(row.open),
                high=Decimal(row.high),
                low=Decimal(row.low),
                close=Decimal(row.close),
                volume=Decimal(row.volume or "0"),
            )

import math
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from delfos_backtest.config.params import StrategyParams
from delfos_backtest.config.settings import EngineSettings
from delfos_backtest.market_data.csv_provider import symbol_to_filename
from delfos_backtest.models.bar import Bar
from delfos_backtest.models.money import money
from delfos_backtest.models.position import Position
from delfos_backtest.models.signal import Signal, SignalType
from delfos_backtest.models.trade import CloseReason, Side, Trade
from delfos_backtest.monitoring.metrics import EngineMetrics, MetricsConfig
from delfos_backtest.persistence.repository import BacktestRepository
from delfos_backtest.strategies.interface import MarketState

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_bars(
    symbol: str,
    closes: list[float],
    start: datetime = T0,
    interval: timedelta = timedelta(hours=1),
    spread: float = 0.001,
) -> list[Bar]:
    """Bars whose open is the previous close and whose range adds a small spread."""
    bars: list[Bar] = []
    previous = closes[0]
    for i, close in enumerate(closes):
        open_ = previous
        high = max(open_, close) * (1 + spread)
        low = min(open_, close) * (1 - spread)
        bars.append(
            Bar(
                symbol=symbol,
                timestamp=start + interval * i,
                open=money(round(open_, 6)),
                high=money(round(high, 6)),
                low=money(round(low, 6)),
                close=money(round(close, 6)),
                volume=Decimal("1"),
            )
        )
        previous = close
    return bars


def wave_closes(count: int, base: float = 100.0, amplitude: float = 0.01) -> list[float]:
    """Oscillating closes with a slight upward drift."""
    return [base * (1 + amplitude * math.sin(i / 2.0) + 0.0001 * i) for i in range(count)]


def declining_closes(count: int, base: float = 100.0, step: float = 0.005) -> list[float]:
    """Closes falling by ``step`` per bar."""
    return [base * (1 - step) ** i for i in range(count)]


class NeverTradeStrategy:
    """Never enters."""

    name = "never_trade"

    def generate_signal(self, state: MarketState, params: StrategyParams) -> Signal:
        return Signal.hold(state.symbol)


class BuyAndHoldStrategy:
    """Goes long whenever flat and never exits."""

    name = "buy_and_hold"

    def generate_signal(self, state: MarketState, params: StrategyParams) -> Signal:
        if state.position_side is None:
            return Signal(SignalType.ENTER_LONG, state.symbol, strength=1.0)
        return Signal.hold(state.symbol)


class ClockStrategy:
    """Enters long on hours divisible by 4 and exits two hours later."""

    name = "clock"

    def generate_signal(self, state: MarketState, params: StrategyParams) -> Signal:
        hour = state.current.timestamp.hour
        if state.position_side is None and hour % 4 == 0:
            return Signal(SignalType.ENTER_LONG, state.symbol, strength=1.0)
        if state.position_side is not None and hour % 4 == 2:
            return Signal(SignalType.EXIT, state.symbol)
        return Signal.hold(state.symbol)


class FailingStrategy:
    """Raises on every bar."""

    name = "failing"

    def generate_signal(self, state: MarketState, params: StrategyParams) -> Signal:
        raise RuntimeError("strategy exploded")


@pytest.fixture(autouse=True)
def clean_config_env() -> Generator[None, None, None]:
    """Ensure DELFOS_* env vars do not interfere with tests unless explicitly set."""
    def _config_keys() -> list[str]:
        return [k for k in os.environ if k.startswith("DELFOS_") or k == "DATABASE_URL"]

    original_env = {key: os.environ[key] for key in _config_keys()}
    for key in original_env:
        os.environ.pop(key, None)

    yield

    for key in _config_keys():
        os.environ.pop(key, None)
    os.environ.update(original_env)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def repository() -> BacktestRepository:
    """Repository over a fresh in-memory SQLite database."""
    return BacktestRepository.from_url("sqlite:///:memory:")


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(run_workers=2, monte_carlo_workers=2, metrics_enabled=True)


@pytest.fixture
def engine_metrics() -> EngineMetrics:
    return EngineMetrics(MetricsConfig(enabled=True))


@pytest.fixture
def trade_factory() -> Callable[..., Trade]:
    """Build ledger trades with a given net P&L."""

    def _make(
        net_pnl: str | Decimal,
        entry_time: datetime = T0,
        hours: int = 1,
        symbol: str = "BTC/USDT",
        entry_equity: str | Decimal = "10000",
        close_reason: CloseReason = CloseReason.SIGNAL,
        **overrides: Any,
    ) -> Trade:
        net = Decimal(net_pnl)
        fields: dict[str, Any] = {
            "symbol": symbol,
            "side": Side.LONG,
            "entry_time": entry_time,
            "entry_price": Decimal("100"),
            "exit_time": entry_time + timedelta(hours=hours),
            "exit_price": Decimal("100") + net / 10,
            "quantity": Decimal("10"),
            "notional": Decimal("1000"),
            "entry_equity": Decimal(entry_equity),
            "gross_pnl": net,
            "fees": Decimal("0"),
            "slippage": Decimal("0"),
            "net_pnl": net,
            "close_reason": close_reason,
        }
        fields.update(overrides)
        return Trade(**fields)

    return _make


@pytest.fixture
def position_factory() -> Callable[..., Position]:
    """Build open long positions marked at a given price."""

    def _make(
        mark: str = "100",
        symbol: str = "BTC/USDT",
        entry_price: str = "100",
        quantity: str = "10",
    ) -> Position:
        entry = Decimal(entry_price)
        qty = Decimal(quantity)
        position = Position(
            symbol=symbol,
            side=Side.LONG,
            entry_time=T0,
            entry_price=entry,
            quantity=qty,
            notional=entry * qty,
            entry_fee=Decimal("0"),
            entry_slippage=Decimal("0"),
            entry_equity=Decimal("10000"),
            stop_loss=entry - 2,
            take_profit_1=entry + 2,
            take_profit_2=entry + 4,
            atr_at_entry=Decimal("1"),
        )
        position.mark(Decimal(mark))
        return position

    return _make


def write_csv(data_dir: Path, bars: list[Bar]) -> Path:
    """Write bars of one symbol as an OHLCV CSV file named after the symbol."""
    path = data_dir / symbol_to_filename(bars[0].symbol)
    lines = ["timestamp,open,high,low,close,volume"]
    lines += [
        f"{b.timestamp.isoformat()},{b.open},{b.high},{b.low},{b.close},{b.volume}" for b in bars
    ]
    path.write_text("\n".join(lines) + "\n")
    return path

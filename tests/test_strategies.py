"""Unit tests for the EMA breakout strategy."""

import pytest

from conftest import build_bars
from delfos_backtest.config.params import StrategyParams
from delfos_backtest.models.signal import SignalType
from delfos_backtest.models.trade import Side
from delfos_backtest.strategies.ema_breakout import EmaBreakoutStrategy
from delfos_backtest.strategies.interface import MarketState


@pytest.fixture
def strategy() -> EmaBreakoutStrategy:
    return EmaBreakoutStrategy()


@pytest.fixture
def params() -> StrategyParams:
    return StrategyParams(
        ema_fast=3,
        ema_slow=5,
        atr_period=3,
        breakout_long_atr=0.5,
        breakout_short_atr=0.5,
        min_atr_pct=0.0,
    )


def _state(closes: list[float], position_side: Side | None = None) -> MarketState:
    bars = build_bars("BTC/USDT", closes)
    return MarketState(symbol="BTC/USDT", bars=tuple(bars), position_side=position_side)


def _flat(count: int = 10) -> list[float]:
    return [100.0 if i % 2 == 0 else 101.0 for i in range(count)]


def test_required_bars(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    assert strategy.required_bars(params) == 6
    assert strategy.required_bars(StrategyParams()) == 37


def test_insufficient_data_holds(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    signal = strategy.generate_signal(_state([100.0, 101.0]), params)

    assert signal.signal_type == SignalType.HOLD
    assert signal.rationale == "insufficient_data"


def test_upside_breakout_enters_long(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    signal = strategy.generate_signal(_state(_flat() + [130.0]), params)

    assert signal.signal_type == SignalType.ENTER_LONG
    assert signal.symbol == "BTC/USDT"
    assert signal.strength > 1.0
    assert signal.volatility is not None and signal.volatility > 0


def test_downside_breakout_enters_short(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    signal = strategy.generate_signal(_state(_flat() + [70.0]), params)

    assert signal.signal_type == SignalType.ENTER_SHORT
    assert signal.strength > 1.0


def test_shorts_disabled(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    no_shorts = params.model_copy(update={"allow_short": False})

    signal = strategy.generate_signal(_state(_flat() + [70.0]), no_shorts)

    assert signal.signal_type == SignalType.HOLD


def test_no_breakout_holds(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    signal = strategy.generate_signal(_state(_flat(12)), params)

    assert signal.signal_type == SignalType.HOLD


def test_low_volatility_holds(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    quiet = params.model_copy(update={"min_atr_pct": 0.5})

    signal = strategy.generate_signal(_state(_flat() + [130.0]), quiet)

    assert signal.signal_type == SignalType.HOLD
    assert signal.rationale == "low_volatility"


def test_long_position_exits_on_trend_reversal(
    strategy: EmaBreakoutStrategy, params: StrategyParams
) -> None:
    closes = [130.0 - 1.5 * i for i in range(20)]

    signal = strategy.generate_signal(_state(closes, Side.LONG), params)

    assert signal.signal_type == SignalType.EXIT
    assert signal.rationale == "trend_reversal"


def test_long_position_holds_while_trend_intact(
    strategy: EmaBreakoutStrategy, params: StrategyParams
) -> None:
    closes = [100.0 + 1.5 * i for i in range(20)]

    signal = strategy.generate_signal(_state(closes, Side.LONG), params)

    assert signal.signal_type == SignalType.HOLD
    assert signal.rationale == "in_position"


def test_short_position_exits_on_trend_reversal(
    strategy: EmaBreakoutStrategy, params: StrategyParams
) -> None:
    closes = [100.0 + 1.5 * i for i in range(20)]

    signal = strategy.generate_signal(_state(closes, Side.SHORT), params)

    assert signal.signal_type == SignalType.EXIT


def test_strategy_is_deterministic(strategy: EmaBreakoutStrategy, params: StrategyParams) -> None:
    state = _state(_flat() + [130.0])

    assert strategy.generate_signal(state, params) == strategy.generate_signal(state, params)

"""EMA trend / ATR breakout strategy."""

from delfos_backtest.config.params import StrategyParams
from delfos_backtest.indicators.atr import calculate_atr
from delfos_backtest.indicators.ema import calculate_ema
from delfos_backtest.models.signal import Signal, SignalType
from delfos_backtest.models.trade import Side
from delfos_backtest.strategies.interface import MarketState


class EmaBreakoutStrategy:
    """Trend-following breakout using EMA alignment and ATR distance.

    Rules:
        Close > fast EMA + breakout_long_atr * ATR and fast EMA > slow EMA -> ENTER_LONG
        Close < fast EMA - breakout_short_atr * ATR and fast EMA < slow EMA -> ENTER_SHORT
        Open position while the EMAs cross against it -> EXIT
    """

    name = "ema_breakout"

    @staticmethod
    def required_bars(params: StrategyParams) -> int:
        return max(params.ema_slow, params.atr_period + 1) + 1

    def generate_signal(self, state: MarketState, params: StrategyParams) -> Signal:
        """
        Analyze the symbol for breakout entries and trend reversal exits.

        Strength is the distance past the breakout level in units of the
        threshold (1.0 means exactly at the threshold).
        """
        if len(state.bars) < self.required_bars(params):
            return Signal.hold(state.symbol, "insufficient_data")

        closes = [float(b.close) for b in state.bars]
        current_price = closes[-1]

        ema_fast = calculate_ema(closes, params.ema_fast)[-1]
        ema_slow = calculate_ema(closes, params.ema_slow)[-1]
        atr = calculate_atr(list(state.bars), params.atr_period)[-1]

        if state.position_side is Side.LONG:
            if ema_fast < ema_slow:
                return Signal(SignalType.EXIT, state.symbol, volatility=atr, rationale="trend_reversal")
            return Signal.hold(state.symbol, "in_position")
        if state.position_side is Side.SHORT:
            if ema_fast > ema_slow:
                return Signal(SignalType.EXIT, state.symbol, volatility=atr, rationale="trend_reversal")
            return Signal.hold(state.symbol, "in_position")

        if atr <= 0 or atr / current_price < params.min_atr_pct:
            return Signal.hold(state.symbol, "low_volatility")

        price_diff = current_price - ema_fast
        long_threshold = params.breakout_long_atr * atr
        short_threshold = params.breakout_short_atr * atr

        if price_diff > long_threshold and ema_fast > ema_slow:
            return Signal(
                SignalType.ENTER_LONG,
                state.symbol,
                strength=price_diff / long_threshold,
                volatility=atr,
                rationale="breakout_long",
            )

        if params.allow_short and -price_diff > short_threshold and ema_fast < ema_slow:
            return Signal(
                SignalType.ENTER_SHORT,
                state.symbol,
                strength=-price_diff / short_threshold,
                volatility=atr,
                rationale="breakout_short",
            )

        return Signal.hold(state.symbol)

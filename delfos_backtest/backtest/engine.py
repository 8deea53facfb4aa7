"""Bar-replay backtest engine producing the trade ledger and equity curve."""

import heapq
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterator

from delfos_backtest.backtest.cost_model import CostModel
from delfos_backtest.backtest.equity import EquityCurve
from delfos_backtest.breakers.manager import BreakerManager
from delfos_backtest.breakers.models import BreakerEvent, BreakerStats
from delfos_backtest.config.params import ParameterSnapshot
from delfos_backtest.errors import (
    BacktestError,
    ConfigurationError,
    DataGapError,
    EngineFault,
    RunCancelledError,
)
from delfos_backtest.market_data.provider import MarketDataSource
from delfos_backtest.models.bar import Bar, ensure_utc
from delfos_backtest.models.money import ZERO, quantize, to_decimal
from delfos_backtest.models.position import Position
from delfos_backtest.models.signal import Signal, SignalType
from delfos_backtest.models.trade import CloseReason, Side, Trade
from delfos_backtest.strategies.interface import MarketState, Strategy

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 500
BREAKEVEN_ATR_OFFSET = Decimal("0.1")
BPS = Decimal(10000)


@dataclass
class BacktestResult:
    """Output of a single engine run.

    Attributes:
        run_id: Run the result belongs to
        trades: Trade ledger ordered by entry time
        equity_curve: Realized equity at each trade close
        initial_capital: Starting equity
        final_equity: Equity after every position was closed
        data_gaps: Gaps detected in the market data (tolerated)
        breaker_events: Breaker trips, in order
        bars_processed: Number of bars replayed
        entries_blocked: Entry signals rejected because a breaker was active
    """

    run_id: str
    trades: list[Trade]
    equity_curve: EquityCurve
    initial_capital: Decimal
    final_equity: Decimal
    data_gaps: list[DataGapError] = field(default_factory=list)
    breaker_events: list[BreakerEvent] = field(default_factory=list)
    bars_processed: int = 0
    entries_blocked: int = 0

    @property
    def total_pnl(self) -> Decimal:
        return quantize(sum((t.net_pnl for t in self.trades), ZERO))

    @property
    def total_fees(self) -> Decimal:
        return quantize(sum((t.fees for t in self.trades), ZERO))

    @property
    def total_slippage(self) -> Decimal:
        return quantize(sum((t.slippage for t in self.trades), ZERO))

    @property
    def winning_trades(self) -> int:
        return sum(1 for t in self.trades if t.is_winner)

    @property
    def losing_trades(self) -> int:
        return sum(1 for t in self.trades if t.net_pnl < 0)

    @property
    def breaker_stats(self) -> BreakerStats:
        return BreakerStats.from_events(self.breaker_events, self.entries_blocked)

    def to_dict(self) -> dict[str, Any]:
        """Convert summary to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "total_trades": len(self.trades),
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "initial_capital": str(self.initial_capital),
            "final_equity": str(self.final_equity),
            "total_pnl": str(self.total_pnl),
            "total_fees": str(self.total_fees),
            "total_slippage": str(self.total_slippage),
            "bars_processed": self.bars_processed,
            "entries_blocked": self.entries_blocked,
            "data_gaps": [str(gap) for gap in self.data_gaps],
            "breaker_events": [event.to_dict() for event in self.breaker_events],
        }


class BacktestEngine:
    """Replays market data through a strategy, risk and cost model.

    The engine is sequential and single-use per run: bars from every symbol
    are merged into one chronological stream (ties broken by symbol order)
    and each bar goes through mark -> exits -> breakers -> entry. Monetary
    values are Decimals quantized to 1e-8.

    Example:
        >>> engine = BacktestEngine(source, EmaBreakoutStrategy(), resolve_params(), Decimal("10000"))
        >>> result = engine.run("run-1", ["BTC/USDT"], start, end)
        >>> len(result.trades)
    """

    def __init__(
        self,
        data_source: MarketDataSource,
        strategy: Strategy,
        params: ParameterSnapshot,
        initial_capital: Decimal,
        apply_breakers: bool = True,
        cancel_event: threading.Event | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        gap_tolerance: float = 1.5,
    ):
        """Initialize the engine.

        Args:
            data_source: Read-only bar source
            strategy: Signal function
            params: Resolved parameter snapshot of the run
            initial_capital: Starting equity (must be positive)
            apply_breakers: Whether circuit breakers apply
            cancel_event: Checked between bars; when set the run is abandoned
            history_size: Bars per symbol kept for the strategy window
            gap_tolerance: Multiple of the source's bar interval beyond which
                a jump between bars counts as a data gap
        """
        self.data_source = data_source
        self.strategy = strategy
        self.params = params
        self.initial_capital = to_decimal(initial_capital)
        self.apply_breakers = apply_breakers
        self.cancel_event = cancel_event
        self.gap_tolerance = gap_tolerance
        self.costs = CostModel(params.cost)

        required = getattr(strategy, "required_bars", None)
        if callable(required):
            history_size = max(history_size, required(params.strategy))
        self.history_size = history_size

        risk = params.risk
        self._risk_fraction = to_decimal(risk.risk_per_trade_bps) / BPS
        self._max_position_pct = to_decimal(risk.max_position_pct)
        self._stop_atr = to_decimal(risk.stop_loss_atr)
        self._tp1_atr = to_decimal(risk.take_profit_1_atr)
        self._tp2_atr = to_decimal(risk.take_profit_2_atr)
        self._trailing_atr = to_decimal(risk.trailing_atr)
        self._default_stop_pct = to_decimal(risk.default_stop_pct)

        self._reset()

    def _reset(self) -> None:
        self.cash = self.initial_capital
        self.positions: dict[str, Position] = {}
        self.trades: list[Trade] = []
        self.data_gaps: list[DataGapError] = []
        self.breakers = BreakerManager(self.params.risk, enabled=self.apply_breakers)
        self._history: dict[str, deque[Bar]] = {}
        self._last_bar: dict[str, Bar] = {}
        self._symbol_order: dict[str, int] = {}
        self._bars_processed = 0
        self._entries_blocked = 0

    def run(
        self,
        run_id: str,
        symbols: list[str],
        start_date: datetime,
        end_date: datetime,
    ) -> BacktestResult:
        """
        Replay the date range and synthesize the trade ledger.

        Args:
            run_id: Identifier used in logs and on the result
            symbols: Non-empty list of symbols to trade
            start_date: Range start (inclusive)
            end_date: Range end (inclusive)

        Returns:
            BacktestResult with trades, equity curve, gaps and breaker events

        Raises:
            ConfigurationError: If inputs are invalid (no bar is processed)
            RunCancelledError: If the cancel event is set during replay
            EngineFault: On any unexpected failure during replay
        """
        start_date = ensure_utc(start_date)
        end_date = ensure_utc(end_date)
        self._validate(symbols, start_date, end_date)
        self._reset()

        logger.info(
            f"Run {run_id}: replaying {', '.join(symbols)} "
            f"from {start_date.isoformat()} to {end_date.isoformat()}"
        )

        try:
            self._replay(run_id, symbols, start_date, end_date)
        except BacktestError:
            raise
        except Exception as e:
            logger.exception(f"Run {run_id}: engine failed after {self._bars_processed} bars")
            raise EngineFault(f"Engine failed after {self._bars_processed} bars: {e}") from e

        trades = sorted(
            self.trades, key=lambda t: (t.entry_time, self._symbol_order[t.symbol])
        )
        curve = EquityCurve.from_trades(start_date, self.initial_capital, trades)

        logger.info(
            f"Run {run_id}: {len(trades)} trades over {self._bars_processed} bars, "
            f"final equity {self.cash}"
        )

        return BacktestResult(
            run_id=run_id,
            trades=trades,
            equity_curve=curve,
            initial_capital=self.initial_capital,
            final_equity=quantize(self.cash),
            data_gaps=list(self.data_gaps),
            breaker_events=list(self.breakers.events),
            bars_processed=self._bars_processed,
            entries_blocked=self._entries_blocked,
        )

    def _validate(self, symbols: list[str], start_date: datetime, end_date: datetime) -> None:
        if not symbols:
            raise ConfigurationError("At least one symbol is required")
        if len(set(symbols)) != len(symbols):
            raise ConfigurationError("Symbols must be unique")
        if start_date >= end_date:
            raise ConfigurationError(
                f"start_date ({start_date.isoformat()}) must be before end_date ({end_date.isoformat()})"
            )
        if self.initial_capital <= 0:
            raise ConfigurationError("initial_capital must be positive")

    def _replay(
        self, run_id: str, symbols: list[str], start_date: datetime, end_date: datetime
    ) -> None:
        self._symbol_order = {symbol: i for i, symbol in enumerate(symbols)}
        self._history = {symbol: deque(maxlen=self.history_size) for symbol in symbols}

        streams = [
            self._checked_stream(symbol, index, start_date, end_date)
            for index, symbol in enumerate(symbols)
        ]
        merged = heapq.merge(*streams, key=lambda item: (item[1].timestamp, item[0]))

        for _, bar in merged:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise RunCancelledError(f"Run {run_id} cancelled after {self._bars_processed} bars")
            self._process_bar(bar)
            self._bars_processed += 1

        for symbol in symbols:
            position = self.positions.get(symbol)
            if position is not None:
                last_bar = self._last_bar[symbol]
                self._close(position, last_bar.close, last_bar.timestamp, CloseReason.END_OF_PERIOD)

    def _checked_stream(
        self, symbol: str, index: int, start_date: datetime, end_date: datetime
    ) -> Iterator[tuple[int, Bar]]:
        """Yield (symbol index, bar), recording gaps and rejecting disordered data."""
        max_gap: timedelta | None = None
        if self.data_source.bar_interval is not None:
            max_gap = self.data_source.bar_interval * self.gap_tolerance

        previous: Bar | None = None
        for bar in self.data_source.iter_bars(symbol, start_date, end_date):
            if bar.symbol != symbol:
                raise EngineFault(f"Source returned {bar.symbol} bar for {symbol}")
            if previous is None:
                if max_gap is not None and bar.timestamp - start_date > max_gap:
                    self._record_gap(DataGapError(symbol, start_date, bar.timestamp))
            else:
                if bar.timestamp <= previous.timestamp:
                    raise EngineFault(
                        f"Bars for {symbol} are not strictly increasing at {bar.timestamp.isoformat()}"
                    )
                if max_gap is not None and bar.timestamp - previous.timestamp > max_gap:
                    self._record_gap(DataGapError(symbol, previous.timestamp, bar.timestamp))
            previous = bar
            yield index, bar

        if previous is None:
            self._record_gap(DataGapError(symbol, None, None))
        elif max_gap is not None and end_date - previous.timestamp > max_gap:
            self._record_gap(DataGapError(symbol, previous.timestamp, end_date))

    def _record_gap(self, gap: DataGapError) -> None:
        logger.warning(str(gap))
        self.data_gaps.append(gap)

    def equity(self) -> Decimal:
        """Cash plus the marked value of every open position."""
        return self.cash + sum((p.market_value for p in self.positions.values()), ZERO)

    def _process_bar(self, bar: Bar) -> None:
        symbol = bar.symbol
        now = bar.timestamp
        self._history[symbol].append(bar)
        self._last_bar[symbol] = bar

        self.breakers.on_bar(now, self.equity())

        # (a) mark to market
        position = self.positions.get(symbol)
        if position is not None:
            position.mark(bar.close)

            # (b) protective exits
            hit = self._check_exit_levels(position, bar)
            if hit is not None:
                reference, reason = hit
                self._close(position, reference, now, reason)
                if reason.is_stop:
                    self.breakers.record_stop(symbol, now)

        position = self.positions.get(symbol)
        signal = self.strategy.generate_signal(
            MarketState(
                symbol=symbol,
                bars=tuple(self._history[symbol]),
                position_side=position.side if position is not None else None,
            ),
            self.params.strategy,
        )
        if signal.symbol != symbol:
            raise EngineFault(f"Strategy returned a signal for {signal.symbol} on a {symbol} bar")

        if position is not None and signal.signal_type is SignalType.EXIT:
            self._close(position, bar.close, now, CloseReason.SIGNAL)

        # (c) circuit breakers
        position = self.positions.get(symbol)
        if position is not None:
            event = self.breakers.check_position(position, now)
            if event is not None:
                self._close(position, bar.close, now, CloseReason.BREAKER, event.breaker_type.value)

        equity = self.equity()
        self.breakers.update_peak(equity)
        event = self.breakers.check_portfolio(now, equity)
        if event is not None:
            for open_symbol in sorted(self.positions, key=self._symbol_order.__getitem__):
                open_position = self.positions[open_symbol]
                reference = open_position.last_price or open_position.entry_price
                self._close(
                    open_position, reference, now, CloseReason.BREAKER, event.breaker_type.value
                )

        # (d) entries
        if signal.signal_type in (SignalType.ENTER_LONG, SignalType.ENTER_SHORT):
            self._try_enter(bar, signal)

    def _check_exit_levels(
        self, position: Position, bar: Bar
    ) -> tuple[Decimal, CloseReason] | None:
        """
        Evaluate stop, trailing stop and targets against the bar's range.

        Take-profit 1 does not close: it lifts the stop to breakeven plus a
        small ATR offset and arms the trailing stop. Gaps through a level
        fill at the open.

        Returns:
            (reference price, reason) when the position must close, else None
        """
        atr = position.atr_at_entry
        trailing = position.trailing_stop

        if position.side is Side.LONG:
            stop = trailing if trailing is not None else position.stop_loss
            if bar.low <= stop:
                reason = CloseReason.TRAILING_STOP if trailing is not None else CloseReason.STOP_LOSS
                return min(bar.open, stop), reason
            if not position.tp1_hit and bar.high >= position.take_profit_1:
                position.tp1_hit = True
                position.trailing_stop = quantize(position.entry_price + BREAKEVEN_ATR_OFFSET * atr)
            elif position.tp1_hit and bar.high >= position.take_profit_2:
                return max(bar.open, position.take_profit_2), CloseReason.TAKE_PROFIT

            trailing = position.trailing_stop
            if trailing is not None and bar.high > trailing + atr:
                position.trailing_stop = max(trailing, quantize(bar.high - self._trailing_atr * atr))
            return None

        stop = trailing if trailing is not None else position.stop_loss
        if bar.high >= stop:
            reason = CloseReason.TRAILING_STOP if trailing is not None else CloseReason.STOP_LOSS
            return max(bar.open, stop), reason
        if not position.tp1_hit and bar.low <= position.take_profit_1:
            position.tp1_hit = True
            position.trailing_stop = quantize(position.entry_price - BREAKEVEN_ATR_OFFSET * atr)
        elif position.tp1_hit and bar.low <= position.take_profit_2:
            return min(bar.open, position.take_profit_2), CloseReason.TAKE_PROFIT

        trailing = position.trailing_stop
        if trailing is not None and bar.low < trailing - atr:
            position.trailing_stop = min(trailing, quantize(bar.low + self._trailing_atr * atr))
        return None

    def _try_enter(self, bar: Bar, signal: Signal) -> None:
        symbol = bar.symbol
        if symbol in self.positions:
            return

        allowed, reason = self.breakers.entries_allowed(symbol, bar.timestamp)
        if not allowed:
            logger.debug(f"Entry on {symbol} at {bar.timestamp.isoformat()} rejected: {reason}")
            self._entries_blocked += 1
            return
        if len(self.positions) >= self.params.risk.max_open_positions:
            logger.debug(f"Entry on {symbol} rejected: max open positions reached")
            return

        side = Side.LONG if signal.signal_type is SignalType.ENTER_LONG else Side.SHORT
        reference = bar.close
        fill = self.costs.fill_price(reference, side, is_entry=True)

        volatility = to_decimal(signal.volatility) if signal.volatility else ZERO
        if volatility > 0:
            unit = volatility
        else:
            unit = fill * self._default_stop_pct / self._stop_atr
        stop_distance = unit * self._stop_atr
        stop_pct = stop_distance / fill

        equity = self.equity()
        notional = (self._risk_fraction * equity) / (stop_pct + self.costs.entry_cost_pct)
        affordable = (self.cash - self.costs.fixed_fee) / (1 + self.costs.half_fee)
        notional = min(notional, equity * self._max_position_pct, affordable)
        if notional <= 0:
            logger.debug(f"Entry on {symbol} rejected: no capital available")
            return

        quantity = quantize(notional / fill)
        if quantity <= 0:
            return
        notional = quantize(fill * quantity)
        entry_fee = self.costs.fee(notional)
        if notional + entry_fee > self.cash:
            return

        sign = side.sign
        position = Position(
            symbol=symbol,
            side=side,
            entry_time=bar.timestamp,
            entry_price=fill,
            quantity=quantity,
            notional=notional,
            entry_fee=entry_fee,
            entry_slippage=self.costs.slippage_cost(reference, fill, quantity),
            entry_equity=quantize(equity),
            stop_loss=quantize(fill - sign * stop_distance),
            take_profit_1=quantize(fill + sign * unit * self._tp1_atr),
            take_profit_2=quantize(fill + sign * unit * self._tp2_atr),
            atr_at_entry=quantize(unit),
            signal_strength=signal.strength,
        )
        position.mark(reference)
        self.cash -= notional + entry_fee
        self.positions[symbol] = position

        logger.debug(
            f"Opened {side.value} {symbol} qty={quantity} @ {fill} "
            f"stop={position.stop_loss} at {bar.timestamp.isoformat()}"
        )

    def _close(
        self,
        position: Position,
        reference: Decimal,
        exit_time: datetime,
        reason: CloseReason,
        breaker_type: str | None = None,
    ) -> Trade:
        fill = self.costs.fill_price(reference, position.side, is_entry=False)
        quantity = position.quantity
        gross_pnl = quantize((fill - position.entry_price) * quantity * position.side.sign)
        exit_fee = self.costs.fee(fill * quantity)
        funding = self.costs.funding(position.notional, position.entry_time, exit_time)
        fees = position.entry_fee + exit_fee + funding

        self.cash += position.notional + gross_pnl - exit_fee - funding
        del self.positions[position.symbol]

        trade = Trade(
            symbol=position.symbol,
            side=position.side,
            entry_time=position.entry_time,
            entry_price=position.entry_price,
            exit_time=exit_time,
            exit_price=fill,
            quantity=quantity,
            notional=position.notional,
            entry_equity=position.entry_equity,
            gross_pnl=gross_pnl,
            fees=fees,
            slippage=position.entry_slippage + self.costs.slippage_cost(reference, fill, quantity),
            net_pnl=gross_pnl - fees,
            close_reason=reason,
            breaker_type=breaker_type,
            signal_strength=position.signal_strength,
            atr_at_entry=position.atr_at_entry,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit_2,
        )
        self.trades.append(trade)

        logger.debug(
            f"Closed {position.side.value} {position.symbol} @ {fill} "
            f"({reason.value}) net={trade.net_pnl}"
        )
        return trade

"""Strategy interface definition."""

from dataclasses import dataclass
from typing import Protocol

from delfos_backtest.config.params import StrategyParams
from delfos_backtest.models.bar import Bar
from delfos_backtest.models.signal import Signal
from delfos_backtest.models.trade import Side


@dataclass(frozen=True)
class MarketState:
    """Read-only view of one symbol handed to a strategy on each bar.

    Attributes:
        symbol: Symbol being evaluated
        bars: Recent bars for the symbol, oldest first; the last one is the
            bar that just closed
        position_side: Side of the open position on this symbol, if any
    """

    symbol: str
    bars: tuple[Bar, ...]
    position_side: Side | None = None

    @property
    def current(self) -> Bar:
        return self.bars[-1]


class Strategy(Protocol):
    """Interface for trading strategies.

    Implementations must be side-effect free: the same state and parameters
    always produce the same signal.
    """

    name: str

    def generate_signal(self, state: MarketState, params: StrategyParams) -> Signal:
        """
        Evaluate the latest bar and return a trading signal.

        Args:
            state: Bars window and open position for the symbol
            params: Resolved strategy parameters of the run

        Returns:
            Signal for state.symbol
        """
        ...

"""Open position state tracked by the backtest engine."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from delfos_backtest.models.money import ZERO, quantize
from delfos_backtest.models.trade import Side


@dataclass
class Position:
    """An open position. Mutable: stops move and marks update bar by bar."""

    symbol: str
    side: Side
    entry_time: datetime
    entry_price: Decimal
    quantity: Decimal
    notional: Decimal
    entry_fee: Decimal
    entry_slippage: Decimal
    entry_equity: Decimal
    stop_loss: Decimal
    take_profit_1: Decimal
    take_profit_2: Decimal
    atr_at_entry: Decimal
    signal_strength: float = 0.0
    trailing_stop: Decimal | None = None
    tp1_hit: bool = False
    last_price: Decimal | None = None

    def mark(self, price: Decimal) -> Decimal:
        """Mark to market and return unrealized P&L (before exit costs)."""
        self.last_price = price
        return self.unrealized_pnl

    @property
    def unrealized_pnl(self) -> Decimal:
        if self.last_price is None:
            return ZERO
        return quantize((self.last_price - self.entry_price) * self.quantity * self.side.sign)

    @property
    def market_value(self) -> Decimal:
        """Collateral plus unrealized P&L, i.e. what the position adds to equity."""
        return self.notional + self.unrealized_pnl

    @property
    def drawdown_pct(self) -> Decimal:
        """Unrealized P&L relative to entry notional (negative when losing)."""
        if self.notional <= 0:
            return ZERO
        return self.unrealized_pnl / self.notional

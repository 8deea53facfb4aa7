"""Fee, slippage and funding model applied to every simulated fill."""

from datetime import datetime
from decimal import Decimal

from delfos_backtest.config.params import CostParams
from delfos_backtest.models.money import ONE, ZERO, quantize, to_decimal
from delfos_backtest.models.trade import Side

SECONDS_PER_DAY = Decimal(86400)


class CostModel:
    """Applies round-trip costs split evenly across the entry and exit fills.

    Slippage always moves the fill against the trader: buys fill above the
    reference price and sells below it.

    Example:
        >>> costs = CostModel(CostParams())
        >>> fill = costs.fill_price(Decimal("100"), Side.LONG, is_entry=True)
        >>> costs.fee(fill * quantity)
    """

    def __init__(self, params: CostParams):
        self.params = params
        self.half_fee = to_decimal(params.fee_roundtrip_pct) / 2
        self.half_slippage = to_decimal(params.slippage_roundtrip_pct) / 2
        self.fixed_fee = to_decimal(params.fixed_fee)
        self.funding_daily = to_decimal(params.funding_daily_pct)

    @property
    def entry_cost_pct(self) -> Decimal:
        """Per-fill fee and slippage as a fraction of notional, used for sizing."""
        return self.half_fee + self.half_slippage

    def fill_price(self, reference: Decimal, side: Side, is_entry: bool) -> Decimal:
        """
        Price at which an order fills.

        Args:
            reference: Price the order was triggered at
            side: Position side
            is_entry: True when opening, False when closing

        Returns:
            Reference price moved against the trader by half the round-trip slippage
        """
        buying = (side is Side.LONG) == is_entry
        if buying:
            return quantize(reference * (ONE + self.half_slippage))
        return quantize(reference * (ONE - self.half_slippage))

    def fee(self, notional: Decimal) -> Decimal:
        """Fee for a single fill."""
        return quantize(abs(notional) * self.half_fee + self.fixed_fee)

    @staticmethod
    def slippage_cost(reference: Decimal, fill: Decimal, quantity: Decimal) -> Decimal:
        """Cost of slippage on one fill, reported separately from fees."""
        return quantize(abs(fill - reference) * quantity)

    def funding(self, notional: Decimal, entry_time: datetime, exit_time: datetime) -> Decimal:
        """Funding or borrow cost for the holding period, charged at exit."""
        if self.funding_daily == ZERO:
            return ZERO
        held_days = Decimal(int((exit_time - entry_time).total_seconds())) / SECONDS_PER_DAY
        return quantize(abs(notional) * self.funding_daily * held_days)

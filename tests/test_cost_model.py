"""Unit tests for the fee, slippage and funding model."""

from datetime import timedelta
from decimal import Decimal

import pytest

from delfos_backtest.backtest.cost_model import CostModel
from delfos_backtest.config.params import CostParams
from delfos_backtest.models.trade import Side


@pytest.fixture
def costs() -> CostModel:
    return CostModel(CostParams(fee_roundtrip_pct=0.002, slippage_roundtrip_pct=0.001))


def test_half_costs_per_fill(costs: CostModel) -> None:
    assert costs.half_fee == Decimal("0.001")
    assert costs.half_slippage == Decimal("0.0005")
    assert costs.entry_cost_pct == Decimal("0.0015")


def test_slippage_moves_fill_against_trader(costs: CostModel) -> None:
    reference = Decimal("100")

    assert costs.fill_price(reference, Side.LONG, is_entry=True) == Decimal("100.05")
    assert costs.fill_price(reference, Side.LONG, is_entry=False) == Decimal("99.95")
    assert costs.fill_price(reference, Side.SHORT, is_entry=True) == Decimal("99.95")
    assert costs.fill_price(reference, Side.SHORT, is_entry=False) == Decimal("100.05")


def test_fee_includes_fixed_component() -> None:
    costs = CostModel(CostParams(fee_roundtrip_pct=0.002, fixed_fee=1.0))

    assert costs.fee(Decimal("1000")) == Decimal("2.00000000")
    assert costs.fee(Decimal("-1000")) == Decimal("2.00000000")


def test_slippage_cost_is_absolute() -> None:
    assert CostModel.slippage_cost(Decimal("100"), Decimal("99.95"), Decimal("10")) == Decimal("0.5")


def test_no_funding_by_default(costs: CostModel, t0) -> None:
    assert costs.funding(Decimal("1000"), t0, t0 + timedelta(days=3)) == Decimal("0")


def test_funding_prorated_by_holding_time(t0) -> None:
    costs = CostModel(CostParams(funding_daily_pct=0.001))

    assert costs.funding(Decimal("1000"), t0, t0 + timedelta(days=2)) == Decimal("2")
    assert costs.funding(Decimal("1000"), t0, t0 + timedelta(hours=12)) == Decimal("0.5")

"""Unit tests for the realized equity curve."""

from datetime import timedelta
from decimal import Decimal

import pytest

from delfos_backtest.backtest.equity import EquityCurve


def test_curve_starts_at_initial_capital(t0) -> None:
    curve = EquityCurve(t0, Decimal("10000"))

    assert len(curve) == 1
    assert curve.initial_equity == Decimal("10000")
    assert curve.final_equity == Decimal("10000")
    assert curve.max_drawdown().pct == Decimal("0")


def test_from_trades_applies_in_exit_order(t0, trade_factory) -> None:
    early_exit = trade_factory("100", entry_time=t0 + timedelta(hours=2), hours=1)
    late_exit = trade_factory("-50", entry_time=t0, hours=10)

    curve = EquityCurve.from_trades(t0, Decimal("10000"), [late_exit, early_exit])

    assert [equity for _, equity in curve.points] == [
        Decimal("10000"),
        Decimal("10100"),
        Decimal("10050"),
    ]
    assert curve.final_equity == Decimal("10050")


def test_append_rejects_earlier_timestamp(t0) -> None:
    curve = EquityCurve(t0, Decimal("10000"))
    curve.append(t0 + timedelta(hours=2), Decimal("10100"))

    with pytest.raises(ValueError, match="precedes"):
        curve.append(t0 + timedelta(hours=1), Decimal("10200"))


def test_max_drawdown_amount_pct_and_duration(t0, trade_factory) -> None:
    trades = [
        trade_factory("1000", entry_time=t0, hours=1),
        trade_factory("-2200", entry_time=t0 + timedelta(hours=1), hours=1),
        trade_factory("1300", entry_time=t0 + timedelta(hours=2), hours=4),
    ]

    drawdown = EquityCurve.from_trades(t0, Decimal("10000"), trades).max_drawdown()

    # peak 11000 at +1h, trough 8800 at +2h, recovered to 10100 (still under) at +6h
    assert drawdown.amount == Decimal("2200")
    assert drawdown.pct == Decimal("0.2")
    assert drawdown.duration_hours == Decimal("5")


def test_drawdown_pct_never_exceeds_one(t0, trade_factory) -> None:
    trades = [trade_factory("-10000", entry_time=t0, hours=1)]

    drawdown = EquityCurve.from_trades(t0, Decimal("10000"), trades).max_drawdown()

    assert drawdown.pct == Decimal("1")


def test_to_list_serializes_points(t0) -> None:
    data = EquityCurve(t0, Decimal("10000")).to_list()

    assert data == [{"timestamp": t0.isoformat(), "equity": "10000.00000000"}]

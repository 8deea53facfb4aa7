"""Unit tests for circuit breaker manager and triggers."""

from datetime import timedelta
from decimal import Decimal

import pytest

from delfos_backtest.breakers.manager import BreakerManager
from delfos_backtest.breakers.models import BreakerEvent, BreakerStats, BreakerType
from delfos_backtest.breakers.triggers import (
    check_asset_stop_limit,
    check_campaign_drawdown,
    check_daily_loss,
    check_position_drawdown,
)
from delfos_backtest.config.params import RiskParams


@pytest.fixture
def risk() -> RiskParams:
    return RiskParams(
        global_stop_daily_pct=-0.024,
        campaign_dd_stop=-0.10,
        position_dd_stop_pct=-0.05,
        max_stops_per_asset_day=2,
    )


@pytest.fixture
def manager(risk: RiskParams) -> BreakerManager:
    return BreakerManager(risk)


def test_entries_allowed_no_breakers(manager, t0) -> None:
    allowed, reason = manager.entries_allowed("BTC/USDT", t0)

    assert allowed is True
    assert reason is None


def test_daily_loss_pauses_until_next_utc_day(manager, t0) -> None:
    manager.on_bar(t0, Decimal("10000"))

    event = manager.check_portfolio(t0 + timedelta(hours=3), Decimal("9700"))

    assert event is not None
    assert event.breaker_type == BreakerType.DAILY_LOSS
    assert event.expires_at == t0 + timedelta(days=1)
    allowed, reason = manager.entries_allowed("BTC/USDT", t0 + timedelta(hours=4))
    assert allowed is False
    assert "daily_loss" in reason

    manager.on_bar(t0 + timedelta(days=1), Decimal("9700"))
    assert manager.entries_allowed("BTC/USDT", t0 + timedelta(days=1))[0] is True


def test_daily_loss_not_retriggered_while_active(manager, t0) -> None:
    manager.on_bar(t0, Decimal("10000"))
    manager.check_portfolio(t0, Decimal("9700"))

    assert manager.check_portfolio(t0 + timedelta(hours=1), Decimal("9600")) is None
    assert len(manager.events) == 1


def test_campaign_drawdown_halts_run(manager, t0) -> None:
    manager.on_bar(t0, Decimal("10000"))
    manager.on_bar(t0 + timedelta(days=1), Decimal("9500"))

    event = manager.check_portfolio(t0 + timedelta(days=1, hours=1), Decimal("8900"))

    assert event is not None
    assert event.breaker_type == BreakerType.CAMPAIGN_DRAWDOWN
    assert event.expires_at is None
    assert manager.halted is True

    manager.on_bar(t0 + timedelta(days=5), Decimal("8900"))
    assert manager.entries_allowed("ETH/USDT", t0 + timedelta(days=5))[0] is False


def test_campaign_drawdown_takes_precedence(manager, t0) -> None:
    """Test a loss breaching both stops reports the campaign breaker."""
    manager.on_bar(t0, Decimal("10000"))

    event = manager.check_portfolio(t0, Decimal("8500"))

    assert event.breaker_type == BreakerType.CAMPAIGN_DRAWDOWN


def test_asset_stop_limit_pauses_only_that_symbol(manager, t0) -> None:
    manager.on_bar(t0, Decimal("10000"))

    assert manager.record_stop("BTC/USDT", t0) is None
    event = manager.record_stop("BTC/USDT", t0 + timedelta(hours=1))

    assert event is not None
    assert event.breaker_type == BreakerType.ASSET_STOP_LIMIT
    assert event.symbol == "BTC/USDT"
    assert manager.entries_allowed("BTC/USDT", t0 + timedelta(hours=2))[0] is False
    assert manager.entries_allowed("ETH/USDT", t0 + timedelta(hours=2))[0] is True

    manager.on_bar(t0 + timedelta(days=1), Decimal("10000"))
    assert manager.entries_allowed("BTC/USDT", t0 + timedelta(days=1))[0] is True
    assert manager.stops_today["BTC/USDT"] == 0


def test_position_drawdown_records_event_without_pause(manager, position_factory, t0) -> None:
    position = position_factory(mark="94")

    event = manager.check_position(position, t0)

    assert event is not None
    assert event.breaker_type == BreakerType.POSITION_DRAWDOWN
    assert event.context["drawdown_pct"] == pytest.approx(-0.06)
    assert manager.entries_allowed("BTC/USDT", t0)[0] is True


def test_position_within_threshold_not_triggered(manager, position_factory, t0) -> None:
    assert manager.check_position(position_factory(mark="97"), t0) is None


def test_disabled_manager_is_noop(risk, position_factory, t0) -> None:
    manager = BreakerManager(risk, enabled=False)
    manager.on_bar(t0, Decimal("10000"))

    assert manager.check_portfolio(t0, Decimal("5000")) is None
    assert manager.check_position(position_factory(mark="50"), t0) is None
    assert manager.record_stop("BTC/USDT", t0) is None
    assert manager.record_stop("BTC/USDT", t0) is None
    assert manager.entries_allowed("BTC/USDT", t0) == (True, None)
    assert manager.events == []


def test_peak_tracks_highest_equity(manager, t0) -> None:
    manager.on_bar(t0, Decimal("10000"))
    manager.update_peak(Decimal("12000"))
    manager.update_peak(Decimal("11000"))

    assert manager.peak_equity == Decimal("12000")


def test_trigger_functions_accept_floats() -> None:
    assert check_daily_loss(100.0, 97.0, -0.024)[0] is True
    assert check_daily_loss(100.0, 98.0, -0.024)[0] is False
    assert check_daily_loss(0.0, 50.0, -0.024) == (False, None)
    assert check_campaign_drawdown(100.0, 89.0, -0.10)[0] is True
    assert check_campaign_drawdown(100.0, 91.0, -0.10)[0] is False


def test_asset_stop_limit_trigger() -> None:
    assert check_asset_stop_limit(1, 2)[0] is False
    triggered, context = check_asset_stop_limit(2, 2)
    assert triggered is True
    assert context is not None


def test_position_drawdown_trigger_context(position_factory) -> None:
    triggered, context = check_position_drawdown(position_factory(mark="90"), Decimal("-0.05"))

    assert triggered is True
    assert context["unrealized_pnl"] == pytest.approx(-100.0)


@pytest.mark.parametrize(
    "breaker_type,level",
    [
        (BreakerType.POSITION_DRAWDOWN, "asset"),
        (BreakerType.ASSET_STOP_LIMIT, "asset"),
        (BreakerType.DAILY_LOSS, "global"),
        (BreakerType.CAMPAIGN_DRAWDOWN, "global"),
    ],
)
def test_breaker_level(breaker_type, level) -> None:
    assert breaker_type.level == level


def test_breaker_stats_count_by_level(t0) -> None:
    events = [
        BreakerEvent(BreakerType.POSITION_DRAWDOWN, t0, "position", symbol="BTC/USDT"),
        BreakerEvent(BreakerType.ASSET_STOP_LIMIT, t0, "stops", symbol="ETH/USDT"),
        BreakerEvent(BreakerType.CAMPAIGN_DRAWDOWN, t0, "campaign"),
    ]

    stats = BreakerStats.from_events(events, entries_blocked=5)

    assert stats == BreakerStats(asset_triggered=2, global_triggered=1, entries_blocked=5)

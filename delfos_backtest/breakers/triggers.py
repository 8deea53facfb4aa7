"""Trigger detection functions for circuit breakers.

Each check is pure and returns ``(should_trigger, context)``. Thresholds are
negative fractions; a check trips when the observed change is at or below
its threshold. The functions accept Decimal or float inputs. The Monte Carlo
simulator applies the same comparisons to whole numpy paths at once.
"""

from typing import Any

from delfos_backtest.models.position import Position


def _change(current: Any, reference: Any) -> Any:
    return current / reference - 1


def check_position_drawdown(
    position: Position, threshold: Any
) -> tuple[bool, dict[str, float] | None]:
    """
    Check whether an open position's unrealized loss breaches the stop.

    Args:
        position: Marked open position
        threshold: Loss fraction of entry notional (e.g. -0.05)

    Returns:
        Tuple of (should_trigger, context_dict)
    """
    drawdown = position.drawdown_pct
    if drawdown <= threshold:
        return True, {
            "drawdown_pct": float(drawdown),
            "threshold": float(threshold),
            "unrealized_pnl": float(position.unrealized_pnl),
        }
    return False, None


def check_daily_loss(
    day_start_equity: Any, equity: Any, threshold: Any
) -> tuple[bool, dict[str, float] | None]:
    """
    Check whether the loss since the start of the day breaches the global stop.

    Args:
        day_start_equity: Equity at the first bar of the day
        equity: Current equity
        threshold: Loss fraction of day-start equity (e.g. -0.024)

    Returns:
        Tuple of (should_trigger, context_dict)
    """
    if day_start_equity <= 0:
        return False, None

    change = _change(equity, day_start_equity)
    if change <= threshold:
        return True, {
            "daily_change_pct": float(change),
            "threshold": float(threshold),
            "day_start_equity": float(day_start_equity),
            "equity": float(equity),
        }
    return False, None


def check_campaign_drawdown(
    peak_equity: Any, equity: Any, threshold: Any
) -> tuple[bool, dict[str, float] | None]:
    """
    Check whether drawdown from peak equity breaches the campaign stop.

    Args:
        peak_equity: Highest equity observed so far
        equity: Current equity
        threshold: Drawdown fraction from peak (e.g. -0.10)

    Returns:
        Tuple of (should_trigger, context_dict)
    """
    if peak_equity <= 0:
        return False, None

    drawdown = _change(equity, peak_equity)
    if drawdown <= threshold:
        return True, {
            "drawdown_pct": float(drawdown),
            "threshold": float(threshold),
            "peak_equity": float(peak_equity),
            "equity": float(equity),
        }
    return False, None


def check_asset_stop_limit(
    stop_count: int, max_stops: int
) -> tuple[bool, dict[str, float] | None]:
    """
    Check whether a symbol has been stopped out too often today.

    Returns:
        Tuple of (should_trigger, context_dict)
    """
    if stop_count >= max_stops:
        return True, {"stops_today": float(stop_count), "max_stops": float(max_stops)}
    return False, None

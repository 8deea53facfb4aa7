"""Average True Range (ATR) indicator."""

from delfos_backtest.models.bar import Bar


def true_ranges(bars: list[Bar]) -> list[float]:
    """True range per bar; the first bar has no previous close and uses high - low."""
    ranges: list[float] = []
    prev_close: float | None = None
    for bar in bars:
        high = float(bar.high)
        low = float(bar.low)
        if prev_close is None:
            ranges.append(high - low)
        else:
            ranges.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))
        prev_close = float(bar.close)
    return ranges


def calculate_atr(bars: list[Bar], period: int = 14) -> list[float]:
    """
    Calculate Average True Range (ATR) with Wilder smoothing.

    Args:
        bars: List of bars, oldest first.
        period: ATR period.

    Returns:
        List of ATR values (same length as input). Values before index
        ``period`` are 0.0; the first ATR needs ``period + 1`` bars so that
        every true range in its window has a previous close.
    """
    length = len(bars)
    atr_values = [0.0] * length

    if length < period + 1:
        return atr_values

    tr_values = true_ranges(bars)

    atr_values[period] = sum(tr_values[1 : period + 1]) / period

    for i in range(period + 1, length):
        atr_values[i] = (atr_values[i - 1] * (period - 1) + tr_values[i]) / period

    return atr_values

"""Exponential Moving Average (EMA) indicator."""


def calculate_ema(values: list[float], period: int) -> list[float]:
    """
    Calculate Exponential Moving Average (EMA).

    The first valid value, at index ``period - 1``, is the SMA of the first
    ``period`` values; later values use the EMA recurrence. Preceding values
    are 0.0 and callers must ignore them.

    Args:
        values: List of values (e.g., closing prices).
        period: EMA period.

    Returns:
        List of EMA values (same length as input).
    """
    if not values:
        return []

    if len(values) < period:
        return [0.0] * len(values)

    ema_values = [0.0] * len(values)
    ema_values[period - 1] = sum(values[:period]) / period

    multiplier = 2.0 / (period + 1)

    for i in range(period, len(values)):
        ema_values[i] = (values[i] - ema_values[i - 1]) * multiplier + ema_values[i - 1]

    return ema_values

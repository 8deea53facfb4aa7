"""Realized equity curve derived from the trade ledger."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from delfos_backtest.models.money import ZERO, quantize
from delfos_backtest.models.trade import Trade


@dataclass(frozen=True)
class Drawdown:
    """Largest peak-to-trough decline of an equity curve.

    Attributes:
        amount: Decline in money
        pct: Decline as a fraction of the peak, in [0, 1]
        duration_hours: Longest time spent below a previous peak
    """

    amount: Decimal = ZERO
    pct: Decimal = ZERO
    duration_hours: Decimal = ZERO


class EquityCurve:
    """Append-only series of (timestamp, equity) points.

    Points are recorded at each trade close. Timestamps must be
    non-decreasing and existing points are never modified, so the curve can
    always be rebuilt from the ledger and the initial capital.
    """

    def __init__(self, start_time: datetime, initial_capital: Decimal):
        self._points: list[tuple[datetime, Decimal]] = [(start_time, quantize(initial_capital))]

    @classmethod
    def from_trades(
        cls, start_time: datetime, initial_capital: Decimal, trades: Iterable[Trade]
    ) -> "EquityCurve":
        """Rebuild the realized curve by applying trades in exit order."""
        curve = cls(start_time, initial_capital)
        equity = quantize(initial_capital)
        ordered = sorted(trades, key=lambda t: (t.exit_time, t.entry_time, t.symbol))
        for trade in ordered:
            equity = quantize(equity + trade.net_pnl)
            curve.append(trade.exit_time, equity)
        return curve

    def append(self, timestamp: datetime, equity: Decimal) -> None:
        """Add a point. Raises ValueError if it would go back in time."""
        last_time = self._points[-1][0]
        if timestamp < last_time:
            raise ValueError(
                f"Equity point at {timestamp.isoformat()} precedes {last_time.isoformat()}"
            )
        self._points.append((timestamp, equity))

    @property
    def points(self) -> tuple[tuple[datetime, Decimal], ...]:
        return tuple(self._points)

    @property
    def initial_equity(self) -> Decimal:
        return self._points[0][1]

    @property
    def final_equity(self) -> Decimal:
        return self._points[-1][1]

    def __len__(self) -> int:
        return len(self._points)

    def max_drawdown(self) -> Drawdown:
        """Compute the maximum drawdown and the longest underwater period."""
        peak_equity = self._points[0][1]
        peak_time = self._points[0][0]
        max_amount = ZERO
        max_pct = ZERO
        longest = 0.0
        underwater = False

        for timestamp, equity in self._points:
            if equity >= peak_equity:
                if underwater:
                    longest = max(longest, (timestamp - peak_time).total_seconds())
                    underwater = False
                peak_equity = equity
                peak_time = timestamp
                continue

            underwater = True
            amount = peak_equity - equity
            pct = amount / peak_equity if peak_equity > 0 else ZERO
            if pct > max_pct:
                max_pct = pct
                max_amount = amount

        if underwater:
            longest = max(longest, (self._points[-1][0] - peak_time).total_seconds())

        return Drawdown(
            amount=quantize(max_amount),
            pct=quantize(min(max_pct, Decimal(1))),
            duration_hours=quantize(Decimal(int(longest)) / Decimal(3600)),
        )

    def to_list(self) -> list[dict[str, Any]]:
        """Convert to a list of dictionaries for JSON serialization."""
        return [{"timestamp": ts.isoformat(), "equity": str(eq)} for ts, eq in self._points]

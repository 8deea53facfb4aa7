"""Circuit breaker manager for a single backtest run."""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from delfos_backtest.breakers.models import ActiveBreaker, BreakerEvent, BreakerType
from delfos_backtest.breakers.triggers import (
    check_asset_stop_limit,
    check_campaign_drawdown,
    check_daily_loss,
    check_position_drawdown,
)
from delfos_backtest.config.params import RiskParams
from delfos_backtest.models.money import ZERO, to_decimal
from delfos_backtest.models.position import Position

logger = logging.getLogger(__name__)


def _next_midnight(day: date) -> datetime:
    return datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)


class BreakerManager:
    """Tracks breaker state in simulated time and gates entries.

    Pause windows:
        position_drawdown: none beyond force-closing the position
        daily_loss: entries paused for the rest of the UTC day
        campaign_drawdown: entries halted for the rest of the run
        asset_stop_limit: the symbol is paused for the rest of the UTC day

    Exits are never blocked. With ``enabled=False`` every check is a no-op.
    """

    def __init__(self, risk: RiskParams, enabled: bool = True):
        """
        Initialize breaker manager.

        Args:
            risk: Resolved risk parameters holding the thresholds
            enabled: Whether breakers apply to this run
        """
        self.risk = risk
        self.enabled = enabled
        self.position_dd_stop = to_decimal(risk.position_dd_stop_pct)
        self.daily_stop = to_decimal(risk.global_stop_daily_pct)
        self.campaign_stop = to_decimal(risk.campaign_dd_stop)

        self.active_breakers: dict[str, ActiveBreaker] = {}
        self.events: list[BreakerEvent] = []
        self.current_day: date | None = None
        self.day_start_equity: Decimal = ZERO
        self.peak_equity: Decimal = ZERO
        self.stops_today: dict[str, int] = defaultdict(int)

    def on_bar(self, now: datetime, equity: Decimal) -> bool:
        """
        Advance simulated time. Resets daily state on UTC day rollover.

        Args:
            now: Timestamp of the bar being processed
            equity: Marked equity before the bar is applied

        Returns:
            True if a new day started
        """
        self._expire_breakers(now)
        if equity > self.peak_equity:
            self.peak_equity = equity

        day = now.astimezone(timezone.utc).date()
        if day == self.current_day:
            return False

        self.current_day = day
        self.day_start_equity = equity
        self.stops_today.clear()
        return True

    def update_peak(self, equity: Decimal) -> None:
        if equity > self.peak_equity:
            self.peak_equity = equity

    def entries_allowed(self, symbol: str, now: datetime) -> tuple[bool, str | None]:
        """
        Check if a new entry on the symbol is allowed.

        Returns:
            Tuple of (allowed, rejection_reason)
        """
        self._expire_breakers(now)
        for breaker in self.active_breakers.values():
            if breaker.applies_to(symbol):
                return False, f"{breaker.breaker_type.value} breaker active: {breaker.reason}"
        return True, None

    @property
    def halted(self) -> bool:
        """True once the campaign drawdown stop has tripped."""
        return BreakerType.CAMPAIGN_DRAWDOWN.value in self.active_breakers

    def check_position(self, position: Position, now: datetime) -> BreakerEvent | None:
        """
        Evaluate the per-position drawdown stop.

        Returns:
            BreakerEvent if the position must be force-closed
        """
        if not self.enabled:
            return None
        triggered, context = check_position_drawdown(position, self.position_dd_stop)
        if not triggered:
            return None
        return self._record(
            BreakerType.POSITION_DRAWDOWN,
            now,
            f"{position.symbol} unrealized loss {float(position.drawdown_pct):.2%}",
            context or {},
            symbol=position.symbol,
        )

    def check_portfolio(self, now: datetime, equity: Decimal) -> BreakerEvent | None:
        """
        Evaluate the campaign drawdown and global daily loss stops.

        The campaign stop takes precedence. A breaker already in force is
        not re-triggered.

        Returns:
            BreakerEvent if all open positions must be force-closed
        """
        if not self.enabled:
            return None

        if not self.halted:
            triggered, context = check_campaign_drawdown(
                self.peak_equity, equity, self.campaign_stop
            )
            if triggered:
                return self._trigger(
                    BreakerType.CAMPAIGN_DRAWDOWN,
                    now,
                    f"drawdown {context['drawdown_pct']:.2%} from peak",
                    context,
                    expires_at=None,
                )

        if BreakerType.DAILY_LOSS.value not in self.active_breakers and not self.halted:
            triggered, context = check_daily_loss(
                self.day_start_equity, equity, self.daily_stop
            )
            if triggered:
                return self._trigger(
                    BreakerType.DAILY_LOSS,
                    now,
                    f"daily loss {context['daily_change_pct']:.2%}",
                    context,
                    expires_at=_next_midnight(now.astimezone(timezone.utc).date()),
                )

        return None

    def record_stop(self, symbol: str, now: datetime) -> BreakerEvent | None:
        """
        Count a stop-out for the symbol and pause it once the daily limit is hit.

        Returns:
            BreakerEvent if the symbol was paused
        """
        if not self.enabled:
            return None

        self.stops_today[symbol] += 1
        triggered, context = check_asset_stop_limit(
            self.stops_today[symbol], self.risk.max_stops_per_asset_day
        )
        if not triggered:
            return None
        return self._trigger(
            BreakerType.ASSET_STOP_LIMIT,
            now,
            f"{symbol} stopped out {self.stops_today[symbol]} times today",
            context or {},
            expires_at=_next_midnight(now.astimezone(timezone.utc).date()),
            symbol=symbol,
        )

    def _trigger(
        self,
        breaker_type: BreakerType,
        now: datetime,
        reason: str,
        context: dict[str, float],
        expires_at: datetime | None,
        symbol: str | None = None,
    ) -> BreakerEvent:
        key = breaker_type.value if symbol is None else f"{breaker_type.value}:{symbol}"
        self.active_breakers[key] = ActiveBreaker(
            breaker_type=breaker_type,
            triggered_at=now,
            expires_at=expires_at,
            reason=reason,
            symbol=symbol,
            context=context,
        )
        return self._record(breaker_type, now, reason, context, symbol=symbol, expires_at=expires_at)

    def _record(
        self,
        breaker_type: BreakerType,
        now: datetime,
        reason: str,
        context: dict[str, float],
        symbol: str | None = None,
        expires_at: datetime | None = None,
    ) -> BreakerEvent:
        event = BreakerEvent(
            breaker_type=breaker_type,
            triggered_at=now,
            reason=reason,
            symbol=symbol,
            expires_at=expires_at,
            context=context,
        )
        self.events.append(event)
        logger.info(f"Breaker {breaker_type.value} triggered at {now.isoformat()}: {reason}")
        return event

    def _expire_breakers(self, now: datetime) -> None:
        """Remove pauses whose window has passed."""
        expired = [
            key
            for key, breaker in self.active_breakers.items()
            if breaker.expires_at is not None and now >= breaker.expires_at
        ]
        for key in expired:
            logger.debug(f"Breaker {key} expired at {now.isoformat()}")
            del self.active_breakers[key]

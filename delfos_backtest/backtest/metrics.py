"""Performance and risk metrics derived from a run's ledger and scenario set."""

from __future__ import annotations

import logging
import math
import statistics
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Sequence

from delfos_backtest.backtest.equity import EquityCurve
from delfos_backtest.backtest.monte_carlo import (
    MonteCarloScenario,
    MonteCarloSummary,
    extract_trade_returns,
    tail_risk,
)
from delfos_backtest.breakers.models import BreakerStats
from delfos_backtest.models.money import ZERO, quantize, to_decimal
from delfos_backtest.models.trade import CloseReason, Trade

if TYPE_CHECKING:
    from delfos_backtest.persistence.repository import BacktestRepository

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25
# Scenario tail risk may exceed the ledger's by this factor and still pass
TAIL_RISK_TOLERANCE = 1.2
VALIDATION_MAX_DRAWDOWN = Decimal("0.10")


def _q(value: float | Decimal | None) -> Decimal | None:
    """Quantize to the engine's fixed precision; None and non-finite floats become None."""
    if value is None:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return quantize(to_decimal(value))


@dataclass(frozen=True)
class MetricsSnapshot:
    """Derived performance and risk metrics of one run.

    Money values are in the run's quote currency; ratios and probabilities
    are fractions. Every number is a Decimal quantized to 1e-8 so that
    recomputation from the same inputs is bit-identical.

    Attributes:
        total_return: (final - initial) / initial
        win_rate: winning_trades / total_trades, in [0, 1]
        profit_factor: Gross profit / gross loss; None when no trade lost
        avg_loss: Average losing trade, as a positive magnitude
        max_drawdown_pct: Largest decline of the realized equity curve, in [0, 1]
        mean_return, stdev_return: Mean and sample deviation of per-trade returns
        var_95, var_99: Value at risk of per-trade returns (positive = loss)
        es_95, es_99: Expected shortfall beyond the matching VaR (positive = loss)
        fees_percentage: Fees as a percentage of turnover
        slippage_bp: Slippage in basis points of turnover
        cost_drag_percentage: Fees plus slippage as a percentage of |gross P&L|
        breaker_closes: Trades force-closed by a breaker
        asset_breakers_triggered: Per-symbol breaker trips
        global_breakers_triggered: Account-wide breaker trips
        trades_blocked_by_breakers: Entry signals rejected while a breaker was active
        validation_passed: pnl_net_positive and es95_improved and var99_improved
        mc_*: Scenario-set statistics; None when Monte Carlo did not run
    """

    run_id: str
    initial_capital: Decimal
    final_equity: Decimal
    total_trades: int
    winning_trades: int
    losing_trades: int
    total_return: Decimal
    net_profit: Decimal
    win_rate: Decimal
    profit_factor: Decimal | None
    avg_win: Decimal
    avg_loss: Decimal
    payoff_ratio: Decimal | None
    expectancy: Decimal
    max_drawdown: Decimal
    max_drawdown_pct: Decimal
    max_drawdown_duration_hours: Decimal
    sharpe_ratio: Decimal
    sortino_ratio: Decimal | None
    var_95: Decimal
    es_95: Decimal
    total_fees: Decimal
    total_slippage: Decimal
    turnover: Decimal
    breaker_closes: int
    mean_return: Decimal = ZERO
    stdev_return: Decimal = ZERO
    var_99: Decimal = ZERO
    es_99: Decimal = ZERO
    fees_percentage: Decimal = ZERO
    slippage_bp: Decimal = ZERO
    cost_drag_percentage: Decimal = ZERO
    asset_breakers_triggered: int = 0
    global_breakers_triggered: int = 0
    trades_blocked_by_breakers: int = 0
    pnl_net_positive: bool = False
    es95_improved: bool = True
    var99_improved: bool = True
    validation_passed: bool = False
    validation_notes: str = ""
    mc_scenario_count: int | None = None
    mc_mean_final_equity: Decimal | None = None
    mc_std_final_equity: Decimal | None = None
    mc_final_equity_p5: Decimal | None = None
    mc_final_equity_p50: Decimal | None = None
    mc_final_equity_p95: Decimal | None = None
    mc_max_drawdown_p95: Decimal | None = None
    mc_probability_of_ruin: Decimal | None = None
    mc_probability_of_breaker: Decimal | None = None
    mc_probability_positive_pnl: Decimal | None = None
    mc_mean_var_95: Decimal | None = None
    mc_mean_es_95: Decimal | None = None
    mc_var_99: Decimal | None = None
    mc_es_99: Decimal | None = None
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_monte_carlo(self) -> bool:
        return self.mc_scenario_count is not None

    def monte_carlo_summary(self) -> dict[str, Any] | None:
        """Scenario-set statistics only, or None when Monte Carlo did not run."""
        if not self.has_monte_carlo:
            return None
        return {
            key: (str(value) if isinstance(value, Decimal) else value)
            for key, value in asdict(self).items()
            if key.startswith("mc_")
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (Decimals as strings)."""
        data: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if isinstance(value, Decimal):
                data[key] = str(value)
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
            else:
                data[key] = value
        return data


class MetricsCalculator:
    """Computes and persists a run's metrics snapshot.

    ``calculate`` is pure. ``calculate_and_save_metrics`` loads the ledger
    and run record from the repository and writes the snapshot once; a
    second call for the same run returns the stored snapshot.

    Example:
        >>> calculator = MetricsCalculator(repository)
        >>> snapshot = calculator.calculate_and_save_metrics(run_id, Decimal("10000"), scenarios)
        >>> snapshot.win_rate
    """

    def __init__(self, repository: BacktestRepository | None = None):
        """Initialize metrics calculator.

        Args:
            repository: Record sink; only required for calculate_and_save_metrics
        """
        self.repository = repository

    def calculate_and_save_metrics(
        self,
        run_id: str,
        initial_capital: Decimal,
        monte_carlo_results: Sequence[MonteCarloScenario] | None = None,
    ) -> MetricsSnapshot:
        """
        Compute the snapshot from the persisted ledger and store it.

        Args:
            run_id: Run whose ledger is summarized
            initial_capital: Starting equity of the run
            monte_carlo_results: Scenario set, when Monte Carlo ran

        Returns:
            The stored MetricsSnapshot

        Raises:
            RunNotFoundError: If the run does not exist
        """
        if self.repository is None:
            raise RuntimeError("MetricsCalculator needs a repository to save metrics")

        existing = self.repository.get_metrics(run_id)
        if existing is not None:
            logger.info(f"Run {run_id}: metrics already stored, returning existing snapshot")
            return existing

        run = self.repository.get_run(run_id)
        trades = self.repository.get_trades(run_id)
        breaker_stats = BreakerStats(
            asset_triggered=run.asset_breakers_triggered or 0,
            global_triggered=run.global_breakers_triggered or 0,
            entries_blocked=run.entries_blocked or 0,
        )
        snapshot = self.calculate(
            run_id=run_id,
            trades=trades,
            initial_capital=initial_capital,
            start_date=run.start_date,
            end_date=run.end_date,
            scenarios=monte_carlo_results,
            max_acceptable_loss=float(run.risk_params.get("max_acceptable_loss", 0.5)),
            breaker_stats=breaker_stats,
        )
        return self.repository.save_metrics(snapshot)

    def calculate(
        self,
        run_id: str,
        trades: Sequence[Trade],
        initial_capital: Decimal,
        start_date: datetime,
        end_date: datetime,
        scenarios: Sequence[MonteCarloScenario] | None = None,
        max_acceptable_loss: float = 0.5,
        breaker_stats: BreakerStats | None = None,
    ) -> MetricsSnapshot:
        """Compute every metric from the ledger and optional scenario set."""
        initial_capital = quantize(to_decimal(initial_capital))
        breaker_stats = breaker_stats or BreakerStats()

        wins = [t.net_pnl for t in trades if t.net_pnl > 0]
        losses = [t.net_pnl for t in trades if t.net_pnl < 0]
        total = len(trades)

        net_profit = sum((t.net_pnl for t in trades), ZERO)
        final_equity = initial_capital + net_profit
        gross_profit = sum(wins, ZERO)
        gross_loss = -sum(losses, ZERO)

        avg_win = gross_profit / len(wins) if wins else ZERO
        avg_loss = gross_loss / len(losses) if losses else ZERO
        expectancy = quantize(net_profit / total) if total else ZERO
        profit_factor = quantize(gross_profit / gross_loss) if gross_loss > 0 else None

        drawdown = EquityCurve.from_trades(start_date, initial_capital, trades).max_drawdown()
        returns = extract_trade_returns(trades)
        sharpe, sortino = self._risk_adjusted(returns, start_date, end_date)
        var_95, es_95 = tail_risk(returns, 0.95)
        var_99, es_99 = tail_risk(returns, 0.99)
        mean_return = statistics.mean(returns) if returns else 0.0
        stdev_return = statistics.stdev(returns) if len(returns) > 1 else 0.0

        total_fees = sum((t.fees for t in trades), ZERO)
        total_slippage = sum((t.slippage for t in trades), ZERO)
        gross_pnl = sum((t.gross_pnl for t in trades), ZERO)
        turnover = sum(
            (t.notional + t.exit_price * t.quantity for t in trades), ZERO
        )
        fees_percentage = total_fees / turnover * 100 if turnover > 0 else ZERO
        slippage_bp = total_slippage / turnover * 10000 if turnover > 0 else ZERO
        cost_drag = (total_fees + total_slippage) / abs(gross_pnl) * 100 if gross_pnl != 0 else ZERO

        snapshot_kwargs: dict[str, Any] = {}
        summary = None
        if scenarios:
            summary = MonteCarloSummary.from_scenarios(
                scenarios, float(initial_capital), max_acceptable_loss
            )
            snapshot_kwargs = {
                "mc_scenario_count": summary.scenario_count,
                "mc_mean_final_equity": _q(summary.mean_final_equity),
                "mc_std_final_equity": _q(summary.std_final_equity),
                "mc_final_equity_p5": _q(summary.final_equity_p5),
                "mc_final_equity_p50": _q(summary.final_equity_p50),
                "mc_final_equity_p95": _q(summary.final_equity_p95),
                "mc_max_drawdown_p95": _q(summary.max_drawdown_p95),
                "mc_probability_of_ruin": _q(summary.probability_of_ruin),
                "mc_probability_of_breaker": _q(summary.probability_of_breaker),
                "mc_probability_positive_pnl": _q(summary.probability_positive_pnl),
                "mc_mean_var_95": _q(summary.mean_var_95),
                "mc_mean_es_95": _q(summary.mean_es_95),
                "mc_var_99": _q(summary.var_99),
                "mc_es_99": _q(summary.es_99),
            }

        validation = self._validate(
            expectancy, profit_factor, drawdown.pct, es_95, var_99, summary
        )
        logger.info(
            f"Run {run_id}: validation {'passed' if validation['validation_passed'] else 'failed'} "
            f"({total} trades, expectancy {expectancy})"
        )

        return MetricsSnapshot(
            run_id=run_id,
            initial_capital=initial_capital,
            final_equity=quantize(final_equity),
            total_trades=total,
            winning_trades=len(wins),
            losing_trades=len(losses),
            total_return=quantize(net_profit / initial_capital) if initial_capital > 0 else ZERO,
            net_profit=quantize(net_profit),
            win_rate=quantize(Decimal(len(wins)) / Decimal(total)) if total else ZERO,
            profit_factor=profit_factor,
            avg_win=quantize(avg_win),
            avg_loss=quantize(avg_loss),
            payoff_ratio=quantize(avg_win / avg_loss) if avg_loss > 0 else None,
            expectancy=expectancy,
            max_drawdown=drawdown.amount,
            max_drawdown_pct=drawdown.pct,
            max_drawdown_duration_hours=drawdown.duration_hours,
            sharpe_ratio=quantize(to_decimal(sharpe)),
            sortino_ratio=_q(sortino),
            var_95=quantize(to_decimal(var_95)),
            es_95=quantize(to_decimal(es_95)),
            total_fees=quantize(total_fees),
            total_slippage=quantize(total_slippage),
            turnover=quantize(turnover),
            breaker_closes=sum(1 for t in trades if t.close_reason is CloseReason.BREAKER),
            mean_return=quantize(to_decimal(mean_return)),
            stdev_return=quantize(to_decimal(stdev_return)),
            var_99=quantize(to_decimal(var_99)),
            es_99=quantize(to_decimal(es_99)),
            fees_percentage=quantize(fees_percentage),
            slippage_bp=quantize(slippage_bp),
            cost_drag_percentage=quantize(cost_drag),
            asset_breakers_triggered=breaker_stats.asset_triggered,
            global_breakers_triggered=breaker_stats.global_triggered,
            trades_blocked_by_breakers=breaker_stats.entries_blocked,
            **validation,
            **snapshot_kwargs,
        )

    @staticmethod
    def _validate(
        expectancy: Decimal,
        profit_factor: Decimal | None,
        max_drawdown_pct: Decimal,
        es_95: float,
        var_99: float,
        summary: MonteCarloSummary | None,
    ) -> dict[str, Any]:
        """Pass/fail checks over the ledger and, when present, the scenario set.

        A run passes when its expectancy is positive and the scenarios' tail
        risk stays within TAIL_RISK_TOLERANCE of the ledger's own. Profit
        factor and drawdown only add notes.
        """
        notes = []
        pnl_net_positive = expectancy > 0
        if not pnl_net_positive:
            notes.append(f"Expectancy {expectancy} is not positive")

        if summary is None:
            es95_improved = var99_improved = True
            notes.append("Monte Carlo skipped; tail risk checks not applied")
        else:
            es95_improved = summary.mean_es_95 <= es_95 * TAIL_RISK_TOLERANCE
            var99_improved = summary.var_99 <= var_99 * TAIL_RISK_TOLERANCE
            if not es95_improved:
                notes.append(f"Scenario ES95 {summary.mean_es_95:.6f} exceeds ledger ES95 {es_95:.6f}")
            if not var99_improved:
                notes.append(f"Scenario VaR99 {summary.var_99:.6f} exceeds ledger VaR99 {var_99:.6f}")

        if profit_factor is not None and profit_factor < 1:
            notes.append(f"Profit factor {profit_factor} below 1")
        if max_drawdown_pct > VALIDATION_MAX_DRAWDOWN:
            notes.append(f"Max drawdown {max_drawdown_pct} above {VALIDATION_MAX_DRAWDOWN}")

        return {
            "pnl_net_positive": pnl_net_positive,
            "es95_improved": es95_improved,
            "var99_improved": var99_improved,
            "validation_passed": pnl_net_positive and es95_improved and var99_improved,
            "validation_notes": "\n".join(notes),
        }

    @staticmethod
    def _risk_adjusted(
        returns: list[float], start_date: datetime, end_date: datetime
    ) -> tuple[float, float | None]:
        """Sharpe and Sortino of per-trade returns, annualized by trade frequency.

        Returns:
            (sharpe, sortino). Sharpe is 0.0 with fewer than two trades or
            zero dispersion; Sortino is None when no trade lost money.
        """
        if len(returns) < 2:
            return 0.0, None

        years = max((end_date - start_date).total_seconds() / 86400 / DAYS_PER_YEAR, 1 / DAYS_PER_YEAR)
        trades_per_year = len(returns) / years
        mean = statistics.mean(returns)
        std = statistics.stdev(returns)

        sharpe = mean / std * math.sqrt(trades_per_year) if std > 0 else 0.0

        downside = [r for r in returns if r < 0]
        if not downside:
            return sharpe, None
        downside_std = math.sqrt(sum(r**2 for r in downside) / len(downside))
        sortino = mean / downside_std * math.sqrt(trades_per_year) if downside_std > 0 else None
        return sharpe, sortino

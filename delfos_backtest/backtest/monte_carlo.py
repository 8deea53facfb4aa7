"""Monte Carlo resampling of the trade ledger.

Each scenario bootstraps a return sequence of the same length as the real
ledger (sampling with replacement) and replays it from the initial capital.
With breakers on, the daily loss stop and the campaign drawdown stop are
applied to the synthetic path: on breach the remaining returns are dropped
and equity is frozen.

Scenarios fall into regimes. Every regime other than plain ``bootstrap``
first blends each return with a market-wide shock and a shock shared by its
group (the trade's symbol), weighted by the regime's intra-group and
inter-group correlation, then resamples the blended returns.

Scenarios are independent. Per-scenario seeds and the regime assignment are
drawn up front from one generator, so results do not depend on worker
scheduling.
"""

import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

import numpy as np

from delfos_backtest.breakers.models import BreakerType
from delfos_backtest.config.params import RiskParams
from delfos_backtest.errors import InsufficientSampleError, RunCancelledError, SimulationFault
from delfos_backtest.models.trade import Trade

logger = logging.getLogger(__name__)

DEFAULT_SCENARIO_COUNT = 500
DEFAULT_MIN_TRADES = 10

MARKET_SHOCK_RANGE = 0.02
GROUP_SHOCK_RANGE = 0.01


class ScenarioType(str, Enum):
    """Correlation regime of a scenario."""

    BOOTSTRAP = "bootstrap"
    NORMAL = "normal"
    STRESS_INTRA_CORR = "stress_intra_corr"
    STRESS_INTER_CORR = "stress_inter_corr"
    BLACK_SWAN = "black_swan"


# Regime -> ((intra low, intra high), (inter low, inter high))
CORRELATION_RANGES: dict[ScenarioType, tuple[tuple[float, float], tuple[float, float]]] = {
    ScenarioType.BOOTSTRAP: ((0.0, 0.0), (0.0, 0.0)),
    ScenarioType.NORMAL: ((0.30, 0.60), (0.10, 0.20)),
    ScenarioType.STRESS_INTRA_CORR: ((0.60, 0.85), (0.15, 0.30)),
    ScenarioType.STRESS_INTER_CORR: ((0.50, 0.80), (0.20, 0.50)),
    ScenarioType.BLACK_SWAN: ((0.75, 0.85), (0.40, 0.50)),
}

DEFAULT_SCENARIO_MIX: dict[ScenarioType, float] = {
    ScenarioType.NORMAL: 0.5,
    ScenarioType.STRESS_INTRA_CORR: 0.2,
    ScenarioType.STRESS_INTER_CORR: 0.2,
    ScenarioType.BLACK_SWAN: 0.1,
}
BOOTSTRAP_ONLY: dict[ScenarioType, float] = {ScenarioType.BOOTSTRAP: 1.0}


def extract_trade_returns(trades: Sequence[Trade]) -> list[float]:
    """Per-trade returns: net P&L as a fraction of equity at entry."""
    return [float(trade.return_on_equity) for trade in trades]


def extract_trade_groups(trades: Sequence[Trade]) -> list[str]:
    """Correlation group of each trade, aligned with extract_trade_returns."""
    return [trade.symbol for trade in trades]


def estimate_trades_per_day(trade_count: int, start_date: datetime, end_date: datetime) -> int:
    """Average trades per calendar day of the run, at least 1."""
    days = max(1.0, (end_date - start_date).total_seconds() / 86400)
    return max(1, round(trade_count / days))


def nearest_rank(sorted_values: Sequence[Any], p: float) -> Any:
    """Nearest-rank percentile of pre-sorted values: index min(n - 1, int(n * p))."""
    n = len(sorted_values)
    return sorted_values[min(n - 1, int(n * p))]


def tail_risk(returns: Sequence[float], level: float = 0.95) -> tuple[float, float]:
    """
    Historical value at risk and expected shortfall, reported as losses.

    VaR is the nearest-rank ``1 - level`` quantile; ES averages every return
    at or below it. Both are 0.0 for an empty sample.

    Returns:
        (var, es), positive when the tail loses money
    """
    if len(returns) == 0:
        return 0.0, 0.0
    ordered = sorted(float(r) for r in returns)
    cutoff = nearest_rank(ordered, 1.0 - level)
    tail = [r for r in ordered if r <= cutoff]
    return -cutoff, -sum(tail) / len(tail)


def normalize_scenario_mix(mix: Mapping[Any, float]) -> dict[ScenarioType, float]:
    """
    Validate a regime mix and scale its weights to sum to 1.

    Raises:
        ValueError: Unknown regime, negative weight or all-zero weights
    """
    weights = {ScenarioType(key): float(value) for key, value in mix.items()}
    if any(w < 0 or not math.isfinite(w) for w in weights.values()):
        raise ValueError("Scenario mix weights must be finite and non-negative")
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("Scenario mix needs at least one positive weight")
    return {key: w / total for key, w in weights.items() if w > 0}


def assign_scenario_types(
    scenario_count: int, mix: Mapping[ScenarioType, float], rng: np.random.Generator
) -> list[ScenarioType]:
    """
    Regime of every scenario: floor(N * weight) per regime, the remainder
    going to the last regime of the mix, in shuffled order.
    """
    types: list[ScenarioType] = []
    regimes = list(mix)
    for regime in regimes[:-1]:
        types.extend([regime] * math.floor(scenario_count * mix[regime]))
    types.extend([regimes[-1]] * (scenario_count - len(types)))
    order = rng.permutation(scenario_count)
    return [types[i] for i in order]


def correlate_returns(
    returns: np.ndarray,
    group_codes: np.ndarray,
    group_count: int,
    intra_correlation: float,
    inter_correlation: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Blend returns with one market shock and one shock per group.

    ``r' = r * w + group_shock * intra + market_shock * inter`` with the
    idiosyncratic weight ``w = 1 - intra - inter`` floored at 0.
    """
    market_shock = (rng.random() - 0.5) * MARKET_SHOCK_RANGE
    group_shocks = (rng.random(group_count) - 0.5) * GROUP_SHOCK_RANGE
    weight = max(0.0, 1.0 - intra_correlation - inter_correlation)
    return (
        returns * weight
        + group_shocks[group_codes] * intra_correlation
        + market_shock * inter_correlation
    )


@dataclass(frozen=True)
class MonteCarloScenario:
    """One resampled path.

    Attributes:
        scenario_number: Position in the scenario set (0..N-1)
        returns: Sampled per-trade returns (full sequence, after correlation)
        equity_path: Equity after each applied return, starting with initial capital
        final_equity: Terminal equity
        max_drawdown: Largest peak-to-trough decline as a fraction, in [0, 1]
        trades_applied: Returns applied before the path ended
        breaker_triggered: Whether a breaker froze the path
        breaker_type: Which breaker froze it
        scenario_type: Correlation regime
        intra_correlation: Weight of the group shock
        inter_correlation: Weight of the market shock
        var_95: 95% VaR of the applied returns (positive = loss)
        es_95: Expected shortfall beyond var_95 (positive = loss)
        breakers_activated: The breaker trip plus every return it blocked
    """

    scenario_number: int
    returns: tuple[float, ...]
    equity_path: tuple[float, ...]
    final_equity: float
    max_drawdown: float
    trades_applied: int
    breaker_triggered: bool = False
    breaker_type: str | None = None
    scenario_type: str = ScenarioType.BOOTSTRAP.value
    intra_correlation: float = 0.0
    inter_correlation: float = 0.0
    var_95: float = 0.0
    es_95: float = 0.0
    breakers_activated: int = 0

    @property
    def total_pnl(self) -> float:
        return self.final_equity - self.equity_path[0]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "scenario_number": self.scenario_number,
            "scenario_type": self.scenario_type,
            "intra_correlation": self.intra_correlation,
            "inter_correlation": self.inter_correlation,
            "final_equity": self.final_equity,
            "total_pnl": self.total_pnl,
            "max_drawdown": self.max_drawdown,
            "var_95": self.var_95,
            "es_95": self.es_95,
            "trades_applied": self.trades_applied,
            "breaker_triggered": self.breaker_triggered,
            "breaker_type": self.breaker_type,
            "breakers_activated": self.breakers_activated,
            "returns": list(self.returns),
            "equity_path": list(self.equity_path),
        }


@dataclass(frozen=True)
class MonteCarloSummary:
    """Distribution statistics over a scenario set.

    ``var_99`` and ``es_99`` are the 99th percentiles of the scenarios'
    95% VaR and ES, the stress tail of the per-path risk.
    """

    scenario_count: int
    mean_final_equity: float
    std_final_equity: float
    final_equity_p5: float
    final_equity_p50: float
    final_equity_p95: float
    max_drawdown_p5: float
    max_drawdown_p50: float
    max_drawdown_p95: float
    probability_of_ruin: float
    probability_of_breaker: float
    probability_positive_pnl: float
    ruin_threshold: float
    mean_var_95: float = 0.0
    mean_es_95: float = 0.0
    var_99: float = 0.0
    es_99: float = 0.0
    scenario_types: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_scenarios(
        cls,
        scenarios: Sequence[MonteCarloScenario],
        initial_capital: float,
        max_acceptable_loss: float,
    ) -> "MonteCarloSummary":
        """
        Summarize scenarios.

        Args:
            scenarios: Non-empty scenario set
            initial_capital: Starting equity of every scenario
            max_acceptable_loss: Ruin when terminal equity < initial * (1 - value)

        Raises:
            ValueError: If scenarios is empty
        """
        if not scenarios:
            raise ValueError("Cannot summarize an empty scenario set")

        n = len(scenarios)
        finals = sorted(s.final_equity for s in scenarios)
        drawdowns = sorted(s.max_drawdown for s in scenarios)
        vars_95 = sorted(s.var_95 for s in scenarios)
        es_95 = sorted(s.es_95 for s in scenarios)
        ruin_threshold = initial_capital * (1 - max_acceptable_loss)

        mean = sum(finals) / n
        std = math.sqrt(sum((x - mean) ** 2 for x in finals) / (n - 1)) if n > 1 else 0.0

        scenario_types: dict[str, int] = {}
        for s in scenarios:
            scenario_types[s.scenario_type] = scenario_types.get(s.scenario_type, 0) + 1

        return cls(
            scenario_count=n,
            mean_final_equity=mean,
            std_final_equity=std,
            final_equity_p5=nearest_rank(finals, 0.05),
            final_equity_p50=nearest_rank(finals, 0.50),
            final_equity_p95=nearest_rank(finals, 0.95),
            max_drawdown_p5=nearest_rank(drawdowns, 0.05),
            max_drawdown_p50=nearest_rank(drawdowns, 0.50),
            max_drawdown_p95=nearest_rank(drawdowns, 0.95),
            probability_of_ruin=sum(1 for x in finals if x < ruin_threshold) / n,
            probability_of_breaker=sum(1 for s in scenarios if s.breaker_triggered) / n,
            probability_positive_pnl=sum(1 for x in finals if x > initial_capital) / n,
            ruin_threshold=ruin_threshold,
            mean_var_95=sum(vars_95) / n,
            mean_es_95=sum(es_95) / n,
            var_99=nearest_rank(vars_95, 0.99),
            es_99=nearest_rank(es_95, 0.99),
            scenario_types=dict(sorted(scenario_types.items())),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "scenario_count": self.scenario_count,
            "mean_final_equity": self.mean_final_equity,
            "std_final_equity": self.std_final_equity,
            "final_equity_p5": self.final_equity_p5,
            "final_equity_p50": self.final_equity_p50,
            "final_equity_p95": self.final_equity_p95,
            "max_drawdown_p5": self.max_drawdown_p5,
            "max_drawdown_p50": self.max_drawdown_p50,
            "max_drawdown_p95": self.max_drawdown_p95,
            "probability_of_ruin": self.probability_of_ruin,
            "probability_of_breaker": self.probability_of_breaker,
            "probability_positive_pnl": self.probability_positive_pnl,
            "ruin_threshold": self.ruin_threshold,
            "mean_var_95": self.mean_var_95,
            "mean_es_95": self.mean_es_95,
            "var_99": self.var_99,
            "es_99": self.es_99,
            "scenario_types": dict(self.scenario_types),
        }


def simulate_scenario(
    scenario_number: int,
    returns: np.ndarray,
    rng: np.random.Generator,
    initial_capital: float,
    apply_breakers: bool,
    daily_stop: float,
    campaign_stop: float,
    trades_per_day: int,
    scenario_type: ScenarioType | str = ScenarioType.BOOTSTRAP,
    group_codes: np.ndarray | None = None,
) -> MonteCarloScenario:
    """
    Correlate, bootstrap and replay one scenario.

    Pure function of its arguments: the same returns, generator state and
    thresholds always produce the same scenario. The replay is vectorized:
    the whole path is one cumulative product and the first index at which
    equity hits zero or a breaker trips ends it.

    Args:
        group_codes: Group index of each return (0..G-1); all one group when None
    """
    scenario_type = ScenarioType(scenario_type)
    intra = inter = 0.0
    source = returns
    if scenario_type is not ScenarioType.BOOTSTRAP:
        (intra_low, intra_high), (inter_low, inter_high) = CORRELATION_RANGES[scenario_type]
        intra = float(rng.uniform(intra_low, intra_high))
        inter = float(rng.uniform(inter_low, inter_high))
        if group_codes is None:
            group_codes = np.zeros(len(returns), dtype=np.intp)
        group_count = int(group_codes.max()) + 1 if len(group_codes) else 1
        source = correlate_returns(returns, group_codes, group_count, intra, inter, rng)

    sample = rng.choice(source, size=len(source), replace=True)
    n = len(sample)

    # equity[k] is the equity after k returns, accumulated left to right
    equity = np.cumprod(np.concatenate(([initial_capital], np.maximum(1.0 + sample, 0.0))))
    peaks = np.maximum.accumulate(equity)
    drawdowns = (peaks - equity) / peaks

    after = equity[1:]
    ruined = after == 0.0
    campaign = np.zeros(n, dtype=bool)
    daily = np.zeros(n, dtype=bool)
    if apply_breakers:
        day_start = equity[:-1][(np.arange(n) // trades_per_day) * trades_per_day]
        with np.errstate(divide="ignore", invalid="ignore"):
            campaign = after / peaks[1:] - 1 <= campaign_stop
            daily = (day_start > 0) & (after / day_start - 1 <= daily_stop)

    hits = np.flatnonzero(ruined | campaign | daily)
    applied = int(hits[0]) + 1 if hits.size else n
    breaker_type: str | None = None
    if hits.size and not ruined[hits[0]]:
        if campaign[hits[0]]:
            breaker_type = BreakerType.CAMPAIGN_DRAWDOWN.value
        else:
            breaker_type = BreakerType.DAILY_LOSS.value

    path = equity[: applied + 1]
    var_95, es_95 = tail_risk(sample[:applied].tolist())

    return MonteCarloScenario(
        scenario_number=scenario_number,
        returns=tuple(sample.tolist()),
        equity_path=tuple(path.tolist()),
        final_equity=float(path[-1]),
        max_drawdown=min(1.0, float(drawdowns[: applied + 1].max())),
        trades_applied=applied,
        breaker_triggered=breaker_type is not None,
        breaker_type=breaker_type,
        scenario_type=scenario_type.value,
        intra_correlation=intra,
        inter_correlation=inter,
        var_95=var_95,
        es_95=es_95,
        breakers_activated=1 + n - applied if breaker_type is not None else 0,
    )


class MonteCarloSimulator:
    """Bootstrap simulator for a run's trade returns.

    Scenarios run on a thread pool. Each scenario is a handful of numpy
    array operations, and numpy releases the GIL only inside its kernels, so
    for short ledgers the pool mostly bounds memory and keeps cancellation
    responsive rather than adding parallel speedup.

    Example:
        >>> simulator = MonteCarloSimulator(initial_capital=10000.0, seed=42)
        >>> scenarios = simulator.run_simulation("run-1", returns, scenario_count=500)
        >>> summary = MonteCarloSummary.from_scenarios(scenarios, 10000.0, 0.5)
    """

    def __init__(
        self,
        initial_capital: float,
        apply_breakers: bool = True,
        global_stop_daily_pct: float = -0.024,
        campaign_dd_stop: float = -0.10,
        trades_per_day: int = 1,
        min_trades: int = DEFAULT_MIN_TRADES,
        max_workers: int | None = None,
        rng: np.random.Generator | None = None,
        seed: int | None = None,
        cancel_event: threading.Event | None = None,
        scenario_mix: Mapping[Any, float] | None = None,
    ):
        """Initialize the simulator.

        Args:
            initial_capital: Starting equity of every scenario
            apply_breakers: Apply daily loss and campaign drawdown stops
            global_stop_daily_pct: Daily loss threshold (negative fraction)
            campaign_dd_stop: Drawdown-from-peak threshold (negative fraction)
            trades_per_day: Trades grouped into one synthetic day
            min_trades: Minimum number of returns required
            max_workers: Worker threads (None lets the executor decide)
            rng: Generator used to draw per-scenario seeds and regimes
            seed: Used to build the generator when rng is not given
            cancel_event: When set, pending scenarios are cancelled
            scenario_mix: Regime weights; DEFAULT_SCENARIO_MIX when None
        """
        if initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        self.initial_capital = float(initial_capital)
        self.apply_breakers = apply_breakers
        self.global_stop_daily_pct = global_stop_daily_pct
        self.campaign_dd_stop = campaign_dd_stop
        self.trades_per_day = max(1, trades_per_day)
        self.min_trades = min_trades
        self.max_workers = max_workers
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.cancel_event = cancel_event
        self.scenario_mix = normalize_scenario_mix(
            scenario_mix if scenario_mix is not None else DEFAULT_SCENARIO_MIX
        )

    @classmethod
    def from_risk_params(
        cls,
        initial_capital: float,
        risk: RiskParams,
        apply_breakers: bool = True,
        **kwargs: Any,
    ) -> "MonteCarloSimulator":
        """Build a simulator using a run's breaker thresholds."""
        return cls(
            initial_capital=initial_capital,
            apply_breakers=apply_breakers,
            global_stop_daily_pct=risk.global_stop_daily_pct,
            campaign_dd_stop=risk.campaign_dd_stop,
            **kwargs,
        )

    def run_simulation(
        self,
        run_id: str,
        trade_returns: Sequence[float],
        scenario_count: int = DEFAULT_SCENARIO_COUNT,
        groups: Sequence[str] | None = None,
    ) -> list[MonteCarloScenario]:
        """
        Run the scenario set.

        Args:
            run_id: Run identifier (for logs)
            trade_returns: Per-trade returns from the real ledger
            scenario_count: Number of scenarios N
            groups: Correlation group of each return (e.g. its symbol)

        Returns:
            Exactly N scenarios ordered by scenario_number

        Raises:
            InsufficientSampleError: Fewer returns than the configured minimum
            RunCancelledError: The cancel event was set
            SimulationFault: A scenario failed unexpectedly
        """
        if scenario_count < 1:
            raise ValueError("scenario_count must be at least 1")
        if len(trade_returns) < self.min_trades:
            raise InsufficientSampleError(len(trade_returns), self.min_trades)
        if groups is not None and len(groups) != len(trade_returns):
            raise ValueError("groups must align with trade_returns")

        returns = np.asarray(trade_returns, dtype=float)
        if not np.all(np.isfinite(returns)):
            raise SimulationFault(f"Run {run_id}: trade returns contain non-finite values")

        group_codes: np.ndarray | None = None
        if groups is not None:
            _, group_codes = np.unique(np.asarray(groups, dtype=str), return_inverse=True)

        seeds = self.rng.integers(0, 2**63 - 1, size=scenario_count, dtype=np.int64)
        types = assign_scenario_types(scenario_count, self.scenario_mix, self.rng)

        logger.info(
            f"Run {run_id}: simulating {scenario_count} scenarios over {len(returns)} returns"
        )

        scenarios: list[MonteCarloScenario] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures: dict[Future[MonteCarloScenario], int] = {
                executor.submit(
                    simulate_scenario,
                    number,
                    returns,
                    np.random.default_rng(int(seeds[number])),
                    self.initial_capital,
                    self.apply_breakers,
                    self.global_stop_daily_pct,
                    self.campaign_dd_stop,
                    self.trades_per_day,
                    types[number],
                    group_codes,
                ): number
                for number in range(scenario_count)
            }

            for future in as_completed(futures):
                if self.cancel_event is not None and self.cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
                    raise RunCancelledError(
                        f"Run {run_id} cancelled during Monte Carlo after {len(scenarios)} scenarios"
                    )
                try:
                    scenarios.append(future.result())
                except Exception as e:
                    for pending in futures:
                        pending.cancel()
                    raise SimulationFault(
                        f"Scenario {futures[future]} failed: {e}"
                    ) from e

        scenarios.sort(key=lambda s: s.scenario_number)

        logger.info(
            f"Run {run_id}: Monte Carlo complete, "
            f"{sum(1 for s in scenarios if s.breaker_triggered)} scenarios hit a breaker"
        )
        return scenarios

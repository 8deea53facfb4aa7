"""Run orchestrator: sequences engine, simulator and calculator for each run."""

import logging
import secrets
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

from delfos_backtest.backtest.engine import BacktestEngine, BacktestResult
from delfos_backtest.backtest.metrics import MetricsCalculator
from delfos_backtest.backtest.monte_carlo import (
    BOOTSTRAP_ONLY,
    MonteCarloScenario,
    MonteCarloSimulator,
    estimate_trades_per_day,
    extract_trade_groups,
    extract_trade_returns,
)
from delfos_backtest.config.params import (
    CostParams,
    ParameterSnapshot,
    RiskParams,
    StrategyParams,
    resolve_params,
)
from delfos_backtest.config.settings import EngineSettings
from delfos_backtest.core.state_machine import MonteCarloStatus, RunStatus
from delfos_backtest.errors import (
    BacktestError,
    ConfigurationError,
    InsufficientSampleError,
    RunCancelledError,
    RunNotFoundError,
    SimulationFault,
)
from delfos_backtest.market_data.provider import MarketDataSource
from delfos_backtest.models.bar import ensure_utc
from delfos_backtest.models.money import to_decimal
from delfos_backtest.monitoring.metrics import EngineMetrics, MetricsConfig
from delfos_backtest.persistence.models import BacktestRunRecord
from delfos_backtest.persistence.repository import BacktestRepository
from delfos_backtest.strategies.ema_breakout import EmaBreakoutStrategy
from delfos_backtest.strategies.interface import Strategy

logger = logging.getLogger(__name__)

SEED_BITS = 63


class RunOrchestrator:
    """Owns the run lifecycle and is the only component that writes run records.

    Pipeline per run (on a worker thread):
        engine -> persist trades -> Monte Carlo (when requested and eligible)
        -> persist scenarios -> metrics -> completed

    Faults mark the run failed with a specific message and never escape the
    worker. Insufficient samples and simulation faults only skip the Monte
    Carlo stage; the run still completes with ledger-only metrics.

    Example:
        >>> orchestrator = RunOrchestrator(repository, source)
        >>> run_id = orchestrator.submit(owner_id="u1", name="demo", symbols=["BTC/USDT"], ...)
        >>> orchestrator.wait(run_id, timeout=60)
    """

    def __init__(
        self,
        repository: BacktestRepository,
        data_source: MarketDataSource,
        strategy_factory: Callable[[], Strategy] = EmaBreakoutStrategy,
        settings: EngineSettings | None = None,
        metrics: EngineMetrics | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            repository: Record sink for runs and derived records
            data_source: Market data used by every run
            strategy_factory: Builds a fresh strategy per run
            settings: Engine settings (defaults if not provided)
            metrics: Prometheus instrumentation (built from settings if not provided)
        """
        self.repository = repository
        self.data_source = data_source
        self.strategy_factory = strategy_factory
        self.settings = settings or EngineSettings()
        self.metrics = metrics or EngineMetrics(MetricsConfig(enabled=self.settings.metrics_enabled))
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.run_workers, thread_name_prefix="backtest-run"
        )
        self._active: dict[str, tuple[Future[None], threading.Event]] = {}
        self._lock = threading.Lock()

    def create_run(
        self,
        owner_id: str,
        name: str,
        symbols: Sequence[str],
        start_date: datetime,
        end_date: datetime,
        initial_capital: Decimal | float | str,
        strategy_params: Mapping[str, Any] | None = None,
        risk_params: Mapping[str, Any] | None = None,
        cost_params: Mapping[str, Any] | None = None,
        apply_breakers: bool = True,
        run_monte_carlo: bool = True,
        scenario_count: int | None = None,
        seed: int | None = None,
    ) -> str:
        """
        Validate inputs, resolve parameters and store a pending run.

        Returns:
            The new run's id

        Raises:
            ConfigurationError: If any input is invalid (nothing is stored)
        """
        params = resolve_params(strategy_params, risk_params, cost_params)

        symbols = list(symbols)
        start_date = ensure_utc(start_date)
        end_date = ensure_utc(end_date)
        capital = to_decimal(initial_capital)
        count = scenario_count if scenario_count is not None else self.settings.default_scenario_count

        if not symbols or any(not s for s in symbols):
            raise ConfigurationError("At least one non-empty symbol is required")
        if len(set(symbols)) != len(symbols):
            raise ConfigurationError("Symbols must be unique")
        if start_date >= end_date:
            raise ConfigurationError("start_date must be before end_date")
        if not capital.is_finite() or capital <= 0:
            raise ConfigurationError("initial_capital must be positive")
        if count < 1:
            raise ConfigurationError("scenario_count must be at least 1")
        if seed is None:
            seed = secrets.randbits(SEED_BITS)
        elif not 0 <= seed < 2**SEED_BITS:
            raise ConfigurationError(f"seed must be in [0, 2**{SEED_BITS})")

        snapshot = params.to_dict()
        run = self.repository.create_run(
            owner_id=owner_id,
            name=name,
            symbols=symbols,
            start_date=start_date,
            end_date=end_date,
            initial_capital=capital,
            strategy_params=snapshot["strategy_params"],
            risk_params=snapshot["risk_params"],
            cost_params=snapshot["cost_params"],
            apply_breakers=apply_breakers,
            run_monte_carlo=run_monte_carlo,
            scenario_count=count,
            seed=seed,
        )
        return run.id

    def submit(self, **kwargs: Any) -> str:
        """
        Create a run, move it to running and enqueue it on the worker pool.

        Accepts the keyword arguments of :meth:`create_run`.

        Returns:
            The run id; the run is already ``running``
        """
        run_id = self.create_run(**kwargs)
        self.start(run_id)
        return run_id

    def start(self, run_id: str) -> None:
        """
        Move a pending run to running and enqueue it.

        Raises:
            RuntimeError: If the worker pool is shut down; the run is marked failed
        """
        self.repository.transition_status(run_id, RunStatus.RUNNING)
        cancel_event = threading.Event()
        with self._lock:
            try:
                future = self._executor.submit(self._execute_safely, run_id, cancel_event)
            except RuntimeError as e:
                logger.error(f"Run {run_id} could not be scheduled: {e}")
                self._fail(run_id, f"Not scheduled: {e}")
                raise
            self._active[run_id] = (future, cancel_event)
        future.add_done_callback(lambda _: self._forget(run_id))

    def execute(self, run_id: str, cancel_event: threading.Event | None = None) -> BacktestRunRecord:
        """
        Run the pipeline synchronously on the calling thread.

        Returns:
            The run record in its terminal state
        """
        run = self.repository.get_run(run_id)
        if run.status == RunStatus.PENDING.value:
            self.repository.transition_status(run_id, RunStatus.RUNNING)
        self._execute_safely(run_id, cancel_event or threading.Event())
        return self.repository.get_run(run_id)

    def cancel(self, run_id: str) -> bool:
        """
        Request cooperative cancellation of an active run.

        Returns:
            True if the run was active
        """
        with self._lock:
            entry = self._active.get(run_id)
        if entry is None:
            return False
        _, cancel_event = entry
        cancel_event.set()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def wait(self, run_id: str, timeout: float | None = None) -> bool:
        """
        Block until an active run finishes.

        Returns:
            True if the run is no longer active
        """
        with self._lock:
            entry = self._active.get(run_id)
        if entry is None:
            return True
        future, _ = entry
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._active

    def shutdown(self, wait: bool = True, cancel_active: bool = False) -> None:
        """Stop accepting runs; optionally cancel the ones in flight."""
        if cancel_active:
            with self._lock:
                events = [event for _, event in self._active.values()]
            for event in events:
                event.set()
        self._executor.shutdown(wait=wait)

    def _forget(self, run_id: str) -> None:
        with self._lock:
            self._active.pop(run_id, None)

    def _execute_safely(self, run_id: str, cancel_event: threading.Event) -> None:
        """Worker entry point; failures are recorded on the run, never raised."""
        self.metrics.record_run_started()
        status = RunStatus.FAILED
        try:
            self._run_pipeline(run_id, cancel_event)
            status = RunStatus.COMPLETED
        except RunCancelledError as e:
            logger.warning(f"Run {run_id} cancelled: {e}")
            self._fail(run_id, f"cancelled: {e}")
        except RunNotFoundError:
            logger.warning(f"Run {run_id} was deleted while executing")
        except BacktestError as e:
            logger.error(f"Run {run_id} failed: {type(e).__name__}: {e}")
            self._fail(run_id, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Run {run_id} failed unexpectedly")
            self._fail(run_id, f"Unexpected error: {type(e).__name__}: {e}")
        finally:
            self.metrics.record_run_finished(status.value)

    def _fail(self, run_id: str, message: str) -> None:
        try:
            self.repository.transition_status(
                run_id, RunStatus.FAILED, error_message=message or "failed"
            )
        except RunNotFoundError:
            logger.warning(f"Run {run_id} was deleted before its failure could be recorded")
        except BacktestError:
            logger.exception(f"Could not record failure of run {run_id}")

    def _run_pipeline(self, run_id: str, cancel_event: threading.Event) -> None:
        run = self.repository.get_run(run_id)
        params = ParameterSnapshot(
            strategy=StrategyParams.model_validate(run.strategy_params),
            risk=RiskParams.model_validate(run.risk_params),
            cost=CostParams.model_validate(run.cost_params),
        )
        initial_capital = to_decimal(run.initial_capital)

        engine = BacktestEngine(
            data_source=self.data_source,
            strategy=self.strategy_factory(),
            params=params,
            initial_capital=initial_capital,
            apply_breakers=run.apply_breakers,
            cancel_event=cancel_event,
        )
        with self.metrics.time_stage("engine"):
            result = engine.run(run_id, list(run.symbols), run.start_date, run.end_date)

        self.repository.save_trades(run_id, result.trades)
        self.repository.save_summary(run_id, result)
        self._record_engine_metrics(result)

        scenarios: list[MonteCarloScenario] | None = None
        if run.run_monte_carlo:
            scenarios = self._simulate(run, params, result, cancel_event)

        if cancel_event.is_set():
            raise RunCancelledError(f"Run {run_id} cancelled before metrics")

        with self.metrics.time_stage("metrics"):
            MetricsCalculator(self.repository).calculate_and_save_metrics(
                run_id, initial_capital, scenarios
            )

        self.repository.transition_status(run_id, RunStatus.COMPLETED)

    def _simulate(
        self,
        run: BacktestRunRecord,
        params: ParameterSnapshot,
        result: BacktestResult,
        cancel_event: threading.Event,
    ) -> list[MonteCarloScenario] | None:
        """Run the Monte Carlo stage; returns None when it is skipped."""
        trade_returns = extract_trade_returns(result.trades)
        simulator = MonteCarloSimulator.from_risk_params(
            float(run.initial_capital),
            params.risk,
            apply_breakers=run.apply_breakers,
            trades_per_day=estimate_trades_per_day(
                len(result.trades), run.start_date, run.end_date
            ),
            min_trades=self.settings.min_trades_for_monte_carlo,
            max_workers=self.settings.monte_carlo_workers,
            seed=run.seed,
            cancel_event=cancel_event,
            scenario_mix=None if self.settings.monte_carlo_stress_regimes else BOOTSTRAP_ONLY,
        )

        try:
            with self.metrics.time_stage("monte_carlo"):
                scenarios = simulator.run_simulation(
                    run.id,
                    trade_returns,
                    run.scenario_count,
                    groups=extract_trade_groups(result.trades),
                )
        except InsufficientSampleError as e:
            logger.info(f"Run {run.id}: Monte Carlo skipped: {e}")
            self.repository.set_monte_carlo_status(run.id, MonteCarloStatus.INSUFFICIENT_SAMPLE)
            return None
        except SimulationFault as e:
            logger.error(f"Run {run.id}: Monte Carlo failed, continuing without it: {e}")
            self.repository.set_monte_carlo_status(run.id, MonteCarloStatus.FAILED)
            return None

        self.repository.save_scenarios(run.id, scenarios)
        self.repository.set_monte_carlo_status(run.id, MonteCarloStatus.COMPLETED)
        self.metrics.record_scenarios(len(scenarios))
        return scenarios

    def _record_engine_metrics(self, result: BacktestResult) -> None:
        self.metrics.record_trades([t.close_reason.value for t in result.trades])
        for event in result.breaker_events:
            self.metrics.record_breaker(event.breaker_type.value)
        self.metrics.record_data_gaps(len(result.data_gaps))

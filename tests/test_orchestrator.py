"""Integration tests for the run orchestrator over in-memory data and SQLite."""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import (
    BuyAndHoldStrategy,
    ClockStrategy,
    FailingStrategy,
    NeverTradeStrategy,
    build_bars,
    declining_closes,
    wave_closes,
)
from delfos_backtest.backtest.monte_carlo import MonteCarloSimulator
from delfos_backtest.core.state_machine import MonteCarloStatus, RunStatus
from delfos_backtest.errors import ConfigurationError, RunNotFoundError, SimulationFault
from delfos_backtest.market_data.memory_provider import InMemoryMarketDataSource
from delfos_backtest.orchestration.orchestrator import RunOrchestrator

HOURS_30_DAYS = 30 * 24


@pytest.fixture
def source() -> InMemoryMarketDataSource:
    return InMemoryMarketDataSource(
        {
            "BTC/USDT": build_bars("BTC/USDT", wave_closes(HOURS_30_DAYS, base=100.0)),
            "ETH/USDT": build_bars("ETH/USDT", wave_closes(HOURS_30_DAYS, base=50.0, amplitude=0.02)),
        },
        bar_interval=timedelta(hours=1),
    )


@pytest.fixture
def make_orchestrator(repository, source, settings, engine_metrics):
    created: list[RunOrchestrator] = []

    def _make(strategy_factory=NeverTradeStrategy, data_source=None) -> RunOrchestrator:
        orchestrator = RunOrchestrator(
            repository=repository,
            data_source=data_source or source,
            strategy_factory=strategy_factory,
            settings=settings,
            metrics=engine_metrics,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in created:
        orchestrator.shutdown(wait=True, cancel_active=True)


def _run_kwargs(t0, days: int = 30, **overrides):
    kwargs = {
        "owner_id": "owner-1",
        "name": "test run",
        "symbols": ["BTC/USDT"],
        "start_date": t0,
        "end_date": t0 + timedelta(days=days),
        "initial_capital": Decimal("10000"),
    }
    kwargs.update(overrides)
    return kwargs


def test_never_trading_run_completes_without_monte_carlo(make_orchestrator, repository, t0) -> None:
    """Test a run with no trades completes with zero return and no scenario set."""
    orchestrator = make_orchestrator(NeverTradeStrategy)
    run_id = orchestrator.create_run(**_run_kwargs(t0))

    run = orchestrator.execute(run_id)

    assert run.status == RunStatus.COMPLETED.value
    assert run.monte_carlo_status == MonteCarloStatus.INSUFFICIENT_SAMPLE.value
    assert run.total_trades == 0
    assert run.started_at is not None
    assert run.completed_at is not None

    metrics = repository.get_metrics(run_id)
    assert metrics.total_trades == 0
    assert metrics.total_return == Decimal("0")
    assert metrics.final_equity == Decimal("10000")
    assert metrics.has_monte_carlo is False
    assert metrics.mc_final_equity_p50 is None
    assert repository.count_scenarios(run_id) == 0


def test_campaign_breaker_caps_run_drawdown(make_orchestrator, repository, t0) -> None:
    source = InMemoryMarketDataSource({"BTC/USDT": build_bars("BTC/USDT", declining_closes(72))})
    orchestrator = make_orchestrator(BuyAndHoldStrategy, data_source=source)
    run_id = orchestrator.create_run(
        **_run_kwargs(
            t0,
            days=3,
            risk_params={
                "risk_per_trade_bps": 10000,
                "default_stop_pct": 0.9,
                "campaign_dd_stop": -0.20,
                "position_dd_stop_pct": -0.9,
                "global_stop_daily_pct": -0.5,
            },
        )
    )

    run = orchestrator.execute(run_id)

    assert run.status == RunStatus.COMPLETED.value
    metrics = repository.get_metrics(run_id)
    assert metrics.breaker_closes == 1
    assert Decimal("0.19") <= metrics.max_drawdown_pct <= Decimal("0.215")
    assert repository.get_trades(run_id)[0].close_reason.value == "breaker"


def test_full_pipeline_with_monte_carlo(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)
    run_id = orchestrator.create_run(
        **_run_kwargs(t0, days=5, symbols=["BTC/USDT", "ETH/USDT"], scenario_count=50, seed=7)
    )

    run = orchestrator.execute(run_id)

    assert run.status == RunStatus.COMPLETED.value
    assert run.monte_carlo_status == MonteCarloStatus.COMPLETED.value
    assert run.seed == 7
    assert repository.count_trades(run_id) == run.total_trades
    assert run.total_trades >= 10
    assert repository.count_scenarios(run_id) == 50

    metrics = repository.get_metrics(run_id)
    assert metrics.mc_scenario_count == 50
    assert metrics.final_equity == run.final_equity
    assert metrics.mc_var_99 is not None
    assert "bootstrap" not in {s.scenario_type for s in repository.get_scenarios(run_id)}


def test_same_seed_reproduces_scenarios(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)
    kwargs = _run_kwargs(t0, days=5, symbols=["BTC/USDT", "ETH/USDT"], scenario_count=20, seed=11)
    first = orchestrator.create_run(**kwargs)
    second = orchestrator.create_run(**kwargs)

    orchestrator.execute(first)
    orchestrator.execute(second)

    assert repository.get_scenarios(first) == repository.get_scenarios(second)


def test_stress_regimes_can_be_disabled(make_orchestrator, repository, settings, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)
    orchestrator.settings = settings.model_copy(update={"monte_carlo_stress_regimes": False})
    run_id = orchestrator.create_run(
        **_run_kwargs(t0, days=5, symbols=["BTC/USDT", "ETH/USDT"], scenario_count=20, seed=7)
    )

    orchestrator.execute(run_id)

    scenarios = repository.get_scenarios(run_id)
    assert len(scenarios) == 20
    assert {s.scenario_type for s in scenarios} == {"bootstrap"}


def test_seed_generated_and_recorded_when_absent(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator()

    run_id = orchestrator.create_run(**_run_kwargs(t0))

    seed = repository.get_run(run_id).seed
    assert 0 <= seed < 2**63


def test_run_without_monte_carlo_request(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)
    run_id = orchestrator.create_run(**_run_kwargs(t0, days=5, run_monte_carlo=False))

    run = orchestrator.execute(run_id)

    assert run.status == RunStatus.COMPLETED.value
    assert run.monte_carlo_status == MonteCarloStatus.NOT_REQUESTED.value
    assert repository.count_scenarios(run_id) == 0


def test_simulation_fault_keeps_run_completed(make_orchestrator, repository, t0, monkeypatch) -> None:
    """Test a failing Monte Carlo stage still yields ledger-only metrics."""
    def _explode(self, run_id, trade_returns, scenario_count, groups=None):
        raise SimulationFault("numerical blow-up")

    monkeypatch.setattr(MonteCarloSimulator, "run_simulation", _explode)
    orchestrator = make_orchestrator(ClockStrategy)
    run_id = orchestrator.create_run(
        **_run_kwargs(t0, days=5, symbols=["BTC/USDT", "ETH/USDT"], seed=1)
    )

    run = orchestrator.execute(run_id)

    assert run.status == RunStatus.COMPLETED.value
    assert run.monte_carlo_status == MonteCarloStatus.FAILED.value
    metrics = repository.get_metrics(run_id)
    assert metrics is not None
    assert metrics.has_monte_carlo is False
    assert metrics.total_trades == run.total_trades


def test_strategy_failure_marks_run_failed(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator(FailingStrategy)
    run_id = orchestrator.create_run(**_run_kwargs(t0, days=2))

    run = orchestrator.execute(run_id)

    assert run.status == RunStatus.FAILED.value
    assert run.error_message.startswith("EngineFault")
    assert "strategy exploded" in run.error_message
    assert repository.get_metrics(run_id) is None
    assert repository.count_trades(run_id) == 0


def test_cancelled_run_is_failed_with_reason(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)
    run_id = orchestrator.create_run(**_run_kwargs(t0, days=5))
    cancel_event = threading.Event()
    cancel_event.set()

    run = orchestrator.execute(run_id, cancel_event=cancel_event)

    assert run.status == RunStatus.FAILED.value
    assert run.error_message.startswith("cancelled")
    assert repository.get_metrics(run_id) is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"symbols": []},
        {"symbols": ["BTC/USDT", "BTC/USDT"]},
        {"days": 0},
        {"initial_capital": Decimal("0")},
        {"initial_capital": "NaN"},
        {"scenario_count": 0},
        {"seed": -1},
        {"risk_params": {"campaign_dd_stop": 0.5}},
        {"strategy_params": {"unknown_field": 1}},
    ],
)
def test_invalid_request_stores_nothing(make_orchestrator, repository, t0, overrides) -> None:
    orchestrator = make_orchestrator()
    days = overrides.pop("days", 30)

    with pytest.raises(ConfigurationError):
        orchestrator.create_run(**_run_kwargs(t0, days=days, **overrides))

    assert repository.list_runs("owner-1") == []


def test_submit_runs_in_background(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)

    run_id = orchestrator.submit(**_run_kwargs(t0, days=5, scenario_count=20, seed=3))

    assert repository.get_run(run_id).status in (
        RunStatus.RUNNING.value,
        RunStatus.COMPLETED.value,
    )
    assert orchestrator.wait(run_id, timeout=60)
    assert repository.get_run(run_id).status == RunStatus.COMPLETED.value
    assert orchestrator.is_active(run_id) is False


def test_concurrent_runs_are_isolated(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)
    ids = [
        orchestrator.submit(**_run_kwargs(t0, days=5, name=f"run-{i}", seed=i, scenario_count=20))
        for i in range(3)
    ]

    for run_id in ids:
        assert orchestrator.wait(run_id, timeout=60)

    totals = {repository.get_run(run_id).total_trades for run_id in ids}
    assert len(totals) == 1
    for run_id in ids:
        assert repository.get_run(run_id).status == RunStatus.COMPLETED.value
        assert repository.count_scenarios(run_id) == 20


def test_submit_after_shutdown_marks_run_failed(make_orchestrator, repository, t0) -> None:
    orchestrator = make_orchestrator()
    orchestrator.shutdown()

    with pytest.raises(RuntimeError):
        orchestrator.submit(**_run_kwargs(t0, days=5))

    (run,) = repository.list_runs("owner-1")
    assert run.status == RunStatus.FAILED.value
    assert run.error_message.startswith("Not scheduled")
    assert orchestrator.is_active(run.id) is False


def test_cancel_unknown_run_returns_false(make_orchestrator) -> None:
    assert make_orchestrator().cancel("missing") is False


def test_execute_unknown_run_raises(make_orchestrator) -> None:
    with pytest.raises(RunNotFoundError):
        make_orchestrator().execute("missing")


def test_prometheus_counters_follow_runs(make_orchestrator, engine_metrics, t0) -> None:
    orchestrator = make_orchestrator(ClockStrategy)
    completed = orchestrator.create_run(
        **_run_kwargs(t0, days=5, symbols=["BTC/USDT", "ETH/USDT"], scenario_count=25, seed=2)
    )
    orchestrator.execute(completed)
    failing = make_orchestrator(FailingStrategy)
    failing.execute(failing.create_run(**_run_kwargs(t0, days=1)))

    assert engine_metrics.sample("runs_started_total") == 2
    assert engine_metrics.sample("runs_finished_total", {"status": "completed"}) == 1
    assert engine_metrics.sample("runs_finished_total", {"status": "failed"}) == 1
    assert engine_metrics.sample("runs_active") == 0
    assert engine_metrics.sample("scenarios_total") == 25
    assert engine_metrics.sample("trades_total", {"close_reason": "signal"}) > 0

"""Tests for the backtest service boundary."""

from datetime import timedelta

import pytest

from conftest import ClockStrategy, NeverTradeStrategy, build_bars, wave_closes
from delfos_backtest.config.settings import EngineSettings
from delfos_backtest.errors import ConfigurationError, RunNotFoundError
from delfos_backtest.market_data.memory_provider import InMemoryMarketDataSource
from delfos_backtest.orchestration.orchestrator import RunOrchestrator
from delfos_backtest.service import BacktestService, StartRunRequest


@pytest.fixture
def source() -> InMemoryMarketDataSource:
    return InMemoryMarketDataSource(
        {
            "BTC/USDT": build_bars("BTC/USDT", wave_closes(240)),
            "ETH/USDT": build_bars("ETH/USDT", wave_closes(240, base=50.0, amplitude=0.02)),
        },
        bar_interval=timedelta(hours=1),
    )


@pytest.fixture
def service(repository, source, engine_metrics):
    settings = EngineSettings(
        run_workers=2, monte_carlo_workers=2, trades_page_size=5, scenarios_page_size=3
    )
    orchestrator = RunOrchestrator(
        repository=repository,
        data_source=source,
        strategy_factory=ClockStrategy,
        settings=settings,
        metrics=engine_metrics,
    )
    service = BacktestService(orchestrator)
    yield service
    service.shutdown()


@pytest.fixture
def payload(t0) -> dict:
    return {
        "name": "service run",
        "symbols": ["BTC/USDT", "ETH/USDT"],
        "start_date": t0.isoformat(),
        "end_date": (t0 + timedelta(days=5)).isoformat(),
        "initial_capital": "10000",
        "scenario_count": 40,
        "seed": 5,
    }


def _run_to_completion(service: BacktestService, owner_id: str, payload: dict) -> str:
    ack = service.start_run(owner_id, payload)
    assert service.orchestrator.wait(ack["id"], timeout=60)
    return ack["id"]


def test_start_run_acknowledges_running(service, payload) -> None:
    ack = service.start_run("owner-1", payload)

    assert ack["status"] == "running"
    assert service.repository.get_run(ack["id"]).owner_id == "owner-1"


def test_start_run_rejects_invalid_payload(service, payload) -> None:
    payload["end_date"] = payload["start_date"]
    payload["initial_capital"] = "-5"

    with pytest.raises(ConfigurationError) as exc_info:
        service.start_run("owner-1", payload)

    assert exc_info.value.errors
    assert service.list_history("owner-1") == []


def test_start_run_rejects_unknown_fields(service, payload) -> None:
    payload["leverage"] = 10

    with pytest.raises(ConfigurationError) as exc_info:
        service.start_run("owner-1", payload)

    assert exc_info.value.errors[0]["loc"] == ["leverage"]


def test_start_run_rejects_invalid_risk_override(service, payload) -> None:
    payload["risk_params"] = {"campaign_dd_stop": 0.2}

    with pytest.raises(ConfigurationError) as exc_info:
        service.start_run("owner-1", payload)

    assert exc_info.value.errors
    assert service.list_history("owner-1") == []


def test_request_strips_symbols() -> None:
    request = StartRunRequest.model_validate(
        {
            "name": "x",
            "symbols": [" BTC/USDT "],
            "start_date": "2024-01-01T00:00:00+00:00",
            "end_date": "2024-01-02T00:00:00+00:00",
            "initial_capital": "100",
        }
    )

    assert request.symbols == ["BTC/USDT"]


def test_fetch_results_pages_newest_trades(service, payload) -> None:
    run_id = _run_to_completion(service, "owner-1", payload)

    results = service.fetch_results(run_id)

    assert results["run"]["status"] == "completed"
    assert results["metrics"] is not None
    assert len(results["trades"]) == 5
    assert results["total_trades"] > 5
    entry_times = [t["entry_time"] for t in results["trades"]]
    assert entry_times == sorted(entry_times, reverse=True)


def test_fetch_monte_carlo_returns_first_scenarios(service, payload) -> None:
    run_id = _run_to_completion(service, "owner-1", payload)

    mc = service.fetch_monte_carlo(run_id)

    assert mc["monte_carlo_status"] == "completed"
    assert [s["scenario_number"] for s in mc["scenarios"]] == [0, 1, 2]
    assert mc["total_scenarios"] == 40
    assert mc["summary"]["mc_scenario_count"] == 40


def test_fetch_monte_carlo_without_scenarios(repository, source, engine_metrics, payload) -> None:
    orchestrator = RunOrchestrator(
        repository, source, NeverTradeStrategy, EngineSettings(run_workers=1), engine_metrics
    )
    service = BacktestService(orchestrator)
    try:
        run_id = _run_to_completion(service, "owner-1", payload)

        mc = service.fetch_monte_carlo(run_id)
    finally:
        service.shutdown()

    assert mc["monte_carlo_status"] == "insufficient_sample"
    assert mc["scenarios"] == []
    assert mc["summary"] is None


def test_fetch_unknown_run_raises(service) -> None:
    with pytest.raises(RunNotFoundError):
        service.fetch_results("missing")
    with pytest.raises(RunNotFoundError):
        service.fetch_monte_carlo("missing")


def test_list_history_per_owner_and_clamped(service, payload) -> None:
    first = _run_to_completion(service, "owner-1", payload)
    second = _run_to_completion(service, "owner-1", payload)
    _run_to_completion(service, "owner-2", payload)

    history = service.list_history("owner-1", limit=1000)

    assert [r["id"] for r in history] == [second, first]
    assert len(service.list_history("owner-1", limit=0)) == 1
    assert service.list_history("owner-1", offset=-3)[0]["id"] == second


def test_delete_run_removes_everything(service, payload) -> None:
    run_id = _run_to_completion(service, "owner-1", payload)

    service.delete_run(run_id)

    with pytest.raises(RunNotFoundError):
        service.fetch_results(run_id)
    assert service.repository.count_trades(run_id) == 0
    assert service.repository.count_scenarios(run_id) == 0
    assert service.repository.get_metrics(run_id) is None


def test_delete_unknown_run_raises(service) -> None:
    with pytest.raises(RunNotFoundError):
        service.delete_run("missing")


def test_from_settings_wires_components(source) -> None:
    settings = EngineSettings(database_url="sqlite:///:memory:", metrics_enabled=False)

    service = BacktestService.from_settings(settings, source, NeverTradeStrategy)
    try:
        assert service.settings is settings
        assert service.list_history("anyone") == []
    finally:
        service.shutdown()

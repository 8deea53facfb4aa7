"""Request/response boundary for starting, inspecting and deleting backtest runs.

Authentication, ownership checks and rate limiting belong to the host
application. Every run carries an ``owner_id`` so the host can enforce them.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from delfos_backtest.config.settings import EngineSettings
from delfos_backtest.errors import ConfigurationError
from delfos_backtest.market_data.provider import MarketDataSource
from delfos_backtest.monitoring.metrics import EngineMetrics, MetricsConfig
from delfos_backtest.orchestration.orchestrator import RunOrchestrator
from delfos_backtest.persistence.repository import BacktestRepository
from delfos_backtest.strategies.ema_breakout import EmaBreakoutStrategy
from delfos_backtest.strategies.interface import Strategy

logger = logging.getLogger(__name__)

MAX_HISTORY_PAGE = 100
DELETE_WAIT_SECONDS = 30.0


class StartRunRequest(BaseModel):
    """Payload accepted by :meth:`BacktestService.start_run`."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Human-readable run label")
    symbols: list[str] = Field(..., min_length=1, description="Symbols to replay")
    start_date: datetime = Field(..., description="First bar timestamp (inclusive)")
    end_date: datetime = Field(..., description="Last bar timestamp (inclusive)")
    initial_capital: Decimal = Field(..., gt=0, description="Starting equity")
    strategy_params: dict[str, Any] | None = Field(None, description="Strategy overrides")
    risk_params: dict[str, Any] | None = Field(None, description="Risk overrides")
    cost_params: dict[str, Any] | None = Field(None, description="Cost overrides")
    apply_breakers: bool = Field(default=True, description="Enforce circuit breakers")
    run_monte_carlo: bool = Field(default=True, description="Run the Monte Carlo stage")
    scenario_count: int | None = Field(
        default=None, ge=1, le=100_000, description="Monte Carlo scenarios"
    )
    seed: int | None = Field(
        default=None, ge=0, lt=2**63, description="Monte Carlo seed (generated when absent)"
    )

    @field_validator("symbols")
    def _unique_symbols(cls, symbols: list[str]) -> list[str]:
        cleaned = [s.strip() for s in symbols]
        if any(not s for s in cleaned):
            raise ValueError("symbols must be non-empty")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("symbols must be unique")
        return cleaned

    @model_validator(mode="after")
    def _dates_ordered(self) -> "StartRunRequest":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        return self


class BacktestService:
    """Service facade over the orchestrator and repository.

    Example:
        >>> service = BacktestService.from_settings(settings, CsvMarketDataSource("data"))
        >>> ack = service.start_run("owner-1", {"name": "demo", "symbols": ["BTC/USDT"], ...})
        >>> service.fetch_results(ack["id"])
    """

    def __init__(self, orchestrator: RunOrchestrator):
        self.orchestrator = orchestrator
        self.repository = orchestrator.repository
        self.settings = orchestrator.settings

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        data_source: MarketDataSource,
        strategy_factory: Callable[[], Strategy] = EmaBreakoutStrategy,
    ) -> "BacktestService":
        """Wire repository, instrumentation and orchestrator from settings."""
        metrics = EngineMetrics(
            MetricsConfig(enabled=settings.metrics_enabled, port=settings.metrics_port)
        )
        metrics.start_server()
        orchestrator = RunOrchestrator(
            repository=BacktestRepository.from_url(settings.database_url),
            data_source=data_source,
            strategy_factory=strategy_factory,
            settings=settings,
            metrics=metrics,
        )
        return cls(orchestrator)

    def start_run(self, owner_id: str, payload: Mapping[str, Any]) -> dict[str, str]:
        """
        Validate a run request and start it in the background.

        Args:
            owner_id: Identifier of the requesting owner
            payload: Request body (see StartRunRequest)

        Returns:
            {"id": run id, "status": "running"}

        Raises:
            ConfigurationError: If the payload is invalid; nothing is started
        """
        try:
            request = StartRunRequest.model_validate(dict(payload))
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid run request: {e.error_count()} error(s)",
                errors=[
                    {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                    for err in e.errors()
                ],
            ) from e

        run_id = self.orchestrator.submit(owner_id=owner_id, **request.model_dump())
        return {"id": run_id, "status": "running"}

    def fetch_results(self, run_id: str) -> dict[str, Any]:
        """
        Run record, metrics snapshot and the most recent page of trades.

        Trades are ordered by entry time descending, then ledger sequence
        descending, limited to ``settings.trades_page_size``.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = self.repository.get_run(run_id)
        metrics = self.repository.get_metrics(run_id)
        trades = self.repository.get_trades(
            run_id, limit=self.settings.trades_page_size, newest_first=True
        )
        return {
            "run": run.to_dict(),
            "metrics": metrics.to_dict() if metrics is not None else None,
            "trades": [trade.to_dict() for trade in trades],
            "total_trades": self.repository.count_trades(run_id),
        }

    def fetch_monte_carlo(self, run_id: str, limit: int | None = None) -> dict[str, Any]:
        """
        First ``limit`` scenarios by scenario number plus the aggregated summary.

        ``monte_carlo_status`` tells "not requested" apart from "insufficient sample".

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = self.repository.get_run(run_id)
        page = max(1, limit if limit is not None else self.settings.scenarios_page_size)
        scenarios = self.repository.get_scenarios(run_id, limit=page)
        metrics = self.repository.get_metrics(run_id)
        return {
            "run_id": run.id,
            "monte_carlo_status": run.monte_carlo_status,
            "scenarios": [scenario.to_dict() for scenario in scenarios],
            "total_scenarios": self.repository.count_scenarios(run_id),
            "summary": metrics.monte_carlo_summary() if metrics is not None else None,
        }

    def list_history(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        """Run summaries of an owner, newest first. ``limit`` is clamped to [1, 100]."""
        limit = min(max(limit, 1), MAX_HISTORY_PAGE)
        offset = max(offset, 0)
        return [run.to_dict() for run in self.repository.list_runs(owner_id, limit, offset)]

    def delete_run(self, run_id: str) -> None:
        """
        Delete a run with its trades, scenarios and metrics, cancelling it first if active.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        if self.orchestrator.cancel(run_id):
            if not self.orchestrator.wait(run_id, timeout=DELETE_WAIT_SECONDS):
                logger.warning(f"Run {run_id} did not stop within {DELETE_WAIT_SECONDS}s")
        self.repository.delete_run(run_id)

    def shutdown(self) -> None:
        self.orchestrator.shutdown(wait=True, cancel_active=True)

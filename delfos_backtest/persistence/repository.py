"""Backtest repository: the only gateway between the engine and the record store."""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from delfos_backtest.backtest.engine import BacktestResult
from delfos_backtest.backtest.metrics import MetricsSnapshot
from delfos_backtest.backtest.monte_carlo import MonteCarloScenario
from delfos_backtest.core.state_machine import MonteCarloStatus, RunStateMachine, RunStatus
from delfos_backtest.errors import RunNotFoundError
from delfos_backtest.models.money import quantize
from delfos_backtest.models.trade import CloseReason, Side, Trade
from delfos_backtest.persistence.engine import build_engine, build_session_factory
from delfos_backtest.persistence.models import (
    BacktestMetricsRecord,
    BacktestRunRecord,
    BacktestTradeRecord,
    MonteCarloScenarioRecord,
)

logger = logging.getLogger(__name__)

_METRICS_FIELDS = [
    column.key for column in BacktestMetricsRecord.__table__.columns
]


def _q(value: Decimal | None) -> Decimal | None:
    return quantize(Decimal(value)) if value is not None else None


class BacktestRepository:
    """Repository for backtest runs, ledgers, scenarios and metrics.

    Every call opens its own short-lived session, so the repository is safe
    to share between worker threads. On SQLite, calls are serialized.

    Example:
        >>> repo = BacktestRepository.from_url("sqlite:///:memory:")
        >>> run = repo.create_run(owner_id="u1", name="demo", ...)
        >>> repo.transition_status(run.id, RunStatus.RUNNING)
    """

    def __init__(self, engine: Engine):
        """Initialize backtest repository.

        Args:
            engine: SQLAlchemy engine with the schema created
        """
        self._engine = engine
        self._session_factory = build_session_factory(engine)
        self._lock: threading.RLock | None = (
            threading.RLock() if engine.dialect.name == "sqlite" else None
        )

    @classmethod
    def from_url(cls, database_url: str) -> "BacktestRepository":
        """Build the engine, create the schema and wrap it."""
        return cls(build_engine(database_url))

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Transactional session scope; commits on success, rolls back on error."""
        if self._lock is not None:
            self._lock.acquire()
        try:
            with self._session_factory() as session, session.begin():
                yield session
        finally:
            if self._lock is not None:
                self._lock.release()

    @staticmethod
    def _load_run(session: Session, run_id: str) -> BacktestRunRecord:
        run = session.get(BacktestRunRecord, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # Runs

    def create_run(
        self,
        owner_id: str,
        name: str,
        symbols: Sequence[str],
        start_date: datetime,
        end_date: datetime,
        initial_capital: Decimal,
        strategy_params: dict[str, Any],
        risk_params: dict[str, Any],
        cost_params: dict[str, Any],
        seed: int,
        scenario_count: int,
        apply_breakers: bool = True,
        run_monte_carlo: bool = True,
        run_id: str | None = None,
    ) -> BacktestRunRecord:
        """
        Store a new run in the pending state.

        Returns:
            The stored run record (detached)
        """
        run = BacktestRunRecord(
            id=run_id or str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            symbols=list(symbols),
            start_date=start_date,
            end_date=end_date,
            initial_capital=initial_capital,
            strategy_params=strategy_params,
            risk_params=risk_params,
            cost_params=cost_params,
            apply_breakers=apply_breakers,
            run_monte_carlo=run_monte_carlo,
            scenario_count=scenario_count,
            seed=seed,
            status=RunStatus.PENDING.value,
            monte_carlo_status=MonteCarloStatus.NOT_REQUESTED.value,
            created_at=datetime.now(timezone.utc),
        )
        with self._session() as session:
            session.add(run)
        logger.info(f"Created backtest run {run.id} for owner {owner_id}")
        return run

    def get_run(self, run_id: str) -> BacktestRunRecord:
        """
        Load a run record.

        Raises:
            RunNotFoundError: If no such run exists
        """
        with self._session() as session:
            return self._load_run(session, run_id)

    def transition_status(
        self,
        run_id: str,
        new_status: RunStatus,
        error_message: str | None = None,
    ) -> BacktestRunRecord:
        """
        Move a run to a new status, validated by the run state machine.

        Sets started_at on entering running and completed_at on entering a
        terminal state.

        Raises:
            RunNotFoundError: If no such run exists
            InvalidTransitionError: If the transition is not allowed
        """
        new_status = RunStatus(new_status)
        with self._session() as session:
            run = self._load_run(session, run_id)
            machine = RunStateMachine(run_id, RunStatus(run.status))
            machine.transition_to(new_status)

            now = datetime.now(timezone.utc)
            run.status = new_status.value
            if new_status is RunStatus.RUNNING:
                run.started_at = now
            if new_status.is_terminal:
                run.completed_at = now
            if error_message is not None:
                run.error_message = error_message

        logger.info(f"Run {run_id} -> {new_status.value}")
        return run

    def set_monte_carlo_status(self, run_id: str, status: MonteCarloStatus) -> None:
        with self._session() as session:
            run = self._load_run(session, run_id)
            run.monte_carlo_status = MonteCarloStatus(status).value

    def save_summary(self, run_id: str, result: BacktestResult) -> None:
        """Write the run's summary columns from the engine result."""
        with self._session() as session:
            run = self._load_run(session, run_id)
            run.total_trades = len(result.trades)
            run.winning_trades = result.winning_trades
            run.losing_trades = result.losing_trades
            run.final_equity = result.final_equity
            run.total_pnl = result.total_pnl
            run.total_fees = result.total_fees
            run.total_slippage = result.total_slippage
            stats = result.breaker_stats
            run.asset_breakers_triggered = stats.asset_triggered
            run.global_breakers_triggered = stats.global_triggered
            run.entries_blocked = stats.entries_blocked

    def list_runs(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[BacktestRunRecord]:
        """Runs of an owner, newest first."""
        stmt = (
            sa.select(BacktestRunRecord)
            .where(BacktestRunRecord.owner_id == owner_id)
            .order_by(BacktestRunRecord.created_at.desc(), BacktestRunRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def delete_run(self, run_id: str) -> None:
        """
        Delete a run with its trades, scenarios and metrics.

        Raises:
            RunNotFoundError: If no such run exists
        """
        with self._session() as session:
            run = self._load_run(session, run_id)
            session.delete(run)
        logger.info(f"Deleted backtest run {run_id}")

    # Trades

    def save_trades(self, run_id: str, trades: Sequence[Trade]) -> int:
        """
        Persist the ledger. Sequence numbers follow ledger order.

        Returns:
            Number of trades written
        """
        with self._session() as session:
            self._load_run(session, run_id)
            session.add_all(
                BacktestTradeRecord(
                    run_id=run_id,
                    sequence=sequence,
                    symbol=trade.symbol,
                    side=trade.side.value,
                    entry_time=trade.entry_time,
                    entry_price=trade.entry_price,
                    exit_time=trade.exit_time,
                    exit_price=trade.exit_price,
                    quantity=trade.quantity,
                    notional=trade.notional,
                    entry_equity=trade.entry_equity,
                    gross_pnl=trade.gross_pnl,
                    fees=trade.fees,
                    slippage=trade.slippage,
                    net_pnl=trade.net_pnl,
                    close_reason=trade.close_reason.value,
                    breaker_type=trade.breaker_type,
                    signal_strength=trade.signal_strength,
                    atr_at_entry=trade.atr_at_entry,
                    stop_loss=trade.stop_loss,
                    take_profit=trade.take_profit,
                )
                for sequence, trade in enumerate(trades)
            )
        return len(trades)

    def get_trades(
        self, run_id: str, limit: int | None = None, newest_first: bool = False
    ) -> list[Trade]:
        """
        Load a run's ledger.

        Args:
            run_id: Run identifier
            limit: Maximum number of trades
            newest_first: Order by entry time descending (then sequence descending)

        Returns:
            Trades in ledger order, or newest first
        """
        stmt = sa.select(BacktestTradeRecord).where(BacktestTradeRecord.run_id == run_id)
        if newest_first:
            stmt = stmt.order_by(
                BacktestTradeRecord.entry_time.desc(), BacktestTradeRecord.sequence.desc()
            )
        else:
            stmt = stmt.order_by(BacktestTradeRecord.sequence.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._session() as session:
            return [self._to_trade(record) for record in session.scalars(stmt)]

    def count_trades(self, run_id: str) -> int:
        stmt = sa.select(sa.func.count()).where(BacktestTradeRecord.run_id == run_id)
        with self._session() as session:
            return int(session.scalar(stmt) or 0)

    @staticmethod
    def _to_trade(record: BacktestTradeRecord) -> Trade:
        return Trade(
            symbol=record.symbol,
            side=Side(record.side),
            entry_time=record.entry_time,
            entry_price=_q(record.entry_price),
            exit_time=record.exit_time,
            exit_price=_q(record.exit_price),
            quantity=_q(record.quantity),
            notional=_q(record.notional),
            entry_equity=_q(record.entry_equity),
            gross_pnl=_q(record.gross_pnl),
            fees=_q(record.fees),
            slippage=_q(record.slippage),
            net_pnl=_q(record.net_pnl),
            close_reason=CloseReason(record.close_reason),
            breaker_type=record.breaker_type,
            signal_strength=record.signal_strength,
            atr_at_entry=_q(record.atr_at_entry),
            stop_loss=_q(record.stop_loss),
            take_profit=_q(record.take_profit),
        )

    # Monte Carlo scenarios

    def save_scenarios(self, run_id: str, scenarios: Sequence[MonteCarloScenario]) -> int:
        """
        Persist a scenario set.

        Returns:
            Number of scenarios written
        """
        with self._session() as session:
            self._load_run(session, run_id)
            session.add_all(
                MonteCarloScenarioRecord(
                    run_id=run_id,
                    scenario_number=scenario.scenario_number,
                    scenario_type=scenario.scenario_type,
                    intra_correlation=scenario.intra_correlation,
                    inter_correlation=scenario.inter_correlation,
                    final_equity=_q(Decimal(repr(scenario.final_equity))),
                    total_pnl=_q(Decimal(repr(scenario.total_pnl))),
                    max_drawdown=_q(Decimal(repr(scenario.max_drawdown))),
                    trades_applied=scenario.trades_applied,
                    breaker_triggered=scenario.breaker_triggered,
                    breaker_type=scenario.breaker_type,
                    breakers_activated=scenario.breakers_activated,
                    var_95=scenario.var_95,
                    es_95=scenario.es_95,
                    returns=list(scenario.returns),
                    equity_path=list(scenario.equity_path),
                )
                for scenario in scenarios
            )
        return len(scenarios)

    def get_scenarios(self, run_id: str, limit: int | None = None) -> list[MonteCarloScenario]:
        """Scenarios ordered by scenario number."""
        stmt = (
            sa.select(MonteCarloScenarioRecord)
            .where(MonteCarloScenarioRecord.run_id == run_id)
            .order_by(MonteCarloScenarioRecord.scenario_number.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._session() as session:
            return [
                MonteCarloScenario(
                    scenario_number=record.scenario_number,
                    returns=tuple(record.returns),
                    equity_path=tuple(record.equity_path),
                    final_equity=record.equity_path[-1],
                    max_drawdown=float(record.max_drawdown),
                    trades_applied=record.trades_applied,
                    breaker_triggered=record.breaker_triggered,
                    breaker_type=record.breaker_type,
                    scenario_type=record.scenario_type,
                    intra_correlation=record.intra_correlation,
                    inter_correlation=record.inter_correlation,
                    var_95=record.var_95,
                    es_95=record.es_95,
                    breakers_activated=record.breakers_activated,
                )
                for record in session.scalars(stmt)
            ]

    def count_scenarios(self, run_id: str) -> int:
        stmt = sa.select(sa.func.count()).where(MonteCarloScenarioRecord.run_id == run_id)
        with self._session() as session:
            return int(session.scalar(stmt) or 0)

    # Metrics

    def get_metrics(self, run_id: str) -> MetricsSnapshot | None:
        with self._session() as session:
            record = session.get(BacktestMetricsRecord, run_id)
            if record is None:
                return None
            return self._to_snapshot(record)

    def save_metrics(self, snapshot: MetricsSnapshot) -> MetricsSnapshot:
        """
        Store a metrics snapshot once.

        If a snapshot already exists for the run it is left untouched and
        returned instead.

        Returns:
            The stored snapshot
        """
        with self._session() as session:
            self._load_run(session, snapshot.run_id)
            existing = session.get(BacktestMetricsRecord, snapshot.run_id)
            if existing is not None:
                return self._to_snapshot(existing)
            record = BacktestMetricsRecord(
                **{name: getattr(snapshot, name) for name in _METRICS_FIELDS}
            )
            session.add(record)
        # Re-read so callers see exactly what later reads return
        return self.get_metrics(snapshot.run_id) or snapshot

    @staticmethod
    def _to_snapshot(record: BacktestMetricsRecord) -> MetricsSnapshot:
        values: dict[str, Any] = {}
        for name in _METRICS_FIELDS:
            value = getattr(record, name)
            values[name] = _q(value) if isinstance(value, Decimal) else value
        return MetricsSnapshot(**values)

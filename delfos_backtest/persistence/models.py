"""SQLAlchemy models for backtest runs and their derived records."""

import datetime as dt
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from delfos_backtest.models.bar import ensure_utc
from delfos_backtest.models.money import to_decimal

# Generic JSON for SQLite compatibility (SQLAlchemy handles mapping)
JSON_TYPE = sa.JSON().with_variant(JSONB, "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on storage; values are re-tagged as UTC on load.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect: Any) -> dt.datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value: dt.datetime | None, dialect: Any) -> dt.datetime | None:
        if value is None:
            return None
        return ensure_utc(value)


class PreciseDecimal(TypeDecorator):
    """Fixed-point Decimal stored without loss on every backend.

    SQLite has no decimal storage class and coerces NUMERIC to a float, so
    values are kept there as their canonical string. Other dialects use
    ``Numeric(24, 10)``.
    """

    impl = sa.Numeric(24, 10)
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(sa.String(48))
        return dialect.type_descriptor(sa.Numeric(24, 10, asdecimal=True))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        value = to_decimal(value)
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:
        if value is None:
            return None
        return to_decimal(value)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


class BacktestRunRecord(Base):
    """A backtest run and its immutable parameter snapshot."""
    __tablename__ = "backtest_runs"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    symbols: Mapped[list[str]] = mapped_column(JSON_TYPE, nullable=False)
    start_date: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    initial_capital: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)

    strategy_params: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
    risk_params: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
    cost_params: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
    apply_breakers: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    run_monte_carlo: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    scenario_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    seed: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False)

    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, default="pending")
    monte_carlo_status: Mapped[str] = mapped_column(
        sa.Text(), nullable=False, default="not_requested"
    )
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    started_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Summary columns, written once when the ledger is persisted
    total_trades: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    winning_trades: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    losing_trades: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    final_equity: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    total_pnl: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    total_fees: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    total_slippage: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    asset_breakers_triggered: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    global_breakers_triggered: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    entries_blocked: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)

    trades: Mapped[list["BacktestTradeRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )
    scenarios: Mapped[list["MonteCarloScenarioRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )
    metrics: Mapped["BacktestMetricsRecord | None"] = relationship(
        back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        sa.Index("ix_backtest_runs_owner_created", "owner_id", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        def _num(value: Decimal | None) -> str | None:
            return str(value) if value is not None else None

        def _ts(value: dt.datetime | None) -> str | None:
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "symbols": list(self.symbols),
            "start_date": _ts(self.start_date),
            "end_date": _ts(self.end_date),
            "initial_capital": _num(self.initial_capital),
            "strategy_params": dict(self.strategy_params),
            "risk_params": dict(self.risk_params),
            "cost_params": dict(self.cost_params),
            "apply_breakers": self.apply_breakers,
            "run_monte_carlo": self.run_monte_carlo,
            "scenario_count": self.scenario_count,
            "seed": self.seed,
            "status": self.status,
            "monte_carlo_status": self.monte_carlo_status,
            "error_message": self.error_message,
            "created_at": _ts(self.created_at),
            "started_at": _ts(self.started_at),
            "completed_at": _ts(self.completed_at),
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "final_equity": _num(self.final_equity),
            "total_pnl": _num(self.total_pnl),
            "total_fees": _num(self.total_fees),
            "total_slippage": _num(self.total_slippage),
            "asset_breakers_triggered": self.asset_breakers_triggered,
            "global_breakers_triggered": self.global_breakers_triggered,
            "entries_blocked": self.entries_blocked,
        }


class BacktestTradeRecord(Base):
    """One closed trade of a run's ledger."""
    __tablename__ = "backtest_trades"

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey("backtest_runs.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    symbol: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    side: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    entry_time: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    exit_time: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    exit_price: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    notional: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    entry_equity: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    gross_pnl: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    fees: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    slippage: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    net_pnl: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    close_reason: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    breaker_type: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    signal_strength: Mapped[float] = mapped_column(sa.Float(), nullable=False, default=0.0)
    atr_at_entry: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    stop_loss: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    take_profit: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)

    run: Mapped[BacktestRunRecord] = relationship(back_populates="trades")

    __table_args__ = (
        sa.UniqueConstraint("run_id", "sequence", name="uq_backtest_trades_run_sequence"),
        sa.Index("ix_backtest_trades_run_entry", "run_id", "entry_time"),
    )


class MonteCarloScenarioRecord(Base):
    """One resampled scenario of a run."""
    __tablename__ = "monte_carlo_scenarios"

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey("backtest_runs.id", ondelete="CASCADE"), nullable=False
    )
    scenario_number: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    scenario_type: Mapped[str] = mapped_column(sa.Text(), nullable=False, default="bootstrap")
    intra_correlation: Mapped[float] = mapped_column(sa.Float(), nullable=False, default=0.0)
    inter_correlation: Mapped[float] = mapped_column(sa.Float(), nullable=False, default=0.0)
    final_equity: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    total_pnl: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    max_drawdown: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    trades_applied: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    breaker_triggered: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False)
    breaker_type: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    breakers_activated: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)
    var_95: Mapped[float] = mapped_column(sa.Float(), nullable=False, default=0.0)
    es_95: Mapped[float] = mapped_column(sa.Float(), nullable=False, default=0.0)
    returns: Mapped[list[float]] = mapped_column(JSON_TYPE, nullable=False)
    equity_path: Mapped[list[float]] = mapped_column(JSON_TYPE, nullable=False)

    run: Mapped[BacktestRunRecord] = relationship(back_populates="scenarios")

    __table_args__ = (
        sa.UniqueConstraint("run_id", "scenario_number", name="uq_mc_scenarios_run_number"),
    )


class BacktestMetricsRecord(Base):
    """Metrics snapshot of a run (1:1, written once)."""
    __tablename__ = "backtest_metrics"

    run_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey("backtest_runs.id", ondelete="CASCADE"), primary_key=True
    )
    initial_capital: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    final_equity: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    total_trades: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    winning_trades: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    losing_trades: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    total_return: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    net_profit: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    win_rate: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    profit_factor: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    avg_win: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    avg_loss: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    payoff_ratio: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    expectancy: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    max_drawdown: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    max_drawdown_pct: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    max_drawdown_duration_hours: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    sharpe_ratio: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    sortino_ratio: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mean_return: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    stdev_return: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    var_95: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    es_95: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    var_99: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    es_99: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    total_fees: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    total_slippage: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    turnover: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    fees_percentage: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    slippage_bp: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    cost_drag_percentage: Mapped[Decimal] = mapped_column(PreciseDecimal(), nullable=False)
    breaker_closes: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    asset_breakers_triggered: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    global_breakers_triggered: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    trades_blocked_by_breakers: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    pnl_net_positive: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False)
    es95_improved: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False)
    var99_improved: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False)
    validation_passed: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False)
    validation_notes: Mapped[str] = mapped_column(sa.Text(), nullable=False, default="")
    mc_scenario_count: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    mc_mean_final_equity: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_std_final_equity: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_final_equity_p5: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_final_equity_p50: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_final_equity_p95: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_max_drawdown_p95: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_probability_of_ruin: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_probability_of_breaker: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_probability_positive_pnl: Mapped[Decimal | None] = mapped_column(
        PreciseDecimal(), nullable=True
    )
    mc_mean_var_95: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_mean_es_95: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_var_99: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    mc_es_99: Mapped[Decimal | None] = mapped_column(PreciseDecimal(), nullable=True)
    computed_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    run: Mapped[BacktestRunRecord] = relationship(back_populates="metrics")

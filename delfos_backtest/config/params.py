"""Strategy, risk and cost parameter sets.

Each set is an immutable pydantic model with documented defaults. User
overrides are merged over the defaults by :func:`resolve_params`, which
produces a fully-resolved :class:`ParameterSnapshot` that a run stores at
creation time. Later changes to the defaults never alter a stored run.
"""

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from delfos_backtest.errors import ConfigurationError


class StrategyParams(BaseModel):
    """Signal thresholds for the reference EMA/ATR breakout strategy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ema_fast: int = Field(default=12, ge=2, description="Fast EMA period")
    ema_slow: int = Field(default=36, ge=3, description="Slow EMA period")
    atr_period: int = Field(default=14, ge=2, description="ATR period")
    breakout_long_atr: float = Field(
        default=2.0,
        gt=0.0,
        description="Close must exceed fast EMA by this many ATRs to go long",
    )
    breakout_short_atr: float = Field(
        default=1.5,
        gt=0.0,
        description="Close must fall below fast EMA by this many ATRs to go short",
    )
    min_atr_pct: float = Field(
        default=0.005,
        ge=0.0,
        lt=1.0,
        description="Minimum ATR / close ratio; quieter markets are skipped",
    )
    allow_short: bool = Field(default=True, description="Allow short entries")

    @model_validator(mode="after")
    def _ema_fast_lt_slow(self) -> "StrategyParams":
        if self.ema_fast >= self.ema_slow:
            raise ValueError(
                f"ema_fast ({self.ema_fast}) must be less than ema_slow ({self.ema_slow})"
            )
        return self


class RiskParams(BaseModel):
    """Position sizing, stop levels and circuit-breaker thresholds.

    Loss thresholds are negative fractions (``-0.024`` is a 2.4% loss).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    risk_per_trade_bps: float = Field(
        default=20.0,
        gt=0.0,
        le=10000.0,
        description="Equity risked per trade in basis points",
    )
    max_position_pct: float = Field(
        default=1.0,
        gt=0.0,
        le=1.0,
        description="Maximum notional of a single position as a fraction of equity",
    )
    max_open_positions: int = Field(
        default=10, ge=1, description="Maximum number of concurrent positions"
    )
    stop_loss_atr: float = Field(default=1.0, gt=0.0, description="Stop distance in ATRs")
    take_profit_1_atr: float = Field(
        default=1.2,
        gt=0.0,
        description="First target in ATRs; moves the stop to breakeven and arms trailing",
    )
    take_profit_2_atr: float = Field(
        default=2.5, gt=0.0, description="Final target in ATRs; closes the position"
    )
    trailing_atr: float = Field(default=0.8, gt=0.0, description="Trailing distance in ATRs")
    default_stop_pct: float = Field(
        default=0.02,
        gt=0.0,
        lt=1.0,
        description="Stop distance as a fraction of price when the signal has no volatility",
    )
    global_stop_daily_pct: float = Field(
        default=-0.024,
        lt=0.0,
        gt=-1.0,
        description="Daily loss (fraction of day-start equity) that halts trading for the day",
    )
    position_dd_stop_pct: float = Field(
        default=-0.05,
        lt=0.0,
        gt=-1.0,
        description="Unrealized loss (fraction of notional) that force-closes a position",
    )
    campaign_dd_stop: float = Field(
        default=-0.10,
        lt=0.0,
        gt=-1.0,
        description="Drawdown from peak equity that halts the campaign",
    )
    max_stops_per_asset_day: int = Field(
        default=2, ge=1, description="Stop-outs per symbol per day before the symbol pauses"
    )
    max_acceptable_loss: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Ruin threshold: equity below initial * (1 - value) counts as ruin",
    )

    @model_validator(mode="after")
    def _targets_ordered(self) -> "RiskParams":
        if self.take_profit_1_atr >= self.take_profit_2_atr:
            raise ValueError(
                f"take_profit_1_atr ({self.take_profit_1_atr}) must be less than "
                f"take_profit_2_atr ({self.take_profit_2_atr})"
            )
        return self


class CostParams(BaseModel):
    """Fee and slippage model."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    fee_roundtrip_pct: float = Field(
        default=0.0020, ge=0.0, lt=1.0, description="Round-trip fee as a fraction of notional"
    )
    slippage_roundtrip_pct: float = Field(
        default=0.0010, ge=0.0, lt=1.0, description="Round-trip slippage as a fraction of price"
    )
    fixed_fee: float = Field(default=0.0, ge=0.0, description="Flat fee charged per fill")
    funding_daily_pct: float = Field(
        default=0.0,
        ge=0.0,
        lt=1.0,
        description="Funding/borrow cost per holding day as a fraction of notional",
    )


class ParameterSnapshot(BaseModel):
    """Fully-resolved, immutable parameter bundle attached to a run."""

    model_config = ConfigDict(frozen=True)

    strategy: StrategyParams = Field(default_factory=StrategyParams)
    risk: RiskParams = Field(default_factory=RiskParams)
    cost: CostParams = Field(default_factory=CostParams)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Serialize each set for storage."""
        return {
            "strategy_params": self.strategy.model_dump(),
            "risk_params": self.risk.model_dump(),
            "cost_params": self.cost.model_dump(),
        }


def _merge(
    model: type[BaseModel], overrides: Mapping[str, Any] | None, label: str
) -> Any:
    merged = model().model_dump()
    if overrides:
        merged.update(overrides)
    try:
        return model(**merged)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid {label} parameters: {e.error_count()} error(s)",
            errors=[
                {"loc": [label, *err["loc"]], "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ],
        ) from e


def resolve_params(
    strategy: Mapping[str, Any] | None = None,
    risk: Mapping[str, Any] | None = None,
    cost: Mapping[str, Any] | None = None,
) -> ParameterSnapshot:
    """Merge partial overrides over defaults into an immutable snapshot.

    Args:
        strategy: Partial strategy parameter overrides
        risk: Partial risk parameter overrides
        cost: Partial cost parameter overrides

    Returns:
        ParameterSnapshot with every field resolved

    Raises:
        ConfigurationError: If an override names an unknown field or has an invalid value
    """
    return ParameterSnapshot(
        strategy=_merge(StrategyParams, strategy, "strategy"),
        risk=_merge(RiskParams, risk, "risk"),
        cost=_merge(CostParams, cost, "cost"),
    )

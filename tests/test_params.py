"""Unit tests for parameter sets and override resolution."""

import pytest
from pydantic import ValidationError

from delfos_backtest.config.params import (
    CostParams,
    ParameterSnapshot,
    RiskParams,
    StrategyParams,
    resolve_params,
)
from delfos_backtest.errors import ConfigurationError


def test_defaults_are_documented_values() -> None:
    """Test default parameter sets carry the documented values."""
    risk = RiskParams()
    cost = CostParams()
    strategy = StrategyParams()

    assert risk.global_stop_daily_pct == -0.024
    assert risk.campaign_dd_stop == -0.10
    assert risk.max_acceptable_loss == 0.5
    assert cost.fee_roundtrip_pct == 0.0020
    assert cost.slippage_roundtrip_pct == 0.0010
    assert strategy.ema_fast < strategy.ema_slow


def test_resolve_params_without_overrides_returns_defaults() -> None:
    snapshot = resolve_params()

    assert snapshot == ParameterSnapshot()


def test_resolve_params_merges_partial_overrides() -> None:
    """Test overrides replace only the named fields."""
    snapshot = resolve_params(
        strategy={"ema_fast": 5},
        risk={"campaign_dd_stop": -0.2},
        cost={"fixed_fee": 1.5},
    )

    assert snapshot.strategy.ema_fast == 5
    assert snapshot.strategy.ema_slow == StrategyParams().ema_slow
    assert snapshot.risk.campaign_dd_stop == -0.2
    assert snapshot.risk.global_stop_daily_pct == -0.024
    assert snapshot.cost.fixed_fee == 1.5


def test_resolve_params_does_not_change_defaults() -> None:
    resolve_params(risk={"risk_per_trade_bps": 500})

    assert RiskParams().risk_per_trade_bps == 20.0


def test_unknown_override_field_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        resolve_params(risk={"not_a_field": 1})

    assert exc_info.value.errors
    assert exc_info.value.errors[0]["loc"][0] == "risk"


def test_invalid_override_value_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="strategy"):
        resolve_params(strategy={"ema_fast": 50, "ema_slow": 20})


def test_positive_loss_threshold_rejected() -> None:
    with pytest.raises(ConfigurationError):
        resolve_params(risk={"campaign_dd_stop": 0.1})


def test_take_profit_targets_must_be_ordered() -> None:
    with pytest.raises(ValidationError):
        RiskParams(take_profit_1_atr=3.0, take_profit_2_atr=2.0)


def test_snapshot_is_immutable() -> None:
    snapshot = resolve_params()

    with pytest.raises(ValidationError):
        snapshot.risk.campaign_dd_stop = -0.5  # type: ignore[misc]


def test_snapshot_to_dict_round_trips_through_models() -> None:
    """Test a stored snapshot rebuilds the same parameter sets."""
    snapshot = resolve_params(risk={"max_open_positions": 3})
    data = snapshot.to_dict()

    assert set(data) == {"strategy_params", "risk_params", "cost_params"}
    rebuilt = ParameterSnapshot(
        strategy=StrategyParams.model_validate(data["strategy_params"]),
        risk=RiskParams.model_validate(data["risk_params"]),
        cost=CostParams.model_validate(data["cost_params"]),
    )
    assert rebuilt == snapshot

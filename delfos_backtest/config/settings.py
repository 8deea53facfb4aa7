"""Engine settings with JSON file and environment variable support."""

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

# Environment variable -> (settings field, parser)
_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "DATABASE_URL": ("database_url", str),
    "DELFOS_RUN_WORKERS": ("run_workers", int),
    "DELFOS_MONTE_CARLO_WORKERS": ("monte_carlo_workers", int),
    "DELFOS_MONTE_CARLO_SCENARIOS": ("default_scenario_count", int),
    "DELFOS_MIN_TRADES_FOR_MONTE_CARLO": ("min_trades_for_monte_carlo", int),
    "DELFOS_MONTE_CARLO_STRESS_REGIMES": (
        "monte_carlo_stress_regimes", lambda v: v.lower() in ("1", "true", "yes")
    ),
    "DELFOS_TRADES_PAGE_SIZE": ("trades_page_size", int),
    "DELFOS_SCENARIOS_PAGE_SIZE": ("scenarios_page_size", int),
    "DELFOS_LOG_LEVEL": ("log_level", str),
    "DELFOS_METRICS_ENABLED": ("metrics_enabled", lambda v: v.lower() in ("1", "true", "yes")),
    "DELFOS_METRICS_PORT": ("metrics_port", int),
}


class EngineSettings(BaseModel):
    """Operational settings for the backtest engine."""

    database_url: str = Field(
        default="sqlite:///:memory:",
        description="SQLAlchemy database URL for the run record sink",
    )
    run_workers: int = Field(
        default=4, ge=1, description="Maximum number of runs executing concurrently"
    )
    monte_carlo_workers: int = Field(
        default_factory=lambda: os.cpu_count() or 1,
        ge=1,
        description="Worker threads per Monte Carlo simulation",
    )
    default_scenario_count: int = Field(
        default=500, ge=1, le=100_000, description="Scenarios when a run does not specify"
    )
    min_trades_for_monte_carlo: int = Field(
        default=10, ge=2, description="Minimum ledger size for Monte Carlo resampling"
    )
    monte_carlo_stress_regimes: bool = Field(
        default=True,
        description="Mix correlated stress regimes into the scenario set; plain bootstrap when off",
    )
    trades_page_size: int = Field(
        default=100, ge=1, description="Most recent trades returned with run results"
    )
    scenarios_page_size: int = Field(
        default=100, ge=1, description="Scenarios returned by the Monte Carlo endpoint"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    metrics_enabled: bool = Field(default=True, description="Collect Prometheus metrics")
    metrics_port: int | None = Field(
        default=None, description="Expose Prometheus metrics over HTTP on this port"
    )


def load_settings(config_path: str | None = None) -> EngineSettings:
    """
    Load settings from an optional JSON file with environment variable overrides.

    Priority: env vars > config file > defaults

    Args:
        config_path: Path to a JSON settings file. If None, uses DELFOS_CONFIG_PATH
                     when set; otherwise only defaults and env vars apply.

    Returns:
        Validated EngineSettings instance

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        json.JSONDecodeError: If the config file has invalid JSON
        pydantic.ValidationError: If settings values are invalid
    """
    if config_path is None:
        config_path = os.environ.get("DELFOS_CONFIG_PATH")

    settings_data: dict[str, Any] = {}
    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        with open(config_file) as f:
            settings_data = json.load(f)

    for env_var, (field_name, parse) in _ENV_OVERRIDES.items():
        if (raw := os.environ.get(env_var)) is not None:
            settings_data[field_name] = parse(raw)

    return EngineSettings(**settings_data)

"""Command-line entry point: run one backtest synchronously over CSV data."""

import argparse
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Any

from delfos_backtest.config.settings import load_settings
from delfos_backtest.errors import BacktestError, ConfigurationError
from delfos_backtest.market_data.csv_provider import CsvMarketDataSource
from delfos_backtest.monitoring.metrics import EngineMetrics, MetricsConfig
from delfos_backtest.orchestration.orchestrator import RunOrchestrator
from delfos_backtest.persistence.repository import BacktestRepository

logger = logging.getLogger(__name__)


def _json_object(raw: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}") from e
    if not isinstance(value, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return value


def _timestamp(raw: str) -> datetime:
    try:
        return datetime.fromisoformat(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 timestamp: {raw}") from e


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="delfos-backtest",
        description="Replay historical bars through the strategy and simulate outcome risk",
    )
    parser.add_argument(
        "--data-dir",
        required=True,
        help="Directory with one OHLCV CSV per symbol (BTC/USDT -> BTC_USDT.csv)",
    )
    parser.add_argument("--symbols", nargs="+", required=True, help="Symbols to replay")
    parser.add_argument("--start", type=_timestamp, required=True, help="Start (ISO-8601, UTC)")
    parser.add_argument("--end", type=_timestamp, required=True, help="End (ISO-8601, UTC)")
    parser.add_argument("--capital", default="10000", help="Initial capital (default: 10000)")
    parser.add_argument("--name", default="cli", help="Run name")
    parser.add_argument("--owner", default="cli", help="Owner identifier recorded on the run")
    parser.add_argument(
        "--strategy-params", type=_json_object, default=None, help="Strategy overrides (JSON)"
    )
    parser.add_argument(
        "--risk-params", type=_json_object, default=None, help="Risk overrides (JSON)"
    )
    parser.add_argument(
        "--cost-params", type=_json_object, default=None, help="Cost overrides (JSON)"
    )
    parser.add_argument(
        "--no-breakers", action="store_true", help="Disable circuit breakers"
    )
    parser.add_argument(
        "--no-monte-carlo", action="store_true", help="Skip the Monte Carlo stage"
    )
    parser.add_argument("--scenarios", type=int, default=None, help="Monte Carlo scenarios")
    parser.add_argument("--seed", type=int, default=None, help="Monte Carlo seed")
    parser.add_argument(
        "--bar-minutes",
        type=int,
        default=None,
        help="Expected bar spacing in minutes, enables data gap detection",
    )
    parser.add_argument("--config", default=None, help="Path to a JSON settings file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run a backtest and print the run record and metrics as JSON."""
    args = parse_args(argv)
    settings = load_settings(args.config)

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    bar_interval = timedelta(minutes=args.bar_minutes) if args.bar_minutes else None
    metrics = EngineMetrics(
        MetricsConfig(enabled=settings.metrics_enabled, port=settings.metrics_port)
    )
    metrics.start_server()
    orchestrator = RunOrchestrator(
        repository=BacktestRepository.from_url(settings.database_url),
        data_source=CsvMarketDataSource(args.data_dir, bar_interval=bar_interval),
        settings=settings,
        metrics=metrics,
    )

    try:
        run_id = orchestrator.create_run(
            owner_id=args.owner,
            name=args.name,
            symbols=args.symbols,
            start_date=args.start,
            end_date=args.end,
            initial_capital=args.capital,
            strategy_params=args.strategy_params,
            risk_params=args.risk_params,
            cost_params=args.cost_params,
            apply_breakers=not args.no_breakers,
            run_monte_carlo=not args.no_monte_carlo,
            scenario_count=args.scenarios,
            seed=args.seed,
        )
    except ConfigurationError as e:
        logger.error(f"Invalid run configuration: {e}")
        for err in e.errors:
            logger.error(f"  {'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
        orchestrator.shutdown()
        return 2
    except (BacktestError, ArithmeticError) as e:
        logger.error(f"Invalid run configuration: {e}")
        orchestrator.shutdown()
        return 2

    try:
        run = orchestrator.execute(run_id)
        metrics_snapshot = orchestrator.repository.get_metrics(run_id)
    finally:
        orchestrator.shutdown()

    output = {
        "run": run.to_dict(),
        "metrics": metrics_snapshot.to_dict() if metrics_snapshot is not None else None,
    }
    json.dump(output, sys.stdout, indent=2)
    sys.stdout.write("\n")

    if run.status != "completed":
        logger.error(f"Run {run_id} failed: {run.error_message}")
        return 1
    logger.info(f"Run {run_id} completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())

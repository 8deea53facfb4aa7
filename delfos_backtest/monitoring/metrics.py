"""Prometheus metrics for the backtest service.

Example:
    >>> metrics = EngineMetrics(MetricsConfig(port=9091))
    >>> metrics.start_server()
    >>> metrics.record_run_started()
    >>> with metrics.time_stage("engine"):
    ...     result = engine.run(...)
    >>> metrics.record_run_finished("completed")
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsConfig:
    """Configuration for the metrics service.

    Attributes:
        enabled: Whether metrics collection is enabled
        port: HTTP port for Prometheus scraping (None: no exporter)
        prefix: Metric name prefix
    """

    enabled: bool = True
    port: int | None = None
    prefix: str = "delfos_backtest"


class EngineMetrics:
    """Counters and histograms describing backtest throughput.

    Each instance owns its CollectorRegistry, so several services (or
    tests) can coexist in one process without duplicate-metric errors.
    With ``enabled=False`` every record call is a no-op.
    """

    def __init__(self, config: MetricsConfig | None = None) -> None:
        """Initialize metrics service.

        Args:
            config: Metrics configuration (uses defaults if not provided)
        """
        self.config = config or MetricsConfig()
        self.registry = CollectorRegistry()
        self._server_started = False
        self._lock = threading.Lock()

        prefix = self.config.prefix

        self._runs_started = Counter(
            f"{prefix}_runs_started_total",
            "Backtest runs accepted",
            registry=self.registry,
        )
        self._runs_finished = Counter(
            f"{prefix}_runs_finished_total",
            "Backtest runs that reached a terminal status",
            ["status"],
            registry=self.registry,
        )
        self._runs_active = Gauge(
            f"{prefix}_runs_active",
            "Backtest runs currently executing",
            registry=self.registry,
        )
        self._stage_seconds = Histogram(
            f"{prefix}_stage_duration_seconds",
            "Duration of each run stage",
            ["stage"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 300],
            registry=self.registry,
        )
        self._trades = Counter(
            f"{prefix}_trades_total",
            "Trades produced by the engine",
            ["close_reason"],
            registry=self.registry,
        )
        self._scenarios = Counter(
            f"{prefix}_scenarios_total",
            "Monte Carlo scenarios simulated",
            registry=self.registry,
        )
        self._breaker_triggers = Counter(
            f"{prefix}_breaker_triggers_total",
            "Circuit breaker trips during replay",
            ["breaker_type"],
            registry=self.registry,
        )
        self._data_gaps = Counter(
            f"{prefix}_data_gaps_total",
            "Market data gaps tolerated during replay",
            registry=self.registry,
        )

    def start_server(self) -> bool:
        """Start the Prometheus HTTP exporter.

        Returns:
            True if the server is running, False otherwise
        """
        if not self.config.enabled or self.config.port is None:
            logger.info("Metrics exporter disabled, server not started")
            return False

        with self._lock:
            if self._server_started:
                logger.warning("Metrics server already started")
                return True
            try:
                start_http_server(self.config.port, registry=self.registry)
            except OSError as e:
                logger.error(f"Failed to start metrics server: {e}")
                return False
            self._server_started = True
            logger.info(f"Prometheus metrics server started on port {self.config.port}")
            return True

    def record_run_started(self) -> None:
        if not self.config.enabled:
            return
        self._runs_started.inc()
        self._runs_active.inc()

    def record_run_finished(self, status: str) -> None:
        if not self.config.enabled:
            return
        self._runs_finished.labels(status=status).inc()
        self._runs_active.dec()

    def record_trades(self, close_reasons: list[str]) -> None:
        if not self.config.enabled:
            return
        for reason in close_reasons:
            self._trades.labels(close_reason=reason).inc()

    def record_scenarios(self, count: int) -> None:
        if self.config.enabled and count > 0:
            self._scenarios.inc(count)

    def record_breaker(self, breaker_type: str) -> None:
        if self.config.enabled:
            self._breaker_triggers.labels(breaker_type=breaker_type).inc()

    def record_data_gaps(self, count: int) -> None:
        if self.config.enabled and count > 0:
            self._data_gaps.inc(count)

    @contextmanager
    def time_stage(self, stage: str) -> Iterator[None]:
        """Observe the duration of a run stage (engine, monte_carlo, metrics)."""
        started = time.perf_counter()
        try:
            yield
        finally:
            if self.config.enabled:
                self._stage_seconds.labels(stage=stage).observe(time.perf_counter() - started)

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of a sample in this registry (0.0 when absent)."""
        value = self.registry.get_sample_value(f"{self.config.prefix}_{name}", labels or {})
        return value if value is not None else 0.0

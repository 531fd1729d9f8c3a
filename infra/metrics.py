"""Prometheus-backed metrics hooks for reconciliation, orders and the scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "cyclebot_"


@dataclass
class PassStats:
    exchange: str
    processed: int
    transitions: int
    errors: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose bot activity via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    When disabled, every hook still updates the in-memory snapshots so
    callers and tests can inspect them.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_pass: Optional[PassStats] = None
        self._transition_counts: Dict[str, int] = {}
        self._order_counts: Dict[str, int] = {}
        self._task_runs: Dict[str, int] = {}

        if not self._enabled:
            self._pass_summary = None
            self._pass_counter = None
            self._transition_counter = None
            self._order_counter = None
            self._active_cycles_gauge = None
            self._task_counter = None
            return

        self._pass_summary = Summary(
            f"{METRIC_PREFIX}reconcile_duration_seconds",
            "Duration of a reconciliation pass per exchange",
            labelnames=("exchange",),
        )
        self._pass_counter = Counter(
            f"{METRIC_PREFIX}reconcile_passes_total",
            "Reconciliation passes by exchange and outcome",
            labelnames=("exchange", "outcome"),
        )
        self._transition_counter = Counter(
            f"{METRIC_PREFIX}cycle_transitions_total",
            "Cycle state transitions",
            labelnames=("exchange", "transition"),
        )
        self._order_counter = Counter(
            f"{METRIC_PREFIX}orders_total",
            "Order placements and cancels by outcome",
            labelnames=("exchange", "action", "outcome"),
        )
        self._active_cycles_gauge = Gauge(
            f"{METRIC_PREFIX}active_cycles",
            "Cycles in buy or sell state seen in the last pass",
            labelnames=("exchange",),
        )
        self._task_counter = Counter(
            f"{METRIC_PREFIX}scheduler_task_runs_total",
            "Scheduler task executions by outcome",
            labelnames=("task", "outcome"),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_pass(self, stats: PassStats) -> None:
        if self._enabled:
            outcome = "error" if stats.errors else "ok"
            self._pass_summary.labels(exchange=stats.exchange).observe(stats.duration_seconds)
            self._pass_counter.labels(exchange=stats.exchange, outcome=outcome).inc()
            self._active_cycles_gauge.labels(exchange=stats.exchange).set(stats.processed)
        self._last_pass = stats

    def record_transition(self, exchange: str, old_status: str, new_status: str) -> None:
        transition = f"{old_status}->{new_status}"
        if self._enabled:
            self._transition_counter.labels(exchange=exchange, transition=transition).inc()
        self._transition_counts[transition] = self._transition_counts.get(transition, 0) + 1

    def record_order(self, exchange: str, action: str, ok: bool) -> None:
        outcome = "ok" if ok else "failed"
        if self._enabled:
            self._order_counter.labels(exchange=exchange, action=action, outcome=outcome).inc()
        key = f"{action}:{outcome}"
        self._order_counts[key] = self._order_counts.get(key, 0) + 1

    def record_task_run(self, task: str, outcome: str) -> None:
        if self._enabled:
            self._task_counter.labels(task=task, outcome=outcome).inc()
        key = f"{task}:{outcome}"
        self._task_runs[key] = self._task_runs.get(key, 0) + 1

    def last_pass(self) -> Optional[PassStats]:
        return self._last_pass

    def transition_snapshot(self) -> Dict[str, int]:
        return dict(self._transition_counts)

    def order_snapshot(self) -> Dict[str, int]:
        return dict(self._order_counts)

    def task_snapshot(self) -> Dict[str, int]:
        return dict(self._task_runs)


def get_metrics() -> MetricsRecorder:
    """The process-wide recorder (disabled unless the runner enabled it first)."""
    if MetricsRecorder._instance is None or not MetricsRecorder._initialized:
        return MetricsRecorder(enabled=False)
    return MetricsRecorder._instance

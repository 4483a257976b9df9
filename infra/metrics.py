"""Prometheus-backed metrics hooks for the scheduled activities and order flow."""

from __future__ import annotations

import logging
from collections import Counter as Tally
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class ActivityStats:
    activity: str
    status: str  # "ok", "error"
    submitted: int
    skipped: int
    failed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose activity and order stats via Prometheus.

    Singleton pattern so every component records into the same registry.
    In-process tallies are kept regardless of whether the exporter is enabled.
    """
    _instance: Optional["MetricsRecorder"] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return
        self.__class__._initialized = True

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = CollectorRegistry()

        self.tallies: Tally = Tally()
        self._last_activity: Dict[str, ActivityStats] = {}

        self._activity_counter = Counter(
            "trader_activity_runs_total",
            "Scheduled activity iterations by outcome",
            labelnames=("activity", "status"),
            registry=self.registry,
        )
        self._activity_summary = Summary(
            "trader_activity_duration_seconds",
            "Duration of scheduled activity iterations",
            labelnames=("activity",),
            registry=self.registry,
        )
        self._skipped_firings_counter = Counter(
            "trader_activity_skipped_firings_total",
            "Timer firings dropped because the previous iteration was still running",
            labelnames=("activity",),
            registry=self.registry,
        )
        self._orders_counter = Counter(
            "trader_orders_total",
            "Order operations by action and outcome",
            labelnames=("action", "status"),
            registry=self.registry,
        )
        self._signals_counter = Counter(
            "trader_signals_total",
            "Signals attempted by outcome",
            labelnames=("status",),
            registry=self.registry,
        )
        self._cursor_gauge = Gauge(
            "trader_signal_cursor",
            "Highest attempted signal sequence id",
            registry=self.registry,
        )
        self._margin_gauge = Gauge(
            "trader_regt_utilization_pct",
            "Position market value as a percentage of RegT buying power",
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "trader_open_positions",
            "Number of held positions",
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_activity(self, stats: ActivityStats) -> None:
        self._activity_counter.labels(activity=stats.activity, status=stats.status).inc()
        self._activity_summary.labels(activity=stats.activity).observe(stats.duration_seconds)
        self.tallies[f"activity:{stats.activity}:{stats.status}"] += 1
        self._last_activity[stats.activity] = stats

    def last_activity(self, activity: str) -> Optional[ActivityStats]:
        return self._last_activity.get(activity)

    def record_skipped_firing(self, activity: str) -> None:
        self._skipped_firings_counter.labels(activity=activity).inc()
        self.tallies[f"skipped_firing:{activity}"] += 1

    def record_order(self, action: str, status: str) -> None:
        self._orders_counter.labels(action=action, status=status).inc()
        self.tallies[f"order:{action}:{status}"] += 1

    def record_signal(self, status: str, cursor: Optional[int] = None) -> None:
        self._signals_counter.labels(status=status).inc()
        self.tallies[f"signal:{status}"] += 1
        if cursor is not None:
            self._cursor_gauge.set(cursor)

    def record_margin(self, utilization_pct: float, open_positions: int) -> None:
        self._margin_gauge.set(max(utilization_pct, 0.0))
        self._positions_gauge.set(open_positions)

"""Prometheus-backed metrics hooks for engine cycles and execution."""

from __future__ import annotations

import logging
import threading
from collections import Counter as TallyCounter
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIXES = ("perp_engine_", "perp_exchange_")


@dataclass
class CycleStats:
    engine_id: int
    status: str  # "completed", "skipped", "halted", "error"
    forced_closes: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Event tallies are also kept in-process so callers (and tests) can
    inspect them when the exporter is disabled.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9090):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9090) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle: Dict[int, CycleStats] = {}
        self._tally: TallyCounter = TallyCounter()
        self._tally_lock = threading.Lock()

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._skipped_ticks_counter = None
            self._forced_close_counter = None
            self._breaker_trips_counter = None
            self._positions_gauge = None
            self._order_rejections_counter = None
            self._slippage_counter = None
            self._reconcile_skips_counter = None
            self._api_errors_counter = None
            return

        self._cycle_summary = Summary(
            "perp_engine_cycle_duration_seconds",
            "Duration of a full engine cycle",
            labelnames=("engine",),
        )
        self._cycle_counter = Counter(
            "perp_engine_cycle_total",
            "Engine cycles by status",
            labelnames=("engine", "status"),
        )
        self._skipped_ticks_counter = Counter(
            "perp_engine_skipped_ticks_total",
            "Scheduled ticks skipped because the previous cycle was still running",
            labelnames=("engine",),
        )
        self._forced_close_counter = Counter(
            "perp_engine_forced_closes_total",
            "Positions closed by risk rules",
            labelnames=("engine", "reason"),
        )
        self._breaker_trips_counter = Counter(
            "perp_engine_circuit_breaker_trips_total",
            "Account circuit breaker trips",
            labelnames=("engine", "kind"),
        )
        self._positions_gauge = Gauge(
            "perp_engine_open_positions",
            "Open positions in the ledger",
            labelnames=("engine",),
        )
        self._order_rejections_counter = Counter(
            "perp_engine_order_rejections_total",
            "Orders rejected or failed",
            labelnames=("engine", "reason"),
        )
        self._slippage_counter = Counter(
            "perp_engine_slippage_violations_total",
            "Fills outside slippage tolerance",
            labelnames=("engine", "leg"),
        )
        self._reconcile_skips_counter = Counter(
            "perp_engine_reconcile_skips_total",
            "Reconciliation passes deferred due to an ambiguous exchange read",
            labelnames=("engine",),
        )
        self._api_errors_counter = Counter(
            "perp_exchange_api_errors_total",
            "Exchange read/write failures surfaced to the engine",
            labelnames=("engine", "error_type"),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        from prometheus_client import REGISTRY

        for collector in list(REGISTRY._collector_to_names):
            names = REGISTRY._collector_to_names.get(collector, set())
            if any(name.startswith(METRIC_PREFIXES) for name in names):
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

    def count(self, event: str, engine_id: int) -> int:
        with self._tally_lock:
            return self._tally[(event, engine_id)]

    def _bump(self, event: str, engine_id: int) -> None:
        # Engines record from their own worker threads
        with self._tally_lock:
            self._tally[(event, engine_id)] += 1

    def last_cycle(self, engine_id: int) -> Optional[CycleStats]:
        return self._last_cycle.get(engine_id)

    def observe_cycle(self, stats: CycleStats) -> None:
        engine = str(stats.engine_id)
        self._last_cycle[stats.engine_id] = stats
        self._bump("cycle_" + stats.status, stats.engine_id)
        if self._enabled:
            self._cycle_summary.labels(engine=engine).observe(stats.duration_seconds)
            self._cycle_counter.labels(engine=engine, status=stats.status).inc()

    def record_skipped_tick(self, engine_id: int) -> None:
        self._bump("skipped_tick", engine_id)
        if self._enabled:
            self._skipped_ticks_counter.labels(engine=str(engine_id)).inc()

    def record_forced_close(self, engine_id: int, reason: str) -> None:
        self._bump("forced_close", engine_id)
        if self._enabled:
            self._forced_close_counter.labels(engine=str(engine_id), reason=reason).inc()

    def record_circuit_breaker_trip(self, engine_id: int, kind: str) -> None:
        self._bump("breaker_trip", engine_id)
        if self._enabled:
            self._breaker_trips_counter.labels(engine=str(engine_id), kind=kind).inc()

    def record_open_positions(self, engine_id: int, count: int) -> None:
        if self._enabled:
            self._positions_gauge.labels(engine=str(engine_id)).set(count)

    def record_order_rejection(self, engine_id: int, reason: str) -> None:
        self._bump("order_rejection", engine_id)
        if self._enabled:
            self._order_rejections_counter.labels(
                engine=str(engine_id), reason=self._normalize_reason(reason)
            ).inc()

    def record_slippage_violation(self, engine_id: int, leg: str) -> None:
        self._bump("slippage_" + leg, engine_id)
        if self._enabled:
            self._slippage_counter.labels(engine=str(engine_id), leg=leg).inc()

    def record_reconcile_skip(self, engine_id: int) -> None:
        self._bump("reconcile_skip", engine_id)
        if self._enabled:
            self._reconcile_skips_counter.labels(engine=str(engine_id)).inc()

    def record_api_error(self, engine_id: int, error_type: str) -> None:
        self._bump("api_error", engine_id)
        if self._enabled:
            self._api_errors_counter.labels(engine=str(engine_id), error_type=error_type).inc()

    @staticmethod
    def _normalize_reason(reason: str) -> str:
        """Collapse free-text errors into a bounded label set."""
        text = (reason or "").lower()
        if "insufficient" in text or "margin" in text:
            return "insufficient_margin"
        if "slippage" in text:
            return "slippage"
        if "leverage" in text:
            return "leverage"
        if "size" in text or "quantity" in text:
            return "size"
        if "timeout" in text or "without response" in text:
            return "network"
        return "other"

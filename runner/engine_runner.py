"""
perpguard Runner: per-engine scheduler

One timer thread ticks every ``interval_seconds``; each tick submits a cycle
to a single-worker pool. A tick that lands while the previous cycle is still
running is dropped, never queued.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from core.exceptions import EngineFatalError
from core.trading_cycle import CycleResult, TradingCyclePipeline
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

StoppedCallback = Callable[["EngineRunner", str, Optional[str]], None]


class EngineRunner:
    """
    Drives one engine's cycles.

    States: ``stopped -> running -> stopped``. A breaker halt stops the
    runner with status ``stopped``; a fatal error stops it with ``error``.
    ``on_stopped(runner, status, reason)`` is called for those
    self-initiated stops, not for ``stop()``.

    ``cycle_lock`` may be shared between successive runners of the same
    engine so a cycle left in flight by a stopped runner still blocks the
    next runner's ticks.
    """

    def __init__(self, engine_id: int, pipeline: TradingCyclePipeline,
                 interval_seconds: float = 60.0,
                 metrics: Optional[MetricsRecorder] = None,
                 on_stopped: Optional[StoppedCallback] = None,
                 cycle_lock: Optional[threading.Lock] = None):
        self.engine_id = engine_id
        self.pipeline = pipeline
        self.interval_seconds = max(float(interval_seconds), 1.0)
        self.metrics = metrics
        self.on_stopped = on_stopped

        self.status = "stopped"
        self.iteration = 0
        self.last_result: Optional[CycleResult] = None

        self._stop_event = threading.Event()
        self._submit_lock = threading.Lock()
        self._cycle_lock = cycle_lock or threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._log_prefix = f"[Engine {engine_id}]"

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    def start(self) -> bool:
        """Start ticking; the first cycle runs immediately. False if already running."""
        with self._submit_lock:
            if self.is_running:
                return False
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(max_workers=1,
                                                thread_name_prefix=f"engine-{self.engine_id}")
            self.status = "running"
            self._thread = threading.Thread(target=self._tick_loop, daemon=True,
                                            name=f"engine-{self.engine_id}-ticker")
            self._thread.start()

        logger.info(f"{self._log_prefix} Started (interval={self.interval_seconds:.0f}s)")
        return True

    def stop(self, wait: bool = False) -> bool:
        """
        Cancel future ticks. A cycle already in flight runs to completion;
        ``wait=True`` blocks until it has.
        """
        with self._submit_lock:
            if not self.is_running:
                return False
            self._stop_event.set()
            self.status = "stopped"
            executor, self._executor = self._executor, None

        if executor is not None:
            executor.shutdown(wait=wait)
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval_seconds)

        logger.info(f"{self._log_prefix} Stopped")
        return True

    def tick(self) -> Optional[Future]:
        """Submit one cycle unless one is already running. Returns the future or None."""
        with self._submit_lock:
            if self._executor is None or self._stop_event.is_set():
                return None
            if not self._cycle_lock.acquire(blocking=False):
                logger.warning(f"{self._log_prefix} Previous cycle still running, skipping tick")
                if self.metrics:
                    self.metrics.record_skipped_tick(self.engine_id)
                return None
            try:
                return self._executor.submit(self._run_cycle)
            except RuntimeError:
                self._cycle_lock.release()
                raise

    def run_once(self) -> Optional[CycleResult]:
        """Run a single cycle synchronously on the caller's thread."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning(f"{self._log_prefix} Cycle already running, run_once ignored")
            return None
        return self._run_cycle()

    def _tick_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            if self._stop_event.wait(self.interval_seconds):
                break

    def _run_cycle(self) -> Optional[CycleResult]:
        """Worker body; the caller must hold ``_cycle_lock``."""
        try:
            self.iteration += 1
            try:
                result = self.pipeline.execute_cycle(self.iteration)
            except EngineFatalError as e:
                logger.critical(f"{self._log_prefix} Fatal: {e.reason}")
                self._halt("error", e.reason)
                return None

            self.last_result = result
            if result.halted:
                self._halt("stopped", result.reason)
            return result
        finally:
            self._cycle_lock.release()

    def _halt(self, status: str, reason: Optional[str]) -> None:
        self.stop(wait=False)
        self.status = status
        if self.on_stopped:
            self.on_stopped(self, status, reason)

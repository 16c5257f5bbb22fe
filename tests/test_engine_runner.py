"""
Tests for EngineRunner scheduling and EngineManager lifecycle.
"""

import threading
import time
from unittest.mock import Mock

import pytest

from ai.llm_client import RuleBasedProposer
from core.exceptions import EngineFatalError, EngineNotFound, ExchangeAuthError
from core.trading_cycle import CycleResult
from runner.engine_manager import EngineManager
from runner.engine_runner import EngineRunner
from tests.helpers import FakeExchange

WAIT = 5.0


def completed(iteration=1):
    return CycleResult(engine_id=1, iteration=iteration, status="completed")


class BlockingPipeline:
    """Pipeline whose cycles block until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def execute_cycle(self, iteration):
        self.calls += 1
        self.entered.set()
        self.release.wait(WAIT)
        return completed(iteration)


class AccountGate:
    """
    Blocks every account read until released and records how many cycles
    were inside one at the same time.
    """

    def __init__(self, error=None):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.error = error
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def wrap(self, exchange):
        original = exchange.get_account

        def get_account():
            with self._lock:
                self.calls += 1
                self.active += 1
                self.max_active = max(self.max_active, self.active)
            self.entered.set()
            try:
                self.release.wait(WAIT)
                if self.error is not None:
                    raise self.error
                return original()
            finally:
                with self._lock:
                    self.active -= 1

        exchange.get_account = get_account
        return exchange


def wait_for(predicate, timeout=WAIT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestEngineRunner:

    def test_first_cycle_runs_immediately(self):
        ran = threading.Event()
        pipeline = Mock()
        pipeline.execute_cycle.side_effect = lambda i: (ran.set(), completed(i))[1]
        runner = EngineRunner(1, pipeline, interval_seconds=600)

        assert runner.start() is True
        try:
            assert ran.wait(WAIT)
            assert runner.is_running
            assert runner.start() is False
        finally:
            runner.stop(wait=True)

        pipeline.execute_cycle.assert_called_once_with(1)
        assert runner.status == "stopped"

    def test_overlapping_tick_is_skipped(self, metrics):
        pipeline = BlockingPipeline()
        runner = EngineRunner(1, pipeline, interval_seconds=600, metrics=metrics)
        runner.start()
        try:
            assert pipeline.entered.wait(WAIT)
            assert runner.tick() is None
            assert metrics.count("skipped_tick", 1) == 1
        finally:
            pipeline.release.set()
            runner.stop(wait=True)

        assert pipeline.calls == 1

    def test_stop_lets_in_flight_cycle_finish(self):
        pipeline = BlockingPipeline()
        runner = EngineRunner(1, pipeline, interval_seconds=1)
        runner.start()
        assert pipeline.entered.wait(WAIT)

        runner.stop()
        assert runner.status == "stopped"
        assert runner.last_result is None
        pipeline.release.set()

        assert wait_for(lambda: runner.last_result is not None)
        time.sleep(1.5)

        assert pipeline.calls == 1
        assert runner.iteration == 1
        assert runner.last_result.status == "completed"
        assert runner.status == "stopped"

    def test_keeps_ticking(self):
        second = threading.Event()
        pipeline = Mock()
        pipeline.execute_cycle.side_effect = lambda i: (i >= 2 and second.set(), completed(i))[1]
        runner = EngineRunner(1, pipeline, interval_seconds=1)
        runner.start()
        try:
            assert second.wait(WAIT)
        finally:
            runner.stop(wait=True)

    def test_breaker_halt_stops_runner(self):
        stopped = threading.Event()
        on_stopped = Mock(side_effect=lambda *a: stopped.set())
        pipeline = Mock()
        pipeline.execute_cycle.return_value = CycleResult(
            engine_id=1, iteration=1, status="halted", reason="Account stop loss hit")
        runner = EngineRunner(1, pipeline, interval_seconds=1, on_stopped=on_stopped)

        runner.start()
        assert stopped.wait(WAIT)

        on_stopped.assert_called_once_with(runner, "stopped", "Account stop loss hit")
        assert runner.is_running is False
        time.sleep(1.5)
        assert pipeline.execute_cycle.call_count == 1

    def test_fatal_error_stops_with_error(self):
        stopped = threading.Event()
        on_stopped = Mock(side_effect=lambda *a: stopped.set())
        pipeline = Mock()
        pipeline.execute_cycle.side_effect = EngineFatalError(1, "credential failure: 401")
        runner = EngineRunner(1, pipeline, interval_seconds=1, on_stopped=on_stopped)

        runner.start()
        assert stopped.wait(WAIT)

        on_stopped.assert_called_once_with(runner, "error", "credential failure: 401")
        assert runner.status == "error"

    def test_shared_cycle_lock_spans_runners(self, metrics):
        lock = threading.Lock()
        first_pipeline = BlockingPipeline()
        first = EngineRunner(1, first_pipeline, interval_seconds=600, cycle_lock=lock)
        second_pipeline = Mock()
        second = EngineRunner(1, second_pipeline, interval_seconds=600, metrics=metrics,
                              cycle_lock=lock)

        first.start()
        try:
            assert first_pipeline.entered.wait(WAIT)
            first.stop()
            second.start()
            assert wait_for(lambda: metrics.count("skipped_tick", 1) == 1)
            assert second.run_once() is None
        finally:
            first_pipeline.release.set()
            second.stop(wait=True)

        assert first_pipeline.calls == 1
        second_pipeline.execute_cycle.assert_not_called()

    def test_run_once_is_synchronous(self):
        pipeline = Mock()
        pipeline.execute_cycle.side_effect = completed
        runner = EngineRunner(1, pipeline)

        assert runner.run_once().status == "completed"
        assert runner.run_once().iteration == 2
        assert runner.status == "stopped"


@pytest.fixture
def exchange_factory():
    def build(record):
        exchange = FakeExchange()
        exchange.prices["BTC_USDT"] = 100.0
        return exchange
    return build


@pytest.fixture
def manager(store, exchange_factory, metrics):
    mgr = EngineManager(
        store,
        exchange_factory=exchange_factory,
        proposer_factory=lambda record, executor: RuleBasedProposer(),
        metrics=metrics,
        alert_service=Mock(),
    )
    yield mgr
    mgr.stop_all(wait=True)


class TestEngineManager:

    def test_start_and_stop_are_idempotent(self, manager, store):
        assert manager.start(1) is True
        assert manager.start(1) is False
        assert manager.status(1) == "running"
        assert manager.list_running() == [1]
        assert store.get_engine(1).status == "running"

        assert manager.stop(1, wait=True) is True
        assert manager.stop(1) is False
        assert manager.status(1) == "stopped"
        assert store.get_engine(1).status == "stopped"

    def test_unknown_engine(self, manager):
        with pytest.raises(EngineNotFound):
            manager.start(99)
        with pytest.raises(EngineNotFound):
            manager.stop(99)

    def test_engines_are_independent(self, manager):
        manager.start(1)
        manager.start(2)
        manager.stop(1, wait=True)
        assert manager.list_running() == [2]

    def test_restore_starts_running_engines(self, manager, store):
        store.set_engine_status(2, "running")
        assert manager.restore() == [2]
        assert manager.list_running() == [2]

    def test_self_stop_updates_status_and_alerts(self, manager, store):
        manager.start(1)
        runner = manager._runners[1]

        manager._on_runner_stopped(runner, "error", "credential failure")
        runner.stop(wait=True)

        assert manager.status(1) == "stopped"
        assert store.get_engine(1).status == "error"
        manager.alert_service.notify.assert_called_once()
        assert manager.restore() == []

    def test_run_once_completes_a_cycle(self, manager, store):
        result = manager.run_once(1)

        assert result.status == "completed"
        assert result.symbols == ["BTC"]
        assert len(store.get_recent_decisions(1)) == 1
        assert store.get_initial_balance(1) == 1000.0

    def test_stale_runner_callback_leaves_newer_runner(self, manager, store):
        manager.start(1)
        old = manager._runners[1]
        manager.stop(1, wait=True)
        manager.start(1)
        new = manager._runners[1]

        manager._on_runner_stopped(old, "error", "credential failure: 401")

        assert manager._runners[1] is new
        assert manager.status(1) == "running"
        assert store.get_engine(1).status == "running"
        manager.alert_service.notify.assert_called_once()


def gated_manager(store, metrics, gate):
    def build(record):
        exchange = FakeExchange()
        exchange.prices["BTC_USDT"] = 100.0
        return gate.wrap(exchange)

    return EngineManager(
        store,
        exchange_factory=build,
        proposer_factory=lambda record, executor: RuleBasedProposer(),
        metrics=metrics,
        alert_service=Mock(),
    )


class TestRestartDuringCycle:

    def test_restart_never_overlaps_cycles(self, store, metrics):
        gate = AccountGate()
        manager = gated_manager(store, metrics, gate)
        try:
            manager.start(1)
            assert gate.entered.wait(WAIT)
            old = manager._runners[1]

            assert manager.stop(1) is True
            assert manager.start(1) is True
            new = manager._runners[1]

            assert wait_for(lambda: metrics.count("skipped_tick", 1) == 1)
            assert manager.run_once(1) is None
            assert new.pipeline.executor.lock is old.pipeline.executor.lock
            assert gate.calls == 1
        finally:
            gate.release.set()
            assert wait_for(lambda: old.last_result is not None)
            manager.stop_all(wait=True)

        assert gate.max_active == 1
        assert old.pipeline is not new.pipeline
        assert old.last_result.status == "completed"
        assert new.last_result is None

    def test_fatal_from_replaced_runner_keeps_new_one(self, store, metrics):
        gate = AccountGate(error=ExchangeAuthError("invalid key", 401))
        manager = gated_manager(store, metrics, gate)
        try:
            manager.start(1)
            assert gate.entered.wait(WAIT)
            old = manager._runners[1]
            manager.stop(1)
            manager.start(1)
            new = manager._runners[1]

            gate.release.set()
            assert wait_for(lambda: manager.alert_service.notify.called)

            assert old.status == "error"

            assert manager._runners[1] is new
            assert manager.status(1) == "running"
            assert store.get_engine(1).status == "running"
            manager.alert_service.notify.assert_called_once()
        finally:
            gate.release.set()
            manager.stop_all(wait=True)

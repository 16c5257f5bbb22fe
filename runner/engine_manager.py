"""
perpguard Runner: Engine Manager

Registry of running engines, keyed by engine id. Each engine gets its own
exchange client, executor, proposer and cycle pipeline; nothing is shared
between engines except the ledger, metrics, alerts and audit trail.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from ai.llm_client import DecisionProposer, OpenRouterProposer, RuleBasedProposer
from ai.trader_agent import TradingToolbox
from core.audit_log import AuditLogger
from core.exchange_gate import GateFuturesExchange
from core.execution import ExecutionEngine
from core.trading_cycle import CycleResult, TradingCyclePipeline
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.state_store import EngineRecord, LedgerStore
from runner.engine_runner import EngineRunner
from tools.config_validator import AppConfig, RiskParams

logger = logging.getLogger(__name__)

ExchangeFactory = Callable[[EngineRecord], object]
ProposerFactory = Callable[[EngineRecord, ExecutionEngine], DecisionProposer]


class EngineManager:
    """
    Start/stop/restore engines.

    ``start`` and ``stop`` are idempotent. ``restore`` restarts every engine
    whose stored status is ``running`` (used at process startup).
    """

    def __init__(self, store: LedgerStore, config: Optional[AppConfig] = None,
                 exchange_factory: Optional[ExchangeFactory] = None,
                 proposer_factory: Optional[ProposerFactory] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 alert_service: Optional[AlertService] = None,
                 audit: Optional[AuditLogger] = None):
        self.store = store
        self.config = config or AppConfig()
        self.exchange_factory = exchange_factory or self._default_exchange
        self.proposer_factory = proposer_factory or self._default_proposer
        self.metrics = metrics
        self.alert_service = alert_service
        self.audit = audit

        self._runners: Dict[int, EngineRunner] = {}
        self._engine_locks: Dict[int, Tuple[threading.Lock, threading.RLock]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------ factories

    def _default_exchange(self, record: EngineRecord) -> GateFuturesExchange:
        cfg = self.config.exchange
        return GateFuturesExchange(
            record.api_key,
            record.api_secret,
            base_url=cfg.base_url,
            testnet=cfg.testnet,
            settle=cfg.settle,
            timeout=cfg.timeout_seconds,
            read_retries=cfg.read_retries,
            retry_backoff_ms=cfg.retry_backoff_ms,
        )

    def _default_proposer(self, record: EngineRecord, executor: ExecutionEngine) -> DecisionProposer:
        cfg = self.config.model
        if cfg.provider == "rules":
            return RuleBasedProposer()
        if not cfg.api_key:
            logger.warning(f"[Engine {record.id}] No model API key configured, using rule-based proposer")
            return RuleBasedProposer()
        return OpenRouterProposer(
            api_key=cfg.api_key,
            model=record.model_name,
            toolbox=TradingToolbox(record.id, executor, self.store),
            base_url=cfg.base_url,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            max_tool_rounds=cfg.max_tool_rounds,
            timeout=cfg.timeout_seconds,
        )

    def _locks_for(self, engine_id: int) -> Tuple[threading.Lock, threading.RLock]:
        """(cycle lock, order lock) for an engine; the same pair outlives restarts."""
        with self._lock:
            locks = self._engine_locks.get(engine_id)
            if locks is None:
                locks = (threading.Lock(), threading.RLock())
                self._engine_locks[engine_id] = locks
            return locks

    def _build_runner(self, record: EngineRecord) -> EngineRunner:
        cycle_lock, order_lock = self._locks_for(record.id)
        risk = RiskParams(**record.risk_params)
        exchange = self.exchange_factory(record)
        executor = ExecutionEngine(record.id, exchange, self.store, risk_params=risk,
                                   config=self.config.execution, metrics=self.metrics,
                                   lock=order_lock)
        pipeline = TradingCyclePipeline(
            engine_id=record.id,
            exchange=exchange,
            store=self.store,
            proposer=self.proposer_factory(record, executor),
            executor=executor,
            risk_params=risk,
            strategy=record.strategy,
            metrics=self.metrics,
            alert_service=self.alert_service,
            audit=self.audit,
        )
        return EngineRunner(record.id, pipeline, interval_seconds=risk.interval_seconds,
                            metrics=self.metrics, on_stopped=self._on_runner_stopped,
                            cycle_lock=cycle_lock)

    # ------------------------------------------------------------ lifecycle

    def start(self, engine_id: int) -> bool:
        """Start an engine. Raises EngineNotFound; False if already running."""
        with self._lock:
            runner = self._runners.get(engine_id)
            if runner is not None and runner.is_running:
                logger.info(f"[Engine {engine_id}] Already running")
                return False

            record = self.store.get_engine(engine_id)
            runner = self._build_runner(record)
            self._runners[engine_id] = runner
            self.store.set_engine_status(engine_id, "running")
            runner.start()

        logger.info(f"[Engine {engine_id}] {record.name} started ({record.strategy})")
        return True

    def stop(self, engine_id: int, wait: bool = False) -> bool:
        """Stop an engine. Raises EngineNotFound; False if it was not running."""
        with self._lock:
            runner = self._runners.pop(engine_id, None)
            if runner is None or not runner.is_running:
                self.store.get_engine(engine_id)
                return False
            self.store.set_engine_status(engine_id, "stopped")

        runner.stop(wait=wait)
        return True

    def stop_all(self, wait: bool = False) -> None:
        """Stop every running engine without touching their stored status."""
        with self._lock:
            runners = list(self._runners.values())
            self._runners.clear()
        for runner in runners:
            runner.stop(wait=wait)

    def status(self, engine_id: int) -> str:
        with self._lock:
            runner = self._runners.get(engine_id)
            return "running" if runner is not None and runner.is_running else "stopped"

    def list_running(self) -> List[int]:
        with self._lock:
            return sorted(eid for eid, r in self._runners.items() if r.is_running)

    def restore(self) -> List[int]:
        """Restart engines whose stored status is ``running``. Returns the started ids."""
        started = []
        for record in self.store.list_engines(status="running"):
            try:
                if self.start(record.id):
                    started.append(record.id)
            except Exception as e:
                logger.error(f"[Engine {record.id}] Restore failed: {e}", exc_info=True)
                self.store.set_engine_status(record.id, "error")
        logger.info(f"Restored {len(started)} engine(s): {started}")
        return started

    def run_once(self, engine_id: int) -> Optional[CycleResult]:
        """Run one synchronous cycle for an engine without scheduling it."""
        record = self.store.get_engine(engine_id)
        return self._build_runner(record).run_once()

    def _on_runner_stopped(self, runner: EngineRunner, status: str, reason: Optional[str]) -> None:
        engine_id = runner.engine_id
        with self._lock:
            current = self._runners.get(engine_id) is runner
            if current:
                del self._runners[engine_id]
                self.store.set_engine_status(engine_id, status)

        if not current:
            # A newer runner owns the registry slot and the stored status.
            logger.warning(f"[Engine {engine_id}] Replaced runner stopped with status={status}: {reason}")
        else:
            logger.warning(f"[Engine {engine_id}] Stopped with status={status}: {reason}")
        if status == "error" and self.alert_service:
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL,
                title=f"Engine {engine_id} stopped on fatal error",
                message=reason or "unknown",
                context={"engine_id": engine_id},
            )

"""
Engine Cycle Pipeline

One scheduling tick for one engine:
1. Collect market data
2. Read account state
3. Account circuit breaker (may flatten and halt)
4. Reconcile positions with the exchange
5. Refresh peaks, evaluate exit rules, force-close
6. Re-reconcile if anything was closed
7. Record account snapshot
8. Build decision context and ask the proposer
9. Record the decision

Transient and data errors end the step (or skip the cycle) and are logged;
credential and ledger failures are raised as fatal for the runner.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ai.llm_client import Decision, DecisionProposer
from ai.snapshot_builder import build_decision_context
from core.audit_log import AuditLogger
from core.exceptions import (
    CriticalDataUnavailable,
    EngineFatalError,
    ExchangeAuthError,
    ExchangeError,
)
from core.execution import ExecutionEngine, ExecutionResult
from core.market_data import MarketDataCollector
from core.position_manager import PositionManager
from core.reconciliation import PositionReconciler, ReconcileResult
from core.risk import AccountCircuitBreaker, AccountInfo, build_account_info, sharpe_ratio
from infra.metrics import CycleStats, MetricsRecorder
from infra.state_store import AccountSnapshot, DecisionRecord, LedgerStore, utcnow
from tools.config_validator import RiskParams

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Result of one engine cycle"""
    engine_id: int
    iteration: int
    status: str = "running"  # "completed" | "skipped" | "halted" | "error" | "fatal"
    reason: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    duration_seconds: float = 0.0
    symbols: List[str] = field(default_factory=list)
    account: Optional[Dict[str, Any]] = None
    breaker: Optional[Dict[str, Any]] = None
    reconcile: Optional[Dict[str, Any]] = None
    forced_closes: List[ExecutionResult] = field(default_factory=list)
    decision_text: Optional[str] = None
    actions_taken: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def halted(self) -> bool:
        return self.status == "halted"


def _reconcile_summary(result: ReconcileResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "upserted": result.upserted,
        "removed": result.removed,
        "skipped_reason": result.skipped_reason,
        "error": result.error,
    }


class TradingCyclePipeline:
    """Per-engine cycle; every collaborator is scoped to one engine id."""

    def __init__(self,
                 engine_id: int,
                 exchange,
                 store: LedgerStore,
                 proposer: DecisionProposer,
                 executor: ExecutionEngine,
                 risk_params: Optional[RiskParams] = None,
                 strategy: str = "balanced",
                 metrics: Optional[MetricsRecorder] = None,
                 alert_service=None,
                 audit: Optional[AuditLogger] = None,
                 started_at: Optional[datetime] = None):
        self.engine_id = engine_id
        self.exchange = exchange
        self.store = store
        self.proposer = proposer
        self.executor = executor
        self.risk = risk_params or RiskParams()
        self.strategy = strategy
        self.metrics = metrics
        self.audit = audit
        self.started_at = started_at or utcnow()

        self.market = MarketDataCollector(engine_id, exchange, self.risk.symbols, store=store)
        self.reconciler = PositionReconciler(engine_id, exchange, store, self.risk.symbols)
        self.position_manager = PositionManager(self.risk)
        self.breaker = AccountCircuitBreaker(engine_id, self.risk, executor,
                                             alert_service=alert_service, metrics=metrics)
        self._log_prefix = f"[Engine {engine_id}]"

    def execute_cycle(self, iteration: int) -> CycleResult:
        result = CycleResult(engine_id=self.engine_id, iteration=iteration)
        start = time.monotonic()
        logger.info(f"{self._log_prefix} ===== Cycle {iteration} start =====")

        try:
            self._run(result)
        except ExchangeAuthError as e:
            result.status, result.error = "fatal", str(e)
            raise EngineFatalError(self.engine_id, f"credential failure: {e}") from e
        except sqlite3.DatabaseError as e:
            result.status, result.error = "fatal", str(e)
            raise EngineFatalError(self.engine_id, f"ledger failure: {e}") from e
        except EngineFatalError as e:
            result.status, result.error = "fatal", str(e)
            raise
        except Exception as e:
            logger.error(f"{self._log_prefix} Cycle {iteration} failed: {e}", exc_info=True)
            result.status, result.error = "error", str(e)
        finally:
            result.duration_seconds = time.monotonic() - start
            if self.metrics:
                self.metrics.observe_cycle(CycleStats(
                    engine_id=self.engine_id,
                    status=result.status,
                    forced_closes=len(result.forced_closes),
                    duration_seconds=result.duration_seconds,
                ))
            if self.audit:
                self.audit.log_cycle(result)
            logger.info(
                f"{self._log_prefix} ===== Cycle {iteration} {result.status} "
                f"in {result.duration_seconds:.2f}s{f' ({result.reason})' if result.reason else ''} ====="
            )

        return result

    def _run(self, result: CycleResult) -> None:
        self.store.touch_engine(self.engine_id)

        # 1. Market data
        market = self.market.collect()
        result.symbols = sorted(market)
        if not market:
            result.status, result.reason = "skipped", "no valid market data"
            return

        # 2. Account
        account = self._read_account()
        if account is None:
            result.status, result.reason = "skipped", "account unavailable"
            return
        result.account = account.to_dict()
        if account.total_balance <= 0:
            result.status, result.reason = "skipped", "zero account balance"
            return

        # 3. Circuit breaker
        check = self.breaker.check(account)
        result.breaker = {"approved": check.approved, "reason": check.reason,
                          "pnl": check.pnl, "closed": check.closed}
        if not check.approved:
            result.status, result.reason = "halted", check.reason
            return

        # 4. Reconcile
        reconcile = self.reconciler.reconcile()
        result.reconcile = _reconcile_summary(reconcile)
        if reconcile.skipped_reason and self.metrics:
            self.metrics.record_reconcile_skip(self.engine_id)

        positions = self.store.get_positions(self.engine_id)
        if not reconcile.success or reconcile.skipped_reason:
            for position in positions:
                if position.symbol in market:
                    position.current_price = market[position.symbol].price

        # 5. Peaks and forced exits
        for position in positions:
            if position.current_price and position.current_price > 0:
                position.peak_pnl_percent = self.store.update_peak_pnl(
                    self.engine_id, position.symbol, self.position_manager.refresh_peak(position)
                )

        for position, verdict in self.position_manager.evaluate_positions(positions):
            close = self.executor.close_position(position, reason=verdict.code)
            result.forced_closes.append(close)
            if close.success and self.metrics:
                self.metrics.record_forced_close(self.engine_id, verdict.code)

        # 6. Re-reconcile after closes
        if any(r.success for r in result.forced_closes):
            result.reconcile = _reconcile_summary(self.reconciler.reconcile(confirmed_flat=True))
            account = self._read_account() or account

        # 7. Snapshot
        self._record_snapshot(account)

        # 8. Decision
        positions = self.store.get_positions(self.engine_id)
        context = build_decision_context(
            engine_id=self.engine_id,
            iteration=result.iteration,
            market_data={symbol: snap.to_dict() for symbol, snap in market.items()},
            account_info=account.to_dict(),
            positions=positions,
            trade_history=self.store.get_recent_trades(self.engine_id, limit=10),
            recent_decisions=self.store.get_recent_decisions(self.engine_id, limit=3),
            strategy=self.strategy,
            guardrails={
                "max_positions": self.risk.max_positions,
                "max_leverage": self.risk.max_leverage,
                "symbols": self.risk.symbols,
                "stop_loss_usdt": self.risk.stop_loss_usdt,
                "take_profit_usdt": self.risk.take_profit_usdt,
            },
            started_at=self.started_at,
        )
        decision = self._propose(context)
        result.decision_text = decision.text
        result.actions_taken = decision.actions_taken

        # 9. Record decision
        positions_after = self.store.count_positions(self.engine_id)
        self.store.insert_decision(DecisionRecord(
            engine_id=self.engine_id,
            iteration=result.iteration,
            decision=decision.text,
            market_analysis=context["market_data"],
            actions_taken=decision.actions_taken,
            account_value=account.total_balance,
            positions_count=positions_after,
        ))
        if self.metrics:
            self.metrics.record_open_positions(self.engine_id, positions_after)

        result.status = "completed"

    def _read_account(self) -> Optional[AccountInfo]:
        try:
            return build_account_info(self.exchange, self.store, self.engine_id)
        except ExchangeAuthError:
            raise
        except (CriticalDataUnavailable, ExchangeError) as e:
            logger.warning(f"{self._log_prefix} Account read failed: {e}")
            if self.metrics:
                self.metrics.record_api_error(self.engine_id, "account")
            return None

    def _record_snapshot(self, account: AccountInfo) -> None:
        returns = self.store.get_return_series(self.engine_id) + [account.return_percent]
        self.store.insert_account_snapshot(AccountSnapshot(
            engine_id=self.engine_id,
            total_value=account.total_balance,
            available_cash=account.available_balance,
            unrealized_pnl=account.unrealized_pnl,
            realized_pnl=self.store.get_realized_pnl(self.engine_id),
            return_percent=account.return_percent,
            sharpe_ratio=sharpe_ratio(returns),
        ))

    def _propose(self, context: Dict[str, Any]) -> Decision:
        try:
            return self.proposer.propose(context)
        except ExchangeAuthError:
            raise
        except Exception as e:
            logger.error(f"{self._log_prefix} Decision proposer raised: {e}", exc_info=True)
            return Decision(text=f"decision service error: {e}", error=str(e))

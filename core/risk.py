"""
perpguard Core: Account Risk

Account-level view (realized-basis balance against the engine's initial
balance) and the circuit breaker that flattens and halts an engine once its
account PnL crosses the configured stop-loss or take-profit in USDT.

This check runs before any per-position rule and can end the cycle.
"""

import logging
import math
import statistics
from dataclasses import dataclass
from typing import List, Optional

from infra.alerting import AlertSeverity
from infra.state_store import LedgerStore
from tools.config_validator import RiskParams

logger = logging.getLogger(__name__)

PNL_PRECISION = 8


@dataclass
class AccountInfo:
    """
    Derived account state for one engine.

    total_balance excludes unrealized PnL (exchange total - unrealized);
    ``equity`` is the mark-to-market value shown to operators and is not
    used by any risk rule.
    """
    total_balance: float
    available_balance: float
    unrealized_pnl: float
    initial_balance: float
    peak_balance: float
    return_percent: float

    @property
    def equity(self) -> float:
        return self.total_balance + self.unrealized_pnl

    @property
    def pnl(self) -> float:
        return round(self.total_balance - self.initial_balance, PNL_PRECISION)

    def to_dict(self) -> dict:
        return {
            "total_balance": round(self.total_balance, 4),
            "available_balance": round(self.available_balance, 4),
            "unrealized_pnl": round(self.unrealized_pnl, 4),
            "equity": round(self.equity, 4),
            "initial_balance": round(self.initial_balance, 4),
            "peak_balance": round(self.peak_balance, 4),
            "return_percent": round(self.return_percent, 4),
        }


def build_account_info(exchange, store: LedgerStore, engine_id: int) -> AccountInfo:
    """
    Read the exchange account and derive the engine's account state.

    initial_balance is the engine's first recorded snapshot, or the current
    balance when none exists yet. Exchange read failures propagate.
    """
    balance = exchange.get_account()
    total_balance = balance.total - balance.unrealised_pnl

    initial = store.get_initial_balance(engine_id)
    initial_balance = initial if initial and initial > 0 else total_balance
    peak = store.get_peak_balance(engine_id) or 0.0
    return_percent = (
        (total_balance - initial_balance) / initial_balance * 100 if initial_balance > 0 else 0.0
    )

    return AccountInfo(
        total_balance=total_balance,
        available_balance=balance.available,
        unrealized_pnl=balance.unrealised_pnl,
        initial_balance=initial_balance,
        peak_balance=max(peak, total_balance),
        return_percent=return_percent,
    )


def sharpe_ratio(returns: List[float]) -> Optional[float]:
    """Mean/stdev of per-snapshot return changes; None with too little history."""
    if len(returns) < 3:
        return None
    changes = [b - a for a, b in zip(returns, returns[1:])]
    stdev = statistics.pstdev(changes)
    if stdev == 0 or not math.isfinite(stdev):
        return None
    return statistics.fmean(changes) / stdev


@dataclass
class RiskCheckResult:
    """Result of the account circuit breaker check"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = None
    pnl: float = 0.0
    closed: int = 0

    def __post_init__(self):
        if self.violated_checks is None:
            self.violated_checks = []


class AccountCircuitBreaker:
    """
    Account-wide stop-loss / take-profit for one engine.

    Trips when ``pnl <= -stop_loss_usdt`` or ``pnl >= take_profit_usdt``
    (both inclusive). A trip flattens every position; the caller is expected
    to stop the engine.
    """

    def __init__(self, engine_id: int, risk_params: RiskParams, executor,
                 alert_service=None, metrics=None):
        self.engine_id = engine_id
        self.params = risk_params
        self.executor = executor
        self.alert_service = alert_service
        self.metrics = metrics
        self._log_prefix = f"[Engine {engine_id}]"

    def evaluate(self, account: AccountInfo) -> RiskCheckResult:
        """Pure threshold check, no side effects."""
        pnl = account.pnl
        if pnl <= -self.params.stop_loss_usdt:
            return RiskCheckResult(
                approved=False,
                reason=f"Account stop loss hit: {pnl:+.2f} USDT (limit -{self.params.stop_loss_usdt})",
                violated_checks=["account_stop_loss"],
                pnl=pnl,
            )
        if pnl >= self.params.take_profit_usdt:
            return RiskCheckResult(
                approved=False,
                reason=f"Account take profit hit: {pnl:+.2f} USDT (target {self.params.take_profit_usdt})",
                violated_checks=["account_take_profit"],
                pnl=pnl,
            )
        return RiskCheckResult(approved=True, pnl=pnl)

    def check(self, account: AccountInfo) -> RiskCheckResult:
        result = self.evaluate(account)
        if result.approved:
            return result

        kind = result.violated_checks[0]
        logger.error(f"{self._log_prefix} 🚨 {result.reason} - closing all positions and stopping engine")

        closes = self.executor.close_all(reason=kind)
        result.closed = sum(1 for r in closes if r.success)
        failed = [r.symbol for r in closes if not r.success]
        if failed:
            logger.error(f"{self._log_prefix} Close-all left positions open: {failed}")

        if self.metrics:
            self.metrics.record_circuit_breaker_trip(self.engine_id, kind)

        if self.alert_service:
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL,
                title=f"🛑 Engine {self.engine_id} circuit breaker",
                message=result.reason,
                context={
                    "engine_id": self.engine_id,
                    "pnl_usdt": round(result.pnl, 4),
                    "total_balance": round(account.total_balance, 4),
                    "initial_balance": round(account.initial_balance, 4),
                    "closed": result.closed,
                    "failed": failed,
                },
            )
        return result

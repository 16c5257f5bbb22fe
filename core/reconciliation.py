"""
Position reconciliation: merge exchange-reported positions into the ledger.

The exchange is the source of truth for size, side and prices, while the
ledger owns what the exchange does not report (peak watermark, open time,
advisory targets and order ids). An empty exchange read against a
non-empty ledger is ambiguous and never applied destructively unless the
caller confirms the account was just flattened.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from core.exceptions import CriticalDataUnavailable, ExchangeAuthError, ExchangeError
from core.exchange_gate import ExchangePosition, contract_for
from infra.state_store import LedgerStore, Position, utcnow

logger = logging.getLogger(__name__)

LIQUIDATION_BUFFER = 0.9


def estimate_liquidation_price(entry_price: float, side: str, leverage: float) -> float:
    """Rough liquidation estimate when the exchange omits it."""
    if entry_price <= 0 or leverage <= 0:
        return 0.0
    if side == "long":
        return entry_price * (1 - LIQUIDATION_BUFFER / leverage)
    return entry_price * (1 + LIQUIDATION_BUFFER / leverage)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass"""
    success: bool
    upserted: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    exchange_count: int = 0
    ledger_count: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.removed)


class PositionReconciler:
    """Keeps one engine's ledger positions in line with the exchange."""

    def __init__(self, engine_id: int, exchange, store: LedgerStore, symbols: List[str]):
        self.engine_id = engine_id
        self.exchange = exchange
        self.store = store
        self.symbols = [s.upper() for s in symbols]
        self._log_prefix = f"[Engine {engine_id}]"

    def reconcile(self, confirmed_flat: bool = False) -> ReconcileResult:
        """
        Sync ledger rows from one exchange positions read.

        Args:
            confirmed_flat: the caller closed positions earlier in this cycle,
                so an empty exchange read is trusted.
        """
        try:
            reported = self.exchange.list_positions()
        except ExchangeAuthError:
            raise
        except (CriticalDataUnavailable, ExchangeError) as e:
            logger.warning(f"{self._log_prefix} Position read failed, ledger left unchanged: {e}")
            return ReconcileResult(success=False, error=str(e))

        active = [p for p in reported if p.size != 0 and p.symbol in self.symbols]
        ledger = {p.symbol: p for p in self.store.get_positions(self.engine_id)}
        result = ReconcileResult(success=True, exchange_count=len(active), ledger_count=len(ledger))

        if not active and ledger and not confirmed_flat:
            logger.warning(
                f"{self._log_prefix} Exchange reported 0 positions but ledger holds "
                f"{len(ledger)} ({', '.join(sorted(ledger))}); skipping sync until confirmed"
            )
            result.skipped_reason = "empty_exchange_snapshot"
            return result

        seen = set()
        for reported_position in active:
            merged = self._merge(reported_position, ledger.get(reported_position.symbol))
            if merged is None:
                continue
            self.store.upsert_position(merged)
            seen.add(merged.symbol)
            result.upserted.append(merged.symbol)

        # Symbols skipped for bad prices are still open on the exchange
        still_open = {p.symbol for p in active}
        for symbol in ledger:
            if symbol not in seen and symbol not in still_open:
                self.store.delete_position(self.engine_id, symbol)
                result.removed.append(symbol)
                logger.info(f"{self._log_prefix} {symbol} closed on exchange, removed from ledger")
                self._cancel_leftover_triggers(ledger[symbol])

        if result.upserted or result.removed:
            logger.info(
                f"{self._log_prefix} Reconciled positions: upserted={result.upserted} "
                f"removed={result.removed}"
            )
        return result

    def _cancel_leftover_triggers(self, position: Position) -> None:
        """A position closed by one trigger leaves its sibling standing."""
        for order_id in (position.sl_order_id, position.tp_order_id):
            if not order_id:
                continue
            try:
                self.exchange.cancel_price_trigger_order(order_id)
            except ExchangeAuthError:
                raise
            except (CriticalDataUnavailable, ExchangeError) as e:
                logger.info(f"{self._log_prefix} Trigger order {order_id} on {position.symbol} not cancelled: {e}")

    def _merge(self, reported: ExchangePosition, existing: Optional[Position]) -> Optional[Position]:
        symbol = reported.symbol
        side = reported.side
        current_price = reported.mark_price
        entry_price = reported.entry_price

        if current_price <= 0 or entry_price <= 0:
            try:
                ticker = self.exchange.get_ticker(contract_for(symbol))
                if current_price <= 0:
                    current_price = ticker.price
            except (CriticalDataUnavailable, ExchangeError) as e:
                logger.warning(f"{self._log_prefix} Ticker backfill failed for {symbol}: {e}")

        if current_price <= 0 and existing:
            current_price = existing.current_price
        if current_price <= 0:
            logger.warning(f"{self._log_prefix} No usable price for {symbol}, keeping previous ledger state")
            return None
        if entry_price <= 0:
            entry_price = existing.entry_price if existing and existing.side == side else current_price

        same_position = existing is not None and existing.side == side
        leverage = reported.leverage or (existing.leverage if existing else 0) or 1
        liquidation_price = reported.liq_price or estimate_liquidation_price(entry_price, side, leverage)

        if same_position:
            return Position(
                engine_id=self.engine_id,
                symbol=symbol,
                side=side,
                quantity=reported.quantity,
                entry_price=entry_price,
                current_price=current_price,
                leverage=leverage,
                liquidation_price=liquidation_price,
                unrealized_pnl=reported.unrealised_pnl,
                peak_pnl_percent=existing.peak_pnl_percent,
                opened_at=existing.opened_at,
                profit_target=existing.profit_target,
                stop_loss=existing.stop_loss,
                tp_order_id=existing.tp_order_id,
                sl_order_id=existing.sl_order_id,
                entry_order_id=existing.entry_order_id,
                confidence=existing.confidence,
                risk_usd=existing.risk_usd,
            )

        if existing is not None:
            logger.info(f"{self._log_prefix} {symbol} flipped {existing.side} -> {side}, tracking as new position")

        return Position(
            engine_id=self.engine_id,
            symbol=symbol,
            side=side,
            quantity=reported.quantity,
            entry_price=entry_price,
            current_price=current_price,
            leverage=leverage,
            liquidation_price=liquidation_price,
            unrealized_pnl=reported.unrealised_pnl,
            peak_pnl_percent=0.0,
            opened_at=reported.open_time or utcnow(),
            entry_order_id=f"synced-{symbol}-{int(time.time() * 1000)}",
        )

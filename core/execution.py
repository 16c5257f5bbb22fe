"""
perpguard Core: Execution Engine

Opens and closes futures positions for one engine and keeps the ledger in
step with every fill.

Closes are reduce-only market orders: the fill is polled a bounded number of
times and falls back to the pre-trade mark price, so a forced exit is never
blocked waiting on the exchange. Opens are rolled back with a reversing order
when the fill slips beyond tolerance. Order placement is never retried.
"""

import json
import logging
import math
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from core.exceptions import CriticalDataUnavailable, ExchangeAuthError, ExchangeError
from core.exchange_gate import OrderResult, contract_for
from core.reconciliation import estimate_liquidation_price
from infra.metrics import MetricsRecorder
from infra.state_store import LedgerStore, Position, Trade, utcnow
from tools.config_validator import ExecutionConfig, RiskParams

logger = logging.getLogger(__name__)


@dataclass
class RealizedPnl:
    gross: float
    fee: float
    net: float


def calculate_realized_pnl(entry_price: float, exit_price: float, quantity: float,
                           multiplier: float, side: str, fee_rate: float = 0.0005) -> RealizedPnl:
    """
    Realized PnL of closing ``quantity`` contracts, net of both legs' fees.

    gross = (exit - entry) * qty * multiplier * sign
    fee   = (entry + exit) * qty * multiplier * fee_rate
    """
    sign = 1 if side == "long" else -1
    gross = (exit_price - entry_price) * quantity * multiplier * sign
    fee = (entry_price + exit_price) * quantity * multiplier * fee_rate
    return RealizedPnl(gross=gross, fee=fee, net=gross - fee)


def slippage_pct(fill_price: float, intended_price: float) -> float:
    if intended_price <= 0:
        return 0.0
    return abs(fill_price - intended_price) / intended_price * 100


@dataclass
class ExecutionResult:
    """Result of an open or close attempt"""
    success: bool
    order_id: Optional[str]
    symbol: Optional[str]
    side: Optional[str]  # position side
    action: str  # "open" | "close"
    filled_size: float = 0.0
    filled_price: float = 0.0
    fees: float = 0.0
    slippage_pct: float = 0.0
    pnl: Optional[float] = None
    status: str = "filled"  # trade status: "pending" | "filled" | "cancelled"
    recorded: bool = False
    error: Optional[str] = None
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side,
            "action": self.action,
            "filled_size": self.filled_size,
            "filled_price": self.filled_price,
            "fees": round(self.fees, 8),
            "pnl": round(self.pnl, 8) if self.pnl is not None else None,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class ConditionalOrdersResult:
    """Standing stop-loss / take-profit state of one position after a change"""
    success: bool
    symbol: str
    stop_loss: Optional[float] = None
    sl_order_id: Optional[str] = None
    take_profit: Optional[float] = None
    tp_order_id: Optional[str] = None
    cancelled: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class ExecutionEngine:
    """
    Order execution for one engine.

    Responsibilities:
    - Reduce-only closes with fill reconciliation and realized PnL
    - Sized opens with leverage/universe/capacity checks and slippage rollback
    - Best-effort flattening of every position (circuit breaker)
    - Standing stop-loss / take-profit trigger orders, cancelled on full close

    All order paths share one lock so risk-driven exits and proposal-driven
    trades for the same engine never interleave.
    """

    def __init__(self, engine_id: int, exchange, store: LedgerStore,
                 risk_params: Optional[RiskParams] = None,
                 config: Optional[ExecutionConfig] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 lock: Optional[threading.RLock] = None):
        self.engine_id = engine_id
        self.exchange = exchange
        self.store = store
        self.risk = risk_params or RiskParams()
        self.config = config or ExecutionConfig()
        self.metrics = metrics
        self._sleep = sleep
        self.lock = lock or threading.RLock()
        self._log_prefix = f"[Engine {engine_id}]"

    # ------------------------------------------------------------- helpers

    def contract_multiplier(self, contract: str) -> float:
        """Quanto multiplier of a contract, or the configured default when unreadable."""
        try:
            info = self.exchange.get_contract_info(contract)
            if info.quanto_multiplier > 0:
                return info.quanto_multiplier
        except (CriticalDataUnavailable, ExchangeError) as e:
            logger.warning(f"{self._log_prefix} Contract info unavailable for {contract}: {e}")
        return self.config.default_multiplier

    def _mark_price(self, contract: str, fallback: float) -> float:
        try:
            price = self.exchange.get_ticker(contract).price
            if price > 0:
                return price
        except (CriticalDataUnavailable, ExchangeError) as e:
            logger.warning(f"{self._log_prefix} Ticker unavailable for {contract}: {e}")
        return fallback

    def _await_fill(self, order: OrderResult, fallback_price: float,
                    requested: int) -> Optional[Tuple[float, int, str]]:
        """
        Poll an order until filled.

        Returns (price, contracts, trade_status); falls back to the pre-trade
        mark with status "pending" when polling is exhausted. None when the
        order finished without any fill.
        """
        attempts = self.config.fill_poll_attempts
        interval = self.config.fill_poll_interval_ms / 1000.0

        for attempt in range(attempts):
            if order.is_filled:
                return order.fill_price, order.filled_size, "filled"
            if order.status == "finished" and order.filled_size <= 0:
                return None

            self._sleep(interval)
            try:
                order = self.exchange.get_order(order.id)
            except (CriticalDataUnavailable, ExchangeError) as e:
                logger.warning(
                    f"{self._log_prefix} Order {order.id} poll {attempt + 1}/{attempts} failed: {e}"
                )

        if order.is_filled:
            return order.fill_price, order.filled_size, "filled"
        if order.status == "finished" and order.filled_size <= 0:
            return None

        logger.warning(
            f"{self._log_prefix} Order {order.id} not confirmed after {attempts} polls, "
            f"using mark price {fallback_price} as estimate"
        )
        return fallback_price, requested, "pending"

    def _reject(self, action: str, symbol: str, side: Optional[str], error: str,
                order_id: Optional[str] = None) -> ExecutionResult:
        logger.error(f"{self._log_prefix} {action.upper()} {symbol} failed: {error}")
        if self.metrics:
            self.metrics.record_order_rejection(self.engine_id, error)
        return ExecutionResult(success=False, order_id=order_id, symbol=symbol, side=side,
                               action=action, error=error)

    # --------------------------------------------------------------- close

    def close_position(self, position: Position, reason: str,
                       percentage: float = 100.0) -> ExecutionResult:
        """
        Close ``percentage`` of a position with a reduce-only market order.

        The trade is recorded before the ledger row is removed or reduced;
        if recording fails the row stays and the trade is logged as JSON.
        """
        with self.lock:
            symbol = position.symbol
            side = position.side
            contract = contract_for(symbol)

            if percentage >= 100:
                quantity = int(position.quantity)
            else:
                quantity = int(math.floor(position.quantity * max(percentage, 0.0) / 100))
            if quantity <= 0:
                return self._reject("close", symbol, side,
                                    f"close size is zero ({percentage}% of {position.quantity})")

            mark_price = self._mark_price(contract, position.current_price)
            size = -quantity if side == "long" else quantity

            try:
                order = self.exchange.place_order(contract, size, 0, reduce_only=True)
            except ExchangeAuthError:
                raise
            except ExchangeError as e:
                return self._reject("close", symbol, side, str(e))

            fill = self._await_fill(order, mark_price, quantity)
            if fill is None:
                return self._reject("close", symbol, side, "order finished without fill", order.id)
            exit_price, filled_qty, status = fill

            slip = slippage_pct(exit_price, mark_price)
            if slip > self.config.close_slippage_pct:
                logger.warning(
                    f"{self._log_prefix} Close slippage {slip:.2f}% on {symbol} exceeds "
                    f"{self.config.close_slippage_pct}% (fill {exit_price}, mark {mark_price})"
                )
                if self.metrics:
                    self.metrics.record_slippage_violation(self.engine_id, "close")

            multiplier = self.contract_multiplier(contract)
            pnl = calculate_realized_pnl(position.entry_price, exit_price, filled_qty,
                                         multiplier, side, self.config.fee_rate)

            trade = Trade(
                engine_id=self.engine_id,
                order_id=order.id,
                symbol=symbol,
                side=side,
                type="close",
                price=exit_price,
                quantity=filled_qty,
                leverage=position.leverage,
                fee=pnl.fee,
                pnl=pnl.net,
                status=status,
            )
            result = ExecutionResult(
                success=True, order_id=order.id, symbol=symbol, side=side, action="close",
                filled_size=filled_qty, filled_price=exit_price, fees=pnl.fee,
                slippage_pct=slip, pnl=pnl.net, status=status,
            )

            try:
                self.store.insert_trade(trade)
            except sqlite3.Error as e:
                logger.error(
                    f"{self._log_prefix} TRADE RECORD MISSING ({e}): "
                    + json.dumps({
                        "order_id": order.id, "symbol": symbol, "side": side, "type": "close",
                        "price": exit_price, "quantity": filled_qty, "pnl": pnl.net,
                        "fee": pnl.fee, "reason": reason, "timestamp": utcnow().isoformat(),
                    })
                )
                result.error = f"trade not recorded: {e}"
                return result

            result.recorded = True
            remaining = position.quantity - filled_qty
            if remaining <= 0:
                stored = self.store.get_position(self.engine_id, symbol)
                self.store.delete_position(self.engine_id, symbol)
                self._cancel_trigger_orders(symbol, stored or position)
            else:
                self.store.update_position_quantity(self.engine_id, symbol, remaining)

            logger.info(
                f"{self._log_prefix} CLOSED {symbol} {side} {filled_qty} @ {exit_price} "
                f"({reason}) PnL: {pnl.net:+.4f} USDT (gross {pnl.gross:+.4f}, fee {pnl.fee:.4f})"
            )
            return result

    def close_symbol(self, symbol: str, reason: str, percentage: float = 100.0) -> ExecutionResult:
        position = self.store.get_position(self.engine_id, symbol.upper())
        if position is None:
            return self._reject("close", symbol.upper(), None, "no open position")
        return self.close_position(position, reason, percentage)

    def close_all(self, reason: str) -> List[ExecutionResult]:
        """
        Flatten every open position for this engine.

        Targets every position the exchange reports plus every ledger row it
        does not; the ledger alone when the exchange cannot be read. Per-symbol
        failures are logged and reported, never raised.
        """
        with self.lock:
            ledger = {p.symbol: p for p in self.store.get_positions(self.engine_id)}
            targets: List[Position] = []

            try:
                reported = [p for p in self.exchange.list_positions()
                            if p.size != 0 and p.symbol in self.risk.symbols]
                reported_symbols = {rp.symbol for rp in reported}
                for rp in reported:
                    known = ledger.get(rp.symbol)
                    targets.append(Position(
                        engine_id=self.engine_id,
                        symbol=rp.symbol,
                        side=rp.side,
                        quantity=rp.quantity,
                        entry_price=rp.entry_price or (known.entry_price if known else rp.mark_price),
                        current_price=rp.mark_price or (known.current_price if known else 0.0),
                        leverage=rp.leverage or (known.leverage if known else 1),
                        peak_pnl_percent=known.peak_pnl_percent if known else 0.0,
                        opened_at=known.opened_at if known else utcnow(),
                    ))
                for symbol, known in ledger.items():
                    if symbol not in reported_symbols:
                        logger.warning(
                            f"{self._log_prefix} {symbol} in ledger but not reported by exchange, "
                            f"closing from ledger"
                        )
                        targets.append(known)
            except (CriticalDataUnavailable, ExchangeError) as e:
                logger.warning(f"{self._log_prefix} Position read failed during close-all, using ledger: {e}")
                targets = list(ledger.values())

            results = []
            for position in targets:
                try:
                    results.append(self.close_position(position, reason))
                except Exception as e:
                    logger.exception(f"{self._log_prefix} Close-all failed for {position.symbol}")
                    results.append(ExecutionResult(success=False, order_id=None, symbol=position.symbol,
                                                   side=position.side, action="close", error=str(e)))

            closed = sum(1 for r in results if r.success)
            logger.warning(f"{self._log_prefix} Close-all ({reason}): {closed}/{len(targets)} closed")
            return results

    # ---------------------------------------------------------------- open

    def open_position(self, symbol: str, side: str, margin_usdt: float, leverage: int,
                      stop_loss: Optional[float] = None, profit_target: Optional[float] = None,
                      confidence: Optional[float] = None) -> ExecutionResult:
        """
        Open (or add to) a position sized from margin and leverage.

        A fill slipping beyond the open tolerance is undone with a reversing
        reduce-only order and recorded as a cancelled open trade.
        """
        symbol = symbol.upper()
        side = side.lower()

        if side not in ("long", "short"):
            return self._reject("open", symbol, side, f"invalid side {side!r}")
        if symbol not in self.risk.symbols:
            return self._reject("open", symbol, side, f"{symbol} not in trading universe")
        if not 1 <= int(leverage) <= self.risk.max_leverage:
            return self._reject("open", symbol, side,
                                f"leverage {leverage} outside 1..{self.risk.max_leverage}")
        if margin_usdt <= 0:
            return self._reject("open", symbol, side, "margin must be positive")
        leverage = int(leverage)

        with self.lock:
            existing = self.store.get_position(self.engine_id, symbol)
            if existing and existing.side != side:
                return self._reject("open", symbol, side,
                                    f"opposite {existing.side} position open; close it first")
            if existing is None and self.store.count_positions(self.engine_id) >= self.risk.max_positions:
                return self._reject("open", symbol, side,
                                    f"max positions ({self.risk.max_positions}) reached")

            contract = contract_for(symbol)
            try:
                self.exchange.set_leverage(contract, leverage)
                intended_price = self.exchange.get_ticker(contract).price
            except ExchangeAuthError:
                raise
            except (CriticalDataUnavailable, ExchangeError) as e:
                return self._reject("open", symbol, side, str(e))
            if intended_price <= 0:
                return self._reject("open", symbol, side, "no valid market price")

            multiplier = self.contract_multiplier(contract)
            contracts = int(math.floor(margin_usdt * leverage / (intended_price * multiplier)))
            try:
                info = self.exchange.get_contract_info(contract)
                if contracts < info.order_size_min:
                    logger.warning(f"{self._log_prefix} Size {contracts} below minimum {info.order_size_min}, adjusted")
                    contracts = info.order_size_min
                if contracts > info.order_size_max:
                    logger.warning(f"{self._log_prefix} Size {contracts} above maximum {info.order_size_max}, adjusted")
                    contracts = info.order_size_max
            except (CriticalDataUnavailable, ExchangeError):
                contracts = max(contracts, 1)

            size = contracts if side == "long" else -contracts
            try:
                order = self.exchange.place_order(contract, size, 0)
            except ExchangeAuthError:
                raise
            except ExchangeError as e:
                return self._reject("open", symbol, side, str(e))

            fill = self._await_fill(order, intended_price, contracts)
            if fill is None:
                return self._reject("open", symbol, side, "order finished without fill", order.id)
            fill_price, filled_qty, status = fill
            fee = fill_price * filled_qty * multiplier * self.config.fee_rate

            slip = slippage_pct(fill_price, intended_price)
            if slip > self.config.open_slippage_pct:
                return self._roll_back_open(symbol, side, contract, order.id, fill_price,
                                            filled_qty, leverage, fee, slip, intended_price)

            trade = Trade(engine_id=self.engine_id, order_id=order.id, symbol=symbol, side=side,
                          type="open", price=fill_price, quantity=filled_qty, leverage=leverage,
                          fee=fee, status=status)
            self.store.insert_trade(trade)

            if existing:
                quantity = existing.quantity + filled_qty
                entry_price = (existing.entry_price * existing.quantity + fill_price * filled_qty) / quantity
            else:
                quantity = filled_qty
                entry_price = fill_price

            self.store.upsert_position(Position(
                engine_id=self.engine_id,
                symbol=symbol,
                side=side,
                quantity=quantity,
                entry_price=entry_price,
                current_price=fill_price,
                leverage=leverage,
                liquidation_price=estimate_liquidation_price(entry_price, side, leverage),
                peak_pnl_percent=existing.peak_pnl_percent if existing else 0.0,
                opened_at=existing.opened_at if existing else utcnow(),
                profit_target=profit_target if profit_target is not None else (existing.profit_target if existing else None),
                stop_loss=stop_loss if stop_loss is not None else (existing.stop_loss if existing else None),
                tp_order_id=existing.tp_order_id if existing else None,
                sl_order_id=existing.sl_order_id if existing else None,
                entry_order_id=existing.entry_order_id if existing else order.id,
                confidence=confidence,
                risk_usd=margin_usdt + ((existing.risk_usd or 0.0) if existing else 0.0),
            ))

            logger.info(
                f"{self._log_prefix} OPENED {symbol} {side} {filled_qty} @ {fill_price} "
                f"{leverage}x (margin {margin_usdt:.2f} USDT, slippage {slip:.2f}%)"
            )
            return ExecutionResult(success=True, order_id=order.id, symbol=symbol, side=side,
                                   action="open", filled_size=filled_qty, filled_price=fill_price,
                                   fees=fee, slippage_pct=slip, status=status, recorded=True)

    def _roll_back_open(self, symbol: str, side: str, contract: str, order_id: str,
                        fill_price: float, filled_qty: int, leverage: int, fee: float,
                        slip: float, intended_price: float) -> ExecutionResult:
        logger.error(
            f"{self._log_prefix} Open slippage {slip:.2f}% on {symbol} exceeds "
            f"{self.config.open_slippage_pct}% (fill {fill_price}, intended {intended_price}); rolling back"
        )
        if self.metrics:
            self.metrics.record_slippage_violation(self.engine_id, "open")

        reverse = -filled_qty if side == "long" else filled_qty
        try:
            self.exchange.place_order(contract, reverse, 0, reduce_only=True)
        except ExchangeError as e:
            logger.error(f"{self._log_prefix} Rollback order for {symbol} failed, position left open: {e}")

        self.store.insert_trade(Trade(engine_id=self.engine_id, order_id=order_id, symbol=symbol,
                                      side=side, type="open", price=fill_price, quantity=filled_qty,
                                      leverage=leverage, fee=fee, status="cancelled"))
        result = self._reject("open", symbol, side,
                              f"slippage {slip:.2f}% exceeds {self.config.open_slippage_pct}%, rolled back",
                              order_id)
        result.filled_price = fill_price
        result.filled_size = filled_qty
        result.slippage_pct = slip
        result.status = "cancelled"
        result.recorded = True
        return result

    # --------------------------------------------------- conditional orders

    def set_stop_loss_take_profit(self, symbol: str, stop_loss: Optional[float] = None,
                                  take_profit: Optional[float] = None) -> ConditionalOrdersResult:
        """
        Place standing trigger orders that close the whole position.

        A stop-loss fires on the losing side of the mark price, a take-profit
        on the winning side. A new order replaces the previous one of the same
        kind only after it has been accepted.
        """
        symbol = symbol.upper()
        if stop_loss is None and take_profit is None:
            return self._conditional_failed(symbol, "stop_loss or take_profit required")

        with self.lock:
            position = self.store.get_position(self.engine_id, symbol)
            if position is None:
                return self._conditional_failed(symbol, "no open position")

            contract = contract_for(symbol)
            mark = self._mark_price(contract, position.current_price)
            invalid = _check_trigger_prices(position.side, mark, stop_loss, take_profit)
            if invalid:
                return self._conditional_failed(symbol, invalid)

            if position.side == "long":
                sl_rule, tp_rule = "down", "up"
            else:
                sl_rule, tp_rule = "up", "down"

            sl_price, sl_id = position.stop_loss, position.sl_order_id
            tp_price, tp_id = position.profit_target, position.tp_order_id
            errors = []

            if stop_loss is not None:
                placed = self._place_trigger(contract, stop_loss, sl_rule, position.side, errors, "stop loss")
                if placed:
                    self._cancel_trigger(symbol, sl_id)
                    sl_price, sl_id = stop_loss, placed
            if take_profit is not None:
                placed = self._place_trigger(contract, take_profit, tp_rule, position.side, errors, "take profit")
                if placed:
                    self._cancel_trigger(symbol, tp_id)
                    tp_price, tp_id = take_profit, placed

            self.store.set_conditional_orders(self.engine_id, symbol, stop_loss=sl_price,
                                              sl_order_id=sl_id, profit_target=tp_price,
                                              tp_order_id=tp_id)
            logger.info(
                f"{self._log_prefix} {symbol} {position.side} protection: "
                f"SL {sl_price} ({sl_id}) TP {tp_price} ({tp_id})"
            )
            return ConditionalOrdersResult(
                success=not errors, symbol=symbol, stop_loss=sl_price, sl_order_id=sl_id,
                take_profit=tp_price, tp_order_id=tp_id, error="; ".join(errors) or None,
            )

    def cancel_orders(self, symbol: str) -> ConditionalOrdersResult:
        """Cancel every open and trigger order on a symbol and forget the stored ids."""
        symbol = symbol.upper()
        with self.lock:
            try:
                cancelled = self.exchange.cancel_all_orders(contract_for(symbol))
            except ExchangeAuthError:
                raise
            except ExchangeError as e:
                return self._conditional_failed(symbol, str(e))

            if self.store.get_position(self.engine_id, symbol) is not None:
                self.store.set_conditional_orders(self.engine_id, symbol, stop_loss=None,
                                                  sl_order_id=None, profit_target=None,
                                                  tp_order_id=None)
            logger.info(f"{self._log_prefix} Cancelled {cancelled} order(s) on {symbol}")
            return ConditionalOrdersResult(success=True, symbol=symbol, cancelled=cancelled)

    def _place_trigger(self, contract: str, price: float, rule: str, side: str,
                       errors: List[str], label: str) -> Optional[str]:
        try:
            return self.exchange.place_price_trigger_order(contract, price, rule, side)
        except ExchangeAuthError:
            raise
        except ExchangeError as e:
            logger.error(f"{self._log_prefix} {label.capitalize()} order on {contract} failed: {e}")
            if self.metrics:
                self.metrics.record_order_rejection(self.engine_id, str(e))
            errors.append(f"{label}: {e}")
            return None

    def _cancel_trigger(self, symbol: str, order_id: Optional[str]) -> None:
        if not order_id:
            return
        try:
            self.exchange.cancel_price_trigger_order(order_id)
        except ExchangeAuthError:
            raise
        except ExchangeError as e:
            logger.warning(f"{self._log_prefix} Could not cancel trigger order {order_id} on {symbol}: {e}")

    def _cancel_trigger_orders(self, symbol: str, position: Position) -> None:
        for order_id in (position.sl_order_id, position.tp_order_id):
            self._cancel_trigger(symbol, order_id)

    def _conditional_failed(self, symbol: str, error: str) -> ConditionalOrdersResult:
        logger.error(f"{self._log_prefix} Conditional orders on {symbol} failed: {error}")
        return ConditionalOrdersResult(success=False, symbol=symbol, error=error)


def _check_trigger_prices(side: str, mark: float, stop_loss: Optional[float],
                          take_profit: Optional[float]) -> Optional[str]:
    """Error text when a trigger price is non-positive or on the wrong side of the mark."""
    for label, price in (("stop_loss", stop_loss), ("take_profit", take_profit)):
        if price is not None and price <= 0:
            return f"{label} must be positive"
    if mark <= 0:
        return None

    below, above = (stop_loss, take_profit) if side == "long" else (take_profit, stop_loss)
    if below is not None and below >= mark:
        kind = "stop_loss" if side == "long" else "take_profit"
        return f"{kind} {below} must be below mark {mark} for a {side}"
    if above is not None and above <= mark:
        kind = "take_profit" if side == "long" else "stop_loss"
        return f"{kind} {above} must be above mark {mark} for a {side}"
    return None

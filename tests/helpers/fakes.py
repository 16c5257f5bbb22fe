"""
In-memory stand-ins for the futures exchange.

FakeExchange mirrors the GateFuturesExchange surface used by the engine and
keeps its positions consistent with the orders placed against it, so a
close followed by a reconcile sees the account flat.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.exchange_gate import (
    AccountBalance,
    Candle,
    ContractInfo,
    ExchangePosition,
    OrderResult,
    Ticker,
    symbol_for,
)
from infra.state_store import Position, utcnow


def make_candles(count: int = 60, start: float = 100.0, step: float = 0.5,
                 volume: float = 1000.0) -> List[Candle]:
    """Steadily trending candles, oldest first."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    candles = []
    for i in range(count):
        close = start + i * step
        candles.append(Candle(
            timestamp=base + timedelta(minutes=5 * i),
            open=close - step,
            high=close + 1.0,
            low=close - 1.0,
            close=close,
            volume=volume,
        ))
    return candles


def make_position(symbol: str = "BTC", side: str = "long", entry: float = 100.0,
                  current: float = 100.0, leverage: int = 10, quantity: float = 10,
                  peak: float = 0.0, engine_id: int = 1,
                  opened_hours_ago: float = 1.0) -> Position:
    return Position(
        engine_id=engine_id,
        symbol=symbol,
        side=side,
        quantity=quantity,
        entry_price=entry,
        current_price=current,
        leverage=leverage,
        peak_pnl_percent=peak,
        opened_at=utcnow() - timedelta(hours=opened_hours_ago),
    )


@dataclass
class FakeExchange:
    """Scriptable exchange double"""
    balance: AccountBalance = field(default_factory=lambda: AccountBalance(1000.0, 1000.0, 0.0))
    prices: Dict[str, float] = field(default_factory=dict)  # contract -> mark price
    fill_prices: Dict[str, float] = field(default_factory=dict)  # contract -> forced fill price
    positions: List[ExchangePosition] = field(default_factory=list)
    multiplier: float = 0.01
    order_size_min: int = 1
    order_size_max: int = 1_000_000
    fill_immediately: bool = True

    fail_positions: Optional[Exception] = None
    fail_account: Optional[Exception] = None
    fail_orders: Optional[Exception] = None
    fail_triggers: Optional[Exception] = None

    orders: List[dict] = field(default_factory=list)
    leverage_calls: List[tuple] = field(default_factory=list)
    trigger_orders: Dict[str, dict] = field(default_factory=dict)  # id -> standing trigger
    cancelled_triggers: List[str] = field(default_factory=list)
    _order_seq: int = 0
    _order_book: Dict[str, OrderResult] = field(default_factory=dict)

    # ---------------------------------------------------------------- reads

    def get_account(self) -> AccountBalance:
        if self.fail_account:
            raise self.fail_account
        return self.balance

    def list_positions(self) -> List[ExchangePosition]:
        if self.fail_positions:
            raise self.fail_positions
        return list(self.positions)

    def get_ticker(self, contract: str) -> Ticker:
        if contract not in self.prices:
            raise CriticalDataUnavailable(f"ticker {contract}")
        price = self.prices[contract]
        return Ticker(contract=contract, last=price, mark_price=price, funding_rate=0.0001)

    def get_candles(self, contract: str, interval: str = "5m", limit: int = 100) -> List[Candle]:
        if contract not in self.prices:
            raise CriticalDataUnavailable(f"candles {contract}")
        price = self.prices[contract]
        return make_candles(count=60, start=price - 30, step=0.5)

    def get_contract_info(self, contract: str) -> ContractInfo:
        return ContractInfo(name=contract, quanto_multiplier=self.multiplier,
                            order_size_min=self.order_size_min, order_size_max=self.order_size_max)

    def get_order(self, order_id: str) -> OrderResult:
        if order_id not in self._order_book:
            raise ExchangeError(f"Exchange error 404: order {order_id} not found", 404, "ORDER_NOT_FOUND")
        return self._order_book[order_id]

    # --------------------------------------------------------------- writes

    def set_leverage(self, contract: str, leverage: int) -> None:
        self.leverage_calls.append((contract, leverage))

    def place_order(self, contract: str, size: int, price: float = 0.0,
                    reduce_only: bool = False, text: Optional[str] = None) -> OrderResult:
        if self.fail_orders:
            raise self.fail_orders

        self._order_seq += 1
        order_id = f"order-{self._order_seq}"
        fill_price = self.fill_prices.get(contract, self.prices.get(contract, 0.0))
        self.orders.append({"id": order_id, "contract": contract, "size": size,
                            "reduce_only": reduce_only})

        if not self.fill_immediately:
            order = OrderResult(id=order_id, contract=contract, size=size, left=size,
                                status="open", fill_price=0.0)
            self._order_book[order_id] = order
            return order

        self._apply_fill(contract, size, fill_price, reduce_only)
        order = OrderResult(id=order_id, contract=contract, size=size, left=0,
                            status="finished", fill_price=fill_price, finish_as="filled")
        self._order_book[order_id] = order
        return order

    def place_price_trigger_order(self, contract: str, trigger_price: float, rule: str,
                                  position_side: str, expiration_seconds: int = 86400 * 30) -> str:
        if self.fail_triggers:
            raise self.fail_triggers
        self._order_seq += 1
        order_id = f"trigger-{self._order_seq}"
        self.trigger_orders[order_id] = {"contract": contract, "price": trigger_price,
                                         "rule": rule, "side": position_side}
        return order_id

    def cancel_price_trigger_order(self, order_id: str) -> None:
        if order_id not in self.trigger_orders:
            raise ExchangeError(f"Exchange error 404: trigger {order_id} not found", 404, "ORDER_NOT_FOUND")
        del self.trigger_orders[order_id]
        self.cancelled_triggers.append(order_id)

    def cancel_all_orders(self, contract: str) -> int:
        matching = [oid for oid, t in self.trigger_orders.items() if t["contract"] == contract]
        for order_id in matching:
            self.cancel_price_trigger_order(order_id)
        return len(matching)

    def _apply_fill(self, contract: str, size: int, fill_price: float,
                    reduce_only: bool = False) -> None:
        for i, position in enumerate(self.positions):
            if position.contract == contract:
                new_size = position.size + size
                if reduce_only and new_size * position.size < 0:
                    new_size = 0
                if new_size == 0:
                    self.positions.pop(i)
                else:
                    position.size = new_size
                return
        if reduce_only:
            return
        leverage = next((lev for c, lev in reversed(self.leverage_calls) if c == contract), 10)
        self.positions.append(ExchangePosition(
            contract=contract, size=size, leverage=leverage, entry_price=fill_price,
            mark_price=fill_price, liq_price=0.0, unrealised_pnl=0.0,
        ))

    # -------------------------------------------------------------- helpers

    def add_position(self, symbol: str, size: int, entry: float, mark: float,
                     leverage: int = 10, liq: float = 0.0) -> ExchangePosition:
        contract = f"{symbol}_USDT"
        position = ExchangePosition(contract=contract, size=size, leverage=leverage,
                                    entry_price=entry, mark_price=mark, liq_price=liq,
                                    unrealised_pnl=0.0)
        self.positions.append(position)
        self.prices.setdefault(contract, mark)
        return position

    def symbols_open(self) -> List[str]:
        return sorted(symbol_for(p.contract) for p in self.positions if p.size != 0)

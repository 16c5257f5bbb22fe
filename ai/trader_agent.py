"""Trading tools exposed to the decision proposer.

The model never talks to the exchange directly. Every order tool is validated
here and routed through the engine's ExecutionEngine, which owns the order
lock, the slippage guards and the ledger writes; read tools go through the
same engine's exchange client. Tool failures come back as structured dicts
so the model can see and react to them, except credential failures, which
are fatal for the engine and propagate.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

from core.exceptions import CriticalDataUnavailable, ExchangeAuthError, ExchangeError
from core.exchange_gate import contract_for
from core.execution import ExecutionEngine
from core.indicators import calculate_indicators
from core.position_manager import calculate_pnl_percent
from core.risk import build_account_info
from infra.state_store import LedgerStore

logger = logging.getLogger(__name__)

INDICATOR_INTERVALS = ("1m", "5m", "15m", "1h", "4h", "1d")


TOOL_SPECS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "open_position",
            "description": "Open or add to a market position.",
            "parameters": {
                "type": "object",
                "properties": {
                    "symbol": {"type": "string", "description": "Base symbol, e.g. BTC"},
                    "side": {"type": "string", "enum": ["long", "short"]},
                    "margin_usdt": {"type": "number", "description": "Margin to commit in USDT"},
                    "leverage": {"type": "integer"},
                    "stop_loss": {"type": "number", "description": "Advisory stop price"},
                    "profit_target": {"type": "number", "description": "Advisory target price"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
                "required": ["symbol", "side", "margin_usdt", "leverage"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "close_position",
            "description": "Close all or part of an open position with a reduce-only market order.",
            "parameters": {
                "type": "object",
                "properties": {
                    "symbol": {"type": "string"},
                    "percentage": {"type": "number", "minimum": 1, "maximum": 100},
                    "reason": {"type": "string"},
                },
                "required": ["symbol"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_positions",
            "description": "List currently open positions.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "set_stop_loss_take_profit",
            "description": "Place standing exchange-side orders that close the whole position when "
                           "the mark price reaches the stop-loss or take-profit price.",
            "parameters": {
                "type": "object",
                "properties": {
                    "symbol": {"type": "string"},
                    "stop_loss": {"type": "number", "description": "Stop price on the losing side"},
                    "take_profit": {"type": "number", "description": "Target price on the winning side"},
                },
                "required": ["symbol"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "cancel_orders",
            "description": "Cancel every open and standing stop-loss/take-profit order on a symbol.",
            "parameters": {
                "type": "object",
                "properties": {"symbol": {"type": "string"}},
                "required": ["symbol"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_account_balance",
            "description": "Account balance, available margin, unrealized PnL and return since start.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "check_order_status",
            "description": "Status, filled size and fill price of an order.",
            "parameters": {
                "type": "object",
                "properties": {"order_id": {"type": "string"}},
                "required": ["order_id"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_technical_indicators",
            "description": "EMA, MACD, RSI and ATR for a symbol on one candle interval.",
            "parameters": {
                "type": "object",
                "properties": {
                    "symbol": {"type": "string"},
                    "interval": {"type": "string", "enum": list(INDICATOR_INTERVALS)},
                    "limit": {"type": "integer", "minimum": 30, "maximum": 500},
                },
                "required": ["symbol"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "calculate_risk",
            "description": "Exposure, margin use and distance to liquidation of every open position.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]


class TradingToolbox:
    """Dispatch model tool calls to one engine's executor."""

    def __init__(self, engine_id: int, executor: ExecutionEngine, store: LedgerStore) -> None:
        self.engine_id = engine_id
        self.executor = executor
        self.store = store
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "open_position": self._open_position,
            "close_position": self._close_position,
            "get_positions": self._get_positions,
            "set_stop_loss_take_profit": self._set_stop_loss_take_profit,
            "cancel_orders": self._cancel_orders,
            "get_account_balance": self._get_account_balance,
            "check_order_status": self._check_order_status,
            "get_technical_indicators": self._get_technical_indicators,
            "calculate_risk": self._calculate_risk,
        }

    @property
    def specs(self) -> List[Dict[str, Any]]:
        return TOOL_SPECS

    def dispatch(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            return {"success": False, "error": f"unknown tool {name!r}"}
        try:
            result = handler(arguments or {})
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("[Engine %s] Tool %s rejected arguments %s: %s",
                           self.engine_id, name, arguments, exc)
            return {"success": False, "error": f"invalid arguments: {exc}"}
        except ExchangeAuthError:
            raise
        except (CriticalDataUnavailable, ExchangeError) as exc:
            logger.warning("[Engine %s] Tool %s exchange read failed: %s", self.engine_id, name, exc)
            return {"success": False, "error": str(exc)}
        logger.info("[Engine %s] Tool %s(%s) -> %s", self.engine_id, name, arguments,
                    "ok" if result.get("success") else result.get("error"))
        return result

    def _open_position(self, args: Dict[str, Any]) -> Dict[str, Any]:
        result = self.executor.open_position(
            symbol=str(args["symbol"]),
            side=str(args["side"]),
            margin_usdt=float(args["margin_usdt"]),
            leverage=int(args["leverage"]),
            stop_loss=float(args["stop_loss"]) if args.get("stop_loss") is not None else None,
            profit_target=float(args["profit_target"]) if args.get("profit_target") is not None else None,
            confidence=float(args["confidence"]) if args.get("confidence") is not None else None,
        )
        return result.to_dict()

    def _close_position(self, args: Dict[str, Any]) -> Dict[str, Any]:
        percentage = float(args.get("percentage", 100.0))
        if not 0 < percentage <= 100:
            raise ValueError(f"percentage must be in (0, 100], got {percentage}")
        result = self.executor.close_symbol(
            str(args["symbol"]), reason=str(args.get("reason") or "agent_decision"),
            percentage=percentage,
        )
        return result.to_dict()

    def _get_positions(self, args: Dict[str, Any]) -> Dict[str, Any]:
        positions = self.store.get_positions(self.engine_id)
        return {
            "success": True,
            "positions": [
                {
                    "symbol": p.symbol,
                    "side": p.side,
                    "quantity": p.quantity,
                    "entry_price": p.entry_price,
                    "current_price": p.current_price,
                    "leverage": p.leverage,
                    "pnl_percent": round(calculate_pnl_percent(
                        p.entry_price, p.current_price, p.side, p.leverage), 2),
                }
                for p in positions
            ],
        }

    def _set_stop_loss_take_profit(self, args: Dict[str, Any]) -> Dict[str, Any]:
        result = self.executor.set_stop_loss_take_profit(
            str(args["symbol"]),
            stop_loss=float(args["stop_loss"]) if args.get("stop_loss") is not None else None,
            take_profit=float(args["take_profit"]) if args.get("take_profit") is not None else None,
        )
        return result.to_dict()

    def _cancel_orders(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return self.executor.cancel_orders(str(args["symbol"])).to_dict()

    def _get_account_balance(self, args: Dict[str, Any]) -> Dict[str, Any]:
        account = build_account_info(self.executor.exchange, self.store, self.engine_id)
        return {"success": True, "currency": "USDT", **account.to_dict()}

    def _check_order_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        order = self.executor.exchange.get_order(str(args["order_id"]))
        total = abs(order.size)
        return {
            "success": True,
            "order_id": order.id,
            "contract": order.contract,
            "status": order.status,
            "finish_as": order.finish_as,
            "total_size": total,
            "filled_size": order.filled_size,
            "left_size": abs(order.left),
            "fill_price": order.fill_price,
            "fill_percent": round(order.filled_size / total * 100, 2) if total else 0.0,
        }

    def _get_technical_indicators(self, args: Dict[str, Any]) -> Dict[str, Any]:
        symbol = str(args["symbol"]).upper()
        if symbol not in self.executor.risk.symbols:
            raise ValueError(f"{symbol} not in trading universe")
        interval = str(args.get("interval") or "5m")
        if interval not in INDICATOR_INTERVALS:
            raise ValueError(f"interval must be one of {', '.join(INDICATOR_INTERVALS)}")
        limit = min(max(int(args.get("limit") or 100), 30), 500)

        candles = self.executor.exchange.get_candles(contract_for(symbol), interval=interval, limit=limit)
        indicators = calculate_indicators(candles)
        return {
            "success": True,
            "symbol": symbol,
            "interval": interval,
            "candles": len(candles),
            **{key: round(value, 6) for key, value in indicators.items()},
        }

    def _calculate_risk(self, args: Dict[str, Any]) -> Dict[str, Any]:
        exchange = self.executor.exchange
        account = build_account_info(exchange, self.store, self.engine_id)

        exposures = []
        for reported in exchange.list_positions():
            if reported.size == 0:
                continue
            multiplier = self.executor.contract_multiplier(reported.contract)
            notional = reported.quantity * reported.entry_price * multiplier
            leverage = reported.leverage or 1
            mark = reported.mark_price
            exposures.append({
                "symbol": reported.symbol,
                "side": reported.side,
                "leverage": leverage,
                "notional": round(notional, 4),
                "margin": round(notional / leverage, 4),
                "unrealized_pnl": round(reported.unrealised_pnl, 4),
                "liquidation_distance_percent": (
                    round(abs(mark - reported.liq_price) / mark * 100, 2)
                    if mark > 0 and reported.liq_price > 0 else None
                ),
            })

        total_notional = sum(e["notional"] for e in exposures)
        total_margin = sum(e["margin"] for e in exposures)
        balance = account.total_balance
        return {
            "success": True,
            "total_balance": round(balance, 4),
            "available_balance": round(account.available_balance, 4),
            "total_notional": round(total_notional, 4),
            "total_margin": round(total_margin, 4),
            "used_margin_percent": round(total_margin / balance * 100, 2) if balance > 0 else 0.0,
            "effective_leverage": round(total_notional / balance, 2) if balance > 0 else 0.0,
            "open_positions": len(exposures),
            "max_positions": self.executor.risk.max_positions,
            "positions": exposures,
        }

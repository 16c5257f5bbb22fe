"""
Snapshot Builder - Construct the decision context for the proposal service.

Builds structured snapshots containing:
- Market data per symbol (price, funding, 5m/1h indicators)
- Account state (realized-basis balance, equity, return)
- Open positions with leveraged pnl% and holding time
- Recent trades and decisions
- Strategy guidance and guardrails
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.position_manager import calculate_pnl_percent
from infra.state_store import DecisionRecord, Position, Trade, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyParams:
    """Sizing guidance handed to the model; hard limits still come from RiskParams."""
    name: str
    leverage_min: int
    leverage_max: int
    position_pct_min: float
    position_pct_max: float
    description: str


STRATEGIES: Dict[str, StrategyParams] = {
    "conservative": StrategyParams("conservative", 15, 18, 15.0, 22.0,
                                   "Only act on strong, confirmed signals; prefer holding cash."),
    "balanced": StrategyParams("balanced", 18, 22, 20.0, 27.0,
                               "Act on good signals with trend confirmation on the 1h series."),
    "aggressive": StrategyParams("aggressive", 22, 25, 25.0, 32.0,
                                 "Act on any clear momentum signal; cut losers quickly."),
}


def get_strategy(name: Optional[str]) -> StrategyParams:
    strategy = STRATEGIES.get((name or "").lower())
    if strategy is None:
        logger.warning(f"Unknown strategy {name!r}, using balanced")
        return STRATEGIES["balanced"]
    return strategy


# ─── Context ──────────────────────────────────────────────────────────────

def build_decision_context(
    *,
    engine_id: int,
    iteration: int,
    market_data: Dict[str, Any],
    account_info: Dict[str, Any],
    positions: List[Position],
    trade_history: List[Trade],
    recent_decisions: List[DecisionRecord],
    strategy: str,
    guardrails: Dict[str, Any],
    started_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Assemble the opaque context passed to ``DecisionProposer.propose``."""
    now = now or utcnow()
    minutes_elapsed = int((now - started_at).total_seconds() // 60) if started_at else 0

    return {
        "engine_id": engine_id,
        "iteration": iteration,
        "timestamp": now.isoformat(),
        "minutes_elapsed": minutes_elapsed,
        "strategy": get_strategy(strategy).name,
        "guardrails": guardrails,
        "market_data": market_data,
        "account_info": account_info,
        "positions": [_format_position(p, now) for p in positions],
        "trade_history": [_format_trade(t) for t in trade_history],
        "recent_decisions": [_format_decision(d) for d in recent_decisions],
    }


def _format_position(position: Position, now: datetime) -> Dict[str, Any]:
    return {
        "symbol": position.symbol,
        "side": position.side,
        "quantity": position.quantity,
        "entry_price": position.entry_price,
        "current_price": position.current_price,
        "leverage": position.leverage,
        "liquidation_price": round(position.liquidation_price, 6),
        "unrealized_pnl": round(position.unrealized_pnl, 4),
        "pnl_percent": round(calculate_pnl_percent(
            position.entry_price, position.current_price, position.side, position.leverage), 2),
        "peak_pnl_percent": round(position.peak_pnl_percent, 2),
        "holding_hours": round(position.holding_hours(now), 2),
        "stop_loss": position.stop_loss,
        "profit_target": position.profit_target,
    }


def _format_trade(trade: Trade) -> Dict[str, Any]:
    return {
        "symbol": trade.symbol,
        "side": trade.side,
        "type": trade.type,
        "price": trade.price,
        "quantity": trade.quantity,
        "leverage": trade.leverage,
        "pnl": round(trade.pnl, 4) if trade.pnl is not None else None,
        "status": trade.status,
        "timestamp": trade.timestamp.isoformat(),
    }


def _format_decision(decision: DecisionRecord) -> Dict[str, Any]:
    return {
        "iteration": decision.iteration,
        "timestamp": decision.timestamp.isoformat(),
        "decision": decision.decision[:500],
        "account_value": decision.account_value,
        "positions_count": decision.positions_count,
    }


# ─── Prompt ───────────────────────────────────────────────────────────────

def build_system_prompt(strategy_name: str, guardrails: Dict[str, Any]) -> str:
    strategy = get_strategy(strategy_name)
    max_leverage = int(guardrails.get("max_leverage", strategy.leverage_max))
    lev_min = min(strategy.leverage_min, max_leverage)
    lev_max = min(strategy.leverage_max, max_leverage)

    return (
        "You manage USDT-settled perpetual futures positions.\n"
        f"Strategy: {strategy.name}. {strategy.description}\n"
        f"- Use {lev_min}-{lev_max}x leverage and {strategy.position_pct_min:g}-"
        f"{strategy.position_pct_max:g}% of available balance as margin per position.\n"
        f"- At most {guardrails.get('max_positions')} open positions; symbols: "
        f"{', '.join(guardrails.get('symbols', []))}.\n"
        "- Stop-loss, trailing-stop, drawdown and max-holding exits are enforced "
        "automatically; do not fight them.\n"
        "Use the provided tools to open or close positions and to place exchange-side "
        "stop-loss / take-profit orders, then reply with a short "
        "summary of your analysis and the actions taken."
    )


def render_prompt(context: Dict[str, Any]) -> str:
    """Human-readable user message for the model."""
    lines = [
        f"Iteration {context['iteration']} ({context['minutes_elapsed']} minutes since start), "
        f"{context['timestamp']}",
        "",
        "## Market",
    ]
    for symbol, data in context["market_data"].items():
        intraday = data.get("5m", {})
        hourly = data.get("1h", {})
        lines.append(
            f"{symbol}: price={data['price']} funding={data['funding_rate']:.6f} | "
            f"5m ema20={intraday.get('ema20', 0):.4f} macd={intraday.get('macd', 0):.4f} "
            f"rsi7={intraday.get('rsi7', 50):.1f} rsi14={intraday.get('rsi14', 50):.1f} | "
            f"1h ema20={hourly.get('ema20', 0):.4f} ema50={hourly.get('ema50', 0):.4f} "
            f"rsi14={hourly.get('rsi14', 50):.1f} atr14={hourly.get('atr14', 0):.4f}"
        )

    account = context["account_info"]
    lines += [
        "",
        "## Account",
        f"balance={account.get('total_balance')} available={account.get('available_balance')} "
        f"unrealized={account.get('unrealized_pnl')} return={account.get('return_percent')}%",
        "",
        "## Positions",
    ]
    if context["positions"]:
        for p in context["positions"]:
            lines.append(
                f"{p['symbol']} {p['side']} {p['quantity']} @ {p['entry_price']} -> {p['current_price']} "
                f"{p['leverage']}x pnl={p['pnl_percent']:+.2f}% peak={p['peak_pnl_percent']:+.2f}% "
                f"held={p['holding_hours']:.1f}h"
            )
    else:
        lines.append("none")

    if context["trade_history"]:
        lines += ["", "## Recent trades"]
        for t in context["trade_history"]:
            pnl = f" pnl={t['pnl']:+.4f}" if t["pnl"] is not None else ""
            lines.append(f"{t['timestamp']} {t['type']} {t['symbol']} {t['side']} "
                         f"{t['quantity']} @ {t['price']} {t['leverage']}x{pnl}")

    if context["recent_decisions"]:
        lines += ["", "## Your recent decisions"]
        for d in context["recent_decisions"]:
            lines.append(f"#{d['iteration']} ({d['timestamp']}): {d['decision']}")

    return "\n".join(lines)

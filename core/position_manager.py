"""
Position Management: Forced-Exit Rules for Leveraged Positions

Evaluates each open position against a fixed priority of exit rules:
max holding time, leverage-tiered stop-loss, trailing stop-profit and
peak-drawdown protection. Evaluation is pure; persistence of the peak
watermark and order placement happen in the cycle and executor.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from infra.state_store import Position, utcnow
from tools.config_validator import RiskParams

logger = logging.getLogger(__name__)

PNL_PRECISION = 8


def side_sign(side: str) -> int:
    return 1 if side == "long" else -1


def calculate_pnl_percent(entry_price: float, current_price: float, side: str, leverage: float) -> float:
    """
    Leveraged return on margin in percent.

    entry_price <= 0 is treated as flat (0.0) rather than an error.
    """
    if entry_price <= 0:
        return 0.0
    raw = ((current_price - entry_price) * 100 / entry_price) * side_sign(side) * leverage
    return round(raw, PNL_PRECISION)


def stop_loss_threshold(leverage: float, params: RiskParams) -> float:
    """Stop-loss pnl% for a leverage; tiers are sorted highest leverage first."""
    for tier in params.stop_loss_tiers:
        if leverage >= tier.min_leverage:
            return tier.threshold_pct
    return params.default_stop_loss_pct


def trailing_stop_threshold(reference_pnl: float, stop_loss: float, params: RiskParams) -> float:
    """
    Trailing floor unlocked by ``reference_pnl`` (the best pnl% seen).

    Starts at the stop-loss threshold and ratchets up through the tiers.
    """
    trailing = stop_loss
    for tier in params.trailing_tiers:
        if reference_pnl >= tier.trigger_pct:
            trailing = tier.floor_pct
    return trailing


@dataclass
class ExitVerdict:
    """Outcome of one evaluation"""
    close: bool
    reason: str
    code: str  # "max_holding_time", "stop_loss", "trailing_stop", "peak_drawdown", "hold", "invalid_price"
    pnl_percent: float = 0.0
    peak_pnl_percent: float = 0.0
    stop_loss_threshold: float = 0.0
    trailing_threshold: float = 0.0
    holding_hours: float = 0.0


class PositionManager:
    """
    Forced-exit rule engine.

    Priority (first match wins):
    1. holding time >= max_holding_hours
    2. pnl% <= leverage-tiered stop-loss
    3. pnl% below a trailing floor that has ratcheted above the stop-loss
    4. drawdown from peak >= peak_drawdown_close_pct once peak is above activation
    """

    def __init__(self, risk_params: Optional[RiskParams] = None):
        self.params = risk_params or RiskParams()

    def current_pnl_percent(self, position: Position) -> float:
        return calculate_pnl_percent(
            position.entry_price, position.current_price, position.side, position.leverage
        )

    def refresh_peak(self, position: Position) -> float:
        """max(stored peak, current pnl%)"""
        return max(position.peak_pnl_percent, self.current_pnl_percent(position))

    def evaluate(self, position: Position, holding_hours: float) -> ExitVerdict:
        price = position.current_price
        if price is None or not math.isfinite(price) or price <= 0:
            return ExitVerdict(close=False, reason="invalid price", code="invalid_price",
                               holding_hours=holding_hours)

        pnl = self.current_pnl_percent(position)
        peak = max(position.peak_pnl_percent, pnl)
        stop_loss = stop_loss_threshold(position.leverage, self.params)
        trailing = trailing_stop_threshold(peak, stop_loss, self.params)

        def verdict(close: bool, code: str, reason: str) -> ExitVerdict:
            return ExitVerdict(
                close=close, reason=reason, code=code, pnl_percent=pnl,
                peak_pnl_percent=peak, stop_loss_threshold=stop_loss,
                trailing_threshold=trailing, holding_hours=holding_hours,
            )

        if holding_hours >= self.params.max_holding_hours:
            return verdict(True, "max_holding_time",
                           f"max holding time ({holding_hours:.1f}h >= {self.params.max_holding_hours:g}h)")

        if pnl <= stop_loss:
            return verdict(True, "stop_loss",
                           f"stop loss ({pnl:+.2f}% <= {stop_loss:+.2f}% at {position.leverage}x)")

        if trailing > stop_loss and pnl < trailing:
            return verdict(True, "trailing_stop",
                           f"trailing stop ({pnl:+.2f}% < {trailing:+.2f}%, peak {peak:+.2f}%)")

        if peak > self.params.peak_drawdown_activation_pct:
            drawdown = (peak - pnl) / peak * 100
            if drawdown >= self.params.peak_drawdown_close_pct:
                return verdict(True, "peak_drawdown",
                               f"peak drawdown ({drawdown:.1f}% from peak {peak:+.2f}%)")

        return verdict(False, "hold", "within limits")

    def evaluate_positions(
        self,
        positions: List[Position],
        now: Optional[datetime] = None,
    ) -> List[Tuple[Position, ExitVerdict]]:
        """
        Evaluate all open positions, returning those that must be closed.

        Positions with an unusable price are skipped with a warning.
        """
        now = now or utcnow()
        exits = []

        for position in positions:
            verdict = self.evaluate(position, position.holding_hours(now))

            if verdict.code == "invalid_price":
                logger.warning(f"No valid current price for {position.symbol}, skipping exit check")
                continue

            if verdict.close:
                exits.append((position, verdict))
                logger.info(
                    f"EXIT SIGNAL: {position.symbol} {verdict.code.upper()} - "
                    f"PnL: {verdict.pnl_percent:+.2f}%, Peak: {verdict.peak_pnl_percent:+.2f}%, "
                    f"Hold: {verdict.holding_hours:.1f}h ({verdict.reason})"
                )

        if not exits:
            logger.debug("No positions met exit criteria")

        return exits

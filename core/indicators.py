"""
Technical indicators over candle series.

Pure functions; insufficient or non-finite input degrades to neutral values
(0 for trend measures, 50 for RSI) instead of raising.
"""
import math
from typing import Dict, List, Optional, Sequence


def ensure_finite(value: float, default: float = 0.0) -> float:
    if value is None or not math.isfinite(value):
        return default
    return value


def ensure_range(value: float, low: float, high: float, default: Optional[float] = None) -> float:
    if value is None or not math.isfinite(value):
        return default if default is not None else (low + high) / 2
    return min(max(value, low), high)


def ema(prices: Sequence[float], period: int) -> float:
    if not prices:
        return 0.0
    k = 2 / (period + 1)
    value = prices[0]
    for price in prices[1:]:
        value = price * k + value * (1 - k)
    return ensure_finite(value)


def rsi(prices: Sequence[float], period: int) -> float:
    """Simple-average RSI over the last ``period`` changes."""
    if len(prices) < period + 1:
        return 50.0

    gains = 0.0
    losses = 0.0
    for i in range(len(prices) - period, len(prices)):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0

    rs = avg_gain / avg_loss
    return ensure_range(100 - 100 / (1 + rs), 0, 100, 50)


def macd(prices: Sequence[float]) -> float:
    if len(prices) < 26:
        return 0.0
    return ensure_finite(ema(prices, 12) - ema(prices, 26))


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int) -> float:
    if min(len(highs), len(lows), len(closes)) < period + 1:
        return 0.0

    true_ranges = [
        max(highs[i] - lows[i], abs(highs[i] - closes[i - 1]), abs(lows[i] - closes[i - 1]))
        for i in range(1, len(highs))
    ]
    recent = true_ranges[-period:]
    return ensure_finite(sum(recent) / len(recent))


def calculate_indicators(candles: List) -> Dict[str, float]:
    """
    Summary indicators for a candle series (oldest first).

    Keys: current_price, ema20, ema50, macd, rsi7, rsi14, atr14, volume, avg_volume.
    """
    closes = [c.close for c in candles if c.close is not None and math.isfinite(c.close)]
    volumes = [c.volume if c.volume is not None and math.isfinite(c.volume) and c.volume >= 0 else 0.0
               for c in candles]

    if not closes:
        return {
            "current_price": 0.0, "ema20": 0.0, "ema50": 0.0, "macd": 0.0,
            "rsi7": 50.0, "rsi14": 50.0, "atr14": 0.0, "volume": 0.0, "avg_volume": 0.0,
        }

    return {
        "current_price": ensure_finite(closes[-1]),
        "ema20": ema(closes, 20),
        "ema50": ema(closes, 50),
        "macd": macd(closes),
        "rsi7": rsi(closes, 7),
        "rsi14": rsi(closes, 14),
        "atr14": atr([c.high for c in candles], [c.low for c in candles], [c.close for c in candles], 14),
        "volume": ensure_finite(volumes[-1]) if volumes else 0.0,
        "avg_volume": sum(volumes) / len(volumes) if volumes else 0.0,
    }

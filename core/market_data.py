"""Per-cycle market snapshot for an engine's symbol universe."""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.exceptions import CriticalDataUnavailable, ExchangeAuthError, ExchangeError
from core.exchange_gate import contract_for
from core.indicators import calculate_indicators

logger = logging.getLogger(__name__)


@dataclass
class SymbolSnapshot:
    symbol: str
    price: float
    funding_rate: float
    intraday: Dict[str, float] = field(default_factory=dict)  # 5m indicators
    hourly: Dict[str, float] = field(default_factory=dict)  # 1h indicators

    def to_dict(self) -> dict:
        return {
            "price": self.price,
            "funding_rate": self.funding_rate,
            "5m": {k: round(v, 6) for k, v in self.intraday.items()},
            "1h": {k: round(v, 6) for k, v in self.hourly.items()},
        }


class MarketDataCollector:
    """Collect ticker, funding and indicator summaries; unusable symbols are skipped."""

    def __init__(self, engine_id: int, exchange, symbols: List[str], store=None,
                 candle_limit: int = 100):
        self.engine_id = engine_id
        self.exchange = exchange
        self.symbols = symbols
        self.store = store
        self.candle_limit = candle_limit
        self._log_prefix = f"[Engine {engine_id}]"

    def collect(self) -> Dict[str, SymbolSnapshot]:
        snapshots: Dict[str, SymbolSnapshot] = {}
        for symbol in self.symbols:
            snapshot = self._collect_symbol(symbol)
            if snapshot is None:
                continue
            snapshots[symbol] = snapshot
            if self.store is not None:
                self.store.insert_signal(self.engine_id, symbol,
                                         {**snapshot.intraday, "current_price": snapshot.price},
                                         snapshot.funding_rate)

        logger.info(f"{self._log_prefix} Market data collected for {len(snapshots)}/{len(self.symbols)} symbols")
        return snapshots

    def _collect_symbol(self, symbol: str) -> Optional[SymbolSnapshot]:
        contract = contract_for(symbol)
        try:
            ticker = self.exchange.get_ticker(contract)
            intraday_candles = self.exchange.get_candles(contract, "5m", self.candle_limit)
            hourly_candles = self.exchange.get_candles(contract, "1h", self.candle_limit)
        except ExchangeAuthError:
            raise
        except (CriticalDataUnavailable, ExchangeError) as e:
            logger.warning(f"{self._log_prefix} Market data unavailable for {symbol}: {e}")
            return None

        price = ticker.price
        if not math.isfinite(price) or price <= 0:
            logger.warning(f"{self._log_prefix} Invalid price for {symbol} ({price}), skipping")
            return None
        if not intraday_candles:
            logger.warning(f"{self._log_prefix} Empty candle set for {symbol}, skipping")
            return None

        return SymbolSnapshot(
            symbol=symbol,
            price=price,
            funding_rate=ticker.funding_rate,
            intraday=calculate_indicators(intraday_candles),
            hourly=calculate_indicators(hourly_candles),
        )

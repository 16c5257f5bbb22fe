"""
perpguard Core: Exchange Connector (Gate.io USDT-settled futures)

REST v4 client with HMAC-SHA512 request signing. Reads are retried with a
short linear backoff; order placement and leverage changes are writes and
are never retried automatically.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import urlencode, urlparse

import requests

from core.exceptions import (
    CriticalDataUnavailable,
    ExchangeAuthError,
    ExchangeError,
    OrderRejected,
)

logger = logging.getLogger(__name__)

GATE_BASE = "https://api.gateio.ws/api/v4"
GATE_TESTNET_BASE = "https://fx-api-testnet.gateio.ws/api/v4"

AUTH_LABELS = {"INVALID_KEY", "INVALID_SIGNATURE", "MISSING_REQUIRED_HEADER", "FORBIDDEN"}

# Gate trigger rules: 1 fires at price >= trigger, 2 at price <= trigger
TRIGGER_RULES = {"up": 1, "down": 2}
TRIGGER_EXPIRATION_SECONDS = 86400 * 30


def contract_for(symbol: str) -> str:
    """BTC -> BTC_USDT"""
    symbol = symbol.upper()
    return symbol if symbol.endswith("_USDT") else f"{symbol}_USDT"


def symbol_for(contract: str) -> str:
    """BTC_USDT -> BTC"""
    return contract.split("_")[0].upper()


def _f(value, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class ExchangePosition:
    """Open futures position as reported by the exchange"""
    contract: str
    size: int  # signed: >0 long, <0 short, 0 flat
    leverage: int
    entry_price: float
    mark_price: float
    liq_price: float
    unrealised_pnl: float
    open_time: Optional[datetime] = None

    @property
    def symbol(self) -> str:
        return symbol_for(self.contract)

    @property
    def side(self) -> str:
        return "long" if self.size > 0 else "short"

    @property
    def quantity(self) -> int:
        return abs(self.size)


@dataclass
class AccountBalance:
    total: float
    available: float
    unrealised_pnl: float


@dataclass
class OrderResult:
    """Order state from create/get order"""
    id: str
    contract: str
    size: int
    left: int
    status: str  # "open" | "finished"
    fill_price: float
    finish_as: Optional[str] = None

    @property
    def filled_size(self) -> int:
        return abs(self.size) - abs(self.left)

    @property
    def is_filled(self) -> bool:
        return self.status == "finished" and self.fill_price > 0 and self.filled_size > 0


@dataclass
class ContractInfo:
    name: str
    quanto_multiplier: float
    order_size_min: int
    order_size_max: int
    funding_rate: float = 0.0


@dataclass
class Ticker:
    contract: str
    last: float
    mark_price: float
    funding_rate: float = 0.0
    volume_24h: float = 0.0

    @property
    def price(self) -> float:
        """Mark price when available, otherwise last trade."""
        return self.mark_price if self.mark_price > 0 else self.last


@dataclass
class Candle:
    """Candlestick data"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


class GateFuturesExchange:
    """
    Gate.io futures API connector, one instance per engine.

    Supports:
    - Account data (balance, positions)
    - Market data (tickers, candles, contract specs)
    - Order execution (market/limit, reduce-only, leverage)
    - Price-triggered close orders (stop-loss / take-profit)
    """

    def __init__(self, api_key: str = "", api_secret: str = "", *,
                 base_url: Optional[str] = None, testnet: bool = False,
                 settle: str = "usdt", read_only: bool = False,
                 timeout: float = 20.0, read_retries: int = 2,
                 retry_backoff_ms: int = 300):
        self.api_key = api_key or ""
        self.api_secret = api_secret or ""
        self.base_url = (base_url or (GATE_TESTNET_BASE if testnet else GATE_BASE)).rstrip("/")
        self._path_prefix = urlparse(self.base_url).path
        self.settle = settle
        self.read_only = read_only
        self.timeout = timeout
        self.read_retries = read_retries
        self.retry_backoff = retry_backoff_ms / 1000.0

        self._contracts_cache: Dict[str, ContractInfo] = {}

        logger.info(
            f"Initialized GateFuturesExchange (base={self.base_url}, settle={settle}, "
            f"read_only={read_only})"
        )

    # ------------------------------------------------------------------ HTTP

    def _headers(self, method: str, path: str, query_string: str, body_str: str) -> dict:
        """Generate signed headers for authenticated requests"""
        if not self.api_key or not self.api_secret:
            raise ExchangeAuthError("API key and secret required for authenticated requests")

        ts = str(int(time.time()))
        hashed_body = hashlib.sha512(body_str.encode()).hexdigest()
        prehash = f"{method.upper()}\n{self._path_prefix}{path}\n{query_string}\n{hashed_body}\n{ts}"
        sig = hmac.new(self.api_secret.encode(), prehash.encode(), hashlib.sha512).hexdigest()

        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "KEY": self.api_key,
            "Timestamp": ts,
            "SIGN": sig,
        }

    @staticmethod
    def _error_from_response(response) -> ExchangeError:
        label = None
        message = response.text
        try:
            payload = response.json()
            label = payload.get("label")
            message = payload.get("message") or label or message
        except ValueError:
            pass

        status = response.status_code
        if status in (401, 403) or label in AUTH_LABELS:
            return ExchangeAuthError(f"Authentication failed: {message}", status, label)
        return ExchangeError(f"Exchange error {status}: {message}", status, label)

    def _req(self, method: str, path: str, *, query: Optional[Dict[str, object]] = None,
             body: Optional[dict] = None, authenticated: bool = True,
             max_retries: int = 0):
        """
        Make HTTP request to the futures API.

        Retries (reads only, ``max_retries`` > 0) on:
        - 429 (rate limit)
        - 5xx (server errors)
        - Network errors (timeout, connection)

        Raises CriticalDataUnavailable once retries are exhausted; client
        errors raise ExchangeError/ExchangeAuthError immediately.
        """
        query_string = urlencode(sorted(query.items())) if query else ""
        body_str = json.dumps(body) if body is not None else ""
        url = self.base_url + path + (f"?{query_string}" if query_string else "")

        last_exception: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            try:
                if authenticated:
                    headers = self._headers(method, path, query_string, body_str)
                else:
                    headers = {"Accept": "application/json"}

                response = requests.request(
                    method,
                    url,
                    headers=headers,
                    data=body_str or None,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code

                if 400 <= status_code < 500 and status_code != 429:
                    error = self._error_from_response(e.response)
                    logger.error(f"Gate API client error on {method} {path}: {error}")
                    raise error from e

                logger.warning(
                    f"Gate API {status_code} on {method} {path}, attempt {attempt + 1}/{max_retries + 1}"
                )
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(
                    f"Network error on {method} {path}: {e}, attempt {attempt + 1}/{max_retries + 1}"
                )
                last_exception = e

            if attempt < max_retries:
                time.sleep(self.retry_backoff * (attempt + 1))

        if max_retries:
            logger.error(f"All {max_retries} retries exhausted for {method} {path}")
        raise CriticalDataUnavailable(f"{method} {path}", last_exception)

    def _read(self, path: str, *, query: Optional[Dict[str, object]] = None,
              authenticated: bool = True):
        return self._req("GET", path, query=query, authenticated=authenticated,
                         max_retries=self.read_retries)

    def _write(self, method: str, path: str, *, query: Optional[Dict[str, object]] = None,
               body: Optional[dict] = None):
        if self.read_only:
            raise OrderRejected(f"{method} {path} refused: client is read-only")
        try:
            return self._req(method, path, query=query, body=body, max_retries=0)
        except CriticalDataUnavailable as e:
            # Outcome unknown; surfaced to the caller without resubmission
            raise ExchangeError(f"{method} {path} failed without response: {e.original}") from e

    # --------------------------------------------------------------- Account

    def get_account(self) -> AccountBalance:
        data = self._read(f"/futures/{self.settle}/accounts")
        return AccountBalance(
            total=_f(data.get("total")),
            available=_f(data.get("available")),
            unrealised_pnl=_f(data.get("unrealised_pnl")),
        )

    def list_positions(self) -> List[ExchangePosition]:
        """All positions for this account, including zero-size entries."""
        rows = self._read(f"/futures/{self.settle}/positions") or []
        positions = []
        for row in rows:
            open_time = row.get("open_time")
            positions.append(ExchangePosition(
                contract=row.get("contract", ""),
                size=int(_f(row.get("size"))),
                leverage=int(_f(row.get("leverage"))),
                entry_price=_f(row.get("entry_price")),
                mark_price=_f(row.get("mark_price")),
                liq_price=_f(row.get("liq_price")),
                unrealised_pnl=_f(row.get("unrealised_pnl")),
                open_time=datetime.fromtimestamp(int(open_time), tz=timezone.utc) if open_time else None,
            ))

        active = [p for p in positions if p.size != 0]
        logger.info(f"Positions fetched (returned {len(positions)}, active {len(active)})")
        return positions

    # ----------------------------------------------------------- Market data

    def get_ticker(self, contract: str) -> Ticker:
        rows = self._read(f"/futures/{self.settle}/tickers", query={"contract": contract},
                          authenticated=False)
        if not rows:
            raise CriticalDataUnavailable(f"ticker {contract}")
        row = rows[0]
        return Ticker(
            contract=contract,
            last=_f(row.get("last")),
            mark_price=_f(row.get("mark_price")),
            funding_rate=_f(row.get("funding_rate")),
            volume_24h=_f(row.get("volume_24h")),
        )

    def get_candles(self, contract: str, interval: str = "5m", limit: int = 100) -> List[Candle]:
        rows = self._read(
            f"/futures/{self.settle}/candlesticks",
            query={"contract": contract, "interval": interval, "limit": limit},
            authenticated=False,
        ) or []
        return [
            Candle(
                timestamp=datetime.fromtimestamp(int(_f(row.get("t"))), tz=timezone.utc),
                open=_f(row.get("o")),
                high=_f(row.get("h")),
                low=_f(row.get("l")),
                close=_f(row.get("c")),
                volume=_f(row.get("v")),
            )
            for row in rows
        ]

    def get_contract_info(self, contract: str) -> ContractInfo:
        """Contract specs, cached for the lifetime of the client."""
        cached = self._contracts_cache.get(contract)
        if cached:
            return cached

        row = self._read(f"/futures/{self.settle}/contracts/{contract}", authenticated=False)
        info = ContractInfo(
            name=contract,
            quanto_multiplier=_f(row.get("quanto_multiplier")),
            order_size_min=int(_f(row.get("order_size_min"), 1)),
            order_size_max=int(_f(row.get("order_size_max"), 1_000_000)),
            funding_rate=_f(row.get("funding_rate")),
        )
        self._contracts_cache[contract] = info
        return info

    # ------------------------------------------------------------- Execution

    def place_order(self, contract: str, size: int, price: float = 0.0,
                    reduce_only: bool = False, text: Optional[str] = None) -> OrderResult:
        """
        Place a futures order. ``size`` is signed (positive buys, negative sells);
        ``price`` 0 submits a market order with IOC time-in-force.
        """
        body = {
            "contract": contract,
            "size": int(size),
            "price": self._format_price(price),
            "tif": "ioc" if not price else "gtc",
        }
        if reduce_only:
            body["reduce_only"] = True
        if text:
            body["text"] = text if text.startswith("t-") else f"t-{text}"

        logger.info(f"Placing order: {json.dumps(body)}")
        try:
            data = self._write("POST", f"/futures/{self.settle}/orders", body=body)
        except ExchangeAuthError:
            raise
        except ExchangeError as e:
            if e.label == "INSUFFICIENT_AVAILABLE":
                raise OrderRejected(
                    f"Insufficient available margin for {contract}", e.status_code, e.label
                ) from e
            raise OrderRejected(f"Order failed: {e} ({contract}, size: {size})",
                                e.status_code, e.label) from e
        return self._parse_order(data)

    def get_order(self, order_id: str) -> OrderResult:
        return self._parse_order(self._read(f"/futures/{self.settle}/orders/{order_id}"))

    def place_price_trigger_order(self, contract: str, trigger_price: float, rule: str,
                                  position_side: str,
                                  expiration_seconds: int = TRIGGER_EXPIRATION_SECONDS) -> str:
        """
        Standing close order fired by the mark price.

        ``rule`` is "up" (fires when the price rises to ``trigger_price``) or
        "down"; ``position_side`` is the side of the position it closes.
        Returns the trigger order id.
        """
        if rule not in TRIGGER_RULES:
            raise ValueError(f"trigger rule must be 'up' or 'down', got {rule!r}")
        if position_side not in ("long", "short"):
            raise ValueError(f"position side must be 'long' or 'short', got {position_side!r}")

        body = {
            "initial": {
                "contract": contract,
                "size": 0,
                "price": "0",
                "tif": "ioc",
                "close": True,
                "reduce_only": True,
            },
            "trigger": {
                "strategy_type": 0,
                "price_type": 1,  # mark price
                "price": self._format_price(trigger_price),
                "rule": TRIGGER_RULES[rule],
                "expiration": int(expiration_seconds),
            },
            "order_type": f"close-{position_side}-position",
        }

        logger.info(f"Placing trigger order: {json.dumps(body)}")
        try:
            data = self._write("POST", f"/futures/{self.settle}/price_orders", body=body)
        except ExchangeAuthError:
            raise
        except ExchangeError as e:
            raise OrderRejected(f"Trigger order failed: {e} ({contract} {rule} {trigger_price})",
                                e.status_code, e.label) from e
        return str(data.get("id", ""))

    def cancel_price_trigger_order(self, order_id: str) -> None:
        self._write("DELETE", f"/futures/{self.settle}/price_orders/{order_id}")
        logger.info(f"Trigger order {order_id} cancelled")

    def cancel_all_orders(self, contract: str) -> int:
        """Cancel open and trigger orders for a contract. Returns how many were cancelled."""
        query = {"contract": contract}
        cancelled = self._write("DELETE", f"/futures/{self.settle}/orders", query=query) or []
        triggers = self._write("DELETE", f"/futures/{self.settle}/price_orders", query=query) or []
        count = len(cancelled) + len(triggers)
        logger.info(f"Cancelled {count} order(s) on {contract}")
        return count

    def set_leverage(self, contract: str, leverage: int) -> None:
        self._write("POST", f"/futures/{self.settle}/positions/{contract}/leverage",
                    query={"leverage": int(leverage)})
        logger.info(f"Leverage for {contract} set to {leverage}x")

    @staticmethod
    def _format_price(price: float) -> str:
        if not price:
            return "0"
        text = f"{round(price, 8):.8f}".rstrip("0").rstrip(".")
        return text or "0"

    @staticmethod
    def _parse_order(data: dict) -> OrderResult:
        return OrderResult(
            id=str(data.get("id", "")),
            contract=data.get("contract", ""),
            size=int(_f(data.get("size"))),
            left=int(_f(data.get("left"))),
            status=data.get("status", ""),
            fill_price=_f(data.get("fill_price")),
            finish_as=data.get("finish_as"),
        )

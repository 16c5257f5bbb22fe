"""
perpguard Infrastructure: Ledger Store

SQLite-backed persistence for engines, positions, trades, account snapshots,
agent decisions and indicator signals. Every row belongs to one engine and
every query is scoped by engine id.
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import EngineNotFound

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS engines (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    api_key TEXT DEFAULT '',
    api_secret TEXT DEFAULT '',
    model_name TEXT DEFAULT '',
    strategy TEXT DEFAULT 'balanced',
    risk_params TEXT DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'stopped',
    last_run_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    engine_id INTEGER NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    quantity REAL NOT NULL,
    entry_price REAL NOT NULL,
    current_price REAL NOT NULL,
    liquidation_price REAL NOT NULL DEFAULT 0,
    unrealized_pnl REAL NOT NULL DEFAULT 0,
    leverage INTEGER NOT NULL DEFAULT 1,
    peak_pnl_percent REAL NOT NULL DEFAULT 0,
    profit_target REAL,
    stop_loss REAL,
    tp_order_id TEXT,
    sl_order_id TEXT,
    entry_order_id TEXT,
    confidence REAL,
    risk_usd REAL,
    opened_at TEXT NOT NULL,
    UNIQUE(engine_id, symbol)
);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    engine_id INTEGER NOT NULL,
    order_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    type TEXT NOT NULL,
    price REAL NOT NULL,
    quantity REAL NOT NULL,
    leverage INTEGER NOT NULL DEFAULT 1,
    pnl REAL,
    fee REAL NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS account_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    engine_id INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    total_value REAL NOT NULL,
    available_cash REAL NOT NULL,
    unrealized_pnl REAL NOT NULL,
    realized_pnl REAL NOT NULL DEFAULT 0,
    return_percent REAL NOT NULL DEFAULT 0,
    sharpe_ratio REAL
);

CREATE TABLE IF NOT EXISTS agent_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    engine_id INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    iteration INTEGER NOT NULL,
    market_analysis TEXT NOT NULL,
    decision TEXT NOT NULL,
    actions_taken TEXT NOT NULL,
    account_value REAL NOT NULL,
    positions_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS trading_signals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    engine_id INTEGER NOT NULL,
    symbol TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    price REAL NOT NULL,
    ema_20 REAL,
    ema_50 REAL,
    macd REAL,
    rsi_7 REAL,
    rsi_14 REAL,
    volume REAL,
    funding_rate REAL
);

CREATE INDEX IF NOT EXISTS idx_trades_engine ON trades(engine_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_history_engine ON account_history(engine_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_decisions_engine ON agent_decisions(engine_id, timestamp);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class EngineRecord:
    id: int
    name: str
    description: str = ""
    api_key: str = ""
    api_secret: str = ""
    model_name: str = ""
    strategy: str = "balanced"
    risk_params: Dict[str, Any] = field(default_factory=dict)
    status: str = "stopped"
    last_run_at: Optional[datetime] = None


@dataclass
class Position:
    """Ledger row for one open position of one engine"""
    engine_id: int
    symbol: str
    side: str  # "long" | "short"
    quantity: float
    entry_price: float
    current_price: float
    leverage: int
    liquidation_price: float = 0.0
    unrealized_pnl: float = 0.0
    peak_pnl_percent: float = 0.0
    opened_at: datetime = field(default_factory=utcnow)
    profit_target: Optional[float] = None
    stop_loss: Optional[float] = None
    tp_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    entry_order_id: Optional[str] = None
    confidence: Optional[float] = None
    risk_usd: Optional[float] = None

    def holding_hours(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.opened_at).total_seconds() / 3600


@dataclass
class Trade:
    """Append-only execution record. ``side`` is the position side."""
    engine_id: int
    order_id: str
    symbol: str
    side: str
    type: str  # "open" | "close"
    price: float
    quantity: float
    leverage: int
    fee: float = 0.0
    pnl: Optional[float] = None
    status: str = "filled"  # "pending" | "filled" | "cancelled"
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class AccountSnapshot:
    engine_id: int
    total_value: float
    available_cash: float
    unrealized_pnl: float
    realized_pnl: float = 0.0
    return_percent: float = 0.0
    sharpe_ratio: Optional[float] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class DecisionRecord:
    engine_id: int
    iteration: int
    decision: str
    market_analysis: Dict[str, Any] = field(default_factory=dict)
    actions_taken: List[Dict[str, Any]] = field(default_factory=list)
    account_value: float = 0.0
    positions_count: int = 0
    timestamp: datetime = field(default_factory=utcnow)


class LedgerStore:
    """
    SQLite ledger shared by all engines.

    Features:
    - One connection guarded by a re-entrant lock (engines run on threads)
    - Position rows unique per (engine_id, symbol)
    - Peak watermark only ever raised within a position's life
    """

    def __init__(self, db_path: str = "data/perpguard.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

        logger.info(f"LedgerStore initialized at {db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ---------------------------------------------------------------- Engines

    def upsert_engine(self, engine: EngineRecord) -> None:
        now = _iso(utcnow())
        self._execute(
            """
            INSERT INTO engines (id, name, description, api_key, api_secret, model_name,
                                 strategy, risk_params, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                api_key = excluded.api_key,
                api_secret = excluded.api_secret,
                model_name = excluded.model_name,
                strategy = excluded.strategy,
                risk_params = excluded.risk_params,
                updated_at = excluded.updated_at
            """,
            (engine.id, engine.name, engine.description, engine.api_key, engine.api_secret,
             engine.model_name, engine.strategy, json.dumps(engine.risk_params),
             engine.status, now, now),
        )

    def get_engine(self, engine_id: int) -> EngineRecord:
        rows = self._query("SELECT * FROM engines WHERE id = ?", (engine_id,))
        if not rows:
            raise EngineNotFound(engine_id)
        return self._row_to_engine(rows[0])

    def list_engines(self, status: Optional[str] = None) -> List[EngineRecord]:
        if status:
            rows = self._query("SELECT * FROM engines WHERE status = ? ORDER BY id", (status,))
        else:
            rows = self._query("SELECT * FROM engines ORDER BY id")
        return [self._row_to_engine(r) for r in rows]

    def set_engine_status(self, engine_id: int, status: str) -> None:
        cur = self._execute(
            "UPDATE engines SET status = ?, updated_at = ? WHERE id = ?",
            (status, _iso(utcnow()), engine_id),
        )
        if cur.rowcount == 0:
            raise EngineNotFound(engine_id)

    def touch_engine(self, engine_id: int) -> None:
        self._execute("UPDATE engines SET last_run_at = ? WHERE id = ?", (_iso(utcnow()), engine_id))

    @staticmethod
    def _row_to_engine(row: sqlite3.Row) -> EngineRecord:
        return EngineRecord(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            api_key=row["api_key"] or "",
            api_secret=row["api_secret"] or "",
            model_name=row["model_name"] or "",
            strategy=row["strategy"] or "balanced",
            risk_params=json.loads(row["risk_params"] or "{}"),
            status=row["status"],
            last_run_at=_parse_ts(row["last_run_at"]),
        )

    # -------------------------------------------------------------- Positions

    def get_positions(self, engine_id: int) -> List[Position]:
        rows = self._query(
            "SELECT * FROM positions WHERE engine_id = ? ORDER BY symbol", (engine_id,)
        )
        return [self._row_to_position(r) for r in rows]

    def get_position(self, engine_id: int, symbol: str) -> Optional[Position]:
        rows = self._query(
            "SELECT * FROM positions WHERE engine_id = ? AND symbol = ?", (engine_id, symbol)
        )
        return self._row_to_position(rows[0]) if rows else None

    def count_positions(self, engine_id: int) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM positions WHERE engine_id = ?", (engine_id,))
        return rows[0]["n"]

    def upsert_position(self, position: Position) -> None:
        """
        Insert or update a position row.

        The stored peak is kept when the side is unchanged; a side flip is a
        new position and takes the supplied peak.
        """
        self._execute(
            """
            INSERT INTO positions (engine_id, symbol, side, quantity, entry_price, current_price,
                                   liquidation_price, unrealized_pnl, leverage, peak_pnl_percent,
                                   profit_target, stop_loss, tp_order_id, sl_order_id,
                                   entry_order_id, confidence, risk_usd, opened_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(engine_id, symbol) DO UPDATE SET
                quantity = excluded.quantity,
                entry_price = excluded.entry_price,
                current_price = excluded.current_price,
                liquidation_price = excluded.liquidation_price,
                unrealized_pnl = excluded.unrealized_pnl,
                leverage = excluded.leverage,
                peak_pnl_percent = CASE WHEN positions.side = excluded.side
                    THEN MAX(positions.peak_pnl_percent, excluded.peak_pnl_percent)
                    ELSE excluded.peak_pnl_percent END,
                side = excluded.side,
                profit_target = excluded.profit_target,
                stop_loss = excluded.stop_loss,
                tp_order_id = excluded.tp_order_id,
                sl_order_id = excluded.sl_order_id,
                entry_order_id = excluded.entry_order_id,
                confidence = excluded.confidence,
                risk_usd = excluded.risk_usd,
                opened_at = excluded.opened_at
            """,
            (position.engine_id, position.symbol, position.side, position.quantity,
             position.entry_price, position.current_price, position.liquidation_price,
             position.unrealized_pnl, position.leverage, position.peak_pnl_percent,
             position.profit_target, position.stop_loss, position.tp_order_id,
             position.sl_order_id, position.entry_order_id, position.confidence,
             position.risk_usd, _iso(position.opened_at)),
        )

    def update_peak_pnl(self, engine_id: int, symbol: str, pnl_percent: float) -> float:
        """Raise the stored peak to ``pnl_percent`` if higher; returns the stored peak."""
        with self._lock:
            self._conn.execute(
                "UPDATE positions SET peak_pnl_percent = MAX(peak_pnl_percent, ?) "
                "WHERE engine_id = ? AND symbol = ?",
                (pnl_percent, engine_id, symbol),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT peak_pnl_percent FROM positions WHERE engine_id = ? AND symbol = ?",
                (engine_id, symbol),
            ).fetchone()
        return row["peak_pnl_percent"] if row else pnl_percent

    def update_position_quantity(self, engine_id: int, symbol: str, quantity: float) -> None:
        self._execute(
            "UPDATE positions SET quantity = ? WHERE engine_id = ? AND symbol = ?",
            (quantity, engine_id, symbol),
        )

    def set_conditional_orders(self, engine_id: int, symbol: str, *,
                               stop_loss: Optional[float], sl_order_id: Optional[str],
                               profit_target: Optional[float], tp_order_id: Optional[str]) -> None:
        """Record the standing stop-loss / take-profit orders of a position (None clears)."""
        self._execute(
            "UPDATE positions SET stop_loss = ?, sl_order_id = ?, profit_target = ?, tp_order_id = ? "
            "WHERE engine_id = ? AND symbol = ?",
            (stop_loss, sl_order_id, profit_target, tp_order_id, engine_id, symbol),
        )

    def delete_position(self, engine_id: int, symbol: str) -> bool:
        cur = self._execute(
            "DELETE FROM positions WHERE engine_id = ? AND symbol = ?", (engine_id, symbol)
        )
        return cur.rowcount > 0

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        return Position(
            engine_id=row["engine_id"],
            symbol=row["symbol"],
            side=row["side"],
            quantity=row["quantity"],
            entry_price=row["entry_price"],
            current_price=row["current_price"],
            leverage=row["leverage"],
            liquidation_price=row["liquidation_price"],
            unrealized_pnl=row["unrealized_pnl"],
            peak_pnl_percent=row["peak_pnl_percent"],
            opened_at=_parse_ts(row["opened_at"]),
            profit_target=row["profit_target"],
            stop_loss=row["stop_loss"],
            tp_order_id=row["tp_order_id"],
            sl_order_id=row["sl_order_id"],
            entry_order_id=row["entry_order_id"],
            confidence=row["confidence"],
            risk_usd=row["risk_usd"],
        )

    # ----------------------------------------------------------------- Trades

    def insert_trade(self, trade: Trade) -> int:
        cur = self._execute(
            """
            INSERT INTO trades (engine_id, order_id, symbol, side, type, price, quantity,
                                leverage, pnl, fee, timestamp, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (trade.engine_id, trade.order_id, trade.symbol, trade.side, trade.type,
             trade.price, trade.quantity, trade.leverage, trade.pnl, trade.fee,
             _iso(trade.timestamp), trade.status),
        )
        trade.id = cur.lastrowid
        return cur.lastrowid

    def get_recent_trades(self, engine_id: int, limit: int = 10) -> List[Trade]:
        rows = self._query(
            "SELECT * FROM trades WHERE engine_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (engine_id, limit),
        )
        return [
            Trade(
                id=r["id"], engine_id=r["engine_id"], order_id=r["order_id"], symbol=r["symbol"],
                side=r["side"], type=r["type"], price=r["price"], quantity=r["quantity"],
                leverage=r["leverage"], pnl=r["pnl"], fee=r["fee"],
                timestamp=_parse_ts(r["timestamp"]), status=r["status"],
            )
            for r in rows
        ]

    def get_realized_pnl(self, engine_id: int) -> float:
        rows = self._query(
            "SELECT COALESCE(SUM(pnl), 0) AS total FROM trades "
            "WHERE engine_id = ? AND type = 'close' AND status != 'cancelled'",
            (engine_id,),
        )
        return rows[0]["total"]

    # -------------------------------------------------------- Account history

    def insert_account_snapshot(self, snapshot: AccountSnapshot) -> None:
        self._execute(
            """
            INSERT INTO account_history (engine_id, timestamp, total_value, available_cash,
                                         unrealized_pnl, realized_pnl, return_percent, sharpe_ratio)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (snapshot.engine_id, _iso(snapshot.timestamp), snapshot.total_value,
             snapshot.available_cash, snapshot.unrealized_pnl, snapshot.realized_pnl,
             snapshot.return_percent, snapshot.sharpe_ratio),
        )

    def get_initial_balance(self, engine_id: int) -> Optional[float]:
        """total_value of the engine's first-ever snapshot"""
        rows = self._query(
            "SELECT total_value FROM account_history WHERE engine_id = ? "
            "ORDER BY timestamp ASC, id ASC LIMIT 1",
            (engine_id,),
        )
        return rows[0]["total_value"] if rows else None

    def get_peak_balance(self, engine_id: int) -> Optional[float]:
        rows = self._query(
            "SELECT MAX(total_value) AS peak FROM account_history WHERE engine_id = ?",
            (engine_id,),
        )
        return rows[0]["peak"]

    def get_return_series(self, engine_id: int, limit: int = 100) -> List[float]:
        rows = self._query(
            "SELECT return_percent FROM account_history WHERE engine_id = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ?",
            (engine_id, limit),
        )
        return [r["return_percent"] for r in reversed(rows)]

    # --------------------------------------------------------------- Decisions

    def insert_decision(self, record: DecisionRecord) -> None:
        self._execute(
            """
            INSERT INTO agent_decisions (engine_id, timestamp, iteration, market_analysis,
                                         decision, actions_taken, account_value, positions_count)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (record.engine_id, _iso(record.timestamp), record.iteration,
             json.dumps(record.market_analysis, default=str), record.decision,
             json.dumps(record.actions_taken, default=str), record.account_value,
             record.positions_count),
        )

    def get_recent_decisions(self, engine_id: int, limit: int = 3) -> List[DecisionRecord]:
        rows = self._query(
            "SELECT * FROM agent_decisions WHERE engine_id = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ?",
            (engine_id, limit),
        )
        return [
            DecisionRecord(
                engine_id=r["engine_id"], iteration=r["iteration"], decision=r["decision"],
                market_analysis=json.loads(r["market_analysis"]),
                actions_taken=json.loads(r["actions_taken"]),
                account_value=r["account_value"], positions_count=r["positions_count"],
                timestamp=_parse_ts(r["timestamp"]),
            )
            for r in rows
        ]

    # ----------------------------------------------------------------- Signals

    def insert_signal(self, engine_id: int, symbol: str, indicators: Dict[str, float],
                      funding_rate: float = 0.0) -> None:
        self._execute(
            """
            INSERT INTO trading_signals (engine_id, symbol, timestamp, price, ema_20, ema_50,
                                         macd, rsi_7, rsi_14, volume, funding_rate)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (engine_id, symbol, _iso(utcnow()), indicators.get("current_price", 0.0),
             indicators.get("ema20"), indicators.get("ema50"), indicators.get("macd"),
             indicators.get("rsi7"), indicators.get("rsi14"), indicators.get("volume"),
             funding_rate),
        )

    def count_signals(self, engine_id: int) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM trading_signals WHERE engine_id = ?", (engine_id,))
        return rows[0]["n"]


# Singleton instance
_store = None


def get_ledger_store(db_path: Optional[str] = None) -> LedgerStore:
    """Get singleton ledger store instance"""
    global _store
    if _store is None:
        _store = LedgerStore(db_path=db_path or "data/perpguard.db")
    return _store

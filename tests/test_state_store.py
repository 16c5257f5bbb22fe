"""
Tests for the SQLite ledger.
"""

import pytest

from core.exceptions import EngineNotFound
from infra.state_store import DecisionRecord, EngineRecord, LedgerStore, Trade
from tests.helpers import make_position


class TestEngines:

    def test_upsert_keeps_status(self, store):
        store.set_engine_status(1, "running")
        store.upsert_engine(EngineRecord(id=1, name="alpha-renamed", risk_params={"max_positions": 3}))

        engine = store.get_engine(1)
        assert engine.name == "alpha-renamed"
        assert engine.status == "running"
        assert engine.risk_params == {"max_positions": 3}

    def test_missing_engine(self, store):
        with pytest.raises(EngineNotFound):
            store.get_engine(99)
        with pytest.raises(EngineNotFound):
            store.set_engine_status(99, "running")

    def test_list_by_status(self, store):
        store.set_engine_status(2, "running")
        assert [e.id for e in store.list_engines(status="running")] == [2]
        assert [e.id for e in store.list_engines()] == [1, 2]

    def test_touch_records_last_run(self, store):
        assert store.get_engine(1).last_run_at is None
        store.touch_engine(1)
        assert store.get_engine(1).last_run_at is not None


class TestPositions:

    def test_one_row_per_symbol(self, store):
        store.upsert_position(make_position(symbol="BTC", quantity=1))
        store.upsert_position(make_position(symbol="BTC", quantity=3))
        assert store.count_positions(1) == 1
        assert store.get_position(1, "BTC").quantity == 3

    def test_engines_are_isolated(self, store):
        store.upsert_position(make_position(symbol="BTC", engine_id=1))
        store.upsert_position(make_position(symbol="BTC", engine_id=2, side="short"))

        assert store.get_position(1, "BTC").side == "long"
        assert store.get_position(2, "BTC").side == "short"
        store.delete_position(1, "BTC")
        assert store.get_position(2, "BTC") is not None

    def test_peak_only_rises(self, store):
        store.upsert_position(make_position(symbol="ETH", peak=5.0))

        assert store.update_peak_pnl(1, "ETH", 12.0) == 12.0
        assert store.update_peak_pnl(1, "ETH", 3.0) == 12.0
        assert store.get_position(1, "ETH").peak_pnl_percent == 12.0

    def test_upsert_same_side_keeps_higher_peak(self, store):
        store.upsert_position(make_position(symbol="ETH", peak=12.0))
        store.upsert_position(make_position(symbol="ETH", peak=0.0))
        assert store.get_position(1, "ETH").peak_pnl_percent == 12.0

    def test_upsert_flip_resets_peak(self, store):
        store.upsert_position(make_position(symbol="ETH", side="long", peak=12.0))
        store.upsert_position(make_position(symbol="ETH", side="short", peak=0.0))
        assert store.get_position(1, "ETH").peak_pnl_percent == 0.0

    def test_update_quantity(self, store):
        store.upsert_position(make_position(symbol="SOL", quantity=10))
        store.update_position_quantity(1, "SOL", 4)
        assert store.get_position(1, "SOL").quantity == 4

    def test_conditional_orders_set_and_cleared(self, store):
        store.upsert_position(make_position(symbol="BTC"))
        store.set_conditional_orders(1, "BTC", stop_loss=95.0, sl_order_id="sl-1",
                                     profit_target=110.0, tp_order_id="tp-1")
        position = store.get_position(1, "BTC")
        assert (position.sl_order_id, position.tp_order_id) == ("sl-1", "tp-1")
        assert (position.stop_loss, position.profit_target) == (95.0, 110.0)

        store.set_conditional_orders(1, "BTC", stop_loss=None, sl_order_id=None,
                                     profit_target=None, tp_order_id=None)
        cleared = store.get_position(1, "BTC")
        assert cleared.sl_order_id is None and cleared.tp_order_id is None
        assert cleared.quantity == 10


class TestTradesAndHistory:

    def test_realized_pnl_ignores_cancelled_and_opens(self, store):
        def trade(**kw):
            base = dict(engine_id=1, order_id="o", symbol="BTC", side="long", price=100.0,
                        quantity=1, leverage=10)
            base.update(kw)
            return Trade(**base)

        store.insert_trade(trade(type="open"))
        store.insert_trade(trade(type="close", pnl=5.0))
        store.insert_trade(trade(type="close", pnl=-2.0, status="pending"))
        store.insert_trade(trade(type="open", status="cancelled"))
        store.insert_trade(trade(type="close", pnl=99.0, status="cancelled"))
        store.insert_trade(trade(engine_id=2, type="close", pnl=50.0))

        assert store.get_realized_pnl(1) == pytest.approx(3.0)

    def test_recent_trades_newest_first(self, store):
        for i in range(12):
            store.insert_trade(Trade(engine_id=1, order_id=f"o{i}", symbol="BTC", side="long",
                                     type="open", price=100.0, quantity=1, leverage=5))
        trades = store.get_recent_trades(1)
        assert len(trades) == 10
        assert trades[0].order_id == "o11"

    def test_decisions_round_trip(self, store):
        store.insert_decision(DecisionRecord(engine_id=1, iteration=1, decision="HOLD",
                                             actions_taken=[{"name": "get_positions"}]))
        store.insert_decision(DecisionRecord(engine_id=1, iteration=2, decision="BUY"))

        decisions = store.get_recent_decisions(1)
        assert [d.iteration for d in decisions] == [2, 1]
        assert decisions[1].actions_taken == [{"name": "get_positions"}]

    def test_signals_counted_per_engine(self, store):
        store.insert_signal(1, "BTC", {"current_price": 100.0, "ema20": 99.0}, 0.0001)
        store.insert_signal(2, "BTC", {"current_price": 100.0})
        assert store.count_signals(1) == 1


def test_file_backed_store_persists(tmp_path):
    path = tmp_path / "ledger.db"
    first = LedgerStore(str(path))
    first.upsert_engine(EngineRecord(id=7, name="persisted"))
    first.close()

    second = LedgerStore(str(path))
    assert second.get_engine(7).name == "persisted"
    second.close()

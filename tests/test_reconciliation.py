"""
Tests for PositionReconciler.

Covers:
- Exchange view wins for size/side/prices
- Ledger-only fields survive a same-side sync
- Side flip resets tracking
- Empty exchange snapshot guard
- Leftover trigger orders cancelled when a position disappears
- Read failures leave the ledger untouched
"""

import pytest

from core.exceptions import CriticalDataUnavailable, ExchangeAuthError
from core.reconciliation import PositionReconciler, estimate_liquidation_price
from tests.helpers import FakeExchange, make_position

SYMBOLS = ["BTC", "ETH", "SOL"]


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def reconciler(exchange, store):
    return PositionReconciler(1, exchange, store, SYMBOLS)


class TestLiquidationEstimate:

    def test_long_below_entry(self):
        assert estimate_liquidation_price(100.0, "long", 10) == pytest.approx(91.0)

    def test_short_above_entry(self):
        assert estimate_liquidation_price(100.0, "short", 10) == pytest.approx(109.0)

    def test_degenerate_inputs(self):
        assert estimate_liquidation_price(0.0, "long", 10) == 0.0
        assert estimate_liquidation_price(100.0, "long", 0) == 0.0


class TestSync:

    def test_new_exchange_position_is_inserted(self, exchange, store, reconciler):
        exchange.add_position("BTC", 5, entry=100.0, mark=102.0, leverage=10)

        result = reconciler.reconcile()

        assert result.success is True
        assert result.upserted == ["BTC"]
        position = store.get_position(1, "BTC")
        assert position.side == "long"
        assert position.quantity == 5
        assert position.current_price == 102.0
        assert position.liquidation_price == pytest.approx(91.0)
        assert position.entry_order_id.startswith("synced-BTC-")

    def test_same_side_keeps_ledger_fields(self, exchange, store, reconciler):
        existing = make_position(symbol="ETH", entry=100.0, current=100.0, leverage=10, peak=12.5)
        existing.stop_loss = 95.0
        existing.profit_target = 120.0
        existing.entry_order_id = "order-7"
        store.upsert_position(existing)
        exchange.add_position("ETH", 8, entry=100.0, mark=101.0, leverage=10, liq=90.0)

        reconciler.reconcile()

        position = store.get_position(1, "ETH")
        assert position.quantity == 8
        assert position.current_price == 101.0
        assert position.liquidation_price == 90.0
        assert position.peak_pnl_percent == 12.5
        assert position.stop_loss == 95.0
        assert position.profit_target == 120.0
        assert position.entry_order_id == "order-7"
        assert position.opened_at == existing.opened_at

    def test_side_flip_resets_peak(self, exchange, store, reconciler):
        store.upsert_position(make_position(symbol="SOL", side="long", peak=20.0))
        exchange.add_position("SOL", -3, entry=105.0, mark=104.0, leverage=10)

        reconciler.reconcile()

        position = store.get_position(1, "SOL")
        assert position.side == "short"
        assert position.peak_pnl_percent == 0.0
        assert position.entry_price == 105.0

    def test_closed_on_exchange_is_removed(self, exchange, store, reconciler):
        store.upsert_position(make_position(symbol="BTC"))
        store.upsert_position(make_position(symbol="ETH"))
        exchange.add_position("BTC", 10, entry=100.0, mark=100.0)

        result = reconciler.reconcile()

        assert result.removed == ["ETH"]
        assert [p.symbol for p in store.get_positions(1)] == ["BTC"]

    def test_position_closed_by_trigger_cancels_sibling(self, exchange, store, reconciler):
        exchange.add_position("BTC", 10, entry=100.0, mark=100.0)
        store.upsert_position(make_position(symbol="BTC"))
        stop_id = exchange.place_price_trigger_order("ETH_USDT", 45.0, "down", "long")
        target_id = exchange.place_price_trigger_order("ETH_USDT", 60.0, "up", "long")
        store.upsert_position(make_position(symbol="ETH", entry=50.0, current=50.0))
        store.set_conditional_orders(1, "ETH", stop_loss=45.0, sl_order_id=stop_id,
                                     profit_target=60.0, tp_order_id=target_id)
        del exchange.trigger_orders[stop_id]  # fired on the exchange

        result = reconciler.reconcile()

        assert result.removed == ["ETH"]
        assert exchange.trigger_orders == {}
        assert exchange.cancelled_triggers == [target_id]

    def test_symbols_outside_universe_ignored(self, exchange, store, reconciler):
        exchange.add_position("DOGE", 100, entry=0.1, mark=0.1)
        exchange.add_position("BTC", 1, entry=100.0, mark=100.0)

        reconciler.reconcile()

        assert [p.symbol for p in store.get_positions(1)] == ["BTC"]

    def test_zero_mark_backfilled_from_ticker(self, exchange, store, reconciler):
        exchange.add_position("BTC", 2, entry=100.0, mark=0.0)
        exchange.prices["BTC_USDT"] = 103.0

        reconciler.reconcile()

        assert store.get_position(1, "BTC").current_price == 103.0

    def test_unpriceable_position_kept_as_is(self, exchange, store, reconciler):
        store.upsert_position(make_position(symbol="ETH", current=0.0))
        exchange.add_position("ETH", 2, entry=100.0, mark=0.0)
        exchange.prices.pop("ETH_USDT")

        result = reconciler.reconcile()

        assert result.upserted == []
        assert result.removed == []
        assert store.get_position(1, "ETH") is not None

    def test_other_engines_untouched(self, exchange, store, reconciler):
        store.upsert_position(make_position(symbol="BTC", engine_id=2))
        exchange.add_position("ETH", 1, entry=100.0, mark=100.0)

        reconciler.reconcile()

        assert store.get_position(2, "BTC") is not None


class TestEmptySnapshotGuard:

    def test_empty_read_with_ledger_rows_is_skipped(self, store, reconciler):
        store.upsert_position(make_position(symbol="BTC"))

        result = reconciler.reconcile()

        assert result.skipped_reason == "empty_exchange_snapshot"
        assert store.get_position(1, "BTC") is not None

    def test_confirmed_flat_clears_ledger(self, store, reconciler):
        store.upsert_position(make_position(symbol="BTC"))

        result = reconciler.reconcile(confirmed_flat=True)

        assert result.skipped_reason is None
        assert result.removed == ["BTC"]
        assert store.get_positions(1) == []

    def test_empty_everywhere_is_a_noop(self, reconciler):
        result = reconciler.reconcile()
        assert result.success is True
        assert result.skipped_reason is None


class TestReadFailures:

    def test_transient_failure_leaves_ledger(self, exchange, store, reconciler):
        store.upsert_position(make_position(symbol="BTC"))
        exchange.fail_positions = CriticalDataUnavailable("positions")

        result = reconciler.reconcile()

        assert result.success is False
        assert store.get_position(1, "BTC") is not None

    def test_auth_failure_propagates(self, exchange, reconciler):
        exchange.fail_positions = ExchangeAuthError("bad key", 401)
        with pytest.raises(ExchangeAuthError):
            reconciler.reconcile()

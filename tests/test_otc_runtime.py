import threading
import time
import unittest
from unittest import mock

import config
import supabase_store
from activity_recorder import (
    EVENT_CONFIG_UPDATED,
    EVENT_MANUAL_OVERRIDE,
    EVENT_TRADE_REMOVED,
    EVENT_TRADE_TRACKED,
    ActivityRecorder,
)
from config import InstrumentConfig
from exposure_ledger import Wager
from otc_runtime import OTCRuntime


SYMBOL = "EUR/USD-OTC"
NOW = 120.0


def _instruments(**overrides):
    base = {"symbol": SYMBOL, "base_symbol": "EUR/USD"}
    base.update(overrides)
    return {SYMBOL: InstrumentConfig(**base)}


def _wager_payload(wager_id="w1", direction="UP", amount=50.0, expires_at=NOW + 60.0):
    return {
        "tradeId": wager_id,
        "userId": "u1",
        "symbol": SYMBOL,
        "direction": direction,
        "amount": amount,
        "entryPrice": 1.1,
        "expiresAt": expires_at,
    }


class _RuntimeTestCase(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch.object(config, "SUPABASE_URL", "")
        patcher.start()
        self.addCleanup(patcher.stop)
        self.recorder = ActivityRecorder(sink=None)
        self.settled = []
        self.rt = OTCRuntime(
            _instruments(risk_enabled=False),
            seed=7,
            recorder=self.recorder,
            on_settled=lambda w, r: self.settled.append((w.wager_id, r)),
        )


class LifecycleTests(_RuntimeTestCase):
    def test_initialize_starts_prices(self):
        self.rt.initialize(now=NOW)
        self.assertEqual(self.rt.mode, "RUNNING")
        self.assertEqual(self.rt.prices.symbols(), [SYMBOL])
        self.assertEqual(self.rt.prices.current_price(SYMBOL), config.DEFAULT_PRICES["EUR/USD"])

    def test_disabled_instrument_is_not_started(self):
        rt = OTCRuntime(_instruments(is_enabled=False), seed=7, recorder=self.recorder)
        rt.initialize(now=NOW)
        self.assertEqual(rt.prices.symbols(), [])

    def test_shutdown_halts(self):
        self.rt.initialize(now=NOW)
        self.rt.shutdown("test")
        self.assertFalse(self.rt.running)
        self.assertEqual(self.rt.mode, "HALTED")


class WagerTests(_RuntimeTestCase):
    def setUp(self):
        super().setUp()
        self.rt.initialize(now=NOW)

    def test_place_and_settle(self):
        wager = self.rt.place_wager(_wager_payload(), now=NOW)
        self.assertEqual(wager.wager_id, "w1")
        self.assertEqual(self.rt.ledger.snapshot(SYMBOL).total_up_amount, 50.0)
        self.assertEqual(self.recorder.counts()[EVENT_TRADE_TRACKED], 1)

        result = self.rt.settle("w1", market_price=1.1004, now=NOW + 60.0)
        self.assertIsNotNone(result)
        self.assertFalse(result.influenced)
        self.assertEqual(result.exit_price, 1.1004)
        self.assertEqual(result.outcome, "WIN")
        self.assertIsNone(self.rt.ledger.get("w1"))
        self.assertEqual(self.rt.ledger.snapshot(SYMBOL).wager_count, 0)
        self.assertEqual(self.settled, [("w1", result)])

        removed = self.recorder.recent(event_type=EVENT_TRADE_REMOVED)[0]
        self.assertEqual(removed["details"]["reason"], "SETTLED")
        self.assertIsNone(self.rt.settle("w1", market_price=1.1004, now=NOW + 61.0))

    def test_place_wager_validation(self):
        with self.assertRaises(ValueError):
            self.rt.place_wager(dict(_wager_payload(), symbol="XAU/USD-OTC"), now=NOW)
        with self.assertRaises(ValueError):
            self.rt.place_wager(_wager_payload(amount=5000.0), now=NOW)
        with self.assertRaises(ValueError):
            self.rt.place_wager(_wager_payload(amount=0.5), now=NOW)
        with self.assertRaises(ValueError):
            self.rt.place_wager(_wager_payload(expires_at=NOW - 1.0), now=NOW)
        with self.assertRaises(ValueError):
            self.rt.place_wager(dict(_wager_payload(), direction="SIDEWAYS"), now=NOW)

        self.rt.place_wager(_wager_payload(), now=NOW)
        with self.assertRaises(ValueError):
            self.rt.place_wager(_wager_payload(), now=NOW)
        self.assertEqual(len(self.rt.ledger.open_wagers()), 1)

    def test_forced_loss_end_to_end(self):
        self.rt.place_wager(_wager_payload(), now=NOW)
        self.rt.overrides.force_outcome("w1", "LOSE", admin_id="ops")
        result = self.rt.settle("w1", market_price=1.1050, now=NOW + 60.0)
        self.assertTrue(result.influenced)
        self.assertEqual(result.outcome, "LOSE")
        self.assertEqual(result.exit_price, 1.0997)
        self.assertEqual(result.original_price, 1.1050)

    def test_concurrent_settle_consumes_overrides_once(self):
        self.rt.place_wager(_wager_payload(), now=NOW)
        self.rt.overrides.set_user_target("u1", SYMBOL, force_next_win=3)
        original = self.rt.resolver.resolve
        nested = []

        def resolve_with_racing_settle(wager, price, now=None):
            nested.append(self.rt.settle("w1", market_price=price, now=now))
            return original(wager, price, now=now)

        with mock.patch.object(self.rt.resolver, "resolve", side_effect=resolve_with_racing_settle):
            result = self.rt.settle("w1", market_price=1.0990, now=NOW + 60.0)

        self.assertEqual(nested, [None])
        self.assertEqual(result.reason, "USER_FORCE_WIN")
        self.assertEqual(self.rt.overrides.get_user_target("u1", SYMBOL).force_next_win, 2)
        self.assertEqual(self.rt.resolver.stats()[SYMBOL]["total"], 1)
        self.assertEqual(self.settled, [("w1", result)])
        self.assertEqual(self.recorder.counts()[EVENT_TRADE_REMOVED], 1)

    def test_consumed_override_is_persisted(self):
        self.rt.place_wager(_wager_payload(), now=NOW)
        self.rt.overrides.set_user_target("u1", SYMBOL, force_next_win=1)
        self.rt.overrides.force_outcome("w1", "LOSE")
        with mock.patch.object(supabase_store, "save_manual_control") as save:
            result = self.rt.settle("w1", market_price=1.1004, now=NOW + 60.0)
        self.assertEqual(result.reason, "MANUAL_FORCE_LOSE")
        save.assert_called()
        snapshot = save.call_args.args[0]
        self.assertEqual(snapshot["forced_outcomes"], {})
        self.assertEqual([t["force_next_win"] for t in snapshot["user_targets"]], [1])

        self.rt.place_wager(_wager_payload("w2"), now=NOW)
        with mock.patch.object(supabase_store, "save_manual_control") as save:
            self.rt.settle("w2", market_price=1.0990, now=NOW + 60.0)
        self.assertEqual(save.call_args.args[0]["user_targets"], [])

    def test_timer_settles_at_expiry(self):
        done = threading.Event()
        rt = OTCRuntime(
            _instruments(),
            seed=7,
            recorder=self.recorder,
            on_settled=lambda w, r: done.set(),
        )
        rt.initialize()
        rt.place_wager(_wager_payload(expires_at=time.time() + 0.05))
        self.assertTrue(done.wait(5.0))
        self.assertEqual(rt.pending_settlements(), 0)
        self.assertEqual(rt.ledger.open_wagers(), [])

    def test_cleanup_drops_stale_wagers(self):
        stale = Wager("old", "u1", SYMBOL, "DOWN", 10.0, 1.1, NOW)
        self.assertTrue(self.rt.ledger.track(stale, now=NOW - 30.0))
        self.assertEqual(self.rt.cleanup(now=NOW + 1.0), 0)
        self.assertEqual(self.rt.cleanup(now=NOW + config.CLEANUP_INTERVAL_SEC + 1.0), 1)
        removed = self.recorder.recent(event_type=EVENT_TRADE_REMOVED)[0]
        self.assertEqual(removed["details"]["reason"], "EXPIRED")


class PriceTests(_RuntimeTestCase):
    def test_tick_rolls_candle_on_bucket_change(self):
        resolution = config.CANDLE_RESOLUTION_SEC
        start = 10 * resolution
        self.rt.initialize(now=start)
        with mock.patch.object(supabase_store, "queue_candles") as queue:
            ticks = self.rt.tick(now=start + 1.0)
            self.assertEqual(len(ticks), 1)
            self.assertEqual(ticks[0].symbol, SYMBOL)
            self.assertLess(ticks[0].bid, ticks[0].ask)
            queue.assert_not_called()

            self.rt.tick(now=start + resolution + 1.0)
        queue.assert_called_once()
        candles, symbol, res = queue.call_args.args
        self.assertEqual(symbol, SYMBOL)
        self.assertEqual(res, resolution)
        self.assertEqual(candles[0].timestamp, start)

    def test_price_override_pins_ticks(self):
        self.rt.initialize(now=NOW)
        self.rt.overrides.set_price_override(SYMBOL, 1.2345, duration_sec=60)
        tick = self.rt.tick()[0]
        self.assertTrue(tick.pinned)
        self.assertEqual(tick.price, 1.2345)


class ConfigAndOverrideTests(_RuntimeTestCase):
    def test_update_config_from_partial_dict(self):
        self.rt.initialize(now=NOW)
        cfg = self.rt.update_config({"symbol": SYMBOL, "payoutPercent": 90}, admin_id="ops")
        self.assertEqual(cfg.payout_percent, 90.0)
        self.assertEqual(cfg.base_symbol, "EUR/USD")
        self.assertIs(self.rt.get_config(SYMBOL), cfg)
        event = self.recorder.recent(event_type=EVENT_CONFIG_UPDATED)[0]
        self.assertEqual(event["details"]["admin_id"], "ops")

    def test_override_changes_are_recorded(self):
        self.rt.overrides.set_direction_bias(SYMBOL, 25.0)
        self.rt.overrides.clear_direction_bias(SYMBOL)
        self.assertEqual(self.recorder.counts()[EVENT_MANUAL_OVERRIDE], 2)


class RehydrateTests(_RuntimeTestCase):
    def test_rehydrate_restores_open_wagers_and_peaks(self):
        rows = [
            Wager("a", "u1", SYMBOL, "UP", 100.0, 1.1, NOW + 300.0).to_row(),
            Wager("b", "u2", SYMBOL, "DOWN", 50.0, 1.1, NOW + 300.0).to_row(),
            Wager("c", "u3", SYMBOL, "DOWN", 50.0, 1.1, NOW - 1.0).to_row(),
        ]
        exposures = [{"symbol": SYMBOL, "peak_exposure_ratio": 0.9, "peak_exposure_time": 50.0}]
        with mock.patch.object(supabase_store, "load_open_trades", return_value=rows), \
                mock.patch.object(supabase_store, "load_exposures", return_value=exposures):
            restored = self.rt.rehydrate(now=NOW)
        self.assertEqual(restored, 2)
        snapshot = self.rt.ledger.snapshot(SYMBOL)
        self.assertEqual(snapshot.total_up_amount, 100.0)
        self.assertEqual(snapshot.total_down_amount, 50.0)
        self.assertEqual(snapshot.peak_exposure_ratio, 0.9)


if __name__ == "__main__":
    unittest.main()

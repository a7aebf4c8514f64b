import unittest
from unittest import mock

import config
import supabase_store
from price_process import Candle


class _StoreTestCase(unittest.TestCase):
    def setUp(self):
        supabase_store._write_queue.clear()
        patches = [
            mock.patch.object(config, "SUPABASE_URL", "https://example.supabase.co"),
            mock.patch.object(config, "SUPABASE_KEY", "test-key"),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.addCleanup(supabase_store._write_queue.clear)


class DisabledStoreTests(unittest.TestCase):
    def test_everything_is_a_noop_without_credentials(self):
        supabase_store._write_queue.clear()
        with mock.patch.object(config, "SUPABASE_URL", ""):
            supabase_store.save_activity({"event_type": "TRADE_TRACKED"})
            supabase_store.save_exposure({"symbol": "EUR/USD-OTC"})
            self.assertEqual(len(supabase_store._write_queue), 0)
            self.assertIsNone(supabase_store._request("GET", "/rest/v1/otc_activity_log"))
            self.assertEqual(supabase_store.load_open_trades(), [])
            self.assertEqual(supabase_store.load_manual_control(), {})
            self.assertEqual(supabase_store.insert_candles([], "EUR/USD-OTC", 60), 0)


class WriteQueueTests(_StoreTestCase):
    def test_exposure_upserts_keep_latest_row_per_symbol(self):
        supabase_store.save_exposure({"symbol": "A", "net_exposure": 1})
        supabase_store.save_exposure({"symbol": "B", "net_exposure": 5})
        supabase_store.save_exposure({"symbol": "A", "net_exposure": 2})
        with mock.patch.object(supabase_store, "_request", return_value={}) as req:
            supabase_store._flush_queue()
        req.assert_called_once()
        args, kwargs = req.call_args
        self.assertEqual(args[:2], ("POST", "/rest/v1/otc_risk_exposure"))
        self.assertEqual(kwargs["body"], [{"symbol": "A", "net_exposure": 2}, {"symbol": "B", "net_exposure": 5}])
        self.assertEqual(kwargs["params"], {"on_conflict": "symbol"})
        self.assertTrue(kwargs["upsert"])

    def test_delete_stays_ordered_after_upsert(self):
        supabase_store.save_trade_exposure({"trade_id": "t1", "amount": 10})
        supabase_store.delete_trade_exposure("t1")
        supabase_store.save_activity({"event_type": "TRADE_REMOVED"})
        with mock.patch.object(supabase_store, "_request", return_value={}) as req:
            supabase_store._flush_queue()
        calls = [(c.args[0], c.args[1]) for c in req.call_args_list]
        self.assertEqual(calls, [
            ("POST", "/rest/v1/otc_trade_exposure"),
            ("DELETE", "/rest/v1/otc_trade_exposure"),
            ("POST", "/rest/v1/otc_activity_log"),
        ])
        self.assertEqual(req.call_args_list[1].kwargs["params"], {"trade_id": "in.(t1)"})

    def test_queue_is_bounded(self):
        for i in range(supabase_store.MAX_QUEUE_SIZE + 25):
            supabase_store.save_activity({"event_type": "TRADE_TRACKED", "n": i})
        self.assertEqual(len(supabase_store._write_queue), supabase_store.MAX_QUEUE_SIZE)
        self.assertEqual(supabase_store._write_queue[0][1]["n"], 25)

    def test_queue_candles_dedupes_on_flush(self):
        candle = Candle(timestamp=120.0, open=1.1, high=1.2, low=1.0, close=1.15, volume=80.0)
        supabase_store.queue_candles([candle, candle], "EUR/USD-OTC", 60)
        with mock.patch.object(supabase_store, "_request", return_value={}) as req:
            supabase_store._flush_queue()
        body = req.call_args.kwargs["body"]
        self.assertEqual(len(body), 1)
        self.assertEqual(body[0]["time"], 120.0)
        self.assertEqual(body[0]["resolution"], 60)


class CandleInsertTests(_StoreTestCase):
    def test_insert_batches_and_counts_inserted_rows(self):
        candles = [
            Candle(timestamp=float(i * 60), open=1.1, high=1.2, low=1.0, close=1.1, volume=1.0)
            for i in range(150)
        ]
        responses = [[{}] * 100, [{}] * 30]
        with mock.patch.object(supabase_store, "_request", side_effect=responses) as req:
            inserted = supabase_store.insert_candles(candles, "EUR/USD-OTC", 60)
        self.assertEqual(inserted, 130)
        self.assertEqual(req.call_count, 2)
        first = req.call_args_list[0]
        self.assertEqual(len(first.kwargs["body"]), 100)
        self.assertIn("resolution=ignore-duplicates", first.kwargs["prefer"])

    def test_failed_batch_is_skipped(self):
        candles = [
            Candle(timestamp=float(i * 60), open=1.1, high=1.2, low=1.0, close=1.1, volume=1.0)
            for i in range(120)
        ]
        with mock.patch.object(supabase_store, "_request", side_effect=[None, [{}] * 20]):
            with self.assertLogs("supabase_store", level="WARNING"):
                inserted = supabase_store.insert_candles(candles, "EUR/USD-OTC", 60)
        self.assertEqual(inserted, 20)


class ReadTests(_StoreTestCase):
    def test_load_open_trades_filters_on_expiry(self):
        rows = [{"trade_id": "t1", "expires_at": 200.0}]
        with mock.patch.object(supabase_store, "_request", return_value=rows) as req:
            self.assertEqual(supabase_store.load_open_trades(now=100.0), rows)
        self.assertEqual(req.call_args.kwargs["params"]["expires_at"], "gt.100.0")

    def test_load_latest_price(self):
        with mock.patch.object(supabase_store, "_request", return_value=[{"close": "1.2345"}]):
            self.assertEqual(supabase_store.load_latest_price("EUR/USD-OTC"), 1.2345)
        with mock.patch.object(supabase_store, "_request", return_value=None):
            self.assertIsNone(supabase_store.load_latest_price("EUR/USD-OTC"))

    def test_load_manual_control(self):
        with mock.patch.object(supabase_store, "_request", return_value=[{"data": {"controls": []}}]):
            self.assertEqual(supabase_store.load_manual_control(), {"controls": []})


if __name__ == "__main__":
    unittest.main()

import unittest
from unittest import mock

import activity_recorder as ar


class ActivityRecorderTests(unittest.TestCase):
    def test_record_keeps_row_and_calls_sink(self):
        sink = mock.Mock()
        recorder = ar.ActivityRecorder(sink=sink)
        row = recorder.record(ar.EVENT_TRADE_TRACKED, symbol="EUR/USD-OTC", wager_id="w1",
                              user_id="u1", details={"amount": 10.0})
        sink.assert_called_once_with(row)
        self.assertEqual(row["event_type"], ar.EVENT_TRADE_TRACKED)
        self.assertEqual(row["trade_id"], "w1")
        self.assertEqual(row["details"], {"amount": 10.0})

    def test_audit_fields_are_top_level(self):
        recorder = ar.ActivityRecorder(sink=None)
        row = recorder.record(ar.EVENT_INTERVENTION_APPLIED, symbol="EUR/USD-OTC", wager_id="w1",
                              exposure_ratio=0.8, probability=0.25,
                              prices={"entry": 1.1, "exit": 1.0997})
        self.assertEqual(row["exposure_ratio"], 0.8)
        self.assertEqual(row["probability"], 0.25)
        self.assertEqual(row["prices"], {"entry": 1.1, "exit": 1.0997})
        self.assertIs(row["success"], True)

        failed = recorder.record(ar.EVENT_SYSTEM_ERROR, success=False)
        self.assertIs(failed["success"], False)
        self.assertIsNone(failed["prices"])
        self.assertIsNone(failed["exposure_ratio"])

    def test_failing_sink_is_swallowed(self):
        recorder = ar.ActivityRecorder(sink=mock.Mock(side_effect=RuntimeError("db down")))
        with self.assertLogs("activity_recorder", level="WARNING"):
            row = recorder.record(ar.EVENT_SYSTEM_ERROR, details={"error": "x"})
        self.assertEqual(recorder.recent(1), [row])

    def test_unknown_event_type(self):
        with self.assertRaises(ValueError):
            ar.ActivityRecorder(sink=None).record("SOMETHING_ELSE")

    def test_recent_filters_newest_first(self):
        recorder = ar.ActivityRecorder(sink=None, buffer_size=10)
        for i in range(15):
            recorder.record(ar.EVENT_TRADE_TRACKED if i % 2 else ar.EVENT_TRADE_REMOVED,
                            symbol="A" if i < 12 else "B", wager_id=str(i))
        rows = recorder.recent(50)
        self.assertEqual(len(rows), 10)
        self.assertEqual(rows[0]["trade_id"], "14")
        tracked = recorder.recent(50, event_type=ar.EVENT_TRADE_TRACKED, symbol="A")
        self.assertEqual([r["trade_id"] for r in tracked], ["11", "9", "7", "5"])
        self.assertEqual(recorder.counts(), {ar.EVENT_TRADE_REMOVED: 8, ar.EVENT_TRADE_TRACKED: 7})


if __name__ == "__main__":
    unittest.main()

import time
import unittest

import numpy as np

import manual_control as mc
from exposure_ledger import Wager


SYMBOL = "EUR/USD-OTC"


def _wager(wager_id="w1", user_id="u1", symbol=SYMBOL):
    return Wager(wager_id, user_id, symbol, "UP", 10.0, 1.1, 10_000.0)


class ForcedOutcomeTests(unittest.TestCase):
    def test_forced_outcome_is_one_shot(self):
        layer = mc.ManualOverrideLayer()
        layer.force_outcome("w1", "lose", admin_id="ops")
        self.assertEqual(layer.peek_forced_outcome("w1"), mc.LOSE)

        rng = np.random.default_rng(0)
        first = mc.forced_outcome_strategy(layer, _wager(), rng)
        self.assertEqual(first, mc.OverrideOutcome(mc.LOSE, "MANUAL_FORCE_LOSE", "forced_outcome"))
        self.assertIsNone(mc.forced_outcome_strategy(layer, _wager(), rng))

    def test_invalid_outcome_rejected(self):
        layer = mc.ManualOverrideLayer()
        with self.assertRaises(ValueError):
            layer.force_outcome("w1", "DRAW")
        self.assertFalse(layer.clear_forced_outcome("w1"))


class UserTargetTests(unittest.TestCase):
    def test_counters_win_before_lose_then_removed(self):
        layer = mc.ManualOverrideLayer()
        layer.set_user_target("u1", SYMBOL, force_next_win=2, force_next_lose=1)
        outcomes = [layer.consume_user_target("u1", SYMBOL) for _ in range(4)]
        self.assertEqual([o.outcome if o else None for o in outcomes], [mc.WIN, mc.WIN, mc.LOSE, None])
        self.assertEqual(outcomes[2].reason, "USER_FORCE_LOSE")
        self.assertEqual(layer.user_targets(), [])

    def test_symbol_target_beats_all_target(self):
        layer = mc.ManualOverrideLayer()
        layer.set_user_target("u1", None, force_next_lose=5)
        layer.set_user_target("u1", SYMBOL, force_next_win=1)
        self.assertEqual(layer.consume_user_target("u1", SYMBOL).outcome, mc.WIN)
        # Symbol target exhausted, ALL target applies now.
        self.assertEqual(layer.consume_user_target("u1", SYMBOL).outcome, mc.LOSE)
        self.assertEqual(layer.consume_user_target("u1", "GBP/USD-OTC").outcome, mc.LOSE)
        self.assertIsNone(layer.consume_user_target("u2", SYMBOL))

    def test_target_win_rate_draw(self):
        layer = mc.ManualOverrideLayer(rng=np.random.default_rng(1))
        layer.set_user_target("always", SYMBOL, target_win_rate=100.0)
        layer.set_user_target("never", SYMBOL, target_win_rate=0.0)
        for _ in range(50):
            self.assertEqual(layer.consume_user_target("always", SYMBOL).outcome, mc.WIN)
            self.assertEqual(layer.consume_user_target("never", SYMBOL).outcome, mc.LOSE)
        self.assertEqual(len(layer.user_targets()), 2)

    def test_target_win_rate_frequency(self):
        layer = mc.ManualOverrideLayer(rng=np.random.default_rng(2))
        layer.set_user_target("u1", SYMBOL, target_win_rate=30.0)
        wins = sum(layer.consume_user_target("u1", SYMBOL).outcome == mc.WIN for _ in range(4000))
        self.assertAlmostEqual(wins / 4000, 0.30, delta=0.03)

    def test_strategy_order(self):
        layer = mc.ManualOverrideLayer()
        layer.force_outcome("w1", "WIN")
        layer.set_user_target("u1", SYMBOL, force_next_lose=1)
        rng = np.random.default_rng(0)
        results = []
        for _ in range(3):
            for strategy in mc.SETTLEMENT_STRATEGIES:
                outcome = strategy(layer, _wager(), rng)
                if outcome is not None:
                    results.append(outcome.reason)
                    break
            else:
                results.append(None)
        self.assertEqual(results, ["MANUAL_FORCE_WIN", "USER_FORCE_LOSE", None])

    def test_negative_counters_rejected(self):
        with self.assertRaises(ValueError):
            mc.ManualOverrideLayer().set_user_target("u1", SYMBOL, force_next_win=-1)


class InstrumentControlTests(unittest.TestCase):
    def test_direction_bias_clamped_and_expires(self):
        layer = mc.ManualOverrideLayer()
        layer.set_direction_bias(SYMBOL, 150.0, strength=2.0, duration_sec=10)
        self.assertEqual(layer.direction_bias(SYMBOL), (100.0, 1.0))
        self.assertEqual(layer.direction_bias(SYMBOL, now=time.time() + 11), (0.0, 0.0))
        self.assertEqual(layer.controls(), {})

    def test_bias_without_expiry_persists(self):
        layer = mc.ManualOverrideLayer()
        layer.set_direction_bias(SYMBOL, -40.0, strength=0.5)
        self.assertEqual(layer.direction_bias(SYMBOL, now=time.time() + 10_000), (-40.0, 0.5))
        layer.clear_direction_bias(SYMBOL)
        self.assertEqual(layer.direction_bias(SYMBOL), (0.0, 0.0))

    def test_volatility_multiplier_capped(self):
        layer = mc.ManualOverrideLayer()
        self.assertEqual(layer.volatility_multiplier(SYMBOL), 1.0)
        layer.set_volatility_multiplier(SYMBOL, 5.0, duration_sec=30)
        self.assertEqual(layer.volatility_multiplier(SYMBOL), mc.MAX_VOLATILITY_MULTIPLIER)
        self.assertEqual(layer.volatility_multiplier(SYMBOL, now=time.time() + 31), 1.0)

    def test_price_override_needs_expiry(self):
        layer = mc.ManualOverrideLayer()
        with self.assertRaises(ValueError):
            layer.set_price_override(SYMBOL, 1.2, duration_sec=0)
        with self.assertRaises(ValueError):
            layer.set_price_override(SYMBOL, -1.0, duration_sec=10)
        layer.set_price_override(SYMBOL, 1.2, duration_sec=10)
        self.assertEqual(layer.price_override(SYMBOL), 1.2)
        self.assertIsNone(layer.price_override(SYMBOL, now=time.time() + 11))
        self.assertIsNone(layer.price_override("GBP/USD-OTC"))


class AuditAndPersistenceTests(unittest.TestCase):
    def test_admin_actions_are_audited(self):
        seen = []
        layer = mc.ManualOverrideLayer(on_change=seen.append)
        layer.set_direction_bias(SYMBOL, 20.0)
        layer.set_volatility_multiplier(SYMBOL, 1.5)
        layer.set_price_override(SYMBOL, 1.1, duration_sec=5)
        layer.force_outcome("w1", "WIN", admin_id="ops")
        layer.set_user_target("u1", SYMBOL, target_win_rate=40.0)

        kinds = [entry["action_type"] for entry in seen]
        self.assertEqual(kinds, [
            mc.ACTION_PRICE_BIAS,
            mc.ACTION_VOLATILITY,
            mc.ACTION_PRICE_OVERRIDE,
            mc.ACTION_TRADE_FORCE,
            mc.ACTION_USER_TARGET,
        ])
        log = layer.audit_log(limit=2)
        self.assertEqual(log[0]["action_type"], mc.ACTION_USER_TARGET)
        self.assertEqual(log[1]["admin_id"], "ops")

    def test_consumption_notifies_persistence_hook(self):
        consumed = []
        layer = mc.ManualOverrideLayer(rng=np.random.default_rng(2), on_consume=lambda: consumed.append(1))
        self.assertIsNone(layer.take_forced_outcome("w1"))
        self.assertIsNone(layer.consume_user_target("u1", SYMBOL))
        self.assertEqual(consumed, [])

        layer.force_outcome("w1", "WIN")
        self.assertEqual(layer.take_forced_outcome("w1"), mc.WIN)
        self.assertEqual(len(consumed), 1)

        layer.set_user_target("u1", SYMBOL, force_next_lose=1)
        self.assertEqual(layer.consume_user_target("u1", SYMBOL).outcome, mc.LOSE)
        self.assertEqual(len(consumed), 2)

        layer.set_user_target("u2", SYMBOL, target_win_rate=50.0)
        self.assertIsNotNone(layer.consume_user_target("u2", SYMBOL))
        self.assertEqual(len(consumed), 2)

    def test_snapshot_restore_roundtrip(self):
        layer = mc.ManualOverrideLayer()
        layer.force_outcome("w1", "WIN")
        layer.set_user_target("u1", SYMBOL, force_next_lose=2)
        layer.set_direction_bias(SYMBOL, 30.0, strength=0.5)
        layer.set_price_override(SYMBOL, 1.15, duration_sec=60)
        payload = layer.snapshot_state()

        restored = mc.ManualOverrideLayer()
        restored.restore_state(payload)
        self.assertEqual(restored.peek_forced_outcome("w1"), mc.WIN)
        self.assertEqual(restored.get_user_target("u1", SYMBOL).force_next_lose, 2)
        self.assertEqual(restored.direction_bias(SYMBOL), (30.0, 0.5))
        self.assertEqual(restored.price_override(SYMBOL), 1.15)

        later = mc.ManualOverrideLayer()
        later.restore_state(payload, now=time.time() + 120)
        self.assertIsNone(later.price_override(SYMBOL))
        self.assertEqual(later.direction_bias(SYMBOL), (30.0, 0.5))


if __name__ == "__main__":
    unittest.main()

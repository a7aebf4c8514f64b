#!/usr/bin/env python3
"""
otc_runtime.py -- Long-lived OTC engine process.

One OTCRuntime owns every service (price generator, exposure ledger,
override layer, settlement resolver, activity recorder).  The main loop
ticks prices and rolls candles; each placed wager gets a one-shot
threading.Timer that settles it at expiry.  Timers are never cancelled:
only the override layer can change an outcome.

Startup order: writer thread -> manual controls -> ledger rehydrate ->
price state -> settlement timers for restored wagers.
"""

from __future__ import annotations

from collections import deque
import logging
import math
import signal
import threading
import time
from typing import Any, Callable

import config
import supabase_store
from activity_recorder import (
    EVENT_CONFIG_UPDATED,
    EVENT_EXPOSURE_WARNING,
    EVENT_MANUAL_OVERRIDE,
    EVENT_TRADE_REMOVED,
    EVENT_TRADE_TRACKED,
    ActivityRecorder,
)
from config import InstrumentConfig
from exposure_ledger import ExposureLedger, SymbolExposure, Wager
from history_backfill import HistoryBackfillGenerator
from intervention_policy import CooldownTracker
from manual_control import ManualOverrideLayer
from price_process import PriceGenerator, PriceTick, symbol_rng
from settlement import SettlementResolver, SettlementResult


logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def _now() -> float:
    return time.time()


class OTCRuntime:
    def __init__(
        self,
        instruments: dict[str, InstrumentConfig] | None = None,
        *,
        seed: int = config.RNG_SEED,
        recorder: ActivityRecorder | None = None,
        on_settled: Callable[[Wager, SettlementResult], None] | None = None,
    ) -> None:
        self.started_at = _now()
        self.running = True
        self.mode = "INIT"  # INIT | RUNNING | HALTED

        self._configs: dict[str, InstrumentConfig] = dict(
            instruments if instruments is not None else config.INSTRUMENTS
        )
        self.seed = int(seed or 0)
        self.on_settled = on_settled

        self.recorder = recorder or ActivityRecorder()
        self.overrides = ManualOverrideLayer(
            rng=symbol_rng(self.seed, "manual-control"),
            on_change=self._on_override_change,
            on_consume=self._persist_overrides,
        )
        self.ledger = ExposureLedger(
            payout_lookup=self._payout_percent,
            on_warning=self._on_exposure_warning,
            on_expired=self._on_wager_expired,
        )
        self.cooldown = CooldownTracker()
        self.resolver = SettlementResolver(
            self.ledger,
            self.get_config,
            overrides=self.overrides,
            cooldown=self.cooldown,
            recorder=self.recorder,
            seed=self.seed,
        )
        self.prices = PriceGenerator(self.overrides, seed=self.seed)
        self.backfill = HistoryBackfillGenerator(seed=self.seed)

        self._timers: dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()
        self._settling: set[str] = set()
        self._candle_bucket: dict[str, int] = {}
        self.recent_settlements: deque = deque(maxlen=200)
        self.last_cleanup = 0.0

    # ------------------ Config ------------------

    def get_config(self, symbol: str) -> InstrumentConfig | None:
        return self._configs.get(symbol)

    def instruments(self) -> list[InstrumentConfig]:
        return list(self._configs.values())

    def _payout_percent(self, symbol: str) -> float:
        cfg = self._configs.get(symbol)
        return cfg.payout_percent if cfg is not None else 85.0

    def update_config(self, update: InstrumentConfig | dict[str, Any], admin_id: str = "system") -> InstrumentConfig:
        """Swap in a new config snapshot; settlements in flight keep the old one."""
        if isinstance(update, InstrumentConfig):
            cfg = update
        else:
            current = self._configs.get(str(update.get("symbol") or ""))
            merged = dict(current.to_dict()) if current is not None else {}
            merged.update(update)
            cfg = InstrumentConfig.from_dict(merged)
        self._configs[cfg.symbol] = cfg
        if self.prices.get_state(cfg.symbol) is not None:
            self.prices.update_config(cfg)
        elif self.mode == "RUNNING" and cfg.is_enabled:
            self._init_symbol(cfg, _now())
        self.recorder.record(EVENT_CONFIG_UPDATED, symbol=cfg.symbol, details={
            "admin_id": admin_id, "config": cfg.to_dict(),
        })
        logger.info("Config updated for %s by %s", cfg.symbol, admin_id)
        return cfg

    # ------------------ Lifecycle ------------------

    def initialize(self, now: float | None = None) -> None:
        ts = float(now if now is not None else _now())
        logger.info("============================================================")
        logger.info("  OTC PRICE & SETTLEMENT ENGINE")
        logger.info("============================================================")

        supabase_store.start_writer_thread()

        controls = supabase_store.load_manual_control()
        if controls:
            self.overrides.restore_state(controls, ts)
            logger.info("Restored manual controls")

        restored = self.rehydrate(ts)

        for cfg in self._configs.values():
            if cfg.is_enabled:
                self._init_symbol(cfg, ts)

        for wager in self.ledger.open_wagers():
            self._schedule(wager, ts)

        self.mode = "RUNNING"
        self.last_cleanup = ts
        logger.info(
            "Engine running: %d instruments, %d open wagers restored",
            len(self.prices.symbols()), restored,
        )

    def rehydrate(self, now: float | None = None) -> int:
        """Rebuild the exposure ledger from the store, dropping expired wagers."""
        ts = float(now if now is not None else _now())
        peaks = {}
        for row in supabase_store.load_exposures():
            peaks[row.get("symbol")] = [row.get("peak_exposure_ratio"), row.get("peak_exposure_time")]
        payload = {
            "wagers": supabase_store.load_open_trades(ts),
            "peaks": peaks,
        }
        restored = self.ledger.restore_state(payload, ts)
        for symbol in self.ledger.symbols():
            supabase_store.save_exposure(self.ledger.snapshot(symbol).to_row())
        return restored

    def _initial_price(self, cfg: InstrumentConfig) -> float:
        latest = supabase_store.load_latest_price(cfg.symbol)
        if latest is not None and latest > 0:
            return latest
        return float(config.DEFAULT_PRICES.get(cfg.base_symbol or cfg.symbol, 1.0))

    def _init_symbol(self, cfg: InstrumentConfig, now: float) -> None:
        if self.prices.initialize_symbol(cfg, self._initial_price(cfg), now=now):
            self._candle_bucket[cfg.symbol] = self._bucket(now)

    def backfill_history(self, symbol: str, count: int | None = None, resolution: int | None = None) -> int:
        """Fill persisted candle history backwards from the oldest stored candle."""
        cfg = self._configs.get(symbol)
        if cfg is None:
            raise ValueError(f"unknown instrument {symbol!r}")
        return self.backfill.backfill(
            cfg,
            int(count or config.BACKFILL_CANDLE_COUNT),
            int(resolution or config.BACKFILL_RESOLUTION_SEC),
        )

    def shutdown(self, reason: str) -> None:
        self.running = False
        self.mode = "HALTED"
        supabase_store.save_manual_control(self.overrides.snapshot_state())
        supabase_store.stop_writer_thread()
        logger.info("Engine stopped: %s", reason)

    # ------------------ Prices ------------------

    @staticmethod
    def _bucket(ts: float) -> int:
        return int(math.floor(ts / max(1, int(config.CANDLE_RESOLUTION_SEC))))

    def tick(self, now: float | None = None) -> list[PriceTick]:
        """Advance every live instrument one step; roll candles at bucket edges."""
        ts = float(now if now is not None else _now())
        resolution = max(1, int(config.CANDLE_RESOLUTION_SEC))
        ticks: list[PriceTick] = []
        for symbol in self.prices.symbols():
            cfg = self._configs.get(symbol)
            if cfg is None or not cfg.is_enabled:
                continue
            bucket = self._bucket(ts)
            if bucket != self._candle_bucket.get(symbol, bucket):
                closed = self.prices.roll_candle(symbol, now=bucket * resolution)
                if closed is not None:
                    supabase_store.queue_candles([closed], symbol, resolution)
            self._candle_bucket[symbol] = bucket
            tick = self.prices.next_tick(symbol, now=ts)
            if tick is not None:
                ticks.append(tick)
        return ticks

    # ------------------ Wagers ------------------

    def place_wager(self, wager: Wager | dict[str, Any], now: float | None = None) -> Wager:
        """Validate, track and schedule a wager.  Raises ValueError on bad input."""
        ts = float(now if now is not None else _now())
        if not isinstance(wager, Wager):
            wager = Wager.from_dict(wager)

        cfg = self._configs.get(wager.symbol)
        if cfg is None or not cfg.is_enabled:
            raise ValueError(f"instrument {wager.symbol!r} is not available")
        if not cfg.min_trade_amount <= wager.amount <= cfg.max_trade_amount:
            raise ValueError(
                f"amount {wager.amount} outside [{cfg.min_trade_amount}, {cfg.max_trade_amount}]"
            )
        if wager.expires_at <= ts:
            raise ValueError(f"wager {wager.wager_id} already expired")
        if not self.ledger.track(wager, now=ts):
            raise ValueError(f"duplicate wager id {wager.wager_id!r}")

        supabase_store.save_trade_exposure(wager.to_row())
        snapshot = self.ledger.snapshot(wager.symbol)
        supabase_store.save_exposure(snapshot.to_row())
        self.recorder.record(EVENT_TRADE_TRACKED, symbol=wager.symbol, wager_id=wager.wager_id,
                             user_id=wager.user_id, exposure_ratio=snapshot.exposure_ratio,
                             prices={"entry": wager.entry_price}, details={
                                 "direction": wager.direction,
                                 "amount": wager.amount,
                             })
        self._schedule(wager, ts)
        return wager

    def _schedule(self, wager: Wager, now: float) -> None:
        delay = max(0.0, wager.expires_at - now)
        timer = threading.Timer(delay, self._settle_due, args=(wager.wager_id,))
        timer.daemon = True
        with self._timers_lock:
            self._timers[wager.wager_id] = timer
        timer.start()

    def _settle_due(self, wager_id: str) -> None:
        try:
            self.settle(wager_id)
        except Exception as e:
            logger.exception("Scheduled settlement of %s failed: %s", wager_id, e)

    def settle(self, wager_id: str, market_price: float | None = None, now: float | None = None) -> SettlementResult | None:
        """
        Resolve and remove a wager.  Returns None when it is no longer open
        or another caller (manual settle racing the timer) already claimed it.
        """
        with self._timers_lock:
            if wager_id in self._settling:
                return None
            self._settling.add(wager_id)
        try:
            return self._settle_claimed(wager_id, market_price, now)
        finally:
            with self._timers_lock:
                self._settling.discard(wager_id)

    def _settle_claimed(self, wager_id: str, market_price: float | None, now: float | None) -> SettlementResult | None:
        wager = self.ledger.get(wager_id)
        if wager is None:
            return None
        ts = float(now if now is not None else _now())
        price = market_price
        if price is None:
            price = self.prices.current_price(wager.symbol) or wager.entry_price

        # Still tracked while resolving, so the policy sees its own exposure.
        result = self.resolver.resolve(wager, price, now=ts)
        if self.ledger.untrack(wager_id, now=ts) is None:
            # Dropped by cleanup meanwhile.
            return None
        with self._timers_lock:
            self._timers.pop(wager_id, None)

        supabase_store.delete_trade_exposure(wager_id)
        supabase_store.save_exposure(self.ledger.snapshot(wager.symbol).to_row())
        self.recorder.record(EVENT_TRADE_REMOVED, symbol=wager.symbol, wager_id=wager_id,
                             user_id=wager.user_id, details={
                                 "reason": "SETTLED",
                                 "outcome": result.outcome,
                                 "exit_price": result.exit_price,
                             })
        self.recent_settlements.append((wager_id, result))
        if self.on_settled is not None:
            self.on_settled(wager, result)
        return result

    def cleanup(self, now: float | None = None) -> int:
        ts = float(now if now is not None else _now())
        self.last_cleanup = ts
        return self.ledger.cleanup_expired(ts, grace=config.CLEANUP_INTERVAL_SEC)

    def pending_settlements(self) -> int:
        with self._timers_lock:
            return len(self._timers)

    # ------------------ Callbacks ------------------

    def _on_exposure_warning(self, snapshot: SymbolExposure) -> None:
        self.recorder.record(EVENT_EXPOSURE_WARNING, symbol=snapshot.symbol,
                             exposure_ratio=snapshot.exposure_ratio, details=snapshot.to_row())

    def _on_wager_expired(self, wager: Wager) -> None:
        with self._timers_lock:
            self._timers.pop(wager.wager_id, None)
        supabase_store.delete_trade_exposure(wager.wager_id)
        supabase_store.save_exposure(self.ledger.snapshot(wager.symbol).to_row())
        self.recorder.record(EVENT_TRADE_REMOVED, symbol=wager.symbol, wager_id=wager.wager_id,
                             user_id=wager.user_id, details={"reason": "EXPIRED"})

    def _on_override_change(self, entry: dict[str, Any]) -> None:
        self.recorder.record(EVENT_MANUAL_OVERRIDE, symbol=None, details=entry)
        self._persist_overrides()

    def _persist_overrides(self) -> None:
        supabase_store.save_manual_control(self.overrides.snapshot_state())

    # ------------------ Status ------------------

    def status(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "uptime_sec": round(_now() - self.started_at, 1),
            "instruments": {
                symbol: {
                    "price": self.prices.current_price(symbol),
                    "exposure": self.ledger.snapshot(symbol).to_row(),
                }
                for symbol in self.prices.symbols()
            },
            "pending_settlements": self.pending_settlements(),
            "intervention_stats": self.resolver.stats(),
            "activity_counts": self.recorder.counts(),
        }


def run() -> None:
    setup_logging()
    config.print_banner()

    rt = OTCRuntime()

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        rt.running = False

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        rt.initialize()
        interval = max(0.05, float(config.TICK_INTERVAL_SEC))
        logger.info("Entering main loop (every %.2fs)", interval)

        while rt.running:
            loop_start = _now()
            try:
                rt.tick(loop_start)
                if loop_start - rt.last_cleanup >= config.CLEANUP_INTERVAL_SEC:
                    rt.cleanup(loop_start)
            except Exception as e:
                logger.exception("Main loop error: %s", e)

            elapsed = _now() - loop_start
            time.sleep(max(0.01, interval - elapsed))
    finally:
        rt.shutdown("process exit")


if __name__ == "__main__":
    run()

#!/usr/bin/env python3
"""
history_backfill.py

Synthetic candle history for OTC instruments, generated backward from an
anchor so charts have data before the live generator ever ran.

Features:
- Runs the same wave/pullback/magnitude/wick model as the live generator,
  stepping back in time from the anchor close
- The newest generated candle closes exactly at the anchor, so history and
  live data join without a gap
- Idempotent insert: rows whose (symbol, resolution, time) already exist are
  skipped

Examples:
  python3 history_backfill.py EUR/USD-OTC --count 500 --resolution 60
  python3 history_backfill.py BTC/USD-OTC --market-type CRYPTO --pip-size 0.01 --dry-run
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import time
from dataclasses import dataclass, replace

import numpy as np

import config
import supabase_store
from config import InstrumentConfig
from price_process import Candle, ProcessState, initial_state, step_backward, symbol_rng


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnchorPoint:
    price: float
    time: float
    source: str  # history | latest | default | fallback


@dataclass(frozen=True)
class BackfillResult:
    candles: list[Candle]
    anchor_state: ProcessState


def _align(ts: float, resolution: int) -> float:
    return float(math.floor(ts / resolution) * resolution)


def select_anchor(cfg: InstrumentConfig, resolution: int, now: float | None = None) -> AnchorPoint:
    """
    Pick the price/time the generated history must end at.

    Preference: the oldest persisted candle (history is extended further
    back), then the latest known price, then the configured default for the
    base symbol, then 1.0.
    """
    ts = _align(float(now if now is not None else time.time()), resolution)

    oldest = supabase_store.load_oldest_candle(cfg.symbol, resolution)
    if oldest:
        try:
            price = float(oldest["open"])
            if price > 0:
                return AnchorPoint(price=price, time=float(oldest["time"]), source="history")
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed oldest candle for %s: %r", cfg.symbol, oldest)

    latest = supabase_store.load_latest_price(cfg.symbol)
    if latest is not None and latest > 0:
        return AnchorPoint(price=float(latest), time=ts, source="latest")

    default = config.DEFAULT_PRICES.get(cfg.base_symbol or cfg.symbol)
    if default:
        return AnchorPoint(price=float(default), time=ts, source="default")

    logger.warning("No anchor price known for %s; using 1.0", cfg.symbol)
    return AnchorPoint(price=1.0, time=ts, source="fallback")


class HistoryBackfillGenerator:
    def __init__(self, seed: int = 0) -> None:
        self._seed = int(seed or 0)

    def generate(
        self,
        anchor_price: float,
        anchor_time: float,
        count: int,
        resolution: int,
        cfg: InstrumentConfig,
        rng: np.random.Generator | None = None,
    ) -> BackfillResult:
        """
        Build *count* candles ending one resolution before *anchor_time*.

        Candles come back oldest first; each close equals the next candle's
        open and the last close equals *anchor_price*.  ``anchor_state`` is
        the process state at the anchor, so a forward ``step`` from it opens
        at exactly the anchor price.
        """
        anchor_price = float(anchor_price)
        if not math.isfinite(anchor_price) or anchor_price <= 0:
            raise ValueError(f"anchor_price must be positive, got {anchor_price!r}")
        if int(resolution) <= 0:
            raise ValueError(f"resolution must be positive, got {resolution!r}")
        resolution = int(resolution)

        if rng is None:
            rng = symbol_rng(self._seed, cfg.symbol)

        state = initial_state(anchor_price, cfg, rng, reference_price=anchor_price)
        anchor_state = state
        candles: list[Candle] = []
        for i in range(max(0, int(count))):
            candle, state = step_backward(state, cfg, rng, timestamp=anchor_time - (i + 1) * resolution)
            if i == 0:
                # Wave and variance in effect for the newest candle carry forward.
                anchor_state = replace(state, price=anchor_price, step_count=0)
            candles.append(candle)
        candles.reverse()
        return BackfillResult(candles=candles, anchor_state=anchor_state)

    def backfill(
        self,
        cfg: InstrumentConfig,
        count: int = config.BACKFILL_CANDLE_COUNT,
        resolution: int = config.BACKFILL_RESOLUTION_SEC,
        now: float | None = None,
    ) -> int:
        """Generate and persist history for *cfg*; returns rows inserted."""
        anchor = select_anchor(cfg, resolution, now)
        result = self.generate(anchor.price, anchor.time, count, resolution, cfg)
        inserted = supabase_store.insert_candles(result.candles, cfg.symbol, resolution)
        logger.info(
            "Backfill %s: %d generated, %d inserted (anchor %s @ %.0f from %s)",
            cfg.symbol, len(result.candles), inserted, anchor.price, anchor.time, anchor.source,
        )
        return inserted


def _instrument(args: argparse.Namespace) -> InstrumentConfig:
    cfg = config.INSTRUMENTS.get(args.symbol)
    if cfg is None:
        cfg = InstrumentConfig.from_dict({"symbol": args.symbol})
    overrides = {}
    if args.market_type:
        overrides["market_type"] = args.market_type.upper()
    if args.pip_size:
        overrides["pip_size"] = float(args.pip_size)
    return cfg.updated(**overrides) if overrides else cfg


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate synthetic OTC candle history backward from an anchor")
    p.add_argument("symbol", help="Instrument symbol, e.g. EUR/USD-OTC")
    p.add_argument("--count", type=int, default=config.BACKFILL_CANDLE_COUNT, help="Candles to generate")
    p.add_argument("--resolution", type=int, default=config.BACKFILL_RESOLUTION_SEC, help="Candle size in seconds")
    p.add_argument("--seed", type=int, default=config.RNG_SEED, help="RNG seed (0 = entropy)")
    p.add_argument("--market-type", default="", help="FOREX or CRYPTO (unconfigured symbols only)")
    p.add_argument("--pip-size", type=float, default=0.0, help="Pip size (unconfigured symbols only)")
    p.add_argument("--dry-run", action="store_true", default=False, help="Print candles as JSON instead of inserting")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s - %(message)s")

    if args.count <= 0:
        raise SystemExit("--count must be positive")
    if args.resolution <= 0:
        raise SystemExit("--resolution must be positive")
    try:
        cfg = _instrument(args)
    except ValueError as e:
        raise SystemExit(f"invalid instrument: {e}") from e

    generator = HistoryBackfillGenerator(seed=args.seed)
    if args.dry_run:
        anchor = select_anchor(cfg, args.resolution)
        result = generator.generate(anchor.price, anchor.time, args.count, args.resolution, cfg)
        print(json.dumps([c.to_dict() for c in result.candles], indent=2))
        return

    if not supabase_store._enabled():
        raise SystemExit("SUPABASE_URL / SUPABASE_KEY not set (use --dry-run to print candles)")
    inserted = generator.backfill(cfg, args.count, args.resolution)
    print(f"Inserted {inserted} of {args.count} candles for {cfg.symbol}")


if __name__ == "__main__":
    main()

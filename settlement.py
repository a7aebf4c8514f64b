"""
settlement.py -- Final exit price for an expiring wager.

Resolution order (first match wins):
  1. manual strategies (forced outcome for the wager, then user targets)
  2. instrument config missing  -> raw reference price
  3. intervention cooldown      -> raw reference price
  4. intervention policy        -> raw price unless eligible
  5. one probability roll       -> raw price when roll > p
  6. loss-guaranteed exit price

Every call returns a SettlementResult and emits one activity event.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
import math
import threading
import time
from typing import Any, Callable

import numpy as np

import config
from activity_recorder import (
    EVENT_INTERVENTION_APPLIED,
    EVENT_INTERVENTION_SKIPPED,
    EVENT_SYSTEM_ERROR,
)
from config import InstrumentConfig
from exposure_ledger import ExposureLedger, Wager
from intervention_policy import CooldownTracker, decide
from manual_control import SETTLEMENT_STRATEGIES, WIN, ManualOverrideLayer
from price_process import pip_decimals, symbol_rng


logger = logging.getLogger(__name__)

DEFAULT_PIP_SIZE = 0.0001


@dataclass(frozen=True)
class SettlementResult:
    exit_price: float
    influenced: bool
    intervention_probability: float
    reason: str
    original_price: float
    outcome: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def wager_outcome(wager: Wager, exit_price: float) -> str:
    """WIN, LOSE or TIE for *wager* settled at *exit_price*."""
    if exit_price == wager.entry_price:
        return "TIE"
    went_up = exit_price > wager.entry_price
    return "WIN" if went_up == (wager.direction == "UP") else "LOSE"


def _round_price(price: float, pip_size: float) -> float:
    # One digit finer than the pip so fractional-pip offsets survive.
    return round(price, pip_decimals(pip_size) + 1)


def guaranteed_loss_price(
    wager: Wager,
    reference_price: float,
    pip_size: float,
    offset: float,
    *,
    min_margin_pips: float = config.MIN_LOSS_MARGIN_PIPS,
    max_deviation_pips: float = config.MAX_SETTLEMENT_DEVIATION_PIPS,
) -> float:
    """
    Exit price that makes *wager* lose, *offset* (price units) past its entry.

    The result stays within max_deviation_pips of the reference price unless
    that clamp would hand the wager a win, in which case the minimum-margin
    losing price is used.  Prices never drop below one pip.
    """
    entry = wager.entry_price
    min_margin = min_margin_pips * pip_size
    if wager.direction == "UP":
        exit_price = entry - abs(offset)
        if exit_price >= entry:
            exit_price = entry - min_margin
        fallback = entry - min_margin
    else:
        exit_price = entry + abs(offset)
        if exit_price <= entry:
            exit_price = entry + min_margin
        fallback = entry + min_margin

    bound = max_deviation_pips * pip_size
    clamped = min(max(exit_price, reference_price - bound), reference_price + bound)
    if wager_outcome(wager, _round_price(clamped, pip_size)) == "LOSE":
        exit_price = clamped
    else:
        exit_price = fallback
    return _round_price(max(exit_price, pip_size), pip_size)


def loss_price(
    wager: Wager,
    reference_price: float,
    pip_size: float,
    rng: np.random.Generator,
) -> float:
    """Loss-guaranteed price with a random 2-5 pip margin."""
    offset_pips = config.MIN_LOSS_MARGIN_PIPS + rng.random() * (
        config.MAX_LOSS_MARGIN_PIPS - config.MIN_LOSS_MARGIN_PIPS
    )
    return guaranteed_loss_price(wager, reference_price, pip_size, offset_pips * pip_size)


def forced_price(
    wager: Wager,
    outcome: str,
    pip_size: float,
    margin_pips: float = config.FORCED_OUTCOME_MARGIN_PIPS,
) -> float:
    """Exit price *margin_pips* past entry on the side that yields *outcome*."""
    margin = margin_pips * pip_size
    up_wins = wager.direction == "UP"
    move_up = up_wins if outcome == WIN else not up_wins
    price = wager.entry_price + margin if move_up else wager.entry_price - margin
    return _round_price(max(price, pip_size), pip_size)


class SettlementResolver:
    def __init__(
        self,
        ledger: ExposureLedger,
        config_lookup: Callable[[str], InstrumentConfig | None],
        *,
        overrides: ManualOverrideLayer | None = None,
        cooldown: CooldownTracker | None = None,
        recorder: Any = None,
        seed: int = 0,
        strategies=SETTLEMENT_STRATEGIES,
    ) -> None:
        self.ledger = ledger
        self.overrides = overrides
        self.cooldown = cooldown or CooldownTracker()
        self.recorder = recorder
        self._config_lookup = config_lookup
        self._seed = int(seed or 0)
        self._strategies = tuple(strategies)

        self._rngs: dict[str, np.random.Generator] = {}
        self._stats: dict[str, dict[str, int]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock(self, symbol: str) -> threading.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            with self._guard:
                lock = self._locks.setdefault(symbol, threading.Lock())
        return lock

    def _rng(self, symbol: str) -> np.random.Generator:
        rng = self._rngs.get(symbol)
        if rng is None:
            rng = symbol_rng(self._seed, f"settle:{symbol}")
            self._rngs[symbol] = rng
        return rng

    # ------------------ Resolve ------------------

    def resolve(self, wager: Wager, market_price: float, now: float | None = None) -> SettlementResult:
        reference = float(market_price)
        if not math.isfinite(reference) or reference <= 0:
            raise ValueError(f"market_price must be positive, got {market_price!r}")
        ts = float(now if now is not None else time.time())

        with self._lock(wager.symbol):
            try:
                result = self._resolve_locked(wager, reference, ts)
            except Exception as e:
                logger.exception("Settlement of %s failed; using reference price", wager.wager_id)
                self._emit(EVENT_SYSTEM_ERROR, wager, None, {"error": str(e)})
                result = SettlementResult(
                    reference, False, 0.0, "ERROR", reference, wager_outcome(wager, reference),
                )
            stats = self._stats.setdefault(wager.symbol, {"total": 0, "applied": 0})
            stats["total"] += 1
            if result.influenced:
                stats["applied"] += 1

        event = EVENT_INTERVENTION_APPLIED if result.influenced else EVENT_INTERVENTION_SKIPPED
        if result.reason != "ERROR":
            self._emit(event, wager, result)
        if result.influenced:
            logger.info(
                "Settlement %s %s %s: %s -> %s (%s, p=%.3f)",
                wager.symbol, wager.wager_id, wager.direction,
                result.original_price, result.exit_price, result.reason, result.intervention_probability,
            )
        return result

    def _resolve_locked(self, wager: Wager, reference: float, now: float) -> SettlementResult:
        cfg = self._config_lookup(wager.symbol)
        pip = cfg.pip_size if cfg is not None else DEFAULT_PIP_SIZE
        rng = self._rng(wager.symbol)

        if self.overrides is not None:
            for strategy in self._strategies:
                override = strategy(self.overrides, wager, rng)
                if override is None:
                    continue
                exit_price = forced_price(wager, override.outcome, pip)
                return SettlementResult(
                    exit_price, True, 1.0, override.reason, reference, wager_outcome(wager, exit_price),
                )

        def untouched(reason: str, probability: float = 0.0) -> SettlementResult:
            return SettlementResult(
                reference, False, probability, reason, reference, wager_outcome(wager, reference),
            )

        if cfg is None:
            logger.warning("No config for %s; settling %s at reference price", wager.symbol, wager.wager_id)
            return untouched("NO_CONFIG")

        if not self.cooldown.ready(wager.symbol, now):
            return untouched("COOLDOWN")

        decision = decide(wager, self.ledger.snapshot(wager.symbol), cfg)
        if not decision.should_intervene:
            return untouched(decision.reason)

        roll = rng.random()
        if roll > decision.probability:
            return untouched("ROLL_SKIPPED", decision.probability)

        exit_price = loss_price(wager, reference, pip, rng)
        self.cooldown.mark(wager.symbol, now)
        return SettlementResult(
            exit_price, True, decision.probability, decision.reason, reference,
            wager_outcome(wager, exit_price),
        )

    def _emit(self, event_type: str, wager: Wager, result: SettlementResult | None, extra: dict | None = None) -> None:
        if self.recorder is None:
            return
        details: dict[str, Any] = {
            "direction": wager.direction,
            "amount": wager.amount,
        }
        prices = {"entry": wager.entry_price}
        probability = None
        if result is not None:
            details.update(result.to_dict())
            prices.update(original=result.original_price, exit=result.exit_price)
            probability = result.intervention_probability
        if extra:
            details.update(extra)
        self.recorder.record(
            event_type,
            symbol=wager.symbol,
            wager_id=wager.wager_id,
            user_id=wager.user_id,
            exposure_ratio=self.ledger.snapshot(wager.symbol).exposure_ratio,
            probability=probability,
            prices=prices,
            details=details,
            success=result is not None,
        )

    # ------------------ Stats ------------------

    def stats(self, symbol: str | None = None) -> dict[str, dict[str, float]]:
        out: dict[str, dict[str, float]] = {}
        for sym, counts in list(self._stats.items()):
            if symbol is not None and sym != symbol:
                continue
            total = counts["total"]
            out[sym] = {
                "total": total,
                "applied": counts["applied"],
                "rate": counts["applied"] / total if total else 0.0,
            }
        return out

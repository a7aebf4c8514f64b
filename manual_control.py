"""
manual_control.py -- Operator overrides for prices and settlements.

Three kinds of control, each created by an admin action and either consumed
or expired by wall clock:

  forced outcome      one-shot WIN/LOSE for a specific wager id
  user target         forced-win / forced-lose counters, or a target win
                      rate, for one user on one instrument (or ALL)
  instrument control  direction bias, volatility multiplier, price pin

Expired entries behave as absent and are dropped on read.  Every admin
action lands in a bounded audit log and is passed to *on_change*; settling
against a forced outcome or a force counter calls *on_consume* so the
reduced state can be persisted.

Settlement consults the overrides through SETTLEMENT_STRATEGIES, an ordered
list of callables that either return an OverrideOutcome or None (pass).
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
import logging
import threading
import time
from typing import Any, Callable

import numpy as np

from exposure_ledger import Wager


logger = logging.getLogger(__name__)

WIN = "WIN"
LOSE = "LOSE"
ALL_SYMBOLS = "ALL"

MAX_VOLATILITY_MULTIPLIER = 2.0
MIN_VOLATILITY_MULTIPLIER = 0.1

# Audit action types
ACTION_PRICE_BIAS = "PRICE_BIAS"
ACTION_VOLATILITY = "VOLATILITY"
ACTION_PRICE_OVERRIDE = "PRICE_OVERRIDE"
ACTION_TRADE_FORCE = "TRADE_FORCE"
ACTION_USER_TARGET = "USER_TARGET"


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _expired(expires_at: float | None, now: float) -> bool:
    return expires_at is not None and expires_at <= now


@dataclass
class UserTarget:
    user_id: str
    symbol: str = ALL_SYMBOLS
    target_win_rate: float | None = None
    force_next_win: int = 0
    force_next_lose: int = 0
    created_at: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.symbol}"

    @property
    def exhausted(self) -> bool:
        return self.force_next_win <= 0 and self.force_next_lose <= 0 and self.target_win_rate is None


@dataclass
class InstrumentControl:
    symbol: str
    bias: float = 0.0
    bias_strength: float = 0.0
    bias_expires_at: float | None = None
    volatility_multiplier: float = 1.0
    volatility_expires_at: float | None = None
    price_override: float | None = None
    price_override_expires_at: float | None = None

    @property
    def empty(self) -> bool:
        return self.bias == 0 and self.volatility_multiplier == 1.0 and self.price_override is None


@dataclass(frozen=True)
class OverrideOutcome:
    outcome: str  # WIN | LOSE
    reason: str
    source: str


class ManualOverrideLayer:
    def __init__(
        self,
        *,
        rng: np.random.Generator | None = None,
        on_change: Callable[[dict[str, Any]], None] | None = None,
        on_consume: Callable[[], None] | None = None,
        audit_limit: int = 200,
    ) -> None:
        self._rng = rng if rng is not None else np.random.default_rng()
        self._on_change = on_change
        self._on_consume = on_consume
        self._forced: dict[str, str] = {}
        self._targets: dict[str, UserTarget] = {}
        self._controls: dict[str, InstrumentControl] = {}
        self._audit: deque = deque(maxlen=max(10, int(audit_limit)))
        self._lock = threading.Lock()

    # ------------------ Audit ------------------

    def _record(self, action_type: str, target: str, admin_id: str, details: dict[str, Any]) -> None:
        entry = {
            "time": time.time(),
            "action_type": action_type,
            "target": target,
            "admin_id": admin_id,
            "details": details,
        }
        with self._lock:
            self._audit.append(entry)
        logger.info("Manual %s on %s by %s: %s", action_type, target, admin_id, details)
        if self._on_change is not None:
            self._on_change(entry)

    def audit_log(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            entries = list(self._audit)
        return list(reversed(entries))[: max(0, int(limit))]

    def _consumed(self) -> None:
        if self._on_consume is not None:
            self._on_consume()

    # ------------------ Forced outcomes ------------------

    def force_outcome(self, wager_id: str, outcome: str, admin_id: str = "system") -> None:
        outcome = str(outcome or "").strip().upper()
        if outcome not in (WIN, LOSE):
            raise ValueError(f"outcome must be WIN or LOSE, got {outcome!r}")
        if not wager_id:
            raise ValueError("wager_id must be non-empty")
        with self._lock:
            self._forced[str(wager_id)] = outcome
        self._record(ACTION_TRADE_FORCE, str(wager_id), admin_id, {"outcome": outcome})

    def clear_forced_outcome(self, wager_id: str, admin_id: str = "system") -> bool:
        with self._lock:
            removed = self._forced.pop(str(wager_id), None)
        if removed is None:
            return False
        self._record(ACTION_TRADE_FORCE, str(wager_id), admin_id, {"outcome": None})
        return True

    def peek_forced_outcome(self, wager_id: str) -> str | None:
        with self._lock:
            return self._forced.get(str(wager_id))

    def take_forced_outcome(self, wager_id: str) -> str | None:
        """Consume the forced outcome for *wager_id* (one-shot)."""
        with self._lock:
            outcome = self._forced.pop(str(wager_id), None)
        if outcome is not None:
            self._consumed()
        return outcome

    # ------------------ User targets ------------------

    def set_user_target(
        self,
        user_id: str,
        symbol: str | None = None,
        *,
        target_win_rate: float | None = None,
        force_next_win: int = 0,
        force_next_lose: int = 0,
        admin_id: str = "system",
    ) -> UserTarget:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        if int(force_next_win) < 0 or int(force_next_lose) < 0:
            raise ValueError("force counters must be non-negative")
        rate = None if target_win_rate is None else _clamp(float(target_win_rate), 0.0, 100.0)
        target = UserTarget(
            user_id=str(user_id),
            symbol=str(symbol or ALL_SYMBOLS),
            target_win_rate=rate,
            force_next_win=int(force_next_win),
            force_next_lose=int(force_next_lose),
            created_at=time.time(),
        )
        with self._lock:
            if target.exhausted:
                self._targets.pop(target.key, None)
            else:
                self._targets[target.key] = target
        self._record(ACTION_USER_TARGET, target.key, admin_id, {
            "target_win_rate": rate,
            "force_next_win": target.force_next_win,
            "force_next_lose": target.force_next_lose,
        })
        return target

    def remove_user_target(self, user_id: str, symbol: str | None = None, admin_id: str = "system") -> bool:
        key = f"{user_id}:{symbol or ALL_SYMBOLS}"
        with self._lock:
            removed = self._targets.pop(key, None)
        if removed is None:
            return False
        self._record(ACTION_USER_TARGET, key, admin_id, {"removed": True})
        return True

    def get_user_target(self, user_id: str, symbol: str) -> UserTarget | None:
        """Symbol-specific target first, then the user's ALL target."""
        with self._lock:
            return self._find_target(user_id, symbol)

    def _find_target(self, user_id: str, symbol: str) -> UserTarget | None:
        return self._targets.get(f"{user_id}:{symbol}") or self._targets.get(f"{user_id}:{ALL_SYMBOLS}")

    def user_targets(self) -> list[UserTarget]:
        with self._lock:
            return list(self._targets.values())

    def consume_user_target(
        self,
        user_id: str,
        symbol: str,
        rng: np.random.Generator | None = None,
    ) -> OverrideOutcome | None:
        """
        Apply the user's target to one settlement.

        Forced-win counter first, then forced-lose, then a draw against the
        target win rate.  Exhausted targets are removed.
        """
        rng = rng if rng is not None else self._rng
        with self._lock:
            target = self._find_target(user_id, symbol)
            if target is None:
                return None
            if target.force_next_win > 0:
                target.force_next_win -= 1
                result = OverrideOutcome(WIN, "USER_FORCE_WIN", "user_target")
            elif target.force_next_lose > 0:
                target.force_next_lose -= 1
                result = OverrideOutcome(LOSE, "USER_FORCE_LOSE", "user_target")
            elif target.target_win_rate is not None:
                if rng.random() * 100.0 < target.target_win_rate:
                    result = OverrideOutcome(WIN, "USER_TARGET_WIN", "user_target")
                else:
                    result = OverrideOutcome(LOSE, "USER_TARGET_LOSE", "user_target")
            else:
                result = None
            if target.exhausted:
                self._targets.pop(target.key, None)
        if result is not None and result.reason.startswith("USER_FORCE"):
            self._consumed()
        return result

    # ------------------ Instrument controls ------------------

    def _control(self, symbol: str) -> InstrumentControl:
        control = self._controls.get(symbol)
        if control is None:
            control = InstrumentControl(symbol=symbol)
            self._controls[symbol] = control
        return control

    def _drop_if_empty(self, symbol: str) -> None:
        control = self._controls.get(symbol)
        if control is not None and control.empty:
            del self._controls[symbol]

    def set_direction_bias(
        self,
        symbol: str,
        bias: float,
        strength: float = 1.0,
        duration_sec: float | None = None,
        admin_id: str = "system",
    ) -> None:
        bias = _clamp(float(bias), -100.0, 100.0)
        strength = _clamp(float(strength), 0.0, 1.0)
        expires_at = time.time() + float(duration_sec) if duration_sec else None
        with self._lock:
            control = self._control(symbol)
            control.bias = bias
            control.bias_strength = strength
            control.bias_expires_at = expires_at
            self._drop_if_empty(symbol)
        self._record(ACTION_PRICE_BIAS, symbol, admin_id, {
            "bias": bias, "strength": strength, "expires_at": expires_at,
        })

    def clear_direction_bias(self, symbol: str, admin_id: str = "system") -> None:
        self.set_direction_bias(symbol, 0.0, 0.0, None, admin_id)

    def direction_bias(self, symbol: str, now: float | None = None) -> tuple[float, float]:
        """(bias, strength); (0.0, 0.0) when absent or expired."""
        ts = float(now if now is not None else time.time())
        with self._lock:
            control = self._controls.get(symbol)
            if control is None or control.bias == 0:
                return 0.0, 0.0
            if _expired(control.bias_expires_at, ts):
                control.bias, control.bias_strength, control.bias_expires_at = 0.0, 0.0, None
                self._drop_if_empty(symbol)
                return 0.0, 0.0
            return control.bias, control.bias_strength

    def set_volatility_multiplier(
        self,
        symbol: str,
        multiplier: float,
        duration_sec: float | None = None,
        admin_id: str = "system",
    ) -> None:
        multiplier = _clamp(float(multiplier), MIN_VOLATILITY_MULTIPLIER, MAX_VOLATILITY_MULTIPLIER)
        expires_at = time.time() + float(duration_sec) if duration_sec else None
        with self._lock:
            control = self._control(symbol)
            control.volatility_multiplier = multiplier
            control.volatility_expires_at = expires_at
            self._drop_if_empty(symbol)
        self._record(ACTION_VOLATILITY, symbol, admin_id, {
            "multiplier": multiplier, "expires_at": expires_at,
        })

    def clear_volatility_multiplier(self, symbol: str, admin_id: str = "system") -> None:
        self.set_volatility_multiplier(symbol, 1.0, None, admin_id)

    def volatility_multiplier(self, symbol: str, now: float | None = None) -> float:
        ts = float(now if now is not None else time.time())
        with self._lock:
            control = self._controls.get(symbol)
            if control is None:
                return 1.0
            if _expired(control.volatility_expires_at, ts):
                control.volatility_multiplier, control.volatility_expires_at = 1.0, None
                self._drop_if_empty(symbol)
                return 1.0
            return control.volatility_multiplier

    def set_price_override(
        self,
        symbol: str,
        price: float,
        duration_sec: float,
        admin_id: str = "system",
    ) -> None:
        price = float(price)
        if not price > 0:
            raise ValueError(f"override price must be positive, got {price!r}")
        if not duration_sec or float(duration_sec) <= 0:
            raise ValueError("price override needs a positive duration")
        expires_at = time.time() + float(duration_sec)
        with self._lock:
            control = self._control(symbol)
            control.price_override = price
            control.price_override_expires_at = expires_at
        self._record(ACTION_PRICE_OVERRIDE, symbol, admin_id, {
            "price": price, "expires_at": expires_at,
        })

    def clear_price_override(self, symbol: str, admin_id: str = "system") -> None:
        with self._lock:
            control = self._controls.get(symbol)
            if control is None or control.price_override is None:
                return
            control.price_override = None
            control.price_override_expires_at = None
            self._drop_if_empty(symbol)
        self._record(ACTION_PRICE_OVERRIDE, symbol, admin_id, {"price": None})

    def price_override(self, symbol: str, now: float | None = None) -> float | None:
        ts = float(now if now is not None else time.time())
        with self._lock:
            control = self._controls.get(symbol)
            if control is None or control.price_override is None:
                return None
            if _expired(control.price_override_expires_at, ts):
                control.price_override = None
                control.price_override_expires_at = None
                self._drop_if_empty(symbol)
                return None
            return control.price_override

    def controls(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {symbol: asdict(c) for symbol, c in self._controls.items()}

    # ------------------ Persistence ------------------

    def snapshot_state(self) -> dict[str, Any]:
        with self._lock:
            return {
                "forced_outcomes": dict(self._forced),
                "user_targets": [asdict(t) for t in self._targets.values()],
                "controls": [asdict(c) for c in self._controls.values()],
            }

    def restore_state(self, payload: dict[str, Any], now: float | None = None) -> None:
        """Load ``snapshot_state()`` output, dropping expired or malformed entries."""
        if not isinstance(payload, dict):
            return
        ts = float(now if now is not None else time.time())

        forced: dict[str, str] = {}
        for wager_id, outcome in (payload.get("forced_outcomes") or {}).items():
            outcome = str(outcome or "").upper()
            if outcome in (WIN, LOSE):
                forced[str(wager_id)] = outcome

        targets: dict[str, UserTarget] = {}
        for raw in payload.get("user_targets") or []:
            try:
                target = UserTarget(**raw)
            except TypeError as e:
                logger.warning("Skipping malformed user target %r: %s", raw, e)
                continue
            if target.user_id and not target.exhausted:
                targets[target.key] = target

        controls: dict[str, InstrumentControl] = {}
        for raw in payload.get("controls") or []:
            try:
                control = InstrumentControl(**raw)
            except TypeError as e:
                logger.warning("Skipping malformed instrument control %r: %s", raw, e)
                continue
            if _expired(control.bias_expires_at, ts):
                control.bias, control.bias_strength, control.bias_expires_at = 0.0, 0.0, None
            if _expired(control.volatility_expires_at, ts):
                control.volatility_multiplier, control.volatility_expires_at = 1.0, None
            if control.price_override is not None and (
                control.price_override_expires_at is None
                or _expired(control.price_override_expires_at, ts)
            ):
                control.price_override, control.price_override_expires_at = None, None
            if not control.empty:
                controls[control.symbol] = control

        with self._lock:
            self._forced = forced
            self._targets = targets
            self._controls = controls


# ---------------------------------------------------------------------------
# Settlement strategies (first non-None wins)
# ---------------------------------------------------------------------------

def forced_outcome_strategy(
    layer: ManualOverrideLayer,
    wager: Wager,
    rng: np.random.Generator,
) -> OverrideOutcome | None:
    outcome = layer.take_forced_outcome(wager.wager_id)
    if outcome is None:
        return None
    return OverrideOutcome(outcome, f"MANUAL_FORCE_{outcome}", "forced_outcome")


def user_target_strategy(
    layer: ManualOverrideLayer,
    wager: Wager,
    rng: np.random.Generator,
) -> OverrideOutcome | None:
    if not wager.user_id:
        return None
    return layer.consume_user_target(wager.user_id, wager.symbol, rng)


SETTLEMENT_STRATEGIES = (forced_outcome_strategy, user_target_strategy)

"""
intervention_policy.py -- Pure exposure-driven intervention decision.

decide(wager, exposure, cfg) answers one question: should the settlement of
this wager be steered against it, and with what probability?

    p = min_rate + (ratio - threshold) / (1 - threshold) * (max_rate - min_rate)

Only wagers on the side the operator is long against are eligible (net > 0
means the book is UP-heavy, so UP wagers are eligible).  Large wagers get a
10% bump; the result never exceeds max_rate.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import time
from typing import Any

import config
from config import InstrumentConfig
from exposure_ledger import SymbolExposure, Wager


FAVOR_BROKER = "FAVOR_BROKER"
NO_INTERVENTION = "NO_INTERVENTION"

LARGE_WAGER_BUMP = 1.1


@dataclass(frozen=True)
class InterventionDecision:
    should_intervene: bool
    probability: float
    direction: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _no(reason: str) -> InterventionDecision:
    return InterventionDecision(False, 0.0, NO_INTERVENTION, reason)


def broker_preferred_direction(exposure: SymbolExposure) -> str | None:
    """Outcome direction that reduces operator liability, or None when flat."""
    if exposure.net_exposure > 0:
        return "DOWN"
    if exposure.net_exposure < 0:
        return "UP"
    return None


def decide(
    wager: Wager,
    exposure: SymbolExposure,
    cfg: InstrumentConfig,
    *,
    large_wager_multiple: float = config.LARGE_WAGER_MULTIPLE,
) -> InterventionDecision:
    if not cfg.risk_enabled:
        return _no("RISK_DISABLED")

    ratio = exposure.exposure_ratio
    if ratio < cfg.exposure_threshold:
        return _no("BELOW_THRESHOLD")

    preferred = broker_preferred_direction(exposure)
    if preferred is None:
        return _no("BALANCED")
    if wager.direction == preferred:
        return _no("ALIGNED_WITH_BROKER")

    span = 1.0 - cfg.exposure_threshold
    scaled = (ratio - cfg.exposure_threshold) / span if span > 0 else 1.0
    probability = cfg.min_intervention_rate + scaled * (cfg.max_intervention_rate - cfg.min_intervention_rate)

    avg = exposure.average_wager_size
    if avg > 0 and wager.amount > large_wager_multiple * avg:
        probability *= LARGE_WAGER_BUMP

    probability = min(probability, cfg.max_intervention_rate)
    return InterventionDecision(True, probability, FAVOR_BROKER, "EXPOSURE_IMBALANCE")


class CooldownTracker:
    """
    Last automatic intervention time per instrument.

    Callers serialize per instrument (the resolver holds the instrument lock
    across check and mark), so a plain dict is enough here.
    """

    def __init__(self, cooldown_sec: float = config.INTERVENTION_COOLDOWN_SEC) -> None:
        self.cooldown_sec = max(0.0, float(cooldown_sec))
        self._last: dict[str, float] = {}

    def ready(self, symbol: str, now: float | None = None) -> bool:
        last = self._last.get(symbol)
        if last is None:
            return True
        ts = float(now if now is not None else time.time())
        return ts - last >= self.cooldown_sec

    def mark(self, symbol: str, now: float | None = None) -> None:
        self._last[symbol] = float(now if now is not None else time.time())

    def last(self, symbol: str) -> float | None:
        return self._last.get(symbol)

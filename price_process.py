"""
price_process.py

Wave/pullback price-path model for synthetic OTC instruments.

Design goals:
- Pure step functions: (state, config, rng) -> (candle, next_state)
- Forward and backward steps share one model (same draws in the same order),
  so backfilled history and live ticks are statistically indistinguishable
- GARCH(1,1) variance feeds the noise amplitude (volatility clustering)
- All randomness comes from an injected numpy Generator

PriceGenerator wraps the pure functions with per-instrument live state:
candle tracking, bid/ask ticks and the admin controls (price pin, direction
bias, volatility multiplier).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from decimal import Decimal
import logging
import math
import threading
import time
import zlib
from typing import Any

import numpy as np

from config import InstrumentConfig


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model constants
# ---------------------------------------------------------------------------

# Waves: trend segments measured in steps and pips.
WAVE_LENGTH_MIN = 15
WAVE_LENGTH_MAX = 100
WAVE_PIPS_MIN = 8.0
WAVE_PIPS_MAX = 45.0
# < 0.5 so the next wave reverses more often than it continues.
WAVE_CONTINUATION_PROB = 0.42

# Pullbacks: short, dampened counter-moves inside a wave.
PULLBACK_LENGTH_MIN = 2
PULLBACK_LENGTH_MAX = 5
PULLBACK_STRENGTH = 0.45

# (weight, min_pips, max_pips): 40% small, 45% medium, 15% large.
CANDLE_SIZE_BUCKETS = (
    (0.40, 0.25, 0.55),
    (0.45, 0.55, 1.15),
    (0.15, 1.15, 2.20),
)
NOISE_FACTOR = 0.25
NOISE_MIN = 0.4
NOISE_MAX = 1.6

WICK_RATIO_MIN = 0.1
WICK_RATIO_MAX = 0.4

# GARCH variance is relative to baseline noise (1.0 == baseline).
VARIANCE_MIN = 0.25
VARIANCE_MAX = 4.0

# Beyond half the deviation band, pull this share of the gap back per step.
MEAN_REVERSION_PULL = 0.02
BOUNDARY_JITTER_PIPS = 5.0

BIAS_INFLUENCE_SCALE = 0.35

_EPS = 1e-9


@dataclass(frozen=True)
class MarketParams:
    move_multiplier: float
    pullback_prob: float


# Crypto quotes are large numbers with a small pip, so its multiplier is
# much higher to produce a visible percentage move.
MARKET_PARAMS: dict[str, MarketParams] = {
    "FOREX": MarketParams(move_multiplier=0.85, pullback_prob=0.24),
    "CRYPTO": MarketParams(move_multiplier=15.0, pullback_prob=0.26),
}


def market_params(market_type: str) -> MarketParams:
    return MARKET_PARAMS.get(str(market_type or "FOREX").upper(), MARKET_PARAMS["FOREX"])


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WaveState:
    direction: int
    remaining_steps: int
    target_magnitude: float
    progress_magnitude: float = 0.0
    in_pullback: bool = False
    pullback_remaining: int = 0
    pullback_direction: int = 1

    @property
    def effective_direction(self) -> int:
        return self.pullback_direction if self.in_pullback else self.direction

    @property
    def terminated(self) -> bool:
        return self.remaining_steps <= 0 or abs(self.progress_magnitude) >= self.target_magnitude


@dataclass(frozen=True)
class ProcessState:
    price: float
    wave: WaveState
    variance: float = 1.0
    # 0 disables mean reversion and the hard deviation bounds.
    reference_price: float = 0.0
    step_count: int = 0


@dataclass(frozen=True)
class Candle:
    timestamp: float
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: float
    bid: float
    ask: float
    timestamp: float
    volatility: float
    change: float
    change_percent: float
    pinned: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_rng(seed: Any = None) -> np.random.Generator:
    """Seedable random source. ``None``/0 draws fresh OS entropy."""
    return np.random.default_rng(seed if seed else None)


def symbol_rng(seed: int, symbol: str) -> np.random.Generator:
    """Independent, reproducible stream per instrument."""
    if not seed:
        return make_rng(None)
    return make_rng([int(seed), zlib.crc32(str(symbol).encode("utf-8"))])


def _uniform(rng: np.random.Generator, lo: float, hi: float) -> float:
    return float(lo + rng.random() * (hi - lo))


def _randint(rng: np.random.Generator, lo: int, hi: int) -> int:
    return int(rng.integers(lo, hi + 1))


def pip_decimals(pip_size: float) -> int:
    exponent = Decimal(str(pip_size)).normalize().as_tuple().exponent
    return max(0, -int(exponent))


def round_to_pip(price: float, pip_size: float) -> float:
    steps = round(float(price) / float(pip_size))
    return round(steps * float(pip_size), pip_decimals(pip_size))


def stationary_variance(cfg: InstrumentConfig) -> float:
    persistence = cfg.garch_alpha + cfg.garch_beta
    if persistence >= 1.0:
        return 1.0
    return float(np.clip(cfg.garch_omega / (1.0 - persistence), VARIANCE_MIN, VARIANCE_MAX))


# ---------------------------------------------------------------------------
# Wave machine
# ---------------------------------------------------------------------------

def new_wave(rng: np.random.Generator, direction: int | None = None) -> WaveState:
    if direction is None:
        direction = 1 if rng.random() < 0.5 else -1
    return WaveState(
        direction=direction,
        remaining_steps=_randint(rng, WAVE_LENGTH_MIN, WAVE_LENGTH_MAX),
        target_magnitude=_uniform(rng, WAVE_PIPS_MIN, WAVE_PIPS_MAX),
        pullback_direction=direction,
    )


def advance_wave(wave: WaveState, rng: np.random.Generator, pullback_prob: float) -> WaveState:
    """Run the per-step wave transitions (pullback countdown, re-roll, pullback start)."""
    if wave.in_pullback:
        remaining = wave.pullback_remaining - 1
        return replace(wave, pullback_remaining=max(0, remaining), in_pullback=remaining > 0)

    if wave.terminated:
        if rng.random() < WAVE_CONTINUATION_PROB:
            return new_wave(rng, wave.direction)
        return new_wave(rng, -wave.direction)

    if rng.random() < pullback_prob:
        return replace(
            wave,
            in_pullback=True,
            pullback_remaining=_randint(rng, PULLBACK_LENGTH_MIN, PULLBACK_LENGTH_MAX),
            pullback_direction=-wave.direction,
        )
    return wave


def record_progress(wave: WaveState, magnitude: float, direction: int) -> WaveState:
    return replace(
        wave,
        progress_magnitude=wave.progress_magnitude + magnitude * direction,
        remaining_steps=wave.remaining_steps - 1,
    )


# ---------------------------------------------------------------------------
# Magnitude, volatility, candle shape
# ---------------------------------------------------------------------------

def draw_magnitude(
    rng: np.random.Generator,
    move_multiplier: float,
    variance: float = 1.0,
) -> tuple[float, float]:
    """
    Draw one move size in pips.

    Returns (pips, shock) where shock is the standard-normal draw that also
    feeds the GARCH update.
    """
    pick = rng.random()
    lo, hi = CANDLE_SIZE_BUCKETS[-1][1], CANDLE_SIZE_BUCKETS[-1][2]
    cumulative = 0.0
    for weight, bucket_lo, bucket_hi in CANDLE_SIZE_BUCKETS:
        cumulative += weight
        if pick < cumulative:
            lo, hi = bucket_lo, bucket_hi
            break
    base = _uniform(rng, lo, hi)

    shock = float(rng.standard_normal())
    noise = 1.0 + shock * NOISE_FACTOR * math.sqrt(max(0.0, float(variance)))
    noise = float(np.clip(noise, NOISE_MIN, NOISE_MAX))
    return base * float(move_multiplier) * noise, shock


def garch_update(variance: float, shock: float, cfg: InstrumentConfig) -> float:
    """GARCH(1,1) on the realized shock eps = sqrt(variance) * z."""
    variance = float(variance)
    realized_sq = variance * shock * shock
    value = cfg.garch_omega + cfg.garch_alpha * realized_sq + cfg.garch_beta * variance
    return float(np.clip(value, VARIANCE_MIN, VARIANCE_MAX))


def _shape_candle(
    open_: float,
    close: float,
    pip_size: float,
    rng: np.random.Generator,
) -> tuple[float, float, float]:
    body = abs(close - open_)
    upper_ratio = _uniform(rng, WICK_RATIO_MIN, WICK_RATIO_MAX)
    lower_ratio = _uniform(rng, WICK_RATIO_MIN, WICK_RATIO_MAX)
    high = round_to_pip(max(open_, close) + body * upper_ratio, pip_size)
    low = round_to_pip(min(open_, close) - body * lower_ratio, pip_size)
    high = max(high, open_, close)
    low = min(low, open_, close)

    range_pips = (high - low) / pip_size
    volume = float(round((50.0 + range_pips * 10.0) * _uniform(rng, 0.7, 1.3)))
    return high, low, volume


def _apply_bounds(
    close: float,
    open_: float,
    reference: float,
    cfg: InstrumentConfig,
    rng: np.random.Generator,
) -> float:
    if reference <= 0:
        return close
    band = reference * cfg.max_deviation_percent / 100.0
    deviation = reference - open_
    if abs(deviation) > band * 0.5:
        close += deviation * (MEAN_REVERSION_PULL + cfg.mean_reversion_strength)

    upper = reference + band
    lower = reference - band
    if close > upper:
        close = upper - _uniform(rng, 0.0, BOUNDARY_JITTER_PIPS) * cfg.pip_size
    elif close < lower:
        close = lower + _uniform(rng, 0.0, BOUNDARY_JITTER_PIPS) * cfg.pip_size
    return close


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def initial_state(
    price: float,
    cfg: InstrumentConfig,
    rng: np.random.Generator,
    *,
    reference_price: float | None = None,
) -> ProcessState:
    return ProcessState(
        price=float(price),
        wave=new_wave(rng),
        variance=stationary_variance(cfg),
        reference_price=float(price if reference_price is None else reference_price),
    )


def step(
    state: ProcessState,
    cfg: InstrumentConfig,
    rng: np.random.Generator,
    *,
    bias: float = 0.0,
    bias_strength: float = 0.0,
    volatility_multiplier: float = 1.0,
    timestamp: float = 0.0,
) -> tuple[Candle, ProcessState]:
    """
    Advance the process one step forward in time.

    The candle opens at ``state.price``; its close is the new price.
    """
    params = market_params(cfg.market_type)
    pip = cfg.pip_size

    wave = advance_wave(state.wave, rng, params.pullback_prob)
    direction = wave.effective_direction

    # Admin bias draws only when active so the unbiased path matches backfill.
    if bias and bias_strength > 0:
        influence = 0.5 + (min(abs(bias), 100.0) / 100.0) * min(bias_strength, 1.0) * BIAS_INFLUENCE_SCALE
        if rng.random() < influence:
            direction = 1 if bias > 0 else -1

    magnitude, shock = draw_magnitude(rng, params.move_multiplier * cfg.volatility_multiplier, state.variance)
    if wave.in_pullback:
        magnitude *= PULLBACK_STRENGTH
    magnitude *= max(0.0, float(volatility_multiplier))

    open_ = state.price
    close = open_ + magnitude * pip * direction
    close = _apply_bounds(close, open_, state.reference_price, cfg, rng)
    close = round_to_pip(close, pip)
    if abs(close - open_) < pip * (1.0 - _EPS):
        close = open_ + direction * pip
    close = max(close, pip)

    high, low, volume = _shape_candle(open_, close, pip, rng)
    candle = Candle(timestamp=float(timestamp), open=open_, high=high, low=low, close=close, volume=volume)
    next_state = replace(
        state,
        price=close,
        wave=record_progress(wave, magnitude, direction),
        variance=garch_update(state.variance, shock, cfg),
        step_count=state.step_count + 1,
    )
    return candle, next_state


def step_backward(
    state: ProcessState,
    cfg: InstrumentConfig,
    rng: np.random.Generator,
    *,
    timestamp: float = 0.0,
) -> tuple[Candle, ProcessState]:
    """
    Mirror of ``step`` walking back in time.

    ``state.price`` is the close of the candle being generated; the returned
    state's price is that candle's open (the close of the candle before it).
    """
    params = market_params(cfg.market_type)
    pip = cfg.pip_size

    wave = advance_wave(state.wave, rng, params.pullback_prob)
    direction = wave.effective_direction

    magnitude, shock = draw_magnitude(rng, params.move_multiplier * cfg.volatility_multiplier, state.variance)
    if wave.in_pullback:
        magnitude *= PULLBACK_STRENGTH

    close = state.price
    open_ = round_to_pip(close - magnitude * pip * direction, pip)
    if abs(close - open_) < pip * (1.0 - _EPS):
        open_ = close - direction * pip
    open_ = max(open_, pip)

    high, low, volume = _shape_candle(open_, close, pip, rng)
    candle = Candle(timestamp=float(timestamp), open=open_, high=high, low=low, close=close, volume=volume)
    next_state = replace(
        state,
        price=open_,
        wave=record_progress(wave, magnitude, direction),
        variance=garch_update(state.variance, shock, cfg),
        step_count=state.step_count + 1,
    )
    return candle, next_state


# ---------------------------------------------------------------------------
# Live generator
# ---------------------------------------------------------------------------

@dataclass
class _LiveCandle:
    open: float
    high: float
    low: float
    close: float
    volume: float
    tick_count: int
    started_at: float


class PriceGenerator:
    """
    Per-instrument live price state.

    *controls* is anything exposing ``price_override(symbol)``,
    ``direction_bias(symbol)`` and ``volatility_multiplier(symbol)``
    (normally the ManualOverrideLayer).  All mutation of one symbol is
    serialized on that symbol's lock.
    """

    def __init__(self, controls: Any = None, *, seed: int = 0) -> None:
        self._controls = controls
        self._seed = int(seed or 0)
        self._states: dict[str, ProcessState] = {}
        self._configs: dict[str, InstrumentConfig] = {}
        self._rngs: dict[str, np.random.Generator] = {}
        self._candles: dict[str, _LiveCandle] = {}
        self._first_price: dict[str, float] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, symbol: str) -> threading.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(symbol, threading.Lock())
        return lock

    # ------------------ Lifecycle ------------------

    def initialize_symbol(
        self,
        cfg: InstrumentConfig,
        initial_price: float,
        *,
        state: ProcessState | None = None,
        now: float | None = None,
    ) -> bool:
        try:
            price = float(initial_price)
        except (TypeError, ValueError):
            price = float("nan")
        if not math.isfinite(price) or price <= 0:
            logger.error("Cannot initialize %s: invalid initial price %r", cfg.symbol, initial_price)
            return False

        ts = float(now if now is not None else time.time())
        with self._lock(cfg.symbol):
            rng = self._rngs.get(cfg.symbol) or symbol_rng(self._seed, cfg.symbol)
            self._rngs[cfg.symbol] = rng
            if state is None:
                state = initial_state(price, cfg, rng)
            else:
                state = replace(state, price=price)
            self._states[cfg.symbol] = state
            self._configs[cfg.symbol] = cfg
            self._first_price[cfg.symbol] = price
            self._candles[cfg.symbol] = _LiveCandle(price, price, price, price, 0.0, 0, ts)
        logger.info("Price generator initialized for %s at %s", cfg.symbol, price)
        return True

    def update_config(self, cfg: InstrumentConfig) -> None:
        with self._lock(cfg.symbol):
            if cfg.symbol in self._states:
                self._configs[cfg.symbol] = cfg

    def update_reference_price(self, symbol: str, price: float) -> None:
        try:
            value = float(price)
        except (TypeError, ValueError):
            return
        if not math.isfinite(value) or value <= 0:
            return
        with self._lock(symbol):
            state = self._states.get(symbol)
            if state is not None:
                self._states[symbol] = replace(state, reference_price=value)

    def remove_symbol(self, symbol: str) -> None:
        with self._lock(symbol):
            self._states.pop(symbol, None)
            self._configs.pop(symbol, None)
            self._candles.pop(symbol, None)
            self._first_price.pop(symbol, None)

    # ------------------ Ticks ------------------

    def next_tick(self, symbol: str, now: float | None = None) -> PriceTick | None:
        ts = float(now if now is not None else time.time())
        with self._lock(symbol):
            state = self._states.get(symbol)
            cfg = self._configs.get(symbol)
            if state is None or cfg is None:
                return None

            pinned = self._controls.price_override(symbol) if self._controls is not None else None
            if pinned is not None:
                price = round_to_pip(pinned, cfg.pip_size)
                self._states[symbol] = replace(state, price=price)
                self._track(symbol, price, 0.0)
                return self._make_tick(symbol, cfg, price, ts, pinned=True)

            bias, strength = (0.0, 0.0)
            vol_mult = 1.0
            if self._controls is not None:
                bias, strength = self._controls.direction_bias(symbol)
                vol_mult = self._controls.volatility_multiplier(symbol)

            candle, next_state = step(
                state,
                cfg,
                self._rngs[symbol],
                bias=bias,
                bias_strength=strength,
                volatility_multiplier=vol_mult,
                timestamp=ts,
            )
            self._states[symbol] = next_state
            self._track(symbol, candle.close, candle.volume)
            return self._make_tick(symbol, cfg, candle.close, ts)

    def _track(self, symbol: str, price: float, volume: float) -> None:
        live = self._candles[symbol]
        live.high = max(live.high, price)
        live.low = min(live.low, price)
        live.close = price
        live.volume += volume
        live.tick_count += 1

    def _make_tick(self, symbol: str, cfg: InstrumentConfig, price: float, ts: float, pinned: bool = False) -> PriceTick:
        half_spread = cfg.pip_size * cfg.spread_multiplier
        first = self._first_price.get(symbol) or price
        change = price - first
        decimals = pip_decimals(cfg.pip_size)
        state = self._states[symbol]
        return PriceTick(
            symbol=symbol,
            price=price,
            bid=round(price - half_spread, decimals + 1),
            ask=round(price + half_spread, decimals + 1),
            timestamp=ts,
            volatility=cfg.base_volatility * math.sqrt(state.variance),
            change=round(change, decimals),
            change_percent=round(change / first * 100.0, 2) if first else 0.0,
            pinned=pinned,
        )

    # ------------------ Candles ------------------

    def candle_ohlc(self, symbol: str) -> dict[str, Any] | None:
        with self._lock(symbol):
            live = self._candles.get(symbol)
            if live is None:
                return None
            return asdict(live)

    def roll_candle(self, symbol: str, now: float | None = None) -> Candle | None:
        """Close the live candle and open the next one at the current price."""
        ts = float(now if now is not None else time.time())
        with self._lock(symbol):
            live = self._candles.get(symbol)
            state = self._states.get(symbol)
            if live is None or state is None:
                return None
            closed = Candle(
                timestamp=live.started_at,
                open=live.open,
                high=live.high,
                low=live.low,
                close=live.close,
                volume=live.volume,
            )
            price = state.price
            self._candles[symbol] = _LiveCandle(price, price, price, price, 0.0, 0, ts)
            return closed

    # ------------------ Queries / admin ------------------

    def current_price(self, symbol: str) -> float | None:
        state = self._states.get(symbol)
        return state.price if state is not None else None

    def get_state(self, symbol: str) -> ProcessState | None:
        return self._states.get(symbol)

    def symbols(self) -> list[str]:
        return list(self._states.keys())

    def force_impulse(self, symbol: str, direction: int, steps: int = 20) -> None:
        with self._lock(symbol):
            state = self._states.get(symbol)
            if state is None:
                return
            wave = new_wave(self._rngs[symbol], 1 if direction > 0 else -1)
            self._states[symbol] = replace(state, wave=replace(wave, remaining_steps=max(1, int(steps))))

    def force_consolidation(self, symbol: str, steps: int = 15) -> None:
        with self._lock(symbol):
            state = self._states.get(symbol)
            if state is None:
                return
            wave = replace(
                state.wave,
                target_magnitude=3.0,
                progress_magnitude=0.0,
                remaining_steps=max(1, int(steps)),
                in_pullback=False,
                pullback_remaining=0,
            )
            self._states[symbol] = replace(state, wave=wave)

"""
config.py -- All tunable parameters for the OTC price and settlement engine.

Every value here is loaded from environment variables so the engine can be
configured from the deployment dashboard (or a local .env file) without
touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen

Per-instrument parameters live in InstrumentConfig.  The INSTRUMENTS env var
(JSON array) supplies them; without it a single EUR/USD-OTC instrument is built.
"""

from __future__ import annotations

import os
import json as _json
import logging
from dataclasses import asdict, dataclass, fields, replace

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

# Supabase (PostgREST) -- durable exposure snapshots, audit log, candles.
# If not set, the engine runs entirely in memory and persistence is a no-op.
SUPABASE_URL: str = _env("SUPABASE_URL", "")
SUPABASE_KEY: str = _env("SUPABASE_KEY", "")

# Max queued writes before the oldest are dropped.
STORE_MAX_QUEUE: int = _env("STORE_MAX_QUEUE", 1000, int)

# How often the background writer drains the queue.
STORE_FLUSH_INTERVAL_SEC: float = _env("STORE_FLUSH_INTERVAL_SEC", 10.0, float)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# Risk engine
# ---------------------------------------------------------------------------

# Exposure ratio above which an EXPOSURE_WARNING event is written.
# Independent of each instrument's intervention threshold.
EXPOSURE_WARNING_THRESHOLD: float = _env("EXPOSURE_WARNING_THRESHOLD", 0.7, float)

# Minimum seconds between two automatic interventions on one instrument.
# Raising it: fewer clustered interventions, less protection in bursts.
INTERVENTION_COOLDOWN_SEC: float = _env("INTERVENTION_COOLDOWN_SEC", 1.0, float)

# Wagers larger than this multiple of the running average size get a 10% bump.
LARGE_WAGER_MULTIPLE: float = _env("LARGE_WAGER_MULTIPLE", 1.5, float)

# Loss-guarantee construction, in pips.
MIN_LOSS_MARGIN_PIPS: float = 2.0
MAX_LOSS_MARGIN_PIPS: float = 5.0
MAX_SETTLEMENT_DEVIATION_PIPS: float = 15.0
FORCED_OUTCOME_MARGIN_PIPS: float = 3.0

# Expired-wager sweep interval.
CLEANUP_INTERVAL_SEC: float = _env("CLEANUP_INTERVAL_SEC", 60.0, float)

# Activity log rows older than this are deleted hourly by the store writer.
ACTIVITY_RETENTION_DAYS: int = _env("ACTIVITY_RETENTION_DAYS", 30, int)

# Entries kept in the in-memory activity ring buffer (for admin queries).
ACTIVITY_BUFFER_SIZE: int = _env("ACTIVITY_BUFFER_SIZE", 500, int)

# ---------------------------------------------------------------------------
# Price generation
# ---------------------------------------------------------------------------

# Base seconds between live ticks.  Each tick is one PriceProcess step.
TICK_INTERVAL_SEC: float = _env("TICK_INTERVAL_SEC", 0.5, float)

# Live candle resolution written to otc_price_history.
CANDLE_RESOLUTION_SEC: int = _env("CANDLE_RESOLUTION_SEC", 60, int)

# Defaults for a backfill run.
BACKFILL_CANDLE_COUNT: int = _env("BACKFILL_CANDLE_COUNT", 500, int)
BACKFILL_RESOLUTION_SEC: int = _env("BACKFILL_RESOLUTION_SEC", 60, int)

# Seed for the per-instrument random streams.  0 = fresh OS entropy.
RNG_SEED: int = _env("RNG_SEED", 0, int)

# Last-resort backfill anchors, keyed by base symbol.
DEFAULT_PRICES: dict = {
    "EUR/USD": 1.0850,
    "GBP/USD": 1.2650,
    "USD/JPY": 150.50,
    "AUD/USD": 0.6550,
    "USD/CAD": 1.3550,
    "BTC/USD": 95000.0,
    "ETH/USD": 3400.0,
    "SOL/USD": 180.0,
    "XRP/USD": 2.20,
    "BNB/USD": 680.0,
}

# ---------------------------------------------------------------------------
# Per-instrument configuration
# ---------------------------------------------------------------------------

_MARKET_TYPES = ("FOREX", "CRYPTO")

# (low, high) accepted range for each numeric field.  Out-of-range values are
# clamped with a warning rather than rejected.
_RANGES: dict[str, tuple[float, float]] = {
    "base_volatility": (0.0001, 0.1),
    "volatility_multiplier": (0.1, 5.0),
    "mean_reversion_strength": (0.0, 0.1),
    "max_deviation_percent": (0.1, 10.0),
    "momentum_factor": (0.0, 1.0),
    "garch_alpha": (0.0, 1.0),
    "garch_beta": (0.0, 1.0),
    "garch_omega": (0.0, 1.0),
    "exposure_threshold": (0.1, 0.9),
    "min_intervention_rate": (0.0, 1.0),
    "max_intervention_rate": (0.0, 1.0),
    "spread_multiplier": (1.0, 5.0),
    "payout_percent": (50.0, 100.0),
}


@dataclass(frozen=True)
class InstrumentConfig:
    """Immutable per-instrument parameters.

    An admin update builds a new instance (see ``updated``); readers hold
    whichever snapshot they fetched for the whole settlement.
    """

    symbol: str
    base_symbol: str = ""
    market_type: str = "FOREX"
    pip_size: float = 0.0001
    is_enabled: bool = True
    risk_enabled: bool = True
    # Price generation
    base_volatility: float = 0.0003
    volatility_multiplier: float = 1.0
    mean_reversion_strength: float = 0.0015
    max_deviation_percent: float = 1.5
    momentum_factor: float = 0.15
    # GARCH(1,1); omega / (1 - alpha - beta) == 1.0 keeps noise at baseline
    garch_alpha: float = 0.08
    garch_beta: float = 0.88
    garch_omega: float = 0.04
    # Risk engine
    exposure_threshold: float = 0.35
    min_intervention_rate: float = 0.25
    max_intervention_rate: float = 0.40
    spread_multiplier: float = 1.5
    payout_percent: float = 85.0
    # Trade limits
    min_trade_amount: float = 1.0
    max_trade_amount: float = 1000.0

    def __post_init__(self) -> None:
        if not self.symbol:
            raise ValueError("symbol must be non-empty")
        if self.pip_size <= 0:
            raise ValueError(f"pip_size must be positive, got {self.pip_size}")
        if self.market_type not in _MARKET_TYPES:
            raise ValueError(f"market_type must be one of {_MARKET_TYPES}, got {self.market_type!r}")
        for name, (lo, hi) in _RANGES.items():
            value = getattr(self, name)
            if not lo <= value <= hi:
                raise ValueError(f"{name}={value} outside [{lo}, {hi}]")
        if self.min_intervention_rate > self.max_intervention_rate:
            raise ValueError(
                f"min_intervention_rate {self.min_intervention_rate} > "
                f"max_intervention_rate {self.max_intervention_rate}"
            )

    def to_dict(self) -> dict:
        """Serialize for persistence."""
        return asdict(self)

    def updated(self, **changes) -> "InstrumentConfig":
        """Return a validated copy with *changes* applied."""
        return replace(self, **changes)

    @staticmethod
    def from_dict(d: dict) -> "InstrumentConfig":
        """Build from a persisted/admin row, clamping bad values.

        Accepts both snake_case and the camelCase keys the admin API emits.
        """
        _logger = logging.getLogger("config")
        symbol = str(d.get("symbol") or "").strip()
        try:
            known = {f.name for f in fields(InstrumentConfig)}
            kwargs: dict = {}
            for key, value in d.items():
                name = _snake(key)
                if name in known and value is not None:
                    kwargs[name] = value

            kwargs["symbol"] = symbol
            kwargs["base_symbol"] = str(kwargs.get("base_symbol") or _base_of(symbol))

            market_type = str(kwargs.get("market_type") or "FOREX").strip().upper()
            if market_type not in _MARKET_TYPES:
                _logger.warning("Unknown market_type=%r for %s; defaulting to FOREX", market_type, symbol)
                market_type = "FOREX"
            kwargs["market_type"] = market_type

            for flag in ("is_enabled", "risk_enabled"):
                if flag in kwargs:
                    kwargs[flag] = _to_bool(kwargs[flag])

            for name, (lo, hi) in _RANGES.items():
                if name not in kwargs:
                    continue
                value = float(kwargs[name])
                if value < lo or value > hi:
                    _logger.warning("Clamping bad %s=%.6f to [%s, %s] for %s", name, value, lo, hi, symbol)
                    value = min(hi, max(lo, value))
                kwargs[name] = value

            for name in ("pip_size", "min_trade_amount", "max_trade_amount"):
                if name in kwargs:
                    kwargs[name] = float(kwargs[name])

            lo_rate = kwargs.get("min_intervention_rate", InstrumentConfig.min_intervention_rate)
            hi_rate = kwargs.get("max_intervention_rate", InstrumentConfig.max_intervention_rate)
            if lo_rate > hi_rate:
                _logger.warning(
                    "min_intervention_rate %.3f > max_intervention_rate %.3f for %s; swapping",
                    lo_rate, hi_rate, symbol,
                )
                kwargs["min_intervention_rate"], kwargs["max_intervention_rate"] = hi_rate, lo_rate

            return InstrumentConfig(**kwargs)
        except (KeyError, TypeError, ValueError) as e:
            _logger.error("InstrumentConfig.from_dict failed for %s: %s -- using defaults", symbol or "?", e)
            return InstrumentConfig(
                symbol=symbol or "UNKNOWN",
                base_symbol=_base_of(symbol or "UNKNOWN"),
            )


def _snake(key: str) -> str:
    out = []
    for ch in str(key):
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out).lstrip("_")


def _to_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _base_of(symbol: str) -> str:
    """EUR/USD-OTC -> EUR/USD."""
    text = str(symbol or "")
    if text.upper().endswith("-OTC"):
        return text[:-4]
    return text


def _build_instruments() -> dict:
    """
    Parse INSTRUMENTS env var (JSON array) into symbol -> InstrumentConfig.
    If absent or unparseable, build a single EUR/USD-OTC instrument.
    """
    raw = os.environ.get("INSTRUMENTS", "")
    if raw:
        try:
            items = _json.loads(raw)
            instruments = {}
            for item in items:
                cfg = InstrumentConfig.from_dict(item)
                instruments[cfg.symbol] = cfg
            if instruments:
                return instruments
        except Exception as e:
            logging.getLogger(__name__).warning(
                "Failed to parse INSTRUMENTS env var: %s -- falling back to EUR/USD-OTC", e)

    return {
        "EUR/USD-OTC": InstrumentConfig(symbol="EUR/USD-OTC", base_symbol="EUR/USD"),
    }


INSTRUMENTS: dict = _build_instruments()


# ---------------------------------------------------------------------------
# Startup banner -- printed when the engine launches
# ---------------------------------------------------------------------------

def print_banner():
    """Print a clear summary of all active settings so you know what's running."""
    lines = [
        "",
        "=" * 60,
        "  OTC PRICE & SETTLEMENT ENGINE",
        "=" * 60,
        f"  Instruments:     {', '.join(INSTRUMENTS.keys())}",
        f"  Tick interval:   {TICK_INTERVAL_SEC:.2f}s",
        f"  Candle size:     {CANDLE_RESOLUTION_SEC}s",
        f"  Warning ratio:   {EXPOSURE_WARNING_THRESHOLD:.2f}",
        f"  Cooldown:        {INTERVENTION_COOLDOWN_SEC:.1f}s",
        f"  Cleanup every:   {CLEANUP_INTERVAL_SEC:.0f}s",
        f"  RNG seed:        {RNG_SEED if RNG_SEED else 'entropy'}",
        f"  Log level:       {LOG_LEVEL}",
        f"  Supabase:        {'configured' if SUPABASE_URL and SUPABASE_KEY else 'NOT SET'}",
    ]
    for cfg in INSTRUMENTS.values():
        lines.append(
            f"  {cfg.symbol:<16} {cfg.market_type:<6} pip={cfg.pip_size:g} "
            f"threshold={cfg.exposure_threshold:.2f} "
            f"rates={cfg.min_intervention_rate:.2f}-{cfg.max_intervention_rate:.2f} "
            f"risk={'on' if cfg.risk_enabled else 'off'}"
        )
    lines += ["=" * 60, ""]
    print("\n".join(lines))

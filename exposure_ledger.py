"""
exposure_ledger.py -- Net directional exposure of open wagers per instrument.

The ledger is memory-first:
- running UP/DOWN totals are updated in O(1) on every track/untrack
- `snapshot_state()` / `restore_state()` round-trip through the durable
  store so a restart does not forget open wagers

Each instrument has its own lock; nothing locks across instruments.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
import threading
import time
from typing import Any, Callable

import config


logger = logging.getLogger(__name__)

_VALID_DIRECTIONS = {"UP", "DOWN"}


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _epoch_seconds(value: Any) -> float:
    """Accept epoch seconds or epoch milliseconds."""
    ts = _to_float(value)
    return ts / 1000.0 if ts > 1e12 else ts


@dataclass(frozen=True)
class Wager:
    wager_id: str
    user_id: str
    symbol: str
    direction: str
    amount: float
    entry_price: float
    expires_at: float
    created_at: float = 0.0

    def __post_init__(self) -> None:
        if not self.wager_id:
            raise ValueError("wager_id must be non-empty")
        if not self.symbol:
            raise ValueError("symbol must be non-empty")
        if self.direction not in _VALID_DIRECTIONS:
            raise ValueError(f"direction must be UP or DOWN, got {self.direction!r}")
        if not self.amount > 0:
            raise ValueError(f"amount must be positive, got {self.amount!r}")
        if not self.entry_price > 0:
            raise ValueError(f"entry_price must be positive, got {self.entry_price!r}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_row(self) -> dict[str, Any]:
        """Row shape of the otc_trade_exposure table."""
        return {
            "trade_id": self.wager_id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "direction": self.direction,
            "amount": self.amount,
            "entry_price": self.entry_price,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "Wager":
        """Build from an intake payload or a stored row.  Raises ValueError."""
        if not isinstance(d, dict):
            raise ValueError("wager payload must be a dict")
        wager_id = d.get("wager_id") or d.get("trade_id") or d.get("tradeId") or d.get("id")
        try:
            amount = float(d.get("amount"))
            entry_price = float(d.get("entry_price", d.get("entryPrice")))
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid numeric field in wager {wager_id!r}: {e}") from e
        return Wager(
            wager_id=str(wager_id or "").strip(),
            user_id=str(d.get("user_id") or d.get("userId") or "").strip(),
            symbol=str(d.get("symbol") or "").strip(),
            direction=str(d.get("direction") or "").strip().upper(),
            amount=amount,
            entry_price=entry_price,
            expires_at=_epoch_seconds(d.get("expires_at", d.get("expiresAt"))),
            created_at=_epoch_seconds(d.get("created_at", d.get("createdAt"))),
        )


@dataclass(frozen=True)
class SymbolExposure:
    symbol: str
    up_wager_ids: tuple[str, ...] = ()
    down_wager_ids: tuple[str, ...] = ()
    total_up_amount: float = 0.0
    total_down_amount: float = 0.0
    net_exposure: float = 0.0
    exposure_ratio: float = 0.0
    broker_risk_amount: float = 0.0
    average_wager_size: float = 0.0
    peak_exposure_ratio: float = 0.0
    peak_exposure_time: float = 0.0
    updated_at: float = 0.0

    @property
    def wager_count(self) -> int:
        return len(self.up_wager_ids) + len(self.down_wager_ids)

    def to_row(self) -> dict[str, Any]:
        """Row shape of the otc_risk_exposure table."""
        return {
            "symbol": self.symbol,
            "total_up_amount": round(self.total_up_amount, 8),
            "total_down_amount": round(self.total_down_amount, 8),
            "net_exposure": round(self.net_exposure, 8),
            "exposure_ratio": round(self.exposure_ratio, 6),
            "broker_risk_amount": round(self.broker_risk_amount, 8),
            "up_trade_ids": list(self.up_wager_ids),
            "down_trade_ids": list(self.down_wager_ids),
            "up_count": len(self.up_wager_ids),
            "down_count": len(self.down_wager_ids),
            "peak_exposure_ratio": round(self.peak_exposure_ratio, 6),
            "peak_exposure_time": self.peak_exposure_time,
            "updated_at": self.updated_at,
        }


class _Book:
    """Mutable per-instrument totals.  Guarded by the instrument lock."""

    def __init__(self) -> None:
        self.up: dict[str, Wager] = {}
        self.down: dict[str, Wager] = {}
        self.total_up = 0.0
        self.total_down = 0.0
        self.peak_ratio = 0.0
        self.peak_time = 0.0
        self.updated_at = 0.0

    def ratio(self) -> float:
        total = self.total_up + self.total_down
        if total <= 0:
            return 0.0
        return min(1.0, abs(self.total_up - self.total_down) / total)

    def add(self, wager: Wager) -> None:
        if wager.direction == "UP":
            self.up[wager.wager_id] = wager
            self.total_up += wager.amount
        else:
            self.down[wager.wager_id] = wager
            self.total_down += wager.amount

    def remove(self, wager: Wager) -> None:
        if wager.direction == "UP":
            if self.up.pop(wager.wager_id, None) is not None:
                self.total_up = max(0.0, self.total_up - wager.amount) if self.up else 0.0
        else:
            if self.down.pop(wager.wager_id, None) is not None:
                self.total_down = max(0.0, self.total_down - wager.amount) if self.down else 0.0


class ExposureLedger:
    def __init__(
        self,
        *,
        payout_lookup: Callable[[str], float] | None = None,
        warning_threshold: float = config.EXPOSURE_WARNING_THRESHOLD,
        on_warning: Callable[[SymbolExposure], None] | None = None,
        on_expired: Callable[[Wager], None] | None = None,
    ) -> None:
        self._payout_lookup = payout_lookup or (lambda _symbol: 85.0)
        self.warning_threshold = float(warning_threshold)
        self._on_warning = on_warning
        self._on_expired = on_expired

        self._books: dict[str, _Book] = {}
        self._index: dict[str, Wager] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock(self, symbol: str) -> threading.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            with self._guard:
                lock = self._locks.setdefault(symbol, threading.Lock())
        return lock

    # ------------------ Core API ------------------

    def track(self, wager: Wager, now: float | None = None) -> bool:
        """Add an open wager.  Returns False (and changes nothing) for a duplicate id."""
        ts = float(now if now is not None else time.time())
        crossed = None
        with self._lock(wager.symbol):
            with self._guard:
                if wager.wager_id in self._index:
                    logger.debug("Ignoring duplicate wager %s", wager.wager_id)
                    return False
                self._index[wager.wager_id] = wager

            book = self._books.setdefault(wager.symbol, _Book())
            before = book.ratio()
            book.add(wager)
            after = book.ratio()
            book.updated_at = ts
            if after > book.peak_ratio:
                book.peak_ratio = after
                book.peak_time = ts
            if before <= self.warning_threshold < after:
                crossed = self._snapshot_locked(wager.symbol, book)

        self._warn(crossed)
        return True

    def untrack(self, wager_id: str, now: float | None = None) -> Wager | None:
        """Remove a wager.  Unknown ids return None."""
        with self._guard:
            wager = self._index.get(wager_id)
        if wager is None:
            return None

        ts = float(now if now is not None else time.time())
        crossed = None
        with self._lock(wager.symbol):
            with self._guard:
                if self._index.pop(wager_id, None) is None:
                    return None
            book = self._books.get(wager.symbol)
            if book is not None:
                before = book.ratio()
                book.remove(wager)
                book.updated_at = ts
                after = book.ratio()
                if after > book.peak_ratio:
                    book.peak_ratio = after
                    book.peak_time = ts
                # Removing the offsetting side can push the book over the line too.
                if before <= self.warning_threshold < after:
                    crossed = self._snapshot_locked(wager.symbol, book)

        self._warn(crossed)
        return wager

    def _warn(self, crossed: SymbolExposure | None) -> None:
        if crossed is None:
            return
        logger.warning(
            "Exposure warning %s: ratio %.3f (net %.2f)",
            crossed.symbol, crossed.exposure_ratio, crossed.net_exposure,
        )
        if self._on_warning is not None:
            self._on_warning(crossed)

    def get(self, wager_id: str) -> Wager | None:
        with self._guard:
            return self._index.get(wager_id)

    def open_wagers(self, symbol: str | None = None) -> list[Wager]:
        with self._guard:
            wagers = list(self._index.values())
        if symbol is not None:
            wagers = [w for w in wagers if w.symbol == symbol]
        return wagers

    def symbols(self) -> list[str]:
        return list(self._books.keys())

    # ------------------ Snapshots ------------------

    def _snapshot_locked(self, symbol: str, book: _Book) -> SymbolExposure:
        net = book.total_up - book.total_down
        count = len(book.up) + len(book.down)
        total = book.total_up + book.total_down
        return SymbolExposure(
            symbol=symbol,
            up_wager_ids=tuple(book.up.keys()),
            down_wager_ids=tuple(book.down.keys()),
            total_up_amount=book.total_up,
            total_down_amount=book.total_down,
            net_exposure=net,
            exposure_ratio=book.ratio(),
            broker_risk_amount=abs(net) * _to_float(self._payout_lookup(symbol), 85.0) / 100.0,
            average_wager_size=(total / count) if count else 0.0,
            peak_exposure_ratio=book.peak_ratio,
            peak_exposure_time=book.peak_time,
            updated_at=book.updated_at,
        )

    def snapshot(self, symbol: str) -> SymbolExposure:
        with self._lock(symbol):
            book = self._books.get(symbol)
            if book is None:
                return SymbolExposure(symbol=symbol)
            return self._snapshot_locked(symbol, book)

    def all_snapshots(self) -> dict[str, SymbolExposure]:
        return {symbol: self.snapshot(symbol) for symbol in self.symbols()}

    # ------------------ Maintenance ------------------

    def cleanup_expired(self, now: float | None = None, grace: float = 0.0) -> int:
        """Drop wagers whose expiry passed more than *grace* seconds ago."""
        cutoff = float(now if now is not None else time.time()) - max(0.0, float(grace))
        with self._guard:
            stale = [w for w in self._index.values() if w.expires_at < cutoff]

        removed = 0
        for wager in stale:
            if self.untrack(wager.wager_id, now=cutoff) is None:
                continue
            removed += 1
            if self._on_expired is not None:
                self._on_expired(wager)
        if removed:
            logger.info("Removed %d expired wagers", removed)
        return removed

    # ------------------ Persistence ------------------

    def snapshot_state(self) -> dict[str, Any]:
        with self._guard:
            wagers = [w.to_dict() for w in self._index.values()]
        peaks = {}
        for symbol in self.symbols():
            with self._lock(symbol):
                book = self._books[symbol]
                peaks[symbol] = [book.peak_ratio, book.peak_time]
        return {"wagers": wagers, "peaks": peaks}

    def restore_state(self, payload: dict[str, Any], now: float | None = None) -> int:
        """
        Rebuild the ledger from ``snapshot_state()`` output.

        Wagers already expired at *now* are dropped, as are rows that fail
        validation.  Returns the number of wagers restored.
        """
        if not isinstance(payload, dict):
            return 0
        ts = float(now if now is not None else time.time())

        with self._guard:
            self._index.clear()
            self._books.clear()

        restored = 0
        for raw in payload.get("wagers") or []:
            try:
                wager = Wager.from_dict(raw)
            except ValueError as e:
                logger.warning("Skipping invalid persisted wager: %s", e)
                continue
            if wager.expires_at <= ts:
                continue
            if self.track(wager, now=ts):
                restored += 1

        for symbol, peak in (payload.get("peaks") or {}).items():
            try:
                ratio, peak_time = float(peak[0]), float(peak[1])
            except (TypeError, ValueError, IndexError):
                continue
            with self._lock(symbol):
                book = self._books.setdefault(symbol, _Book())
                if ratio > book.peak_ratio:
                    book.peak_ratio = min(1.0, max(0.0, ratio))
                    book.peak_time = peak_time
        return restored

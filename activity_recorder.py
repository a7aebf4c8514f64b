"""
activity_recorder.py -- Best-effort audit trail of risk-engine events.

Each event is kept in a bounded in-memory ring (for admin queries) and handed
to a sink, by default the Supabase write queue.  A failing sink is logged and
ignored; recording never raises into the settlement path.
"""

from __future__ import annotations

from collections import Counter, deque
import logging
import threading
import time
from typing import Any, Callable

import config
import supabase_store


logger = logging.getLogger(__name__)

EVENT_TRADE_TRACKED = "TRADE_TRACKED"
EVENT_TRADE_REMOVED = "TRADE_REMOVED"
EVENT_INTERVENTION_APPLIED = "INTERVENTION_APPLIED"
EVENT_INTERVENTION_SKIPPED = "INTERVENTION_SKIPPED"
EVENT_EXPOSURE_WARNING = "EXPOSURE_WARNING"
EVENT_MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
EVENT_CONFIG_UPDATED = "CONFIG_UPDATED"
EVENT_SYSTEM_ERROR = "SYSTEM_ERROR"

EVENT_TYPES = frozenset({
    EVENT_TRADE_TRACKED,
    EVENT_TRADE_REMOVED,
    EVENT_INTERVENTION_APPLIED,
    EVENT_INTERVENTION_SKIPPED,
    EVENT_EXPOSURE_WARNING,
    EVENT_MANUAL_OVERRIDE,
    EVENT_CONFIG_UPDATED,
    EVENT_SYSTEM_ERROR,
})


class ActivityRecorder:
    def __init__(
        self,
        *,
        sink: Callable[[dict[str, Any]], None] | None = supabase_store.save_activity,
        buffer_size: int = config.ACTIVITY_BUFFER_SIZE,
    ) -> None:
        self._sink = sink
        self._recent: deque = deque(maxlen=max(10, int(buffer_size)))
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def record(
        self,
        event_type: str,
        *,
        symbol: str | None = None,
        wager_id: str | None = None,
        user_id: str | None = None,
        exposure_ratio: float | None = None,
        probability: float | None = None,
        prices: dict[str, float] | None = None,
        details: dict[str, Any] | None = None,
        success: bool = True,
    ) -> dict[str, Any]:
        """Append one event row.  Raises ValueError for an unknown event type."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown activity event type {event_type!r}")
        row = {
            "time": time.time(),
            "event_type": event_type,
            "symbol": symbol,
            "trade_id": wager_id,
            "user_id": user_id,
            "exposure_ratio": exposure_ratio,
            "probability": probability,
            "prices": dict(prices) if prices else None,
            "details": dict(details or {}),
            "success": bool(success),
        }
        with self._lock:
            self._recent.append(row)
            self._counts[event_type] += 1

        if self._sink is not None:
            try:
                self._sink(row)
            except Exception as e:
                logger.warning("Activity sink failed for %s: %s", event_type, e)
        return row

    def recent(
        self,
        limit: int = 50,
        *,
        event_type: str | None = None,
        symbol: str | None = None,
    ) -> list[dict[str, Any]]:
        """Newest first."""
        with self._lock:
            rows = list(self._recent)
        rows.reverse()
        if event_type is not None:
            rows = [r for r in rows if r["event_type"] == event_type]
        if symbol is not None:
            rows = [r for r in rows if r["symbol"] == symbol]
        return rows[: max(0, int(limit))]

    def counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

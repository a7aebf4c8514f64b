"""
supabase_store.py -- Supabase (PostgREST) persistence layer for the OTC engine.

Provides durable exposure snapshots, open-wager rows, the activity/audit log,
manual-control state and synthetic candle history so the engine survives
restarts without losing its risk picture.

PATTERN:
    - Never raises -- logs warnings on failure
    - Engine works identically without Supabase configured
    - Uses urllib.request only

WRITE PATH:
  All writes go to a collections.deque queue.  A daemon thread flushes
  every STORE_FLUSH_INTERVAL_SEC, batching by table.  Settlement never blocks
  on Supabase I/O.

READ PATH:
  Sequential HTTP calls on startup only (exposure, open trades, manual
  control), plus the synchronous backfill insert.

TABLES:
  otc_risk_exposure    upsert on symbol
  otc_trade_exposure   upsert on trade_id, deleted on settlement
  otc_activity_log     append-only
  otc_manual_control   upsert on key
  otc_price_history    unique (symbol, resolution, time)
"""

import json
import logging
import time
import threading
import collections
import urllib.request
import urllib.error
import urllib.parse

import config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

# Max queued writes before dropping oldest (prevents unbounded memory)
MAX_QUEUE_SIZE = max(10, int(config.STORE_MAX_QUEUE))

# Rows per request for the synchronous candle insert.
INSERT_BATCH_SIZE = 100

# Write queue: each item is (table_name, row_dict)
_write_queue: collections.deque = collections.deque(maxlen=MAX_QUEUE_SIZE)

# Deletes are queued under this prefix so they keep their order with upserts.
_DELETE_PREFIX = "delete:"

# Writer thread state
_writer_thread: threading.Thread = None
_writer_stop = threading.Event()

# Cleanup tracking
_last_cleanup: float = 0.0


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

def _enabled() -> bool:
    """Return True if Supabase is configured."""
    return bool(config.SUPABASE_URL and config.SUPABASE_KEY)


# ---------------------------------------------------------------------------
# Core HTTP helper
# ---------------------------------------------------------------------------

def _headers(prefer: str) -> dict:
    return {
        "apikey": config.SUPABASE_KEY,
        "Authorization": "Bearer " + config.SUPABASE_KEY,
        "Content-Type": "application/json",
        "Prefer": prefer,
        "User-Agent": "OTCRiskEngine/1.0",
    }


def _default_prefer(method: str, upsert: bool) -> str:
    if method == "GET":
        return "return=representation"
    if upsert:
        return "return=minimal, resolution=merge-duplicates"
    return "return=minimal"


def _request(method: str, path: str, body=None,
             params: dict = None, timeout: int = 10,
             upsert: bool = False, prefer: str = None):
    """
    One PostgREST call.  Never raises.

    Args:
        method:  GET, POST, PATCH or DELETE
        path:    table path, e.g. "/rest/v1/otc_activity_log"
        body:    JSON-serializable payload for writes
        params:  query-string filters (PostgREST operators like "eq.x")
        upsert:  merge duplicates on the table's conflict key
        prefer:  explicit Prefer header, replacing the method default

    Returns:
        Decoded JSON (list/dict), {} for an empty body, or None on any failure.
    """
    if not _enabled():
        return None

    query = "?" + urllib.parse.urlencode(params, doseq=True) if params else ""
    url = config.SUPABASE_URL.rstrip("/") + path + query
    payload = json.dumps(body).encode("utf-8") if body is not None else None
    req = urllib.request.Request(
        url,
        data=payload,
        headers=_headers(prefer or _default_prefer(method, upsert)),
        method=method,
    )

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        detail = e.read().decode("utf-8", errors="replace")[:200]
        logger.warning("Supabase %s %s -> HTTP %d: %s", method, path, e.code, detail)
        return None
    except Exception as e:
        logger.warning("Supabase %s %s error: %s", method, path, e)
        return None

    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError as e:
        logger.warning("Supabase %s %s returned invalid JSON: %s", method, path, e)
        return None


# ---------------------------------------------------------------------------
# Write operations (queue-based, non-blocking)
# ---------------------------------------------------------------------------

def save_exposure(row: dict):
    """Queue a per-symbol exposure snapshot upsert (keyed by symbol)."""
    if not _enabled() or not isinstance(row, dict) or not row.get("symbol"):
        return
    _write_queue.append(("otc_risk_exposure", dict(row)))


def save_trade_exposure(row: dict):
    """Queue an open-wager row upsert (keyed by trade_id)."""
    if not _enabled() or not isinstance(row, dict) or not row.get("trade_id"):
        return
    _write_queue.append(("otc_trade_exposure", dict(row)))


def delete_trade_exposure(trade_id: str):
    """Queue removal of a settled or expired wager row."""
    if not _enabled() or not trade_id:
        return
    _write_queue.append((_DELETE_PREFIX + "otc_trade_exposure", {"trade_id": str(trade_id)}))


def save_activity(row: dict):
    """Queue an activity/audit log row (append-only)."""
    if not _enabled() or not isinstance(row, dict) or not row:
        return
    _write_queue.append(("otc_activity_log", dict(row)))


def save_manual_control(snapshot: dict, key: str = "manual_control"):
    """Queue the manual-control snapshot upsert."""
    if not _enabled():
        return
    _write_queue.append(("otc_manual_control", {"key": key, "data": snapshot}))


def queue_candles(candles: list, symbol: str, resolution: int):
    """Queue closed live candles for upsert into otc_price_history."""
    if not _enabled() or not candles:
        return
    for candle in candles:
        row = _candle_row(candle, symbol, resolution)
        if row is not None:
            _write_queue.append(("otc_price_history", row))


def _candle_row(candle, symbol: str, resolution: int):
    data = candle.to_dict() if hasattr(candle, "to_dict") else candle
    if not isinstance(data, dict):
        return None
    try:
        return {
            "symbol": str(symbol),
            "resolution": int(resolution),
            "time": float(data.get("timestamp", data.get("time"))),
            "open": float(data["open"]),
            "high": float(data["high"]),
            "low": float(data["low"]),
            "close": float(data["close"]),
            "volume": float(data.get("volume") or 0.0),
        }
    except (KeyError, TypeError, ValueError):
        return None


def insert_candles(candles: list, symbol: str, resolution: int) -> int:
    """
    Synchronously insert candles, skipping rows whose (symbol, resolution,
    time) already exists.  Returns how many rows were actually inserted.
    """
    if not _enabled():
        return 0
    rows = [r for r in (_candle_row(c, symbol, resolution) for c in candles) if r is not None]
    inserted = 0
    for start in range(0, len(rows), INSERT_BATCH_SIZE):
        batch = rows[start:start + INSERT_BATCH_SIZE]
        result = _request(
            "POST",
            "/rest/v1/otc_price_history",
            body=batch,
            params={"on_conflict": "symbol,resolution,time"},
            prefer="return=representation, resolution=ignore-duplicates",
            timeout=30,
        )
        if result is None:
            logger.warning("Supabase: candle batch %d-%d for %s failed",
                           start, start + len(batch), symbol)
            continue
        if isinstance(result, list):
            inserted += len(result)
    return inserted


# ---------------------------------------------------------------------------
# Read operations (startup only)
# ---------------------------------------------------------------------------

def load_exposures() -> list:
    """Load all persisted exposure snapshots.  Returns [] on failure."""
    if not _enabled():
        return []
    result = _request("GET", "/rest/v1/otc_risk_exposure", params={"select": "*"})
    if not isinstance(result, list):
        return []
    return [row for row in result if isinstance(row, dict)]


def load_open_trades(now: float = None) -> list:
    """Load wagers whose expiry is still in the future, oldest expiry first."""
    if not _enabled():
        return []
    cutoff = float(now if now is not None else time.time())
    result = _request("GET", "/rest/v1/otc_trade_exposure", params={
        "select": "*",
        "expires_at": f"gt.{cutoff}",
        "order": "expires_at.asc",
    })
    if result is None:
        logger.warning("Supabase: failed to load open trades -- starting empty")
        return []
    rows = [row for row in result if isinstance(row, dict)] if isinstance(result, list) else []
    logger.info("Supabase: loaded %d open trades", len(rows))
    return rows


def load_manual_control(key: str = "manual_control") -> dict:
    """Load the manual-control snapshot, or {} on failure."""
    if not _enabled():
        return {}
    result = _request("GET", "/rest/v1/otc_manual_control", params={
        "key": f"eq.{key}",
        "select": "data",
        "limit": "1",
    })
    if isinstance(result, list) and result:
        data = result[0].get("data") or {}
        if isinstance(data, dict):
            return data
    return {}


def load_oldest_candle(symbol: str, resolution: int):
    """Return the oldest persisted candle row for symbol/resolution, or None."""
    if not _enabled():
        return None
    result = _request("GET", "/rest/v1/otc_price_history", params={
        "select": "time,open,high,low,close,volume",
        "symbol": f"eq.{symbol}",
        "resolution": f"eq.{int(resolution)}",
        "order": "time.asc",
        "limit": "1",
    })
    if isinstance(result, list) and result:
        return result[0]
    return None


def load_latest_price(symbol: str):
    """Most recent close persisted for *symbol* at any resolution, or None."""
    if not _enabled():
        return None
    result = _request("GET", "/rest/v1/otc_price_history", params={
        "select": "close",
        "symbol": f"eq.{symbol}",
        "order": "time.desc",
        "limit": "1",
    })
    if isinstance(result, list) and result:
        try:
            return float(result[0].get("close"))
        except (TypeError, ValueError):
            return None
    return None


# ---------------------------------------------------------------------------
# Background writer thread
# ---------------------------------------------------------------------------

# Upsert tables: conflict key(s) PostgREST merges on.
_UPSERT_KEYS = {
    "otc_risk_exposure": ("symbol",),
    "otc_trade_exposure": ("trade_id",),
    "otc_manual_control": ("key",),
    "otc_price_history": ("symbol", "resolution", "time"),
}


def _latest_by(rows: list, keys: tuple) -> list:
    """Keep the last row per conflict key, preserving first-seen order."""
    merged: dict = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        ident = tuple(row.get(k) for k in keys)
        if None in ident:
            continue
        merged[ident] = row
    return list(merged.values())


def _drain() -> list:
    """Pop everything queued into (table, rows) runs in arrival order."""
    runs: list = []
    while True:
        try:
            table, row = _write_queue.popleft()
        except IndexError:
            break
        if runs and runs[-1][0] == table:
            runs[-1][1].append(row)
        else:
            runs.append((table, [row]))
    return runs


def _write_run(table: str, rows: list) -> bool:
    if table.startswith(_DELETE_PREFIX):
        target = table[len(_DELETE_PREFIX):]
        ids = sorted({str(r["trade_id"]) for r in rows if r.get("trade_id")})
        if not ids:
            return True
        ok = _request("DELETE", f"/rest/v1/{target}",
                      params={"trade_id": "in.(" + ",".join(ids) + ")"}) is not None
        count = len(ids)
    elif table in _UPSERT_KEYS:
        keys = _UPSERT_KEYS[table]
        payload = _latest_by(rows, keys)
        if not payload:
            return True
        ok = _request("POST", f"/rest/v1/{table}", body=payload,
                      params={"on_conflict": ",".join(keys)}, upsert=True) is not None
        count = len(payload)
    else:
        ok = _request("POST", f"/rest/v1/{table}", body=rows) is not None
        count = len(rows)

    if ok:
        logger.debug("Supabase: wrote %d rows to %s", count, table)
    else:
        logger.debug("Supabase: write to %s failed (%d rows dropped)", table, count)
    return ok


def _flush_queue():
    """Write everything queued; a delete never overtakes an earlier upsert."""
    for table, rows in _drain():
        _write_run(table, rows)


def _cleanup_old_activity():
    """Trim otc_activity_log to ACTIVITY_RETENTION_DAYS."""
    days = max(1, int(config.ACTIVITY_RETENTION_DAYS))
    cutoff = time.time() - days * 86400
    if _request("DELETE", "/rest/v1/otc_activity_log", params={"time": f"lt.{cutoff}"}) is not None:
        logger.debug("Supabase: trimmed otc_activity_log to %d days", days)


def _writer_loop():
    global _last_cleanup

    interval = max(0.5, float(config.STORE_FLUSH_INTERVAL_SEC))
    _last_cleanup = time.time()
    logger.info("Supabase writer started (flush every %.1fs)", interval)

    while not _writer_stop.wait(interval):
        try:
            _flush_queue()
            if time.time() - _last_cleanup >= 3600:
                _cleanup_old_activity()
                _last_cleanup = time.time()
        except Exception as e:
            logger.warning("Supabase writer error: %s", e)

    try:
        _flush_queue()
    except Exception as e:
        logger.warning("Supabase final flush failed: %s", e)
    logger.info("Supabase writer stopped (%d writes left queued)", len(_write_queue))


def start_writer_thread():
    """Start the daemon writer.  No-op when disabled or already running."""
    global _writer_thread

    if not _enabled():
        logger.info("Supabase not configured -- running without persistence")
        return
    if _writer_thread is not None and _writer_thread.is_alive():
        return

    _writer_stop.clear()
    _writer_thread = threading.Thread(target=_writer_loop, name="otc-store-writer", daemon=True)
    _writer_thread.start()


def stop_writer_thread(timeout: float = 5.0):
    """Signal the writer to stop and wait for its final flush."""
    _writer_stop.set()
    if _writer_thread is not None:
        _writer_thread.join(timeout)

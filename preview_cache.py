"""
Key-value caching for route previews, Street View lookups and analyses.

Three namespaces share one abstraction with different lifetimes:

    route_preview_   24 hours, measured from the preview's generated_at
    streetview_      no expiry (imagery rarely changes)
    analysis_        no expiry (same image URL -> same analysis)

Storage is pluggable.  ``SQLiteStore`` persists across processes (WAL mode,
raw sqlite3, same approach as the rest of the app); ``MemoryStore`` is a
lock-guarded dict for tests and single-process use.  Stores only know
get / set / delete / keys-by-prefix; TTL is enforced here by comparing the
timestamp stored alongside each value.

Cache errors are swallowed and logged so they never break a preview: a
failed read is a miss and a failed write is a no-op.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from preview_config import DB_PATH

logger = logging.getLogger(__name__)

PREVIEW_NAMESPACE = "route_preview_"
STREET_VIEW_NAMESPACE = "streetview_"
ANALYSIS_NAMESPACE = "analysis_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    # Handle naive timestamps by assuming UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Stores
# =============================================================================

class KeyValueStore:
    """Passive string key-value store with prefix listing."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """In-process store. Last write wins."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]


class SQLiteStore(KeyValueStore):
    """SQLite-backed store. One short-lived connection per call."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or DB_PATH
        self._init_table()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_table(self):
        conn = self._connect()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_cache (
                cache_key   TEXT PRIMARY KEY,
                value_json  TEXT NOT NULL
            )
        """)
        conn.commit()
        conn.close()

    def get(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value_json FROM kv_cache WHERE cache_key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        return row["value_json"] if row else None

    def set(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv_cache (cache_key, value_json) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM kv_cache WHERE cache_key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self, prefix: str = "") -> List[str]:
        # Escape LIKE wildcards so prefixes containing "_" match literally.
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT cache_key FROM kv_cache WHERE cache_key LIKE ? ESCAPE '\\'",
                (escaped + "%",),
            ).fetchall()
        finally:
            conn.close()
        return [r["cache_key"] for r in rows]


# =============================================================================
# TTL cache
# =============================================================================

class TTLCache:
    """One namespace of JSON values over a KeyValueStore.

    Each entry is stored as {"created_at": ISO-8601, "value": ...}.  When
    ``ttl`` is set, an entry is live while its age (now - created_at) is
    strictly less than ttl; expired entries read as misses and are left in
    place until overwritten or cleared.
    """

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str,
        ttl: Optional[timedelta] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.namespace = namespace
        self.ttl = ttl
        self._now = now

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Optional[Any]:
        full_key = self._full_key(key)
        try:
            raw = self.store.get(full_key)
        except Exception:
            logger.warning("Cache read failed for %s", full_key, exc_info=True)
            return None
        if raw is None:
            return None

        try:
            entry = json.loads(raw)
            value = entry["value"]
            created_str = entry.get("created_at")
        except (json.JSONDecodeError, TypeError, KeyError):
            logger.warning("Corrupted cache entry for %s, treating as miss", full_key)
            return None

        if self.ttl is not None:
            if not created_str:
                return None
            try:
                age = self._now() - _parse_timestamp(created_str)
            except (ValueError, TypeError):
                logger.warning("Unparseable cache timestamp for %s", full_key)
                return None
            if age >= self.ttl:
                return None  # Expired

        return value

    def put(self, key: str, value: Any, created_at: Optional[datetime] = None) -> None:
        """Store *value*. ``created_at`` defaults to now; TTL counts from it."""
        full_key = self._full_key(key)
        stamp = (created_at or self._now()).isoformat()
        try:
            payload = json.dumps({"created_at": stamp, "value": value}, default=str)
            self.store.set(full_key, payload)
        except Exception:
            logger.warning("Cache write failed for %s", full_key, exc_info=True)

    def delete(self, key: str) -> None:
        full_key = self._full_key(key)
        try:
            self.store.delete(full_key)
        except Exception:
            logger.warning("Cache delete failed for %s", full_key, exc_info=True)

    def count(self) -> int:
        try:
            return len(self.store.keys(self.namespace))
        except Exception:
            logger.warning("Cache key listing failed for %s", self.namespace, exc_info=True)
            return 0

    def clear(self) -> int:
        """Remove every entry in this namespace. Returns the number removed."""
        try:
            keys = self.store.keys(self.namespace)
        except Exception:
            logger.warning("Cache key listing failed for %s", self.namespace, exc_info=True)
            return 0
        removed = 0
        for full_key in keys:
            try:
                self.store.delete(full_key)
                removed += 1
            except Exception:
                logger.warning("Cache delete failed for %s", full_key, exc_info=True)
        return removed

"""
cache/store.py -- SQLite-backed local session cache.

Holds exactly one opaque string blob per client under a single key, so a
login survives process restarts on the same machine (the CLI relies on this
between invocations). The blob is a JSON-encoded SessionRecord.

The cache belongs to one client process; nothing else writes the file, so no
locking beyond SQLite's own is needed.

Corrupt contents (not JSON, wrong shape, unknown auth mode) are treated as
"no session" rather than raised: a broken cache must never lock a user out
or crash the caller.

Usage:
    cache = SessionCache()
    cache.save(record)
    record = cache.load()     # SessionRecord or None
    cache.clear()             # sign-out
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Optional

from auth.models import SessionRecord
from core.config import get_settings

logger = logging.getLogger("schoolgate.cache")

SESSION_KEY = "session"

_DDL = """
CREATE TABLE IF NOT EXISTS client_cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    stored_at   REAL NOT NULL
);
"""


class SessionCache:
    def __init__(self, db_path: Optional[Path] = None, key: str = SESSION_KEY) -> None:
        self.key = key
        self._conn = sqlite3.connect(db_path or get_settings().session_cache_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Raw blob access
    # ------------------------------------------------------------------

    def get_raw(self) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM client_cache WHERE key = ?", (self.key,)).fetchone()
        return row[0] if row else None

    def set_raw(self, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO client_cache (key, value, stored_at) VALUES (?, ?, ?)",
            (self.key, value, time.time()),
        )
        self._conn.commit()

    def clear(self) -> None:
        self._conn.execute("DELETE FROM client_cache WHERE key = ?", (self.key,))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Session records
    # ------------------------------------------------------------------

    def load(self) -> Optional[SessionRecord]:
        """Return the cached session, or None if absent or unreadable."""
        raw = self.get_raw()
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("session blob is not an object")
            return SessionRecord.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable session cache entry: %s", e)
            return None

    def save(self, record: SessionRecord) -> None:
        self.set_raw(json.dumps(record.to_dict()))

    def close(self) -> None:
        self._conn.close()

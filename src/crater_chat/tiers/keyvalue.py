"""Key-value storage tier.

Older releases kept each session as one entry in a key-value store, the
same kind of ``ItemTable`` editors use for their global state. The store is
a single SQLite database (``state.db``) with a ``key``/``value`` table.
New writes never land here; the tier is read for compatibility.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from ..tier import StorageTier

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "crater.session."
SESSIONS_KEY = "crater.chatSessions"
CURRENT_SESSION_KEY = "crater.currentSessionId"
LEGACY_HISTORY_KEY = "crater.chatHistory"


class KeyValueStore:
    """Minimal JSON key-value store on top of a SQLite ItemTable."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def get(self, key: str) -> Any:
        """Return the decoded value for a key, or None if absent.

        Raises sqlite3.Error or json.JSONDecodeError on a broken store.
        """
        if not self.db_path.exists():
            return None
        conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)
        try:
            cur = conn.cursor()
            cur.execute("SELECT value FROM ItemTable WHERE key = ?", (key,))
            row = cur.fetchone()
        finally:
            conn.close()
        if not row:
            return None
        val = row[0]
        raw = val if isinstance(val, str) else val.decode("utf-8", errors="replace")
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        try:
            self._ensure_table(conn)
            conn.execute(
                "INSERT INTO ItemTable (key, value) VALUES (?, ?)",
                (key, json.dumps(value, ensure_ascii=False)),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        if not self.db_path.exists():
            return
        conn = sqlite3.connect(str(self.db_path))
        try:
            self._ensure_table(conn)
            conn.execute("DELETE FROM ItemTable WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)"
        )


class KeyValueTier(StorageTier):
    """Reads a session stored under ``crater.session.<id>``."""

    name = "key_value"
    read_only = True

    def __init__(self, store: KeyValueStore):
        self.store = store

    def read(self, session_id: str) -> dict | None:
        data = self.store.get(SESSION_KEY_PREFIX + session_id)
        if data is None:
            return None
        if not isinstance(data, dict):
            logger.warning("Key-value entry for %s is not an object", session_id)
            return None
        return data

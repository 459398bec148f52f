import json
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

from utils.logger import get_logger

logger = get_logger(__name__)

IS_LISTENING_KEY = "is_listening"
WEBHOOK_CONFIG_KEY = "webhook_config"


class StateStore:
    """SQLite-backed key/value store for the few flags that must survive a
    restart: whether monitoring was on, and the webhook config."""

    def __init__(self, db_path: str):
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._create_table()

    def _create_table(self) -> None:
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS relay_state (
                key        TEXT PRIMARY KEY,
                value      TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the JSON-decoded value stored under key, or default."""
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM relay_state WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serialisable value under key, replacing any old one."""
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO relay_state (key, value, updated_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), datetime.now(timezone.utc).isoformat()),
            )
            self.conn.commit()
        logger.debug(f"Persisted state key: {key}")

    def close(self) -> None:
        self.conn.close()

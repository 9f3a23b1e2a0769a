import os
import json
import time
import base64
import sqlite3
import logging
from threading import Lock
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

ROOT_BOOKMARKS_KEY = "root_bookmarks"
EXPANDED_PATHS_KEY = "expanded_paths"
LAST_SELECTION_KEY = "last_selection"
SORT_OPTION_KEY = "sort_option"


class SettingsStore:
    """
    Small key/value store for persisted UI state (bookmarks, expanded nodes, last selection).
    Values are opaque blobs; JSON helpers are provided for the structured ones.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = Lock()

        db_dir = os.path.dirname(db_path)
        if db_dir and db_path != ":memory:":
            os.makedirs(db_dir, exist_ok=True)

        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_database()

    def _init_database(self):
        with self._lock:
            cursor = self.conn.cursor()
            # Enable Write-Ahead Logging for better concurrency
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value BLOB,
                    updated_at REAL NOT NULL
                )
            ''')
            self.conn.commit()
        logger.debug(f"Settings store ready at {self.db_path}")

    def get_blob(self, key: str) -> Optional[bytes]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row and row[0] is not None else None

    def set_blob(self, key: str, value: bytes) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, sqlite3.Binary(value), time.time()),
            )
            self.conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self.conn.commit()

    def get_json(self, key: str, default: Any = None) -> Any:
        blob = self.get_blob(key)
        if blob is None:
            return default
        try:
            return json.loads(blob.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Discarding corrupt setting {key!r}: {e}")
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set_blob(key, json.dumps(value).encode("utf-8"))

    # --- typed helpers for the fixed keys ---

    def get_bookmarks(self) -> List[Tuple[str, bytes]]:
        bookmarks = []
        for item in self.get_json(ROOT_BOOKMARKS_KEY, []) or []:
            try:
                bookmarks.append((item["path"], base64.b64decode(item["token"])))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed bookmark {item!r}: {e}")
        return bookmarks

    def set_bookmarks(self, bookmarks: List[Tuple[str, bytes]]) -> None:
        self.set_json(ROOT_BOOKMARKS_KEY, [
            {"path": path, "token": base64.b64encode(token).decode("ascii")}
            for path, token in bookmarks
        ])

    def get_expanded_paths(self) -> List[str]:
        return list(self.get_json(EXPANDED_PATHS_KEY, []) or [])

    def set_expanded_paths(self, paths) -> None:
        self.set_json(EXPANDED_PATHS_KEY, sorted(paths))

    def get_last_selection(self) -> Optional[str]:
        return self.get_json(LAST_SELECTION_KEY)

    def set_last_selection(self, path: Optional[str]) -> None:
        if path is None:
            self.delete(LAST_SELECTION_KEY)
        else:
            self.set_json(LAST_SELECTION_KEY, path)

    def close(self):
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

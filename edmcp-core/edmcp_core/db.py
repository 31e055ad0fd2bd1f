"""
SQLite connection shared by edmcp workflow servers.

Each workflow owns its tables and creates them on top of the connection
exposed here (see the table setup in edmcp_pii.core.roster_store).
"""

import sqlite3
import threading
from pathlib import Path
from typing import Union


class DatabaseManager:
    """Thin owner of a single SQLite connection."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Tool calls may arrive on worker threads; writes are serialized by `lock`.
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.lock = threading.RLock()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Runs a single statement and commits it."""
        with self.lock:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor

    def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Runs a query and returns rows as plain dicts."""
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def fetch_one(self, sql: str, params: tuple = ()) -> dict | None:
        with self.lock:
            row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def close(self) -> None:
        with self.lock:
            self.conn.close()

"""SQLite plumbing shared by the local stores."""
from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SqliteStore:
    """Base class owning one connection, a re-entrant lock and schema setup.

    Stores are shared between concurrent searches, so the connection is opened
    with ``check_same_thread=False`` and every access goes through ``self.lock``.
    A store whose database cannot be opened keeps working in memory only.
    """

    schema: Iterable[str] = ()

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.lock = threading.RLock()
        self.conn: Optional[sqlite3.Connection] = None
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._configure_conn()
            self._init_db()
        except sqlite3.Error:
            logger.warning("Could not open %s; state will not persist", self.db_path, exc_info=True)
            self.conn = None

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        try:
            cur.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError:
            pass

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        for statement in self.schema:
            cur.execute(statement)
        self.conn.commit()

    def close(self) -> None:
        with self.lock:
            if self.conn is None:
                return
            try:
                self.conn.commit()
                self.conn.close()
            except sqlite3.Error:
                logger.warning("Error closing %s", self.db_path, exc_info=True)
            self.conn = None

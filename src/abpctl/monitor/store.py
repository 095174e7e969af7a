"""Read-only access to an engine's session history database.

The engine owns ``<session_dir>/history.db`` and appends to it while it
runs. This module opens it read-only with a busy timeout so reads can
wait out the engine's short write locks.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from abpctl.monitor.models import Action, Event, Session

logger = logging.getLogger(__name__)

DB_FILENAME = "history.db"
SCREENSHOTS_DIRNAME = "screenshots"
BUSY_TIMEOUT_MS = 5000

_ACTION_COLUMNS = """id, session_id, tab_id, action_type, timestamp, duration_ms,
            params, result, success, error_message,
            screenshot_before_path, screenshot_after_path"""


class StoreUnavailable(Exception):
    """Raised when the history database is missing or cannot be opened."""


class SessionStore:
    """Read-only accessor over the ``sessions``/``actions``/``events`` tables.

    Methods are synchronous; async callers run them with
    ``asyncio.to_thread``. A lock serializes use of the single
    connection across worker threads.
    """

    def __init__(self, session_dir: Path, conn: sqlite3.Connection) -> None:
        self._session_dir = session_dir
        self._conn = conn
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, session_dir: Path | str) -> SessionStore:
        """Open the history database inside ``session_dir`` read-only.

        Raises:
            StoreUnavailable: If the database file is absent or unreadable.
        """
        session_dir = Path(session_dir).resolve()
        db_path = session_dir / DB_FILENAME
        if not db_path.exists():
            raise StoreUnavailable(f"No history database at {db_path}")
        try:
            conn = sqlite3.connect(
                f"{db_path.as_uri()}?mode=ro", uri=True, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open {db_path}: {e}") from e
        logger.info("Opened history database %s", db_path)
        return cls(session_dir, conn)

    @property
    def session_dir(self) -> Path:
        return self._session_dir

    @property
    def screenshots_dir(self) -> Path:
        return self._session_dir / SCREENSHOTS_DIRNAME

    def screenshot_path(self, name: str) -> Path | None:
        """Resolve ``name`` inside the screenshots directory.

        Returns None if the resolved path escapes that directory.
        """
        root = self.screenshots_dir.resolve()
        target = (root / name).resolve()
        if target == root or not target.is_relative_to(root):
            return None
        return target

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
        logger.debug("Closed history database in %s", self._session_dir)

    def latest_session(self) -> Session | None:
        row = self._fetchone(
            "SELECT id, start_time, end_time, browser_version, user_agent "
            "FROM sessions ORDER BY start_time DESC LIMIT 1"
        )
        return Session(**row) if row else None

    def list_actions(self, session_id: int | str) -> list[Action]:
        """All actions of a session, newest first."""
        rows = self._fetchall(
            f"SELECT {_ACTION_COLUMNS} FROM actions WHERE session_id = ? ORDER BY id DESC",
            (session_id,),
        )
        return [Action(**row) for row in rows]

    def get_action(self, action_id: int) -> Action | None:
        row = self._fetchone(
            f"SELECT {_ACTION_COLUMNS} FROM actions WHERE id = ?", (action_id,)
        )
        return Action(**row) if row else None

    def list_events(self, action_id: int) -> list[Event]:
        rows = self._fetchall(
            "SELECT * FROM events WHERE action_id = ? ORDER BY id", (action_id,)
        )
        return [Event(**row) for row in rows]

    def max_action_id(self, session_id: int | str) -> int:
        """Highest action id recorded for the session, or 0 if none."""
        row = self._fetchone(
            "SELECT MAX(id) AS max_id FROM actions WHERE session_id = ?", (session_id,)
        )
        return int(row["max_id"] or 0) if row else 0

    def _fetchone(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._lock:
            self._ensure_open()
            row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def _fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            self._ensure_open()
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def _ensure_open(self) -> None:
        if self._closed:
            raise sqlite3.ProgrammingError("History database is closed")

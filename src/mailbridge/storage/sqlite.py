"""SQLite-backed UID cursor store."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from types import TracebackType

from ..core.errors import CursorStoreError
from ..core.interfaces import UidCursorStore
from .cursor_file import check_cursor_values

LOGGER = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS uid_cursors (
    cursor_key TEXT PRIMARY KEY,
    uid_validity INTEGER NOT NULL,
    next_uid INTEGER NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""


class SqliteUidCursorStore(UidCursorStore):
    """Keep every cursor of the process in one ``uid_cursors`` table."""

    def __init__(self, db_path: Path | str) -> None:
        """Open (or create) the database and apply the schema."""
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._connection = sqlite3.connect(path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            with self._connection:
                self._connection.execute(_SCHEMA)
        except sqlite3.Error as exc:
            raise CursorStoreError(f"Unable to open cursor database '{path}'") from exc

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteUidCursorStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # UidCursorStore API ------------------------------------------------------
    def get_next(self, key: str, uid_validity: int) -> int | None:
        """Return the stored next UID when the row matches ``uid_validity``."""
        with self._lock:
            try:
                row = self._connection.execute(
                    "SELECT uid_validity, next_uid FROM uid_cursors "
                    "WHERE cursor_key = ?",
                    (key.lower(),),
                ).fetchone()
            except sqlite3.Error as exc:
                raise CursorStoreError(f"Unable to read cursor '{key}'") from exc
        if row is None:
            return None
        if row["uid_validity"] != uid_validity:
            LOGGER.debug(
                "Cursor %s is stale (uidvalidity %s != %s)",
                key,
                row["uid_validity"],
                uid_validity,
            )
            return None
        return int(row["next_uid"])

    def save(self, key: str, uid_validity: int, next_uid: int) -> None:
        """Insert or overwrite the cursor row for ``key``."""
        check_cursor_values(uid_validity, next_uid)
        with self._lock:
            try:
                with self._connection:
                    self._connection.execute(
                        """
                        INSERT INTO uid_cursors (cursor_key, uid_validity, next_uid)
                        VALUES (?, ?, ?)
                        ON CONFLICT(cursor_key) DO UPDATE SET
                            uid_validity=excluded.uid_validity,
                            next_uid=excluded.next_uid,
                            updated_at=CURRENT_TIMESTAMP
                        """,
                        (key.lower(), uid_validity, next_uid),
                    )
            except sqlite3.Error as exc:
                raise CursorStoreError(f"Unable to write cursor '{key}'") from exc
        LOGGER.debug(
            "Saved cursor %s uidvalidity=%s next_uid=%s", key, uid_validity, next_uid
        )

    def reset(self, key: str) -> None:
        """Delete the cursor row for ``key`` if present."""
        with self._lock:
            try:
                with self._connection:
                    self._connection.execute(
                        "DELETE FROM uid_cursors WHERE cursor_key = ?", (key.lower(),)
                    )
            except sqlite3.Error as exc:
                raise CursorStoreError(f"Unable to remove cursor '{key}'") from exc

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()


__all__ = ["SqliteUidCursorStore"]

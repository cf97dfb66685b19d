"""Persistence of UID cursors."""

from __future__ import annotations

from pathlib import Path

from ..core.config import StorageSettings
from ..core.interfaces import UidCursorStore
from .cursor_file import FileUidCursorStore, cursor_key
from .sqlite import SqliteUidCursorStore

DEFAULT_DB_NAME = "mailbridge.db"


def create_cursor_store(settings: StorageSettings, directory: Path) -> UidCursorStore:
    """Build the cursor store selected by ``settings.backend``."""
    if settings.backend == "sqlite":
        db_path = settings.db_path or Path(directory) / DEFAULT_DB_NAME
        return SqliteUidCursorStore(db_path)
    return FileUidCursorStore(directory)


__all__ = [
    "FileUidCursorStore",
    "SqliteUidCursorStore",
    "create_cursor_store",
    "cursor_key",
]

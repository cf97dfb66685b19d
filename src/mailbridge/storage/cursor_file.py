"""File-backed UID cursor store, one 8-byte record per (account, folder)."""

from __future__ import annotations

import logging
import os
import re
import struct
import tempfile
import threading
from pathlib import Path

from ..core.errors import CursorStoreError
from ..core.interfaces import UidCursorStore

LOGGER = logging.getLogger(__name__)

_RECORD = struct.Struct("<II")
_UNSAFE_CHARS_RE = re.compile(r"[\\/:]")


def cursor_key(account: str, folder: str) -> str:
    """Return the storage key of the cursor tracking ``folder`` of ``account``."""
    return f"{account}_{folder}"


def check_cursor_values(uid_validity: int, next_uid: int) -> None:
    """Reject values that do not fit an IMAP cursor record."""
    if uid_validity <= 0:
        raise ValueError("uid_validity must be a positive integer")
    if not 0 < next_uid <= 0xFFFFFFFF or uid_validity > 0xFFFFFFFF:
        raise ValueError("cursor values must fit in 32 unsigned bits")


class FileUidCursorStore(UidCursorStore):
    """Persist cursors as little-endian ``uidValidity``/``nextUID`` pairs."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        """Return the file holding the cursor stored under ``key``."""
        name = _UNSAFE_CHARS_RE.sub("_", key.lower())
        return self._directory / f"{name}.dat"

    def get_next(self, key: str, uid_validity: int) -> int | None:
        path = self.path_for(key)
        with self._lock:
            try:
                data = path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise CursorStoreError(f"Unable to read cursor '{path}'") from exc

        if len(data) != _RECORD.size:
            raise CursorStoreError(
                f"Cursor '{path}' is corrupt: expected {_RECORD.size} bytes, "
                f"got {len(data)}"
            )
        stored_validity, next_uid = _RECORD.unpack(data)
        if stored_validity != uid_validity:
            LOGGER.debug(
                "Cursor %s is stale (uidvalidity %s != %s)",
                key,
                stored_validity,
                uid_validity,
            )
            return None
        return next_uid

    def save(self, key: str, uid_validity: int, next_uid: int) -> None:
        check_cursor_values(uid_validity, next_uid)
        path = self.path_for(key)
        payload = _RECORD.pack(uid_validity, next_uid)
        with self._lock:
            try:
                fd, tmp_name = tempfile.mkstemp(
                    dir=self._directory, prefix=".cursor-", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, "wb") as handle:
                        handle.write(payload)
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as exc:
                raise CursorStoreError(f"Unable to write cursor '{path}'") from exc
        LOGGER.debug(
            "Saved cursor %s uidvalidity=%s next_uid=%s", key, uid_validity, next_uid
        )

    def reset(self, key: str) -> None:
        path = self.path_for(key)
        with self._lock:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise CursorStoreError(f"Unable to remove cursor '{path}'") from exc
        LOGGER.debug("Reset cursor %s", key)


__all__ = ["FileUidCursorStore", "check_cursor_values", "cursor_key"]

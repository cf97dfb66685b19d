"""IMAP transport adapter keeping watched folders in sync with UID cursors."""

from __future__ import annotations

import imaplib
import logging
import re
import select
import ssl
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from enum import Enum

from ..core.config import PRIMARY_FOLDER, EmailSettings
from ..core.errors import ImapError, StaleCursorError
from ..core.interfaces import MailboxProvider, MailHandler, UidCursorStore
from ..core.logging import ComponentLogger
from ..core.models import FetchReport, FolderStatus
from ..storage.cursor_file import cursor_key

LOGGER = logging.getLogger(__name__)

FETCH_BATCH_SIZE = 50
_IDLE_POLL_SLICE = 1.0

_FETCH_UID_RE = re.compile(rb"UID (\d+)")
_STATUS_FIELD_RE = re.compile(rb"(UIDVALIDITY|UIDNEXT) (\d+)", re.IGNORECASE)
_IDLE_WAKEUP_RE = re.compile(rb"^\* \d+ (EXISTS|RECENT|EXPUNGE)", re.IGNORECASE)


class MailboxState(str, Enum):
    """Lifecycle of a mailbox session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SYNCED = "synced"
    IDLING = "idling"


class _IdleRejected(Exception):
    """Raised when the server refuses to enter IDLE."""


class ImapMailbox(MailboxProvider):
    """Incremental ``imaplib`` reader for the folders watched by a profile."""

    def __init__(
        self,
        settings: EmailSettings,
        cursors: UidCursorStore,
        folders: Sequence[str] = (PRIMARY_FOLDER,),
        *,
        connect_timeout: float = 30.0,
        logger: ComponentLogger | None = None,
    ) -> None:
        self._settings = settings
        self._cursors = cursors
        self._folders = tuple(folders) or (PRIMARY_FOLDER,)
        self._connect_timeout = connect_timeout
        self._logger = logger or LOGGER
        self._connection: imaplib.IMAP4 | None = None
        self.supports_idle = False
        self.state = MailboxState.DISCONNECTED

    @property
    def folders(self) -> tuple[str, ...]:
        """Folders visited by every check cycle, primary folder first."""
        return self._folders

    # Public API ---------------------------------------------------------------
    def connect(self) -> None:
        """Dial, secure and authenticate unless a session is already open."""
        if self._connection is not None:
            return

        settings = self._settings
        self.state = MailboxState.CONNECTING
        connection: imaplib.IMAP4 | None = None
        try:
            if settings.implicit_tls:
                self._logger.debug(
                    "Connecting to IMAP host %s:%s via TLS",
                    settings.host,
                    settings.port,
                )
                connection = imaplib.IMAP4_SSL(
                    settings.host,
                    settings.port,
                    ssl_context=self._tls_context(),
                    timeout=self._connect_timeout,
                )
            else:
                self._logger.debug(
                    "Connecting to IMAP host %s:%s", settings.host, settings.port
                )
                connection = imaplib.IMAP4(
                    settings.host, settings.port, timeout=self._connect_timeout
                )
                if settings.start_tls and "STARTTLS" in connection.capabilities:
                    self._logger.debug("Upgrading connection with STARTTLS")
                    connection.starttls(ssl_context=self._tls_context())

            self._logger.debug("Authenticating as %s", settings.username)
            connection.login(settings.username, settings.password)
            self.supports_idle = "IDLE" in _read_capabilities(connection)
        except (imaplib.IMAP4.error, OSError) as exc:
            self.state = MailboxState.DISCONNECTED
            if connection is not None:
                _quiet_logout(connection)
            raise ImapError(
                f"Failed to connect to IMAP server {settings.imap_server}: {exc}"
            ) from exc

        self._connection = connection
        self.state = MailboxState.AUTHENTICATED
        if not self.supports_idle:
            self._logger.info("Server does not support IDLE, falling back to polling")

    def check_new_messages(self, handler: MailHandler) -> list[FetchReport]:
        """Deliver unprocessed messages of every watched folder to ``handler``.

        A folder's cursor moves only once every message of its batch went
        through ``handler``; an exception from ``handler`` propagates and
        leaves the cursor where it was.
        """
        self.connect()
        connection = self._require_connection()
        reports: list[FetchReport] = []
        folder = self._folders[0]
        try:
            for folder in self._folders:
                reports.append(self._sync_folder(connection, folder, handler))
        except (imaplib.IMAP4.error, OSError) as exc:
            self._drop_connection()
            raise ImapError(f"IMAP error while checking '{folder}': {exc}") from exc
        self.state = MailboxState.SYNCED
        return reports

    def wait_for_new_message(
        self, timeout_seconds: int, stop_event: threading.Event | None = None
    ) -> None:
        """Block in IDLE (or sleep when unsupported) for at most ``timeout_seconds``."""
        if stop_event is not None and stop_event.is_set():
            return
        self.connect()
        if not self.supports_idle:
            _sleep(timeout_seconds, stop_event)
            return

        connection = self._require_connection()
        try:
            self._select(connection, PRIMARY_FOLDER)
            self._idle(connection, timeout_seconds, stop_event)
        except _IdleRejected as exc:
            self._logger.warning("%s, falling back to polling", exc)
            self.supports_idle = False
            self.state = MailboxState.SYNCED
        except (imaplib.IMAP4.error, OSError) as exc:
            self._drop_connection()
            raise ImapError(f"IMAP error while idling: {exc}") from exc

    def terminate(self) -> None:
        """Log out if connected; safe to call repeatedly."""
        connection = self._connection
        self._connection = None
        self.state = MailboxState.DISCONNECTED
        if connection is None:
            return
        self._logger.debug("Closing IMAP connection")
        _quiet_logout(connection)

    # Internal helpers ---------------------------------------------------------
    def _sync_folder(
        self, connection: imaplib.IMAP4, folder: str, handler: MailHandler
    ) -> FetchReport:
        status = self._select(connection, folder)
        key = cursor_key(self._settings.username, folder)
        cached_next = self._cursors.get_next(key, status.uid_validity)

        if cached_next is None:
            self._logger.info(
                "No usable cursor for '%s', seeding from unseen messages", folder
            )
            unseen = self._search_unseen(connection)
            uid_sets = [
                b",".join(chunk).decode("ascii")
                for chunk in _chunked(unseen, FETCH_BATCH_SIZE)
            ]
        elif status.uid_next < cached_next:
            self._cursors.reset(key)
            raise StaleCursorError(
                f"Folder '{folder}' reports UIDNEXT {status.uid_next} below the "
                f"cached {cached_next}; cursor reset"
            )
        elif status.uid_next == cached_next:
            self._logger.debug("No new messages in '%s'", folder)
            return FetchReport(folder=folder, processed=0, next_uid=cached_next)
        else:
            uid_sets = [f"{cached_next}:{status.uid_next - 1}"]

        processed = 0
        highest_uid = 0
        for uid_set in uid_sets:
            for uid, payload in self._fetch(connection, uid_set):
                self._logger.debug("Handling UID %s from '%s'", uid, folder)
                handler(payload, folder)
                processed += 1
                highest_uid = max(highest_uid, uid)

        next_uid = max(status.uid_next, highest_uid + 1)
        self._cursors.save(key, status.uid_validity, next_uid)
        if processed:
            self._logger.info("Processed %s message(s) from '%s'", processed, folder)
        return FetchReport(folder=folder, processed=processed, next_uid=next_uid)

    def _select(self, connection: imaplib.IMAP4, folder: str) -> FolderStatus:
        quoted = _quote_folder(folder)
        status, data = connection.select(quoted, readonly=True)
        if status != "OK":
            raise ImapError(f"Unable to select folder '{folder}': {_first(data)}")

        uid_validity = _response_number(connection, "UIDVALIDITY")
        uid_next = _response_number(connection, "UIDNEXT")
        if uid_validity is None or uid_next is None:
            self._logger.debug("SELECT omitted UID data for '%s'", folder)
            status, data = connection.status(quoted, "(UIDVALIDITY UIDNEXT)")
            if status != "OK":
                raise ImapError(f"STATUS failed for folder '{folder}'")
            fields = {
                name.upper(): int(value)
                for name, value in _STATUS_FIELD_RE.findall(_first(data) or b"")
            }
            uid_validity = uid_validity or fields.get(b"UIDVALIDITY")
            uid_next = uid_next or fields.get(b"UIDNEXT")
        if not uid_validity or not uid_next:
            raise ImapError(f"Folder '{folder}' did not report UIDVALIDITY/UIDNEXT")
        return FolderStatus(name=folder, uid_validity=uid_validity, uid_next=uid_next)

    def _search_unseen(self, connection: imaplib.IMAP4) -> list[bytes]:
        try:
            status, data = connection.uid("SEARCH", None, "UNSEEN")  # type: ignore[arg-type]
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as exc:
            self._logger.debug("UNSEEN search rejected (%s), retrying", exc)
            status = "BAD"
        if status != "OK":
            status, data = connection.uid("SEARCH", "CHARSET", "US-ASCII", "UNSEEN")
            if status != "OK":
                raise ImapError("Failed to search for unseen messages")
        return data[0].split() if data and data[0] else []

    def _fetch(
        self, connection: imaplib.IMAP4, uid_set: str
    ) -> list[tuple[int, bytes]]:
        status, data = connection.uid("FETCH", uid_set, "(UID BODY.PEEK[])")
        if status != "OK":
            raise ImapError(f"Failed to fetch messages {uid_set}")
        return _extract_messages(data)

    def _idle(
        self,
        connection: imaplib.IMAP4,
        timeout_seconds: float,
        stop_event: threading.Event | None,
    ) -> None:
        tag = connection._new_tag()  # pylint: disable=protected-access
        connection.tagged_commands.pop(tag, None)
        connection.send(tag + b" IDLE\r\n")
        reply = connection.readline()
        if not reply.startswith(b"+"):
            raise _IdleRejected(
                f"IDLE rejected by server: {reply.decode(errors='replace').strip()}"
            )

        self.state = MailboxState.IDLING
        self._logger.debug(
            "Idling on '%s' for up to %ss", PRIMARY_FOLDER, timeout_seconds
        )
        deadline = time.monotonic() + timeout_seconds
        while stop_event is None or not stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if not _response_pending(connection):
                readable, _, _ = select.select(
                    [connection.sock], [], [], min(remaining, _IDLE_POLL_SLICE)
                )
                if not readable:
                    continue
            line = connection.readline()
            if not line:
                raise imaplib.IMAP4.abort("connection closed while idling")
            if _IDLE_WAKEUP_RE.match(line):
                self._logger.debug(
                    "IDLE woke up: %s", line.strip().decode(errors="replace")
                )
                break

        connection.send(b"DONE\r\n")
        while True:
            line = connection.readline()
            if not line:
                raise imaplib.IMAP4.abort("connection closed while leaving IDLE")
            if line.startswith(tag + b" "):
                if not line[len(tag) + 1 :].upper().startswith(b"OK"):
                    raise imaplib.IMAP4.error(
                        f"IDLE ended with {line.strip().decode(errors='replace')}"
                    )
                break
        self.state = MailboxState.SYNCED

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self._settings.tls_accept_all_certs:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _drop_connection(self) -> None:
        connection = self._connection
        self._connection = None
        self.state = MailboxState.DISCONNECTED
        if connection is not None:
            try:
                connection.shutdown()
            except OSError:  # pragma: no cover - socket already gone
                pass

    def _require_connection(self) -> imaplib.IMAP4:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection


def _sleep(timeout_seconds: float, stop_event: threading.Event | None) -> None:
    if stop_event is not None:
        stop_event.wait(timeout_seconds)
    else:
        time.sleep(timeout_seconds)


def _response_pending(connection: imaplib.IMAP4) -> bool:
    """Tell whether response bytes already wait in the connection's read buffer.

    ``readline`` goes through a buffered file, so lines that arrived together
    with the IDLE continuation never make the socket readable again.
    """
    sock = connection.sock
    timeout = sock.gettimeout()
    sock.setblocking(False)
    try:
        return bool(connection.file.peek(1))
    except (BlockingIOError, ssl.SSLWantReadError):
        return False
    finally:
        sock.settimeout(timeout)


def _quiet_logout(connection: imaplib.IMAP4) -> None:
    try:
        connection.logout()
    except (imaplib.IMAP4.error, OSError):  # pragma: no cover - depends on server
        LOGGER.debug("IMAP logout raised; suppressing during shutdown")


def _read_capabilities(connection: imaplib.IMAP4) -> set[str]:
    status, data = connection.capability()
    if status != "OK" or not data or not data[0]:
        return {cap.upper() for cap in connection.capabilities}
    return {cap.upper() for cap in data[0].decode("ascii", "replace").split()}


def _quote_folder(folder: str) -> str:
    escaped = folder.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _first(data: Sequence[object] | None) -> bytes | None:
    if not data:
        return None
    head = data[0]
    return head if isinstance(head, bytes) else None


def _response_number(connection: imaplib.IMAP4, code: str) -> int | None:
    _, values = connection.response(code)
    head = _first(values)
    if head is None:
        return None
    try:
        return int(head)
    except ValueError:
        return None


def _chunked(items: Iterable[bytes], size: int) -> Iterator[list[bytes]]:
    """Yield successive lists of ``size`` elements."""
    bucket: list[bytes] = []
    for item in items:
        bucket.append(item)
        if len(bucket) >= size:
            yield bucket
            bucket = []
    if bucket:
        yield bucket


def _extract_messages(
    fetch_data: Sequence[tuple[bytes, bytes] | bytes],
) -> list[tuple[int, bytes]]:
    """Pair every message literal of a FETCH response with its UID.

    The UID attribute may precede the literal or trail it, depending on the
    server.
    """
    messages: list[tuple[int, bytes]] = []
    for index, entry in enumerate(fetch_data):
        if not (isinstance(entry, tuple) and len(entry) == 2):
            continue
        match = _FETCH_UID_RE.search(entry[0])
        if match is None and index + 1 < len(fetch_data):
            trailer = fetch_data[index + 1]
            if isinstance(trailer, bytes):
                match = _FETCH_UID_RE.search(trailer)
        if match is None:
            LOGGER.warning("FETCH response without UID ignored: %r", entry[0][:80])
            continue
        messages.append((int(match.group(1)), entry[1]))
    return messages


__all__ = ["FETCH_BATCH_SIZE", "ImapMailbox", "MailboxState"]

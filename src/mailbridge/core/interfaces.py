"""Protocol interfaces for decoupling components."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from typing import Protocol

from .models import Attachment, CanonicalMessage, FetchReport

MailHandler = Callable[[bytes, str], None]
"""Callback receiving the raw RFC822 bytes of a message and its folder."""


class UidCursorStore(Protocol):
    """Persisted last-processed position per (account, folder) key."""

    def get_next(self, key: str, uid_validity: int) -> int | None:
        """Return the stored next UID, or ``None`` when absent or stale."""
        raise NotImplementedError

    def save(self, key: str, uid_validity: int, next_uid: int) -> None:
        """Overwrite the cursor stored under ``key``."""
        raise NotImplementedError

    def reset(self, key: str) -> None:
        """Forget the cursor stored under ``key``."""
        raise NotImplementedError


class MailboxProvider(Protocol):
    """Abstraction over an email source such as IMAP."""

    def check_new_messages(self, handler: MailHandler) -> list[FetchReport]:
        """Deliver every message not yet processed to ``handler``."""
        raise NotImplementedError

    def wait_for_new_message(
        self, timeout_seconds: int, stop_event: threading.Event | None = None
    ) -> None:
        """Block until new mail may be available or the timeout elapses."""
        raise NotImplementedError

    def terminate(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class ChannelResolver(Protocol):
    """Resolve ``#channel`` and ``@user`` names to backend channel IDs."""

    def get_channel_id(self, name: str) -> str:
        """Return the channel ID, or an empty string when unresolvable."""
        raise NotImplementedError


class ChatProvider(ChannelResolver, Protocol):
    """Session-scoped access to the chat backend."""

    def login(self) -> None:
        """Open a session and snapshot the team and channel list."""
        raise NotImplementedError

    def logout(self) -> None:
        """Close the session; safe to call when ``login`` failed."""
        raise NotImplementedError

    def post_message(
        self, message: str, channel_id: str, attachments: Sequence[Attachment]
    ) -> None:
        """Upload ``attachments`` and create a post referencing them."""
        raise NotImplementedError


class MessageParserProtocol(Protocol):
    """Minimal protocol implemented by email parsers."""

    def parse(self, payload: bytes) -> CanonicalMessage:
        """Convert raw RFC822 payload into a canonical message."""
        raise NotImplementedError


__all__ = [
    "ChannelResolver",
    "ChatProvider",
    "MailHandler",
    "MailboxProvider",
    "MessageParserProtocol",
    "UidCursorStore",
]

"""Exception hierarchy shared by the bridge components."""

from __future__ import annotations


class MailBridgeError(RuntimeError):
    """Base class for every error raised by the bridge."""


class ConfigError(MailBridgeError):
    """Raised when the bridge configuration is missing or invalid."""


class CursorStoreError(MailBridgeError):
    """Raised when a persisted UID cursor cannot be read or written."""


class ImapError(MailBridgeError):
    """Wrap low level IMAP errors with additional context."""


class StaleCursorError(ImapError):
    """Raised when the server UID space is behind the cached cursor.

    The cursor has already been reset when this error surfaces, so the next
    synchronization re-seeds it from an unseen-message search.
    """


class MessageParseError(MailBridgeError):
    """Raised when raw bytes cannot be parsed as a mail document."""


class NoChannelFoundError(MailBridgeError):
    """Raised when routing cannot resolve any destination channel."""


class ChatError(MailBridgeError):
    """Raised when the chat backend rejects a request."""


class ChatAuthError(ChatError):
    """Raised when logging in to the chat backend fails."""


class ChatRejectedError(ChatError):
    """Raised when the chat backend refuses a request with a client error."""


__all__ = [
    "ChatAuthError",
    "ChatError",
    "ChatRejectedError",
    "ConfigError",
    "CursorStoreError",
    "ImapError",
    "MailBridgeError",
    "MessageParseError",
    "NoChannelFoundError",
    "StaleCursorError",
]

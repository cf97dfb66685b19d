"""Core domain models used across the application."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum


class MessageType(str, Enum):
    """Representation chosen for the body of a message."""

    HTML = "html"
    TEXT = "text"


@dataclass(frozen=True, slots=True)
class Attachment:
    """File name and raw content of a file forwarded with a post."""

    filename: str
    content: bytes


@dataclass(frozen=True, slots=True)
class CanonicalMessage:
    """Normalized email representation ready for routing."""

    sender: str
    subject: str
    text: str
    html: str | None
    message_type: MessageType
    attachments: tuple[Attachment, ...] = ()

    @property
    def body(self) -> str:
        """Return the preferred body: HTML when present, else plain text."""
        if self.message_type is MessageType.HTML and self.html is not None:
            return self.html
        return self.text


@dataclass(frozen=True, slots=True)
class FolderStatus:
    """UID namespace of a selected folder."""

    name: str
    uid_validity: int
    uid_next: int


@dataclass(slots=True)
class FetchReport:
    """Outcome summary for one folder in a check cycle."""

    folder: str
    processed: int
    next_uid: int | None


@dataclass(frozen=True, slots=True)
class RoutedPost:
    """Rendered message with its destinations and files to upload."""

    message: str
    channels: Mapping[str, str]
    attachments: tuple[Attachment, ...]


__all__ = [
    "Attachment",
    "CanonicalMessage",
    "FetchReport",
    "FolderStatus",
    "MessageType",
    "RoutedPost",
]

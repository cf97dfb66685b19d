"""Decide where a message is posted and what the post looks like."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from ..core.config import Profile, compile_mail_template
from ..core.errors import NoChannelFoundError
from ..core.interfaces import ChannelResolver
from ..core.logging import ComponentLogger
from ..core.models import Attachment, CanonicalMessage, MessageType, RoutedPost

LOGGER = logging.getLogger(__name__)

MAX_POST_SIZE = 4000
MAX_ATTACHMENTS = 5
ELLIPSIS = " ..."

# "[#sales]" and "[ @bob ]" match, "[ # sales ]" does not.
_SUBJECT_TAG_RE = re.compile(r"\[\s*([#@][A-Za-z0-9._\-]+)\s*\]")


def read_lines(text: str, limit: int) -> str:
    """Return the first ``limit`` lines of ``text`` keeping its line endings."""
    if limit <= 0:
        return ""
    separator = "\r\n" if "\r\n" in text else "\n"
    parts = text.split(separator, limit)
    head = separator.join(parts[:limit])
    if len(parts) == limit + 1 and text.endswith(separator):
        head += separator
    return head


def channels_from_subject(subject: str) -> list[str]:
    """Extract bracketed ``#channel``/``@user`` tags, left to right, once each."""
    channels: list[str] = []
    for match in _SUBJECT_TAG_RE.finditer(subject):
        channel = match.group(1).lower()
        if channel not in channels:
            channels.append(channel)
    return channels


def build_preview(text: str, limit: int) -> tuple[str, bool]:
    """Return the preview of ``text`` and whether it holds the whole text."""
    partial = read_lines(text, limit)
    posted_full = partial == text
    if not posted_full and partial:
        partial += ELLIPSIS
    return partial, posted_full


def truncate_post(message: str, logger: ComponentLogger = LOGGER) -> str:
    """Cut ``message`` down to the maximum post size of the chat backend."""
    if len(message) <= MAX_POST_SIZE:
        return message
    logger.info(
        "Message cut because it is larger than %s characters", MAX_POST_SIZE
    )
    return message[: MAX_POST_SIZE - 5] + ELLIPSIS


class ChannelRouter:
    """Turn canonical messages into posts for the destinations of a profile."""

    def __init__(self, profile: Profile, logger: ComponentLogger | None = None) -> None:
        self._profile = profile
        self._logger = logger or LOGGER
        self._template = compile_mail_template(profile.mail_template)

    def route(
        self, message: CanonicalMessage, folder: str, resolver: ChannelResolver
    ) -> RoutedPost:
        """Resolve destinations, render the post and pick its attachments."""
        channels = self.resolve_channels(message, folder, resolver)
        preview, posted_full = build_preview(
            message.text, self._profile.lines_to_preview
        )
        text = self.render(message.sender, message.subject, preview)
        return RoutedPost(
            message=text,
            channels=channels,
            attachments=self.select_attachments(message, posted_full),
        )

    def resolve_channels(
        self, message: CanonicalMessage, folder: str, resolver: ChannelResolver
    ) -> dict[str, str]:
        """Map destination names to channel IDs, first successful strategy wins.

        Order: subject tags, then filter rules, then the profile channels.
        """
        profile = self._profile
        if profile.redirect_by_subject:
            tags = channels_from_subject(message.subject)
            if tags:
                self._logger.debug("Trying channels from subject: %s", tags)
                resolved = self._resolve_all(tags, resolver)
                if resolved:
                    return resolved

        for rule in profile.filter_rules:
            if not rule.matches(message.sender, message.subject, folder):
                continue
            self._logger.debug("Filter rule matched, trying %s", list(rule.channels))
            resolved = self._resolve_all(rule.channels, resolver)
            if resolved:
                return resolved

        self._logger.debug("Trying profile channels %s", list(profile.channels))
        resolved = self._resolve_all(profile.channels, resolver)
        if resolved:
            return resolved

        raise NoChannelFoundError(
            f"No destination found for message from {message.sender!r} "
            f"with subject {message.subject!r}"
        )

    def render(self, sender: str, subject: str, preview: str) -> str:
        """Fill the profile template and enforce the post size limit."""
        rendered = self._template.render(From=sender, Subject=subject, Message=preview)
        return truncate_post(rendered, self._logger)

    def select_attachments(
        self, message: CanonicalMessage, posted_full: bool
    ) -> tuple[Attachment, ...]:
        """Choose the files uploaded with the post, capped at ``MAX_ATTACHMENTS``."""
        if not self._profile.attachment:
            return ()

        files: list[Attachment] = []
        if message.message_type is MessageType.HTML:
            files.append(Attachment("email.html", message.body.encode("utf-8")))
        elif not posted_full:
            files.append(Attachment("email.txt", message.text.encode("utf-8")))
        files.extend(item for item in message.attachments if item.content)

        if len(files) > MAX_ATTACHMENTS:
            dropped = [item.filename for item in files[MAX_ATTACHMENTS:]]
            self._logger.info(
                "Only %s attachments are allowed per post, dropping %s",
                MAX_ATTACHMENTS,
                dropped,
            )
        return tuple(files[:MAX_ATTACHMENTS])

    def _resolve_all(
        self, names: Iterable[str], resolver: ChannelResolver
    ) -> dict[str, str]:
        resolved: dict[str, str] = {}
        for name in names:
            if name in resolved:
                continue
            channel_id = resolver.get_channel_id(name)
            if not channel_id:
                self._logger.debug("Channel %s not found", name)
                continue
            if channel_id in resolved.values():
                continue
            resolved[name] = channel_id
        return resolved


__all__ = [
    "ChannelRouter",
    "MAX_ATTACHMENTS",
    "MAX_POST_SIZE",
    "build_preview",
    "channels_from_subject",
    "read_lines",
    "truncate_post",
]

"""Utilities for parsing raw RFC822 messages into canonical messages."""

from __future__ import annotations

import base64
import logging
import mimetypes
import re
from collections.abc import Iterable
from email import policy
from email.errors import HeaderParseError, MessageError
from email.header import decode_header
from email.message import EmailMessage
from email.parser import BytesParser

import html2text

from ..core.errors import MessageParseError
from ..core.interfaces import MessageParserProtocol
from ..core.models import Attachment, CanonicalMessage, MessageType

LOGGER = logging.getLogger(__name__)

_ENCODED_WORD_RE = re.compile(r"=\?[^?\s]+\?[bBqQ]\?[^?\s]*\?=")
_FOLDING_RE = re.compile(r"\r?\n(?=[ \t])")
_BODY_TYPES = ("text/plain", "text/html")


def decode_non_ascii(value: str) -> str:
    """Decode every RFC 2047 encoded word of ``value`` on its own.

    Words in an unknown charset, or whose payload does not decode, are kept
    verbatim so a bad header never loses the rest of its text.
    """

    def _decode(match: re.Match[str]) -> str:
        token = match.group(0)
        try:
            chunks = decode_header(token)
            return "".join(
                chunk.decode(charset or "ascii") if isinstance(chunk, bytes) else chunk
                for chunk, charset in chunks
            )
        except (HeaderParseError, LookupError, ValueError) as exc:
            LOGGER.debug("Keeping undecodable header word %s: %s", token, exc)
            return token

    return _ENCODED_WORD_RE.sub(_decode, value)


def html_to_text(html: str) -> str:
    """Render ``html`` as readable plain text for previews."""
    converter = html2text.HTML2Text()
    converter.ignore_images = True
    converter.body_width = 0
    return converter.handle(html).strip()


class EmailParser(MessageParserProtocol):
    """Convert raw email payloads into canonical messages."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(self, payload: bytes) -> CanonicalMessage:
        """Parse raw RFC822 bytes into a :class:`CanonicalMessage`."""
        if not payload or not payload.strip():
            raise MessageParseError("Message is empty")
        try:
            message = self._parser.parsebytes(payload)
        except (MessageError, ValueError) as exc:
            raise MessageParseError(f"Unable to parse message: {exc}") from exc
        if not message.keys():
            raise MessageParseError("Message has no header section")

        sender = decode_non_ascii(_raw_header(message, "From"))
        subject = decode_non_ascii(_raw_header(message, "Subject"))

        text, html = _extract_bodies(message)
        if html is not None:
            for content_id, data_uri in _inline_parts(message):
                html = html.replace(f"cid:{content_id}", data_uri)
            if text is None:
                text = html_to_text(html)
            message_type = MessageType.HTML
        else:
            message_type = MessageType.TEXT

        return CanonicalMessage(
            sender=sender,
            subject=subject,
            text=text or "",
            html=html,
            message_type=message_type,
            attachments=tuple(_collect_attachments(message)),
        )


def _raw_header(message: EmailMessage, name: str) -> str:
    """Return the first ``name`` header exactly as transmitted, unfolded."""
    for key, value in message.raw_items():
        if key.lower() == name.lower():
            return _FOLDING_RE.sub("", str(value)).strip()
    return ""


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _is_body_part(part: EmailMessage) -> bool:
    return (
        part.get_content_type() in _BODY_TYPES
        and part.get_content_disposition() != "attachment"
        and part.get_filename() is None
    )


def _is_inline_part(part: EmailMessage) -> bool:
    return part.get("Content-ID") is not None and (
        part.get_content_disposition() != "attachment"
    )


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart() or not _is_body_part(part):
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            content_obj = (part.get_payload(decode=True) or b"").decode(
                "utf-8", "replace"
            )
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        if part.get_content_type() == "text/plain":
            plain_chunks.append(content)
        else:
            html_chunks.append(content)

    text = _collapse_chunks(plain_chunks, "\n\n")
    html = _collapse_chunks(html_chunks, "\n")
    return text, html


def _inline_parts(message: EmailMessage) -> Iterable[tuple[str, str]]:
    """Yield ``(content_id, data_uri)`` for parts referenced by ``cid:`` URLs."""
    for part in message.walk():
        if part.is_multipart() or _is_body_part(part) or not _is_inline_part(part):
            continue
        content_id = str(part["Content-ID"]).strip().strip("<>")
        if not content_id:
            continue
        content = part.get_payload(decode=True) or b""
        encoded = base64.b64encode(content).decode("ascii")
        yield content_id, f"data:{part.get_content_type()};base64,{encoded}"


def _collect_attachments(message: EmailMessage) -> Iterable[Attachment]:
    index = 0
    for part in message.walk():
        if part.is_multipart() or _is_body_part(part):
            continue
        if _is_inline_part(part) and part.get_filename() is None:
            continue
        index += 1
        filename = part.get_filename()
        if filename:
            filename = decode_non_ascii(filename)
        else:
            extension = mimetypes.guess_extension(part.get_content_type()) or ".bin"
            filename = f"attachment-{index}{extension}"
        yield Attachment(
            filename=filename, content=part.get_payload(decode=True) or b""
        )


__all__ = ["EmailParser", "decode_non_ascii", "html_to_text"]

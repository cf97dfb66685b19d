"""Tests for the email parser."""

from __future__ import annotations

import pytest

from mailbridge.core.errors import MessageParseError
from mailbridge.core.models import MessageType
from mailbridge.ingestion import EmailParser, decode_non_ascii


@pytest.fixture
def parser() -> EmailParser:
    return EmailParser()


def test_parse_plain_message(parser: EmailParser, load_fixture) -> None:
    message = parser.parse(load_fixture("plain.eml"))

    assert message.sender == "Alice Example <alice@example.com>"
    assert message.subject == "Printer on fire"
    assert message.text == "line one\nline two"
    assert message.html is None
    assert message.message_type is MessageType.TEXT
    assert message.body == message.text
    assert message.attachments == ()


def test_parse_html_embeds_inline_images(parser: EmailParser, load_fixture) -> None:
    message = parser.parse(load_fixture("html_inline.eml"))

    assert message.subject == "[#marketing] Monthly update"
    assert message.message_type is MessageType.HTML
    assert message.html is not None
    assert "cid:" not in message.html
    assert 'src="data:image/png;base64,iVBORw0KGgo="' in message.html
    assert message.body == message.html
    assert "Hello team" in message.text
    assert message.attachments == ()


def test_parse_collects_attachments(parser: EmailParser, load_fixture) -> None:
    message = parser.parse(load_fixture("attachments.eml"))

    assert message.sender == "Bob Builder <bob@example.com>"
    assert message.text == "See attached."
    assert [item.filename for item in message.attachments] == [
        "report.csv",
        "attachment-2.pdf",
    ]
    assert message.attachments[0].content.startswith(b"a,b")
    assert message.attachments[1].content == b"%PDF-"


def test_alternative_message_keeps_both_bodies(parser: EmailParser) -> None:
    raw = (
        b"From: a@example.com\n"
        b"Subject: both\n"
        b"MIME-Version: 1.0\n"
        b'Content-Type: multipart/alternative; boundary="ALT"\n'
        b"\n"
        b"--ALT\n"
        b"Content-Type: text/plain\n"
        b"\n"
        b"plain body\n"
        b"--ALT\n"
        b"Content-Type: text/html\n"
        b"\n"
        b"<p>html body</p>\n"
        b"--ALT--\n"
    )

    message = parser.parse(raw)

    assert message.message_type is MessageType.HTML
    assert message.text == "plain body"
    assert message.html == "<p>html body</p>"


def test_encoded_headers_are_decoded(parser: EmailParser) -> None:
    raw = (
        b"From: =?UTF-8?Q?Jos=C3=A9?= <jose@example.com>\n"
        b"Subject: =?UTF-8?B?UmVsYXTDs3Jpbw==?= [#sales]\n"
        b"\n"
        b"body\n"
    )

    message = parser.parse(raw)

    assert message.sender == "José <jose@example.com>"
    assert message.subject == "Relatório [#sales]"


def test_folded_subject_is_unfolded(parser: EmailParser) -> None:
    raw = b"From: a@example.com\nSubject: Quarterly\n numbers\n\nbody\n"
    assert parser.parse(raw).subject == "Quarterly numbers"


def test_missing_headers_default_to_empty(parser: EmailParser) -> None:
    message = parser.parse(b"X-Mailer: test\n\nhello\n")
    assert message.sender == ""
    assert message.subject == ""
    assert message.text == "hello"


@pytest.mark.parametrize("raw", [b"", b"   \r\n", b"no header section here\n"])
def test_unparseable_input_raises(parser: EmailParser, raw: bytes) -> None:
    with pytest.raises(MessageParseError):
        parser.parse(raw)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("=?UTF-8?B?SGVsbG8gV29ybGQ=?=", "Hello World"),
        ("=?ISO-8859-1?Q?Caf=E9?= menu", "Café menu"),
        ("Plain subject", "Plain subject"),
        ("=?x-unknown-charset?Q?abc?= tail", "=?x-unknown-charset?Q?abc?= tail"),
    ],
)
def test_decode_non_ascii(value: str, expected: str) -> None:
    assert decode_non_ascii(value) == expected

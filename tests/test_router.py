"""Tests for channel routing and post rendering."""

from __future__ import annotations

import logging

import pytest

from mailbridge.core.errors import NoChannelFoundError
from mailbridge.core.models import Attachment, CanonicalMessage, MessageType
from mailbridge.routing import (
    MAX_ATTACHMENTS,
    MAX_POST_SIZE,
    ChannelRouter,
    build_preview,
    channels_from_subject,
    read_lines,
    truncate_post,
)


class FakeResolver:
    """Channel resolver backed by a fixed name to ID mapping."""

    def __init__(self, known: dict[str, str]) -> None:
        self.known = known
        self.lookups: list[str] = []

    def get_channel_id(self, name: str) -> str:
        self.lookups.append(name)
        return self.known.get(name, "")


def make_message(
    subject: str = "Hello",
    text: str = "line one\nline two",
    *,
    sender: str = "alice@example.com",
    html: str | None = None,
    attachments: tuple[Attachment, ...] = (),
) -> CanonicalMessage:
    return CanonicalMessage(
        sender=sender,
        subject=subject,
        text=text,
        html=html,
        message_type=MessageType.HTML if html is not None else MessageType.TEXT,
        attachments=attachments,
    )


@pytest.mark.parametrize(
    ("text", "limit", "expected"),
    [
        ("a\nb\nc", 2, "a\nb"),
        ("a\nb\n", 2, "a\nb\n"),
        ("a\nb", 5, "a\nb"),
        ("a\r\nb\r\nc", 1, "a"),
        ("a\r\nb\r\n", 2, "a\r\nb\r\n"),
        ("", 3, ""),
        ("a\nb", 0, ""),
    ],
)
def test_read_lines(text: str, limit: int, expected: str) -> None:
    assert read_lines(text, limit) == expected


def test_channels_from_subject() -> None:
    subject = "[#Sales] [ @Bob ] re: [#sales] [ # broken ] [#ops.team-1]"
    assert channels_from_subject(subject) == ["#sales", "@bob", "#ops.team-1"]
    assert channels_from_subject("no tags here") == []
    assert channels_from_subject("[#sales") == []
    assert channels_from_subject("#sales] [@bob") == []


def test_build_preview() -> None:
    assert build_preview("a\nb\nc", 2) == ("a\nb ...", False)
    assert build_preview("a\nb", 2) == ("a\nb", True)
    assert build_preview("", 2) == ("", True)


def test_truncate_post(caplog: pytest.LogCaptureFixture) -> None:
    short = "x" * MAX_POST_SIZE
    assert truncate_post(short) == short

    with caplog.at_level(logging.INFO, logger="mailbridge.routing.router"):
        cut = truncate_post("y" * (MAX_POST_SIZE + 10))
    assert len(cut) == MAX_POST_SIZE - 1
    assert cut.endswith("y ...")
    assert "Message cut" in caplog.text


def test_profile_channels_are_the_fallback(make_profile) -> None:
    router = ChannelRouter(make_profile(channels=["#general", "#ops"]))
    resolver = FakeResolver({"#general": "g-id", "#ops": "o-id"})

    channels = router.resolve_channels(make_message(), "INBOX", resolver)

    assert channels == {"#general": "g-id", "#ops": "o-id"}


def test_subject_tags_take_precedence(make_profile) -> None:
    router = ChannelRouter(
        make_profile(filter=[{"from": "alice", "channels": ["#filtered"]}])
    )
    resolver = FakeResolver({"#sales": "s-id", "#filtered": "f-id", "#general": "g"})

    channels = router.resolve_channels(
        make_message("[#sales] quote"), "INBOX", resolver
    )

    assert channels == {"#sales": "s-id"}


def test_unknown_subject_tag_falls_through_to_rules(make_profile) -> None:
    router = ChannelRouter(
        make_profile(filter=[{"from": "alice", "channels": ["#filtered"]}])
    )
    resolver = FakeResolver({"#filtered": "f-id", "#general": "g-id"})

    channels = router.resolve_channels(
        make_message("[#nowhere] quote"), "INBOX", resolver
    )

    assert channels == {"#filtered": "f-id"}
    assert resolver.lookups == ["#nowhere", "#filtered"]


def test_subject_redirect_can_be_disabled(make_profile) -> None:
    router = ChannelRouter(make_profile(redirect_by_subject=False))
    resolver = FakeResolver({"#sales": "s-id", "#general": "g-id"})

    channels = router.resolve_channels(make_message("[#sales]"), "INBOX", resolver)

    assert channels == {"#general": "g-id"}


def test_first_resolvable_rule_wins(make_profile) -> None:
    router = ChannelRouter(
        make_profile(
            filter=[
                {"subject": "invoice", "channels": ["#missing"]},
                {"subject": "invoice", "channels": ["#billing", "@carol"]},
                {"from": "alice", "channels": ["#alice"]},
            ]
        )
    )
    resolver = FakeResolver(
        {"#billing": "b-id", "@carol": "c-dm", "#alice": "a-id", "#general": "g"}
    )

    channels = router.resolve_channels(
        make_message("Invoice 42"), "INBOX", resolver
    )

    assert channels == {"#billing": "b-id", "@carol": "c-dm"}


def test_folder_rule_routes_by_folder(make_profile) -> None:
    router = ChannelRouter(
        make_profile(filter=[{"folder": "Sales", "channels": ["#sales"]}])
    )
    resolver = FakeResolver({"#sales": "s-id", "#general": "g-id"})

    assert router.resolve_channels(make_message(), "Sales", resolver) == {
        "#sales": "s-id"
    }
    assert router.resolve_channels(make_message(), "INBOX", resolver) == {
        "#general": "g-id"
    }


def test_duplicate_channel_ids_are_posted_once(make_profile) -> None:
    router = ChannelRouter(make_profile(channels=["#general", "#town-square"]))
    resolver = FakeResolver({"#general": "same", "#town-square": "same"})

    assert router.resolve_channels(make_message(), "INBOX", resolver) == {
        "#general": "same"
    }


def test_no_destination_raises(make_profile) -> None:
    router = ChannelRouter(make_profile())
    with pytest.raises(NoChannelFoundError):
        router.resolve_channels(make_message(), "INBOX", FakeResolver({}))


def test_route_renders_preview_and_attaches_full_text(make_profile) -> None:
    profile = make_profile(
        mail_template="{{From}}|{{Subject}}|{{Message}}", lines_to_preview=1
    )
    router = ChannelRouter(profile)

    post = router.route(
        make_message("Printer on fire"), "INBOX", FakeResolver({"#general": "g"})
    )

    assert post.message == "alice@example.com|Printer on fire|line one ..."
    assert post.channels == {"#general": "g"}
    assert post.attachments == (
        Attachment("email.txt", b"line one\nline two"),
    )


def test_fully_posted_text_has_no_copy(make_profile) -> None:
    router = ChannelRouter(make_profile())
    post = router.route(make_message(), "INBOX", FakeResolver({"#general": "g"}))
    assert post.attachments == ()


def test_html_message_attaches_html_copy(make_profile) -> None:
    router = ChannelRouter(make_profile())
    message = make_message(html="<p>hi</p>", text="hi")

    files = router.select_attachments(message, posted_full=True)

    assert files == (Attachment("email.html", b"<p>hi</p>"),)


def test_attachments_are_capped(make_profile) -> None:
    router = ChannelRouter(make_profile())
    extras = tuple(Attachment(f"file{i}.bin", b"x") for i in range(6))
    message = make_message(attachments=extras)

    files = router.select_attachments(message, posted_full=False)

    assert len(files) == MAX_ATTACHMENTS
    assert [item.filename for item in files] == [
        "email.txt",
        "file0.bin",
        "file1.bin",
        "file2.bin",
        "file3.bin",
    ]


def test_empty_attachments_do_not_take_a_slot(make_profile) -> None:
    router = ChannelRouter(make_profile())
    extras = (
        Attachment("empty.txt", b""),
        *(Attachment(f"file{i}.bin", b"x") for i in range(4)),
    )
    message = make_message(attachments=extras)

    files = router.select_attachments(message, posted_full=False)

    assert [item.filename for item in files] == [
        "email.txt",
        "file0.bin",
        "file1.bin",
        "file2.bin",
        "file3.bin",
    ]


def test_attachments_can_be_disabled(make_profile) -> None:
    router = ChannelRouter(make_profile(attachment=False))
    message = make_message(attachments=(Attachment("a.txt", b"a"),))
    assert router.select_attachments(message, posted_full=False) == ()


def test_oversized_render_is_truncated(make_profile) -> None:
    router = ChannelRouter(make_profile(mail_template="{{Message}}"))
    rendered = router.render("a", "b", "z" * (MAX_POST_SIZE * 2))
    assert len(rendered) == MAX_POST_SIZE - 1

"""Channel routing and post composition."""

from .router import (
    MAX_ATTACHMENTS,
    MAX_POST_SIZE,
    ChannelRouter,
    build_preview,
    channels_from_subject,
    read_lines,
    truncate_post,
)

__all__ = [
    "ChannelRouter",
    "MAX_ATTACHMENTS",
    "MAX_POST_SIZE",
    "build_preview",
    "channels_from_subject",
    "read_lines",
    "truncate_post",
]

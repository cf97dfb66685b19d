"""Transport adapters for the mailbox source and the chat backend."""

from .imap_client import ImapMailbox, MailboxState
from .mattermost import (
    MattermostV3Provider,
    MattermostV4Provider,
    chat_session,
    create_chat_provider,
)

__all__ = [
    "ImapMailbox",
    "MailboxState",
    "MattermostV3Provider",
    "MattermostV4Provider",
    "chat_session",
    "create_chat_provider",
]

"""Per-profile loop: check the mailbox, wait for mail, retry on failure."""

from __future__ import annotations

import logging
import threading

from .core.config import AppSettings, BridgeConfig, Profile
from .core.errors import (
    MailBridgeError,
    MessageParseError,
    NoChannelFoundError,
    StaleCursorError,
)
from .core.interfaces import (
    ChatProvider,
    MailboxProvider,
    MessageParserProtocol,
    UidCursorStore,
)
from .core.logging import ComponentLogger, profile_logger
from .core.models import FetchReport
from .ingestion import EmailParser
from .routing import ChannelRouter
from .storage import create_cursor_store
from .transport import ImapMailbox, chat_session, create_chat_provider

LOGGER = logging.getLogger(__name__)


class ProfileRunner:
    """Drive one profile: mailbox events in, chat posts out."""

    def __init__(
        self,
        profile: Profile,
        *,
        mailbox: MailboxProvider,
        chat: ChatProvider,
        parser: MessageParserProtocol,
        router: ChannelRouter,
        stop_event: threading.Event | None = None,
        retry_delay_seconds: float = 30.0,
        idle_timeout_seconds: int = 180,
        logger: ComponentLogger | None = None,
    ) -> None:
        # pylint: disable=too-many-arguments
        self.profile = profile
        self._mailbox = mailbox
        self._chat = chat
        self._parser = parser
        self._router = router
        self._stop_event = stop_event or threading.Event()
        self._retry_delay = retry_delay_seconds
        self._idle_timeout = idle_timeout_seconds
        self._logger = logger or LOGGER

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def handle_message(self, raw: bytes, folder: str) -> None:
        """Parse, route and publish one message fetched from ``folder``.

        Unparseable and unroutable messages are logged and skipped. Chat
        failures propagate so the batch is fetched again on the next cycle.
        """
        try:
            message = self._parser.parse(raw)
        except MessageParseError as exc:
            self._logger.error("Skipping message from '%s': %s", folder, exc)
            return

        with chat_session(self._chat, self._logger) as chat:
            try:
                post = self._router.route(message, folder, chat)
            except NoChannelFoundError as exc:
                self._logger.error("%s, message skipped", exc)
                return
            for name, channel_id in post.channels.items():
                self._logger.info(
                    "Posting email from %s (%r) to %s",
                    message.sender,
                    message.subject,
                    name,
                )
                chat.post_message(post.message, channel_id, post.attachments)

    def check_once(self) -> list[FetchReport]:
        """Run a single check cycle over every watched folder."""
        return self._mailbox.check_new_messages(self.handle_message)

    def run(self) -> None:
        """Loop until the stop event is set, retrying failures at a fixed pace."""
        self._logger.info("Profile started")
        try:
            while not self.stopped:
                try:
                    self.check_once()
                    if self.stopped:
                        break
                    self._mailbox.wait_for_new_message(
                        self._idle_timeout, self._stop_event
                    )
                except StaleCursorError as exc:
                    self._logger.warning("%s, checking again", exc)
                except MailBridgeError as exc:
                    self._backoff(exc)
                except Exception as exc:  # pylint: disable=broad-except
                    self._logger.exception("Unexpected error in profile loop")
                    self._backoff(exc)
        finally:
            self._mailbox.terminate()
            self._logger.info("Profile stopped")

    def _backoff(self, exc: BaseException) -> None:
        self._logger.error("%s, trying again in %ss", exc, self._retry_delay)
        self._stop_event.wait(self._retry_delay)


def build_profile_runner(
    profile: Profile,
    config: BridgeConfig,
    settings: AppSettings,
    stop_event: threading.Event,
    *,
    cursors: UidCursorStore | None = None,
) -> ProfileRunner:
    """Wire the mailbox, chat client and router owned by ``profile``."""
    logger = profile_logger(profile.name)
    if cursors is None:
        cursors = create_cursor_store(settings.storage, config.directory)
    mailbox = ImapMailbox(
        profile.email,
        cursors,
        profile.watched_folders(),
        connect_timeout=settings.sync.connect_timeout_seconds,
        logger=logger,
    )
    return ProfileRunner(
        profile,
        mailbox=mailbox,
        chat=create_chat_provider(profile.mattermost, logger=logger),
        parser=EmailParser(),
        router=ChannelRouter(profile, logger),
        stop_event=stop_event,
        retry_delay_seconds=settings.sync.retry_delay_seconds,
        idle_timeout_seconds=settings.sync.idle_timeout_seconds,
        logger=logger,
    )


__all__ = ["ProfileRunner", "build_profile_runner"]

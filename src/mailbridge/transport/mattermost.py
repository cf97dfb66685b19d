"""Mattermost REST clients used to publish routed posts."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..core.config import MattermostSettings
from ..core.errors import ChatAuthError, ChatError, ChatRejectedError
from ..core.interfaces import ChatProvider
from ..core.logging import ComponentLogger
from ..core.models import Attachment

LOGGER = logging.getLogger(__name__)

USER_AGENT = "mailbridge"


@dataclass(slots=True)
class ChatSnapshot:
    """Bot identity, team and channel list captured at login."""

    user_id: str
    username: str
    team_id: str
    channels: dict[str, str] = field(default_factory=dict)

    def channel_id(self, name: str) -> str:
        return self.channels.get(name, "")


def direct_channel_name(user_a: str, user_b: str) -> str:
    """Name Mattermost gives the direct channel between two user IDs."""
    first, second = sorted((user_a, user_b))
    return f"{first}__{second}"


class _MattermostProvider(ChatProvider, ABC):
    """Session handling shared by the API v3 and v4 clients."""

    api_path = ""

    def __init__(
        self,
        settings: MattermostSettings,
        *,
        logger: ComponentLogger | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._logger = logger or LOGGER
        self._transport = transport
        self._client: httpx.Client | None = None
        self._snapshot: ChatSnapshot | None = None

    @property
    def snapshot(self) -> ChatSnapshot | None:
        """Session snapshot, ``None`` outside of a session."""
        return self._snapshot

    # ChatProvider API --------------------------------------------------------
    def login(self) -> None:
        settings = self._settings
        self._client = httpx.Client(
            base_url=f"{settings.server}{self.api_path}",
            timeout=settings.timeout_seconds,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        )
        self._logger.debug(
            "Login user:%s team:%s url:%s",
            settings.user,
            settings.team,
            settings.server,
        )
        try:
            response = self._client.post(
                "/users/login",
                json={"login_id": settings.user, "password": settings.password},
            )
        except httpx.HTTPError as exc:
            raise ChatAuthError(f"Unable to reach {settings.server}: {exc}") from exc
        if response.is_error:
            raise ChatAuthError(
                f"Login as {settings.user!r} failed: {_error_message(response)}"
            )
        token = response.headers.get("Token")
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        user = _json_body(response, "login")
        user_id = _require_id(user, "login")

        team_id = self._find_team_id(settings.team)
        self._snapshot = ChatSnapshot(
            user_id=user_id,
            username=str(user.get("username", "")),
            team_id=team_id,
            channels={
                str(channel["name"]): str(channel["id"])
                for channel in self._list_channels(user_id, team_id)
                if isinstance(channel, dict) and "name" in channel and "id" in channel
            },
        )
        self._logger.debug(
            "Logged in, %s channel(s) visible in team %s",
            len(self._snapshot.channels),
            settings.team,
        )

    def logout(self) -> None:
        client = self._client
        self._client = None
        self._snapshot = None
        if client is None:
            return
        try:
            if "Authorization" in client.headers:
                client.post("/users/logout")
        except httpx.HTTPError as exc:
            self._logger.debug("Logout failed: %s", exc)
        finally:
            client.close()

    def get_channel_id(self, name: str) -> str:
        snapshot = self._require_snapshot()
        if name.startswith("#"):
            return snapshot.channel_id(name[1:])
        if name.startswith("@"):
            return self._direct_channel_id(snapshot, name[1:])
        return ""

    def post_message(
        self, message: str, channel_id: str, attachments: Sequence[Attachment]
    ) -> None:
        snapshot = self._require_snapshot()
        self._logger.debug("Post in channel id %s", channel_id)
        file_ids: list[str] = []
        for attachment in attachments:
            if not attachment.content:
                self._logger.debug("Skipping empty attachment %s", attachment.filename)
                continue
            file_ids.append(self._upload(snapshot, channel_id, attachment))
        payload: dict[str, Any] = {"channel_id": channel_id, "message": message}
        if file_ids:
            payload["file_ids"] = file_ids
        self._create_post(snapshot, channel_id, payload)

    # Endpoint hooks ----------------------------------------------------------
    @abstractmethod
    def _find_team_id(self, team_name: str) -> str:
        """Return the ID of the team named ``team_name``."""

    @abstractmethod
    def _list_channels(self, user_id: str, team_id: str) -> list[dict[str, Any]]:
        """Return the channels of the team the bot belongs to."""

    @abstractmethod
    def _create_direct_channel(self, snapshot: ChatSnapshot, user_id: str) -> str:
        """Create the direct channel with ``user_id`` and return its ID."""

    @abstractmethod
    def _upload_path(self, snapshot: ChatSnapshot) -> str:
        """Path of the file upload endpoint."""

    @abstractmethod
    def _post_path(self, snapshot: ChatSnapshot, channel_id: str) -> str:
        """Path of the post creation endpoint."""

    # Internal helpers --------------------------------------------------------
    def _direct_channel_id(self, snapshot: ChatSnapshot, username: str) -> str:
        """Return the direct channel with ``username``, creating it when missing.

        Only a missing user or a request the server refuses (4xx) resolves to
        ``""``. Session, network and server failures propagate.
        """
        if username == snapshot.username:
            self._logger.error(
                "Cannot open a direct channel, the bot user (%s) equals the "
                "destination user (%s)",
                snapshot.username,
                username,
            )
            return ""
        try:
            response = self._request(
                "POST",
                "/users/search",
                json={
                    "term": username,
                    "team_id": snapshot.team_id,
                    "allow_inactive": False,
                },
            )
        except ChatRejectedError as exc:
            self._logger.error("Error on user search: %s", exc)
            return ""

        user_id = _find_user_id(_json_body(response, "user search"), username)
        if not user_id:
            self._logger.debug("Did not find the username %s", username)
            return ""

        dm_name = direct_channel_name(snapshot.user_id, user_id)
        existing = snapshot.channel_id(dm_name)
        if existing:
            return existing

        self._logger.debug("Creating direct channel to user %s", username)
        try:
            channel_id = self._create_direct_channel(snapshot, user_id)
        except ChatRejectedError as exc:
            self._logger.error("Error creating direct channel: %s", exc)
            return ""
        snapshot.channels[dm_name] = channel_id
        return channel_id

    def _upload(
        self, snapshot: ChatSnapshot, channel_id: str, attachment: Attachment
    ) -> str:
        response = self._request(
            "POST",
            self._upload_path(snapshot),
            data={"channel_id": channel_id},
            files={"files": (attachment.filename, attachment.content)},
        )
        body = _json_body(response, f"upload of {attachment.filename!r}")
        infos = (body.get("file_infos") if isinstance(body, dict) else None) or []
        if len(infos) != 1:
            raise ChatError(
                f"Upload of {attachment.filename!r} returned {len(infos)} file infos"
            )
        return _require_id(infos[0], f"upload of {attachment.filename!r}")

    def _create_post(
        self, snapshot: ChatSnapshot, channel_id: str, payload: dict[str, Any]
    ) -> None:
        self._request("POST", self._post_path(snapshot, channel_id), json=payload)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = self._client
        if client is None:
            raise ChatError("Mattermost session is not open")
        try:
            response = client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ChatError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise ChatAuthError(f"{method} {path} rejected: session is not authorized")
        if response.is_client_error:
            raise ChatRejectedError(
                f"{method} {path} refused with {response.status_code}: "
                f"{_error_message(response)}"
            )
        if response.is_error:
            raise ChatError(
                f"{method} {path} failed with {response.status_code}: "
                f"{_error_message(response)}"
            )
        return response

    def _require_snapshot(self) -> ChatSnapshot:
        if self._snapshot is None:
            raise ChatError("Mattermost session is not open")
        return self._snapshot


class MattermostV4Provider(_MattermostProvider):
    """Client for the Mattermost API v4."""

    api_path = "/api/v4"

    def _find_team_id(self, team_name: str) -> str:
        try:
            response = self._request("GET", f"/teams/name/{team_name}")
        except ChatRejectedError as exc:
            raise ChatError(
                f"Did not find team with name {team_name!r}. Check that the team "
                f"exists and that you use the team url name: {exc}"
            ) from exc
        return _require_id(_json_body(response, "team lookup"), "team lookup")

    def _list_channels(self, user_id: str, team_id: str) -> list[dict[str, Any]]:
        response = self._request("GET", f"/users/{user_id}/teams/{team_id}/channels")
        channels = _json_body(response, "channel list")
        return channels if isinstance(channels, list) else []

    def _create_direct_channel(self, snapshot: ChatSnapshot, user_id: str) -> str:
        response = self._request(
            "POST", "/channels/direct", json=[snapshot.user_id, user_id]
        )
        return _require_id(_json_body(response, "direct channel"), "direct channel")

    def _upload_path(self, snapshot: ChatSnapshot) -> str:
        return "/files"

    def _post_path(self, snapshot: ChatSnapshot, channel_id: str) -> str:
        return "/posts"


class MattermostV3Provider(_MattermostProvider):
    """Client for the legacy Mattermost API v3."""

    api_path = "/api/v3"

    def _find_team_id(self, team_name: str) -> str:
        teams = _json_body(self._request("GET", "/teams/all"), "team list")
        if isinstance(teams, dict):
            teams = list(teams.values())
        for team in teams if isinstance(teams, list) else []:
            if isinstance(team, dict) and team.get("name") == team_name:
                return _require_id(team, "team list")
        raise ChatError(
            f"Did not find team with name {team_name!r}. Check that the team "
            "exists and that you use the team url name"
        )

    def _list_channels(self, user_id: str, team_id: str) -> list[dict[str, Any]]:
        response = self._request("GET", f"/teams/{team_id}/channels/")
        channels = _json_body(response, "channel list")
        if isinstance(channels, dict):
            channels = channels.get("channels") or []
        return channels if isinstance(channels, list) else []

    def _create_direct_channel(self, snapshot: ChatSnapshot, user_id: str) -> str:
        response = self._request(
            "POST",
            f"/teams/{snapshot.team_id}/channels/create_direct",
            json={"user_id": user_id},
        )
        return _require_id(_json_body(response, "direct channel"), "direct channel")

    def _upload_path(self, snapshot: ChatSnapshot) -> str:
        return f"/teams/{snapshot.team_id}/files/upload"

    def _post_path(self, snapshot: ChatSnapshot, channel_id: str) -> str:
        return f"/teams/{snapshot.team_id}/channels/{channel_id}/posts/create"


def create_chat_provider(
    settings: MattermostSettings,
    *,
    logger: ComponentLogger | None = None,
    transport: httpx.BaseTransport | None = None,
) -> ChatProvider:
    """Return the client matching the API version selected in ``settings``."""
    provider_cls = MattermostV3Provider if settings.use_api_v3 else MattermostV4Provider
    return provider_cls(settings, logger=logger, transport=transport)


@contextmanager
def chat_session(
    provider: ChatProvider, logger: ComponentLogger | None = None
) -> Iterator[ChatProvider]:
    """Log in for the duration of a ``with`` block and always log out."""
    log = logger or LOGGER
    try:
        provider.login()
        yield provider
    finally:
        try:
            provider.logout()
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Mattermost logout failed: %s", exc)


def _json_body(response: httpx.Response, context: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ChatError(f"Unreadable {context} response: {exc}") from exc


def _require_id(body: Any, context: str) -> str:
    if isinstance(body, dict) and body.get("id"):
        return str(body["id"])
    raise ChatError(f"The {context} response carries no id")


def _find_user_id(users: Any, username: str) -> str:
    if not isinstance(users, list):
        return ""
    for user in users:
        if not isinstance(user, dict) or user.get("username") != username:
            continue
        if user.get("id"):
            return str(user["id"])
    return ""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase


__all__ = [
    "ChatSnapshot",
    "MattermostV3Provider",
    "MattermostV4Provider",
    "chat_session",
    "create_chat_provider",
    "direct_channel_name",
]

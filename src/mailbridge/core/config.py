"""Application configuration models and loader utilities.

Two layers are loaded here. Process settings (log level, retry cadence,
cursor storage backend) come from ``MAILBRIDGE_`` environment variables and an
optional ``.env`` file. The bridge configuration (profiles binding a mailbox
to chat destinations) comes from a JSON file.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

from dotenv import dotenv_values
from jinja2 import Environment, StrictUndefined, Template, TemplateError
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigError

DEFAULT_MAIL_TEMPLATE = (
    ":incoming_envelope: _From: **{{From}}**_\n>_{{Subject}}_\n\n{{Message}}"
)
DEFAULT_LINES_TO_PREVIEW = 10
PRIMARY_FOLDER = "INBOX"
DEFAULT_IMAP_PORT = 143
IMPLICIT_TLS_PORT = 993

_CHANNEL_RE = re.compile(r"^[#@][a-z0-9.\-_]+$")
_IMAP_SERVER_RE = re.compile(r"^[A-Za-z0-9.\-_]+(:[0-9]{1,5})?$")
_SERVER_URL_RE = re.compile(r"^https?://[A-Za-z0-9.\-_]+(:[0-9]{1,5})?(/\S*)?$")
_TEAM_RE = re.compile(r"^[a-z0-9.\-_]+$")
_LEGACY_FIELD_RE = re.compile(r"\{\{\s*\.")

_TEMPLATE_ENV = Environment(
    autoescape=False,
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)


# Process settings ------------------------------------------------------------
class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle brace-style structured logging"
    )


class SyncSettings(BaseModel):
    """Settings controlling wait and retry cadence of profile loops."""

    retry_delay_seconds: float = Field(
        default=30.0, ge=0.0, description="Fixed delay before retrying a failed cycle"
    )
    idle_timeout_seconds: int = Field(
        default=180, ge=1, description="Upper bound of one IDLE or polling wait"
    )
    connect_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Socket timeout for IMAP connections"
    )


class StorageSettings(BaseModel):
    """Settings for UID cursor persistence."""

    backend: Literal["file", "sqlite"] = Field(
        default="file", description="Cursor storage backend"
    )
    db_path: Path | None = Field(
        default=None,
        description="SQLite database path, defaults to <directory>/mailbridge.db",
    )


class AppSettings(BaseModel):
    """Aggregated process configuration."""

    config_file: Path = Field(
        default=Path("./config.json"), description="Bridge profile file"
    )
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


ENV_PREFIX = "MAILBRIDGE_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load process settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment)
    if overrides:
        collected.update(overrides)
    try:
        return AppSettings.model_validate(collected)
    except ValidationError as exc:
        raise ConfigError(_describe_validation_error(exc, "environment")) from exc


# Bridge configuration --------------------------------------------------------
def normalize_channel(name: str) -> str:
    """Trim and lowercase ``name``, defaulting to a ``#channel`` reference."""
    channel = name.strip().lower()
    if not channel.startswith(("#", "@")):
        channel = "#" + channel
    return channel


def _normalize_channels(names: Iterable[str]) -> tuple[str, ...]:
    normalized = []
    for name in names:
        channel = normalize_channel(name)
        if not _CHANNEL_RE.match(channel):
            raise ValueError(
                f"'{name}' is not a valid destination, use #channel or @username"
            )
        normalized.append(channel)
    return tuple(normalized)


def compile_mail_template(source: str) -> Template:
    """Compile a post template, accepting the legacy ``{{.Field}}`` form."""
    try:
        template = _TEMPLATE_ENV.from_string(_LEGACY_FIELD_RE.sub("{{", source))
        template.render(From="", Subject="", Message="")
    except TemplateError as exc:
        raise ValueError(f"invalid mail template: {exc}") from exc
    return template


class EmailSettings(BaseModel):
    """Mailbox credentials and IMAP endpoint of a profile."""

    model_config = ConfigDict(frozen=True)

    imap_server: str = Field(description="IMAP endpoint as host[:port]")
    username: str = Field(min_length=1, description="Mailbox login")
    password: str = Field(min_length=1, description="Mailbox password")
    start_tls: bool = Field(
        default=False, description="Upgrade plain connections with STARTTLS"
    )
    tls_accept_all_certs: bool = Field(
        default=False, description="Skip certificate verification"
    )

    @field_validator("imap_server")
    @classmethod
    def check_imap_server(cls, value: str) -> str:
        value = value.strip()
        if not _IMAP_SERVER_RE.match(value):
            raise ValueError(
                "must be a host with an optional port, eg. imap.example.com:993"
            )
        return value

    @property
    def host(self) -> str:
        """Host part of ``imap_server``."""
        return self.imap_server.partition(":")[0]

    @property
    def port(self) -> int:
        """Port part of ``imap_server``; plain IMAP port when omitted."""
        _, _, port = self.imap_server.partition(":")
        return int(port) if port else DEFAULT_IMAP_PORT

    @property
    def implicit_tls(self) -> bool:
        """Whether the endpoint expects TLS from the first byte."""
        return self.port == IMPLICIT_TLS_PORT


class MattermostSettings(BaseModel):
    """Chat backend endpoint and bot credentials of a profile."""

    model_config = ConfigDict(frozen=True)

    server: str = Field(description="Base URL, eg. https://chat.example.com")
    team: str = Field(description="Team URL name")
    user: str = Field(min_length=1, description="Bot login (username or email)")
    password: str = Field(min_length=1, description="Bot password")
    use_api_v3: bool = Field(default=False, description="Talk to the legacy v3 API")
    timeout_seconds: float = Field(default=30.0, gt=0.0)

    @field_validator("server")
    @classmethod
    def check_server(cls, value: str) -> str:
        value = value.strip()
        if not _SERVER_URL_RE.match(value):
            raise ValueError("must start with http:// or https:// and be a valid url")
        return value.rstrip("/")

    @field_validator("team")
    @classmethod
    def check_team(cls, value: str) -> str:
        value = value.strip()
        if not _TEAM_RE.match(value):
            raise ValueError(
                "contains invalid chars, make sure you use the team url name"
            )
        return value


class FilterRule(BaseModel):
    """Conditional routing override matched against sender, subject and folder."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sender: str = Field(default="", alias="from")
    subject: str = ""
    folder: str = ""
    channels: tuple[str, ...] = Field(min_length=1)

    @field_validator("sender", "subject")
    @classmethod
    def lowercase_predicates(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("folder")
    @classmethod
    def strip_folder(cls, value: str) -> str:
        return value.strip()

    @field_validator("channels")
    @classmethod
    def check_channels(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return _normalize_channels(value)

    @model_validator(mode="after")
    def require_predicate(self) -> FilterRule:
        if not (self.sender or self.subject or self.folder):
            raise ValueError("set at least one of 'from', 'subject' or 'folder'")
        return self

    def matches(self, sender: str, subject: str, folder: str) -> bool:
        """Return ``True`` when every non-empty predicate matches."""
        if self.sender and self.sender not in sender.lower():
            return False
        if self.subject and self.subject not in subject.lower():
            return False
        if self.folder and self.folder not in folder:
            return False
        return True


class Profile(BaseModel):
    """One mailbox bound to its chat destinations."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    channels: tuple[str, ...] = Field(min_length=1)
    mail_template: str = DEFAULT_MAIL_TEMPLATE
    lines_to_preview: int = Field(default=DEFAULT_LINES_TO_PREVIEW, gt=0)
    redirect_by_subject: bool = True
    attachment: bool = True
    disabled: bool = False
    email: EmailSettings
    mattermost: MattermostSettings
    filter_rules: tuple[FilterRule, ...] = Field(default=(), alias="filter")

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("set a name, it tags every log line of the profile")
        return value

    @field_validator("channels")
    @classmethod
    def check_channels(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return _normalize_channels(value)

    @field_validator("mail_template")
    @classmethod
    def check_template(cls, value: str) -> str:
        compile_mail_template(value)
        return value

    def watched_folders(self) -> tuple[str, ...]:
        """Return the primary folder followed by every folder a rule names."""
        folders = [PRIMARY_FOLDER]
        for rule in self.filter_rules:
            if rule.folder and rule.folder not in folders:
                folders.append(rule.folder)
        return tuple(folders)


class BridgeConfig(BaseModel):
    """Bridge configuration loaded from the JSON profile file."""

    model_config = ConfigDict(frozen=True)

    directory: Path = Field(
        default=Path("./data"), description="Directory holding UID cursors"
    )
    debug: bool = False
    profiles: tuple[Profile, ...] = Field(min_length=1)

    def enabled_profiles(self) -> tuple[Profile, ...]:
        """Return the profiles that are not disabled."""
        return tuple(profile for profile in self.profiles if not profile.disabled)


def _describe_validation_error(exc: ValidationError, source: str) -> str:
    lines = [f"{source} is invalid:"]
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "(root)"
        lines.append(f"  field '{location}': {error['msg']}")
    return "\n".join(lines)


def parse_bridge_config(data: Any, *, source: str = "configuration") -> BridgeConfig:
    """Validate decoded JSON ``data`` into a :class:`BridgeConfig`."""
    if isinstance(data, list):
        raise ConfigError(
            f"{source} uses the version 1 format, "
            "run 'mailbridge migrate' to convert it"
        )
    try:
        return BridgeConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(_describe_validation_error(exc, source)) from exc


def load_bridge_config(path: Path | str) -> BridgeConfig:
    """Read and validate the JSON profile file at ``path``."""
    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not load '{config_path}': {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"'{config_path}' is not valid JSON: {exc}") from exc
    return parse_bridge_config(data, source=f"'{config_path}'")


# Version 1 migration ---------------------------------------------------------
def _migrate_printf_template(template: str) -> str:
    for field in ("{{From}}", "{{Subject}}", "{{Message}}"):
        template = template.replace("%v", field, 1)
    return template


def _migrate_rule(rule: dict[str, Any]) -> dict[str, Any]:
    channels = rule.get("Channels") or [rule.get("Channel", "")]
    migrated = {
        "from": rule.get("From", ""),
        "subject": rule.get("Subject", ""),
        "channels": channels,
    }
    if rule.get("Folder"):
        migrated["folder"] = rule["Folder"]
    return migrated


def migrate_v1_config(data: Any) -> dict[str, Any]:
    """Convert the version 1 flat profile list into the current layout."""
    if not isinstance(data, list):
        raise ConfigError("Version 1 configuration must be a JSON list of profiles")

    debug = False
    profiles: list[dict[str, Any]] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigError(f"Version 1 profile #{index} is not a JSON object")
        debug = debug or bool(entry.get("Debug", False))
        profile: dict[str, Any] = {
            "name": entry.get("Name", ""),
            "channels": [entry.get("Channel", "")],
            "redirect_by_subject": not entry.get("NoRedirectChannel", False),
            "attachment": not entry.get("NoAttachment", False),
            "disabled": bool(entry.get("Disabled", False)),
            "email": {
                "imap_server": entry.get("ImapServer", ""),
                "username": entry.get("Email", ""),
                "password": entry.get("EmailPass", ""),
                "start_tls": bool(entry.get("StartTLS", False)),
                "tls_accept_all_certs": bool(entry.get("TLSAcceptAllCerts", False)),
            },
            "mattermost": {
                "server": entry.get("Server", ""),
                "team": entry.get("Team", ""),
                "user": entry.get("MattermostUser", ""),
                "password": entry.get("MattermostPass", ""),
                "use_api_v3": True,
            },
        }
        template = entry.get("MailTemplate")
        if template:
            profile["mail_template"] = _migrate_printf_template(template)
        lines = entry.get("LinesToPreview")
        if isinstance(lines, int) and lines > 0:
            profile["lines_to_preview"] = lines
        rules = entry.get("Filter") or []
        if rules:
            profile["filter"] = [_migrate_rule(rule) for rule in rules]
        profiles.append(profile)

    return {"directory": "./data", "debug": debug, "profiles": profiles}


__all__ = [
    "AppSettings",
    "BridgeConfig",
    "DEFAULT_MAIL_TEMPLATE",
    "EmailSettings",
    "FilterRule",
    "LoggingSettings",
    "MattermostSettings",
    "PRIMARY_FOLDER",
    "Profile",
    "StorageSettings",
    "SyncSettings",
    "compile_mail_template",
    "load_app_settings",
    "load_bridge_config",
    "migrate_v1_config",
    "normalize_channel",
    "parse_bridge_config",
]

"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from collections.abc import MutableMapping
from typing import Any

from .config import LoggingSettings

ComponentLogger = logging.Logger | logging.LoggerAdapter


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for structured logs."""
    return {
        "format": "{asctime} {levelname} {name} {message}",
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def configure_logging(settings: LoggingSettings, *, debug: bool = False) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()
    level = "DEBUG" if debug else settings.level

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }

    logging.config.dictConfig(dict_config)


class ProfileLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with the name of the profile that emitted it."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        profile = (self.extra or {}).get("profile", "-")
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("profile", profile)
        kwargs["extra"] = extra
        return f"[{profile}] {msg}", kwargs


def profile_logger(
    profile_name: str, name: str = "mailbridge.profile"
) -> ProfileLoggerAdapter:
    """Return a logger tagging its lines with ``profile_name``."""
    return ProfileLoggerAdapter(logging.getLogger(name), {"profile": profile_name})


__all__ = [
    "ComponentLogger",
    "ProfileLoggerAdapter",
    "configure_logging",
    "profile_logger",
]

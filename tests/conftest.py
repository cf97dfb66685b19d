"""Shared fixtures for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from mailbridge.core.config import Profile, load_app_settings

FIXTURES = Path(__file__).parent / "fixtures"


def build_profile_data(**overrides: Any) -> dict[str, Any]:
    """Return a valid profile mapping with ``overrides`` applied."""
    data: dict[str, Any] = {
        "name": "support",
        "channels": ["#general"],
        "email": {
            "imap_server": "imap.example.com:993",
            "username": "bot@example.com",
            "password": "secret",
        },
        "mattermost": {
            "server": "https://chat.example.com",
            "team": "acme",
            "user": "mailbot",
            "password": "hunter2",
        },
    }
    data.update(overrides)
    return data


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure each test sees a fresh settings instance."""

    load_app_settings.cache_clear()


@pytest.fixture
def make_profile() -> Callable[..., Profile]:
    """Factory building validated profiles."""

    def factory(**overrides: Any) -> Profile:
        return Profile.model_validate(build_profile_data(**overrides))

    return factory


@pytest.fixture
def load_fixture() -> Callable[[str], bytes]:
    """Read a sample message from ``tests/fixtures``."""

    def loader(name: str) -> bytes:
        return (FIXTURES / name).read_bytes()

    return loader


@pytest.fixture
def profile_data() -> Callable[..., dict[str, Any]]:
    """Factory building raw profile mappings as found in the JSON file."""
    return build_profile_data

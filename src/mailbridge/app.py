"""Run every enabled profile side by side until asked to stop."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed

from .core.config import AppSettings, BridgeConfig, Profile
from .core.errors import ConfigError
from .core.interfaces import UidCursorStore
from .runner import ProfileRunner, build_profile_runner
from .storage import create_cursor_store

LOGGER = logging.getLogger(__name__)

RunnerFactory = Callable[..., ProfileRunner]


def serve(
    config: BridgeConfig,
    settings: AppSettings,
    stop_event: threading.Event,
    *,
    runner_factory: RunnerFactory = build_profile_runner,
    cursors: UidCursorStore | None = None,
) -> None:
    """Start one worker thread per enabled profile and wait for all of them."""
    profiles: tuple[Profile, ...] = config.enabled_profiles()
    if not profiles:
        raise ConfigError("No profile is enabled, nothing to do")

    config.directory.mkdir(parents=True, exist_ok=True)
    if cursors is None:
        cursors = create_cursor_store(settings.storage, config.directory)

    runners = [
        runner_factory(profile, config, settings, stop_event, cursors=cursors)
        for profile in profiles
    ]
    LOGGER.info("Starting %s profile(s)", len(runners))
    with ThreadPoolExecutor(
        max_workers=len(runners), thread_name_prefix="profile"
    ) as executor:
        futures = {executor.submit(runner.run): runner for runner in runners}
        for future in as_completed(futures):
            name = futures[future].profile.name
            try:
                future.result()
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Profile %s terminated unexpectedly", name)
    LOGGER.info("All profiles stopped")


__all__ = ["serve"]

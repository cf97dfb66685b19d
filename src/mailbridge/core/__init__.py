"""Core utilities for configuration, logging, errors, and shared models."""

from .config import (
    AppSettings,
    BridgeConfig,
    Profile,
    load_app_settings,
    load_bridge_config,
)
from .logging import configure_logging, profile_logger

__all__ = [
    "AppSettings",
    "BridgeConfig",
    "Profile",
    "configure_logging",
    "load_app_settings",
    "load_bridge_config",
    "profile_logger",
]

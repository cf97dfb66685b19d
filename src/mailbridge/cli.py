"""Command-line entry point for mailbridge."""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from types import FrameType

from mailbridge import __version__
from mailbridge.app import serve
from mailbridge.core import AppSettings, configure_logging, load_app_settings
from mailbridge.core.config import load_bridge_config, migrate_v1_config
from mailbridge.core.errors import ConfigError


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mailbridge",
        description="Forward new IMAP mail to Mattermost channels",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing MAILBRIDGE_ settings.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Profile configuration file (default: MAILBRIDGE_CONFIG_FILE or "
        "./config.json).",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="server",
        choices=["server", "check-config", "migrate"],
        help="Operation to execute (default: server).",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit status."""
    config_path: Path = args.config or settings.config_file
    if args.command == "migrate":
        _run_migrate(config_path)
    elif args.command == "check-config":
        _run_check_config(config_path)
    else:
        _run_server(config_path, settings)
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_app_settings(env_file=args.env_file)
        return execute(args, settings)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1


def _run_server(config_path: Path, settings: AppSettings) -> None:
    config = load_bridge_config(config_path)
    configure_logging(settings.logging, debug=config.debug)
    stop_event = threading.Event()

    def _request_stop(signum: int, _frame: FrameType | None) -> None:
        print(f"Received signal {signum}, stopping", file=sys.stderr)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    serve(config, settings, stop_event)


def _run_check_config(config_path: Path) -> None:
    config = load_bridge_config(config_path)
    print(f"Configuration '{config_path}' is valid")
    print(f"Cursor directory: {config.directory}")
    for profile in config.profiles:
        state = "disabled" if profile.disabled else "enabled"
        api = "v3" if profile.mattermost.use_api_v3 else "v4"
        print(
            f"- {profile.name} ({state}): {profile.email.username}@"
            f"{profile.email.imap_server} -> {profile.mattermost.server} "
            f"[{profile.mattermost.team}, api {api}] "
            f"channels {', '.join(profile.channels)}"
        )
        for folder in profile.watched_folders():
            print(f"    watching {folder}")


def _run_migrate(config_path: Path) -> None:
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not load '{config_path}': {exc}") from exc
    print(json.dumps(migrate_v1_config(data), indent=2))


__all__ = ["build_parser", "execute", "main"]

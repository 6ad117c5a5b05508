from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from bootstrap.config import (
    DEFAULT_DEVICE_NAME,
    SetupConfig,
    default_recovery_key_path,
    http_timeout,
    log_level,
    resolve_store_key,
)
from bootstrap.errors import BootstrapError
from bootstrap.interaction import ConsoleInteraction
from bootstrap.orchestrator import logout, resume, setup
from homeserver.client import MatrixClient
from homeserver.sync import SyncHelper
from state.store import SecretStore


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def _configure_logging() -> None:
    level = log_level()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="matrix-bot-bootstrap",
        description="Log a Matrix bot in and set up its end-to-end encryption.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_setup = sub.add_parser("setup", help="Interactive login and encryption setup")
    p_setup.add_argument("--data", type=Path, required=True, help="Bot data directory")
    p_setup.add_argument("--device-name", default=DEFAULT_DEVICE_NAME, help="Display name of the new device")
    p_setup.add_argument(
        "--recovery-key-file",
        type=Path,
        default=None,
        help="Where a newly generated recovery key is written (default: <data>/recovery-key.txt)",
    )
    p_setup.add_argument(
        "--reset-identity",
        action="store_true",
        help="Reset the cryptographic identity even if setup already finished",
    )

    p_run = sub.add_parser("run", help="Start the bot from a finished setup")
    p_run.add_argument("--data", type=Path, required=True, help="Bot data directory")

    p_logout = sub.add_parser("logout", help="Log the bot's device out and delete its session")
    p_logout.add_argument("--data", type=Path, required=True, help="Bot data directory")
    return parser


def _cmd_setup(args: argparse.Namespace) -> int:
    data_dir: Path = args.data.expanduser()
    config = SetupConfig(
        recovery_key_path=args.recovery_key_file or default_recovery_key_path(data_dir),
        device_name=args.device_name,
        reset_identity=args.reset_identity,
    )
    key = resolve_store_key(data_dir, create=True)
    with SecretStore(data_dir, key) as store, MatrixClient(timeout=http_timeout()) as client:
        outcome = setup(config, store=store, client=client, interaction=ConsoleInteraction())
    return EXIT_OK if outcome.crypto.is_terminal else EXIT_ERROR


def _log_batch(response: Dict[str, Any]) -> None:
    rooms = response.get("rooms") or {}
    joined = rooms.get("join") or {}
    events = sum(len(((room or {}).get("timeline") or {}).get("events") or []) for room in joined.values())
    logger.info("Sync batch %s: %d timeline events in %d rooms", response.get("next_batch"), events, len(joined))


def _cmd_run(args: argparse.Namespace) -> int:
    data_dir: Path = args.data.expanduser()
    key = resolve_store_key(data_dir)
    with SecretStore(data_dir, key) as store, MatrixClient(timeout=http_timeout()) as client:
        authenticated = resume(store=store, client=client)
        helper = SyncHelper(authenticated.session, store)
        # Events that arrived while the bot was offline are skipped
        helper.sync_once(timeout_ms=0)
        logger.info("Bot %s is running.", authenticated.identity.user_id)
        helper.sync_forever(_log_batch)
    return EXIT_OK


def _cmd_logout(args: argparse.Namespace) -> int:
    data_dir: Path = args.data.expanduser()
    key = resolve_store_key(data_dir)
    with SecretStore(data_dir, key) as store, MatrixClient(timeout=http_timeout()) as client:
        logout(store=store, client=client)
    return EXIT_OK


COMMANDS = {
    "setup": _cmd_setup,
    "run": _cmd_run,
    "logout": _cmd_logout,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging()
    try:
        return COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except BootstrapError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import ConfigManager, HubRuntimeConfig
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_db_path,
    default_identity_path,
    ensure_private_dir,
)
from .service import HubService


def _write_default_config(config_path: str, identity_path: str, db_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# havend hub settings (TOML)
#
# Written by havend the first time it ran. Review the values below and
# start havend again.

[hub]

# Reticulum config directory. Empty means the Reticulum default.
configdir = ""

# Hub identity file. Clients reach the hub through its hash.
identity_path = {identity_path!r}

# SQLite database holding users, rooms, invitations and message history.
db_path = {db_path!r}

# Application name of the hub destination.
dest_name = "haven.hub"

# announce_on_start: announce the destination once at startup.
# announce_period_s: re-announce every N seconds (0 turns this off).
announce_on_start = true
announce_period_s = 0.0

# Shown to clients. A non-empty greeting reaches every new connection
# as a message from SYSTEM.
hub_name = "haven"
greeting = ""

# History.
#
# history_lines: most lines a history request may return.
# chunk_length: messages per chatMsgs batch.
# max_catchup_lines: most lines replayed per catch-up page after reconnecting.
history_lines = 80
chunk_length = 10
max_catchup_lines = 1000

# Accounts.
#
# user_verify: new users cannot log in until an admin runs verifyUser.
# default_access_level: level given to new users and rooms.
# admin_access_level: level at which users count as hub administrators.
user_verify = false
default_access_level = 1
admin_access_level = 13

# Limits.
max_room_name_len = 32
max_user_name_len = 20
rate_limit_msgs_per_minute = 240
max_resource_bytes = 262144

[commands]

# Access level overrides, one per command name. updateCommand writes here.
# Example:
#   createRoom = 13

[logging]

# havend log level.
level = "INFO"

# Level for the "RNS" Python logger.
rns_level = "WARNING"

# Write logs to stderr.
console = true

# Log file, created with mode 0600. Empty disables it.
file = ""

# logging.Formatter format and datefmt.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str, db_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, db_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    db_dir = os.path.dirname(db_path)
    if db_dir:
        ensure_private_dir(Path(db_dir))

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="havend", description="Run a haven chat hub daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--db",
        default=None,
        help="Path to the SQLite database (default comes from config)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: haven.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    p.add_argument("--hub-name", default=None, help="Hub name in announces")
    p.add_argument(
        "--greeting",
        default=None,
        help="SYSTEM message sent to every new connection",
    )
    p.add_argument(
        "--user-verify",
        action="store_true",
        help="Require admin verification before new users can log in",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


# (argument dest, config field, converter)
_OVERRIDES: tuple[tuple[str, str, type], ...] = (
    ("configdir", "configdir", str),
    ("db", "db_path", str),
    ("dest_name", "dest_name", str),
    ("announce_period", "announce_period_s", float),
    ("hub_name", "hub_name", str),
    ("greeting", "greeting", str),
    ("rate_limit_msgs_per_minute", "rate_limit_msgs_per_minute", int),
    ("log_level", "log_level", str),
)


def _apply_overrides(cfg: HubRuntimeConfig, args: argparse.Namespace) -> HubRuntimeConfig:
    updates = {
        field: conv(getattr(args, dest))
        for dest, field, conv in _OVERRIDES
        if getattr(args, dest) is not None
    }
    if args.no_announce:
        updates["announce_on_start"] = False
    if args.user_verify:
        updates["user_verify"] = True
    if args.log_file is not None:
        updates["log_file"] = str(args.log_file) or None
    return replace(cfg, **updates) if updates else cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    db_path = str(args.db) if args.db else str(default_db_path())

    if _ensure_first_run_files(config_path, identity_path, db_path):
        print(
            "Wrote default havend files. Review them, then start havend again:\n"
            f"  config:   {config_path}\n"
            f"  identity: {identity_path}\n"
            f"  database: {db_path}",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(
        config_path=config_path,
        configdir=args.configdir,
        identity_path=identity_path,
        db_path=db_path,
    )
    cfg = _apply_overrides(ConfigManager(config_path).load(cfg), args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()

from __future__ import annotations

import argparse
import getpass
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import (
    HubRuntimeConfig,
    load_config_file,
    persist_config_updates,
    validate_config,
)
from .errors import PersistenceError
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_database_path,
    default_identity_path,
    ensure_private_dir,
)
from .service import HubService
from .store import MessageStore, UserExistsError, UserStore
from .util import expand_path, normalize_username


def _write_default_config(
    config_path: str, identity_path: str, database_path: str
) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# rdmd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rdmd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rdmd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# SQLite database holding users and every relayed message.
database_path = {database_path!r}

# Destination name to host the hub on.
dest_name = "rdm.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Hub name carried in announces.
hub_name = "rdm"

# Accounts.
# allow_signup: let clients create accounts over the link.
# password_iterations: PBKDF2 rounds for new password hashes.
allow_signup = true
password_iterations = 200000

# Delivery.
# mark_delivered: flag messages once they reach the recipient so they are
# replayed only once. Set to false to replay every stored message addressed
# to a user each time it registers.
# close_superseded: tear down a link whose identity registers elsewhere.
mark_delivered = true
close_superseded = false

# Limits.
# max_content_bytes must leave room for envelope overhead within the link
# MDU. With the default Reticulum MTU of 500 the largest accepted value is 290;
# rdmd refuses to start above that. Messages to long recipient names can still
# be refused with "message too large for link".
identity_max_chars = 64
username_max_chars = 32
max_content_bytes = 280
rate_limit_msgs_per_minute = 240
history_limit = 200

# Hub-initiated liveness checks (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0

[logging]

# Log level for rdmd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except Exception:
        pass


def _ensure_first_run_files(
    config_path: str, identity_path: str, database_path: str
) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, database_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    if not os.path.exists(database_path):
        storage_dir = os.path.dirname(database_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        MessageStore(database_path).close()
        UserStore(database_path).close()
        try:
            os.chmod(database_path, 0o600)
        except Exception:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rdmd", description="Run an RDM direct-message hub daemon"
    )

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
        "--database",
        default=None,
        help="Path to the SQLite message database (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rdm.hub)"
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

    p.add_argument("--hub-name", default=None, help="Hub name carried in announces")

    p.add_argument(
        "--max-content-bytes",
        type=int,
        default=None,
        help="Maximum message content size in UTF-8 bytes",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--save-config",
        action="store_true",
        help="Write the [hub] overrides given on the command line back to the config file",
    )

    p.add_argument(
        "--add-user",
        metavar="NAME",
        default=None,
        help="Create a user account, print its identity and exit",
    )
    p.add_argument(
        "--password",
        default=None,
        help="Password for --add-user (prompted for when omitted)",
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


def _cli_overrides(args: argparse.Namespace) -> dict[str, object]:
    """[hub] settings given on the command line, keyed by config field."""
    updates: dict[str, object] = {}

    if args.dest_name is not None:
        updates["dest_name"] = args.dest_name
    if args.no_announce:
        updates["announce_on_start"] = False
    if args.announce_period is not None:
        updates["announce_period_s"] = float(args.announce_period)
    if args.hub_name is not None:
        updates["hub_name"] = args.hub_name

    if args.max_content_bytes is not None:
        updates["max_content_bytes"] = int(args.max_content_bytes)
    if args.rate_limit_msgs_per_minute is not None:
        updates["rate_limit_msgs_per_minute"] = int(args.rate_limit_msgs_per_minute)

    if args.ping_interval is not None:
        updates["ping_interval_s"] = float(args.ping_interval)
    if args.ping_timeout is not None:
        updates["ping_timeout_s"] = float(args.ping_timeout)

    return updates


def _add_user(cfg: HubRuntimeConfig, name: str, password: str | None) -> int:
    try:
        username = normalize_username(name, max_chars=cfg.username_max_chars)
    except ValueError as e:
        print(f"rdmd: {e}", file=sys.stderr)
        return 2

    if password is None:
        password = getpass.getpass(f"Password for {username}: ")
    if not password:
        print("rdmd: password must not be empty", file=sys.stderr)
        return 2

    store = UserStore(
        expand_path(str(cfg.database_path)), iterations=cfg.password_iterations
    )
    try:
        user = store.create_user(username, password)
    except UserExistsError:
        print(f"rdmd: username already exists: {username}", file=sys.stderr)
        return 1
    except PersistenceError as e:
        print(f"rdmd: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(user.user_id)
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    database_path = str(args.database or default_database_path())

    if _ensure_first_run_files(config_path, identity_path, database_path):
        print(
            "Created default rdmd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Database: {database_path}\n"
            "\nThen re-run rdmd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(
        configdir=args.configdir,
        identity_path=identity_path,
        database_path=database_path,
    )
    cfg = replace(cfg, config_path=config_path)

    if config_path:
        cfg = load_config_file(cfg, config_path)

    if args.database is not None:
        cfg = replace(cfg, database_path=str(args.database))
    if not cfg.database_path:
        cfg = replace(cfg, database_path=str(default_database_path()))
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)

    updates = _cli_overrides(args)
    if updates:
        cfg = replace(cfg, **updates)
        if args.save_config:
            persist_config_updates(config_path, updates)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    try:
        validate_config(cfg)
    except ValueError as e:
        print(f"rdmd: invalid configuration: {e}", file=sys.stderr)
        raise SystemExit(2)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if args.add_user is not None:
        raise SystemExit(_add_user(cfg, args.add_user, args.password))

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()

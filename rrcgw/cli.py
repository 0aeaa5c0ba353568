from __future__ import annotations

import argparse
import os
import secrets
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import GatewayConfig, load_config
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_users_path,
    ensure_private_dir,
)
from .service import GatewayService


def _write_default_config(config_path: str, identity_path: str, users_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    token_secret = secrets.token_hex(32)

    content = f"""# rrcgw configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rrcgw again.

[gateway]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rrcgw stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Users, bans, relationships and the email allow-list.
# Maintained by rrcgw (avatars, pawns, bans and role changes are written back).
users_path = {users_path!r}

# Destination name to host the gateway on.
dest_name = "rrc.gateway"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

gateway_name = "rrcgw"

# Bearer tokens
#
# Clients send a signed JWT in their first `connect` frame. The token's `sub`
# claim must equal the claimed user id. The secret must match the one used by
# whatever issues the tokens.
token_secret = {token_secret!r}
token_algorithms = ["HS256"]
token_issuer = ""
token_audience = ""
token_leeway_s = 0.0

# Links that have not sent `connect` within this many seconds are closed
# (0 disables).
connect_timeout_s = 30.0

# Messaging policy
username_max_chars = 32
max_message_chars = 2000

# Re-read ban status from the users file on every send, so a lapsed ban lifts
# without reconnecting and a new ban applies immediately.
recheck_bans_on_send = false

# Frames larger than the link MDU travel as RNS resources, up to this size.
max_resource_bytes = 262144

[logging]

# Python logging level for rrcgw: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = "INFO"

# Logging level for the RNS library logger.
rns_level = "WARNING"

console = true

# Optional log file path (empty disables file logging).
file = ""

format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


_USERS_TEMPLATE = """# rrcgw users (TOML)
#
# Each user is a table under [users], keyed by user id (the JWT `sub`).
# Users whose email is not in `allowlist` are refused unless their role is
# mod or owner.
#
# Example
# -------
#
# allowlist = ["alice@example.com"]
#
# [users.u-alice]
# username = "alice"
# email = "alice@example.com"
# role = "member"          # guest, member, mod, owner
# avatar = "cat"
# pawn = "knight"
# show_star_pawn = false
# powers = []
# friends = []
# ignored = []

allowlist = []

[users]
"""


def _ensure_first_run_files(config_path: str, identity_path: str, users_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, users_path)
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

    if users_path and not os.path.exists(users_path):
        storage_dir = os.path.dirname(users_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        with open(users_path, "w", encoding="utf-8") as f:
            f.write(_USERS_TEMPLATE)
        try:
            os.chmod(users_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rrcgw", description="Run an RRC chat gateway daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to gateway identity file (created on first run)",
    )
    p.add_argument(
        "--users",
        default=str(default_users_path()),
        help="Path to the users TOML file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rrc.gateway)"
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

    p.add_argument(
        "--connect-timeout",
        type=float,
        default=None,
        help="Close links that do not send connect within this many seconds (0 disables)",
    )
    p.add_argument(
        "--recheck-bans",
        action="store_true",
        help="Re-read ban status on every send",
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


def build_config(args: argparse.Namespace) -> GatewayConfig:
    cfg = GatewayConfig(
        configdir=args.configdir,
        identity_path=str(args.identity),
        users_path=str(args.users),
    )
    cfg = load_config(str(args.config), cfg)

    # Command-line paths win over the file.
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)

    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.connect_timeout is not None:
        cfg = replace(cfg, connect_timeout_s=float(args.connect_timeout))
    if args.recheck_bans:
        cfg = replace(cfg, recheck_bans_on_send=True)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    users_path = str(args.users)

    if _ensure_first_run_files(config_path, identity_path, users_path):
        print(
            "Created default rrcgw files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Users:    {users_path}\n"
            "\nThen re-run rrcgw.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if not cfg.token_secret:
        print(f"token_secret is not set in {config_path}", file=sys.stderr)
        raise SystemExit(2)

    svc = GatewayService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()

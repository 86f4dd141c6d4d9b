from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import RNS

from .config import ChatRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_message_log_dir,
    ensure_private_dir,
)
from .service import HubService

_DEFAULT_CONFIG = """\
# issuechatd configuration
#
# Generated the first time issuechatd ran. Review it, then start the hub again.

[hub]

# Reticulum config directory. Empty means Reticulum's own default.
configdir = ""

# Reticulum identity of this hub. Clients pin the destination derived from it.
identity_path = {identity_path!r}

# Reticulum destination the hub listens on, as "app.aspect[.aspect...]".
dest_name = "issuechat.hub"

# Announce once at startup, and again every announce_period_s seconds (0 = never).
announce_on_start = true
announce_period_s = 0.0

# Name sent in announces.
hub_name = "issuechat"

# One append-only CBOR log per issue lives here.
# Empty keeps chat history in memory only; it is lost on restart.
message_log_dir = {message_log_dir!r}

# senderRole values accepted on send_message.
allowed_roles = ["student", "worker"]

# Who is told when a user comes online or goes offline:
#   "shared"  users currently in one of that user's issue chats
#   "global"  every connected client
presence_broadcast = "shared"

# 0 means unlimited for max_text_chars and disables the rate limit.
max_text_chars = 0
max_channel_id_len = 128
history_limit = 200
rate_limit_msgs_per_minute = 240

# Ping idle clients every ping_interval_s and drop them after ping_timeout_s
# without a pong. 0 disables.
ping_interval_s = 0.0
ping_timeout_s = 0.0

[logging]

level = "INFO"
# Level for the RNS logger.
rns_level = "WARNING"
# Log to stderr.
console = true
# Also log to this file. Empty disables.
file = ""
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""


def _write_default_config(config_path: str, identity_path: str) -> None:
    parent = Path(config_path).parent
    ensure_private_dir(parent)
    text = _DEFAULT_CONFIG.format(
        identity_path=identity_path,
        message_log_dir=str(default_message_log_dir()),
    )
    Path(config_path).write_text(text, encoding="utf-8")


def _create_identity(identity_path: str) -> None:
    ensure_private_dir(Path(identity_path).parent)
    RNS.Identity().to_file(identity_path)
    try:
        os.chmod(identity_path, 0o600)
    except OSError:
        pass


def _ensure_first_run_files(config_path: str, identity_path: str) -> list[str]:
    """Create whatever is missing and return the paths that were created."""
    created: list[str] = []
    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created.append(config_path)
    if not os.path.exists(identity_path):
        _create_identity(identity_path)
        created.append(identity_path)
    return created


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="issuechatd", description="Per-issue chat and presence hub over Reticulum"
    )
    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="TOML config file; written with defaults if missing",
    )
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Hub identity file; generated if missing",
    )
    p.add_argument("--configdir", help="Reticulum config directory")
    p.add_argument("--dest-name", help="Destination name (default issuechat.hub)")
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Skip the startup announce (periodic announces still run)",
    )
    p.add_argument("--message-log-dir", help="Per-issue message log directory; '' for memory only")
    p.add_argument(
        "--presence-broadcast",
        choices=("shared", "global"),
        help="Who receives user_online / user_offline",
    )
    p.add_argument("--max-text-chars", type=int, help="Longest accepted message (0 = no limit)")
    p.add_argument(
        "--rate-limit-msgs-per-minute", type=int, help="Events per minute per client (0 = off)"
    )
    p.add_argument("--ping-interval", type=float, help="Seconds between hub pings (0 = off)")
    p.add_argument("--ping-timeout", type=float, help="Drop a client after this long without pong")
    p.add_argument("--log-level", help="Override [logging] level, e.g. DEBUG")
    p.add_argument("--log-file", help="Override [logging] file; '' disables file logging")
    return p


# argparse dest -> (config field, conversion)
_OVERRIDES: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "configdir": ("configdir", str),
    "dest_name": ("dest_name", str),
    "message_log_dir": ("message_log_dir", lambda v: str(v) or None),
    "presence_broadcast": ("presence_broadcast", str),
    "max_text_chars": ("max_text_chars", int),
    "rate_limit_msgs_per_minute": ("rate_limit_msgs_per_minute", int),
    "ping_interval": ("ping_interval_s", float),
    "ping_timeout": ("ping_timeout_s", float),
    "log_level": ("log_level", str),
    "log_file": ("log_file", lambda v: str(v) or None),
}


def build_config(args: argparse.Namespace) -> ChatRuntimeConfig:
    """Defaults, then the TOML file (if present), then command line flags."""
    cfg = ChatRuntimeConfig(config_path=str(args.config), identity_path=str(args.identity))

    if os.path.exists(args.config):
        cfg = apply_config_data(cfg, load_toml(str(args.config)))

    updates = {
        field: convert(getattr(args, dest))
        for dest, (field, convert) in _OVERRIDES.items()
        if getattr(args, dest, None) is not None
    }
    if args.no_announce:
        updates["announce_on_start"] = False
    return replace(cfg, **updates) if updates else cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    created = _ensure_first_run_files(str(args.config), str(args.identity))
    if created:
        listing = "\n".join(f"  {path}" for path in created)
        print(
            f"issuechatd created:\n{listing}\n\n"
            "Review the configuration, then start issuechatd again.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    hub = HubService(cfg)
    hub.start()
    hub.run_forever()


if __name__ == "__main__":
    main()

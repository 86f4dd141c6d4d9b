from __future__ import annotations

import os
from pathlib import Path


def default_issuechatd_dir() -> Path:
    override = os.environ.get("ISSUECHATD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".issuechatd"


def default_config_path() -> Path:
    return default_issuechatd_dir() / "issuechatd.toml"


def default_identity_path() -> Path:
    return default_issuechatd_dir() / "hub_identity"


def default_message_log_dir() -> Path:
    return default_issuechatd_dir() / "messages"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass

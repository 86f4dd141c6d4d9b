from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import (
    DEFAULT_ALLOWED_ROLES,
    PRESENCE_SCOPE_GLOBAL,
    PRESENCE_SCOPE_SHARED,
)


@dataclass(frozen=True)
class ChatRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "issuechat.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "issuechat"
    message_log_dir: str | None = None
    allowed_roles: tuple[str, ...] = DEFAULT_ALLOWED_ROLES
    presence_broadcast: str = PRESENCE_SCOPE_SHARED
    max_text_chars: int = 0
    max_channel_id_len: int = 128
    history_limit: int = 200
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: ChatRuntimeConfig, data: dict) -> ChatRuntimeConfig:
    """Overlay a parsed TOML document onto ``base``.

    Keys may live at the top level or under ``[hub]``. The ``[logging]`` table
    maps ``level``/``file``/... onto the ``log_*`` fields. Unknown keys are
    ignored.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for src, dst in (
            ("level", "log_level"),
            ("rns_level", "log_rns_level"),
            ("console", "log_console"),
            ("file", "log_file"),
            ("format", "log_format"),
            ("datefmt", "log_datefmt"),
        ):
            if src in log_table:
                mapped[dst] = log_table.get(src)
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config was loaded from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "allowed_roles" in updates:
        roles = updates["allowed_roles"]
        if isinstance(roles, str):
            roles = [roles]
        if not isinstance(roles, (list, tuple)):
            raise ValueError("allowed_roles must be a list of strings")
        cleaned = tuple(str(r).strip() for r in roles if str(r).strip())
        if not cleaned:
            raise ValueError("allowed_roles must not be empty")
        updates["allowed_roles"] = cleaned

    if "presence_broadcast" in updates:
        scope = str(updates["presence_broadcast"]).strip().lower()
        if scope not in (PRESENCE_SCOPE_SHARED, PRESENCE_SCOPE_GLOBAL):
            raise ValueError(
                f"presence_broadcast must be {PRESENCE_SCOPE_SHARED!r} or {PRESENCE_SCOPE_GLOBAL!r}"
            )
        updates["presence_broadcast"] = scope

    if "announce" in data and "announce_on_start" not in updates:
        try:
            updates["announce_on_start"] = bool(data["announce"])
        except Exception:
            pass
    for optional in ("configdir", "message_log_dir", "log_file", "log_datefmt"):
        if optional in updates and updates[optional] == "":
            updates[optional] = None

    return replace(base, **updates) if updates else base

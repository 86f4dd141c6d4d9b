from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import ChatRuntimeConfig

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: Any, default: int) -> int:
    """Accept a level name ("debug", "WARN"), a number, or a numeric string."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    if text == "WARN":
        text = "WARNING"
    named = logging.getLevelName(text)
    if isinstance(named, int):
        return named
    return int(text) if text.isdigit() else default


def _optional(value: Any) -> str | None:
    s = "" if value is None else str(value)
    return s if s.strip() else None


def _build_handlers(cfg: ChatRuntimeConfig, log_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    if log_file:
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
        try:
            os.chmod(path, 0o600)
        except OSError:
            pass
    return handlers


def configure_logging(
    cfg: ChatRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install the issuechatd root handlers.

    Calling it again replaces the handlers installed by the previous call.
    ``override_file=""`` turns file logging off even if the config enables it.
    """
    log_file = _optional(cfg.log_file if override_file is None else override_file)
    formatter = logging.Formatter(
        fmt=_optional(cfg.log_format) or _DEFAULT_FORMAT,
        datefmt=_optional(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in _build_handlers(cfg, log_file):
        h.setFormatter(formatter)
        root.addHandler(h)

    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))
    logging.getLogger("RNS").setLevel(parse_level(cfg.log_rns_level, logging.WARNING))
    logging.captureWarnings(True)

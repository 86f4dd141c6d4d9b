"""Frame envelope shared by every hub <-> client packet.

A frame is a CBOR map keyed by small unsigned integers::

    {0: protocol version, 1: event name, 2: 8 byte frame id,
     3: unix time in ms, 5: event body}

The body is a map with string keys named exactly like the browser client's
socket events (``issueID``, ``senderID``, ...). Integer keys not listed
above are reserved and ignored.
"""

from __future__ import annotations

import os
import time

from .constants import K_BODY, K_EVENT, K_ID, K_TS, K_V, PROTOCOL_VERSION

_REQUIRED = (K_V, K_EVENT, K_ID, K_TS)


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    event: str,
    *,
    body: dict | None = None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: PROTOCOL_VERSION,
        K_EVENT: str(event),
        K_ID: mid if mid is not None else msg_id(),
        K_TS: ts if ts is not None else now_ms(),
    }
    if body is not None:
        env[K_BODY] = body
    return env


def _is_uint(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_envelope(env: dict) -> None:
    """Raise TypeError or ValueError if ``env`` is not a well-formed frame."""
    if not isinstance(env, dict):
        raise TypeError("frame must be a map")

    if not all(isinstance(k, int) for k in env):
        raise TypeError("frame keys must be integers")
    if any(k < 0 for k in env):
        raise ValueError("frame keys must be unsigned")

    missing = [k for k in _REQUIRED if k not in env]
    if missing:
        raise ValueError(f"frame is missing key(s) {missing}")

    if not isinstance(env[K_V], int):
        raise TypeError("version must be an integer")
    if env[K_V] != PROTOCOL_VERSION:
        raise ValueError(f"protocol version {env[K_V]} not supported")

    event = env[K_EVENT]
    if not isinstance(event, str):
        raise TypeError("event must be a string")
    if not event:
        raise ValueError("event must not be empty")

    if not isinstance(env[K_ID], (bytes, bytearray)):
        raise TypeError("frame id must be bytes")

    if not isinstance(env[K_TS], int) or isinstance(env[K_TS], bool):
        raise TypeError("frame timestamp must be an integer")
    if not _is_uint(env[K_TS]):
        raise ValueError("frame timestamp must be unsigned")

    body = env.get(K_BODY)
    if body is None and K_BODY not in env:
        return
    if not isinstance(body, dict):
        raise TypeError("event body must be a map")
    if not all(isinstance(k, str) for k in body):
        raise TypeError("event body keys must be strings")

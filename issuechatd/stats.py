"""Lifetime counters for the issue chat hub and their text report."""

from __future__ import annotations

import threading
import time
from collections import Counter
from typing import Any

COUNTERS = (
    "events_in",
    "events_bad",
    "bytes_in",
    "bytes_out",
    "rate_limited",
    "errors_sent",
    "joins",
    "leaves",
    "messages_sent",
    "messages_failed",
    "read_receipts",
    "typing_events",
    "pings_out",
    "announces",
)

# Report line label -> [(shown as, counter)]
_REPORT_GROUPS: dict[str, list[tuple[str, str]]] = {
    "io": [
        ("events_in", "events_in"),
        ("events_bad", "events_bad"),
        ("bytes_in", "bytes_in"),
        ("bytes_out", "bytes_out"),
    ],
    "chat": [
        ("joins", "joins"),
        ("leaves", "leaves"),
        ("sent", "messages_sent"),
        ("failed", "messages_failed"),
        ("read", "read_receipts"),
        ("typing", "typing_events"),
    ],
    "hub": [
        ("errors_sent", "errors_sent"),
        ("rate_limited", "rate_limited"),
        ("pings_out", "pings_out"),
        ("announces", "announces"),
    ],
}


class StatsManager:
    """Counts what the hub did since start.

    Shares the hub state lock when one is given, so a snapshot taken while
    formatting is consistent with the registries it is reported beside.
    """

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock if lock is not None else threading.RLock()
        self._counters: Counter[str] = Counter({name: 0 for name in COUNTERS})
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def uptime_s(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return time.monotonic() - self.started_monotonic

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] += int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(
        self,
        *,
        session_stats: dict[str, Any],
        room_stats: dict[str, Any],
        presence_stats: dict[str, Any],
    ) -> str:
        from . import __version__

        c = self.snapshot()
        lines = [
            f"issuechatd {__version__} uptime_s={self.uptime_s():.1f}",
            "sessions: total={total} registered={registered} in_chat={in_channel}".format(
                total=session_stats.get("total", 0),
                registered=session_stats.get("registered", 0),
                in_channel=session_stats.get("in_channel", 0),
            ),
            "users: known={} online={} in_chat={}".format(
                presence_stats.get("known", 0),
                presence_stats.get("online", 0),
                presence_stats.get("in_chat", 0),
            ),
            "rooms: open={} memberships={}".format(
                room_stats.get("rooms_total", 0),
                room_stats.get("memberships", 0),
            ),
        ]

        busiest = room_stats.get("top_rooms") or []
        if busiest:
            lines.append("busiest: " + " ".join(f"{room}={n}" for room, n in busiest))

        for label, fields in _REPORT_GROUPS.items():
            lines.append(
                f"{label}: " + " ".join(f"{shown}={c.get(name, 0)}" for shown, name in fields)
            )

        return "\n".join(lines)

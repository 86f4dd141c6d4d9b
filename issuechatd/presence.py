"""User presence tracking for the issue chat hub.

Presence is in-memory only. A record is created the first time a user is
seen and is never dropped; on the user's last disconnect it is only marked
offline so "last active" survives reconnects until the process restarts.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class PresenceRecord:
    online: bool = False
    last_active_at: float | None = None
    current_channel: str | None = None


@dataclass(frozen=True)
class PresenceView:
    """Answer to a presence query for one user as seen from one channel."""

    user_id: str
    online: bool
    last_active_at: float | None
    current_channel: str | None
    is_in_this_channel: bool


class PresenceRegistry:
    """Maps user id -> PresenceRecord.

    ``in_room`` is consulted by :meth:`query` so that "is in this chat" is
    only reported when the room registry agrees a live session bound to the
    user is a member of the channel. Must be called with the hub state lock
    held, like every other registry method.
    """

    def __init__(
        self,
        *,
        in_room: Callable[[str, str], bool],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.log = logging.getLogger("issuechatd.presence")
        self._in_room = in_room
        self._clock = clock
        self._records: dict[str, PresenceRecord] = {}

    def _ensure(self, user_id: str) -> PresenceRecord:
        rec = self._records.get(user_id)
        if rec is None:
            rec = PresenceRecord()
            self._records[user_id] = rec
        return rec

    def get(self, user_id: str) -> PresenceRecord | None:
        return self._records.get(user_id)

    def set_online(self, user_id: str) -> PresenceRecord:
        rec = self._ensure(user_id)
        was_online = rec.online
        rec.online = True
        rec.last_active_at = self._clock()
        if not was_online:
            self.log.debug("Presence online user=%s", user_id)
        return rec

    def set_offline(
        self, user_id: str, last_active_at: float | None = None
    ) -> PresenceRecord:
        rec = self._ensure(user_id)
        rec.online = False
        rec.last_active_at = (
            float(last_active_at) if last_active_at is not None else self._clock()
        )
        rec.current_channel = None
        self.log.debug("Presence offline user=%s", user_id)
        return rec

    def touch(self, user_id: str) -> PresenceRecord:
        rec = self._ensure(user_id)
        rec.last_active_at = self._clock()
        return rec

    def enter_channel(self, user_id: str, channel_id: str) -> PresenceRecord:
        rec = self._ensure(user_id)
        rec.current_channel = channel_id
        return rec

    def leave_channel(self, user_id: str, channel_id: str) -> bool:
        """Clear the current channel, but only if it is ``channel_id``.

        A leave for a channel the user already switched away from is stale
        and must not clobber the newer channel.
        """
        rec = self._records.get(user_id)
        if rec is None or rec.current_channel != channel_id:
            return False
        rec.current_channel = None
        return True

    def query(self, user_id: str, channel_id: str | None) -> PresenceView:
        rec = self._records.get(user_id)
        if rec is None:
            return PresenceView(
                user_id=user_id,
                online=False,
                last_active_at=None,
                current_channel=None,
                is_in_this_channel=False,
            )

        in_channel = (
            channel_id is not None
            and rec.current_channel == channel_id
            and self._in_room(channel_id, user_id)
        )
        current = rec.current_channel
        if current == channel_id and not in_channel:
            # The record claims this channel but the room disagrees.
            current = None

        return PresenceView(
            user_id=user_id,
            online=rec.online,
            last_active_at=rec.last_active_at,
            current_channel=current,
            is_in_this_channel=in_channel,
        )

    def clear_all(self) -> None:
        self._records.clear()

    def get_stats(self) -> dict[str, Any]:
        online = sum(1 for r in self._records.values() if r.online)
        in_chat = sum(1 for r in self._records.values() if r.current_channel)
        return {
            "known": len(self._records),
            "online": online,
            "in_chat": in_chat,
        }

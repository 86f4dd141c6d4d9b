"""Room membership for the issue chat hub.

Each issue has one chat room. This module tracks which sessions are in
which room. A session is a member of at most one room at a time; joining
another room moves it. Empty rooms are dropped immediately.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable
from typing import Any

SessionId = Hashable


class RoomRegistry:
    """Manages room memberships (channel id -> set of session ids)."""

    def __init__(self, *, user_of: Callable[[SessionId], str | None]) -> None:
        self.log = logging.getLogger("issuechatd.rooms")
        self._user_of = user_of
        self.rooms: dict[str, set[SessionId]] = {}
        self._channel_by_session: dict[SessionId, str] = {}

    def clear_all(self) -> None:
        """Clear all room state. Called during hub shutdown."""
        self.rooms.clear()
        self._channel_by_session.clear()

    def join(self, channel_id: str, session_id: SessionId) -> str | None:
        """Move a session into ``channel_id``.

        Returns the channel the session was in before, or None. Rejoining the
        current channel is a no-op and returns None.
        """
        previous = self._channel_by_session.get(session_id)
        if previous == channel_id:
            return None

        if previous is not None:
            self._discard(previous, session_id)

        self.rooms.setdefault(channel_id, set()).add(session_id)
        self._channel_by_session[session_id] = channel_id
        return previous

    def leave(self, channel_id: str, session_id: SessionId) -> bool:
        """Remove a session from a room. Returns False if it was not a member."""
        if self._channel_by_session.get(session_id) != channel_id:
            return False
        self._discard(channel_id, session_id)
        self._channel_by_session.pop(session_id, None)
        return True

    def leave_all(self, session_id: SessionId) -> list[str]:
        """Remove a session from every room. Returns the rooms left."""
        channel_id = self._channel_by_session.pop(session_id, None)
        if channel_id is None:
            return []
        self._discard(channel_id, session_id)
        return [channel_id]

    def _discard(self, channel_id: str, session_id: SessionId) -> None:
        members = self.rooms.get(channel_id)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            self.rooms.pop(channel_id, None)

    def members_of(self, channel_id: str) -> frozenset[SessionId]:
        """Get the sessions currently in a room (a snapshot, safe to iterate)."""
        return frozenset(self.rooms.get(channel_id, ()))

    def channel_of(self, session_id: SessionId) -> str | None:
        return self._channel_by_session.get(session_id)

    def other_users_in(self, channel_id: str, excluding_user_id: str | None) -> set[str]:
        """Distinct user ids in a room, other than ``excluding_user_id``."""
        out: set[str] = set()
        for session_id in self.rooms.get(channel_id, ()):
            user_id = self._user_of(session_id)
            if user_id and user_id != excluding_user_id:
                out.add(user_id)
        return out

    def contains_user(self, channel_id: str, user_id: str) -> bool:
        """True if any live session bound to ``user_id`` is in the room."""
        for session_id in self.rooms.get(channel_id, ()):
            if self._user_of(session_id) == user_id:
                return True
        return False

    def get_stats(self) -> dict[str, Any]:
        """Get room statistics for hub stats."""
        rooms_total = len(self.rooms)
        memberships = sum(len(v) for v in self.rooms.values())
        top_rooms = sorted(
            ((room, len(members)) for room, members in self.rooms.items()),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_total": rooms_total,
            "memberships": memberships,
            "top_rooms": top_rooms,
        }

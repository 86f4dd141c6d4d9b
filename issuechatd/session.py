from __future__ import annotations

import enum
import logging
import time
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any

from .config import ChatRuntimeConfig

SessionId = Hashable


class SessionState(enum.Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    IN_CHANNEL = "in_channel"


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass
class ChatSession:
    session_id: SessionId
    peer: bytes | None = None
    user_id: str | None = None
    role: str | None = None
    channel: str | None = None
    connected_at: float = field(default_factory=time.time)
    awaiting_pong: float | None = None

    @property
    def state(self) -> SessionState:
        if self.user_id is None:
            return SessionState.UNREGISTERED
        if self.channel is None:
            return SessionState.REGISTERED
        return SessionState.IN_CHANNEL


class SessionManager:
    """
    Manages session lifecycle for issue chat connections.

    This class is responsible for:
    - Session creation and teardown
    - Binding a session to exactly one user (immutable once bound)
    - The user -> sessions index used for "last session" checks
    - Rate limiting with a token bucket

    All methods must be called with the hub state lock held.
    """

    def __init__(self, config: ChatRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("issuechatd.session")
        self.sessions: dict[SessionId, ChatSession] = {}
        self._rate: dict[SessionId, _RateState] = {}
        self._index_by_user: dict[str, set[SessionId]] = {}

    def open(self, session_id: SessionId, *, peer: bytes | None = None) -> ChatSession:
        sess = self.sessions.get(session_id)
        if sess is not None:
            return sess

        sess = ChatSession(session_id=session_id, peer=peer)
        self.sessions[session_id] = sess
        self._rate[session_id] = _RateState(
            tokens=float(self.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )
        self.log.info("Session created session=%s", session_id)
        return sess

    def bind_user(self, session_id: SessionId, user_id: str) -> bool:
        """Bind a session to a user.

        Returns False if the session is unknown or already bound to a
        different user. Binding the same user again is accepted.
        """
        sess = self.sessions.get(session_id)
        if sess is None:
            return False
        if sess.user_id is not None:
            return sess.user_id == user_id

        sess.user_id = user_id
        self._index_by_user.setdefault(user_id, set()).add(session_id)
        self.log.info("Session bound session=%s user=%s", session_id, user_id)
        return True

    def close(self, session_id: SessionId) -> ChatSession | None:
        """Drop a session and return its final state (None if unknown)."""
        sess = self.sessions.pop(session_id, None)
        self._rate.pop(session_id, None)
        if sess is None:
            return None

        if sess.user_id is not None:
            links = self._index_by_user.get(sess.user_id)
            if links is not None:
                links.discard(session_id)
                if not links:
                    self._index_by_user.pop(sess.user_id, None)
        return sess

    def get_session(self, session_id: SessionId) -> ChatSession | None:
        return self.sessions.get(session_id)

    def user_of(self, session_id: SessionId) -> str | None:
        sess = self.sessions.get(session_id)
        return sess.user_id if sess is not None else None

    def sessions_of_user(self, user_id: str) -> set[SessionId]:
        return self._index_by_user.get(user_id, set()).copy()

    def is_user_connected(self, user_id: str) -> bool:
        return bool(self._index_by_user.get(user_id))

    def refill_and_take(self, session_id: SessionId, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        A limit of 0 or less disables rate limiting.
        """
        per_min_cfg = int(self.config.rate_limit_msgs_per_minute)
        if per_min_cfg <= 0:
            return True

        state = self._rate.get(session_id)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(per_min_cfg)
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def clear_all(self) -> list[SessionId]:
        """Clear all sessions and return their ids for teardown."""
        ids = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        self._index_by_user.clear()
        return ids

    def get_stats(self) -> dict[str, Any]:
        """Get session statistics for monitoring."""
        total = len(self.sessions)
        registered = sum(1 for s in self.sessions.values() if s.user_id is not None)
        in_channel = sum(1 for s in self.sessions.values() if s.channel is not None)
        return {
            "total": total,
            "registered": registered,
            "in_channel": in_channel,
            "users": len(self._index_by_user),
        }

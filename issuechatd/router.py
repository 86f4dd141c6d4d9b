from __future__ import annotations

import logging
import time
from collections.abc import Callable, Hashable, Iterable
from typing import Any

from .codec import decode, encode
from .config import ChatRuntimeConfig
from .constants import (
    B_CLIENT_MESSAGE_ID,
    B_COUNT,
    B_CURRENT_CHAT,
    B_IS_IN_CHAT,
    B_IS_ONLINE,
    B_IS_TYPING,
    B_ISSUE_ID,
    B_LAST_ACTIVE,
    B_MESSAGE,
    B_MESSAGE_ID,
    B_MESSAGE_ID_READ,
    B_MESSAGES,
    B_OTHER_USERS,
    B_READ_AT,
    B_READER_ID,
    B_ROOM_NAME,
    B_SENDER_ID,
    B_SENDER_ROLE,
    B_SINCE,
    B_TEXT,
    B_USER_ID,
    E_ERROR,
    E_GET_HISTORY,
    E_GET_UNREAD_COUNT,
    E_GET_USER_PRESENCE,
    E_HISTORY,
    E_JOIN_ISSUE,
    E_JOINED_ISSUE,
    E_LEAVE_ISSUE,
    E_MARK_MESSAGE_READ,
    E_MESSAGE_READ,
    E_MESSAGE_SENT,
    E_NEW_MESSAGE,
    E_PING,
    E_PONG,
    E_REGISTER_USER,
    E_SEND_MESSAGE,
    E_TYPING_START,
    E_TYPING_STOP,
    E_UNREAD_COUNT,
    E_USER_JOINED_CHAT,
    E_USER_LEFT_CHAT,
    E_USER_OFFLINE,
    E_USER_ONLINE,
    E_USER_PRESENCE,
    E_USER_TYPING,
    K_BODY,
    K_EVENT,
    PRESENCE_SCOPE_GLOBAL,
    ROOM_PREFIX,
)
from .envelope import make_envelope, validate_envelope
from .messages import MessageLog, MessageLogError
from .presence import PresenceRegistry
from .receipts import unread_count
from .rooms import RoomRegistry
from .session import ChatSession, SessionManager
from .stats import StatsManager
from .util import iso_from_epoch, normalize_id, normalize_text, parse_since

SessionId = Hashable
Outgoing = list[tuple[SessionId, bytes]]


def room_name(channel_id: str) -> str:
    return f"{ROOM_PREFIX}{channel_id}"


class EventRouter:
    """
    Per-connection chat protocol state machine.

    This class is responsible for:
    - Decoding and validating incoming frames
    - Dispatching events (register, join, leave, send, typing, read, ...)
    - Keeping the room and presence registries in step with each other
    - Fanning out resulting events to room members

    A session moves UNREGISTERED -> REGISTERED -> IN_CHANNEL. Joining another
    issue while IN_CHANNEL is an implicit leave of the old one; leaving goes
    back to REGISTERED; disconnect destroys the session from any state.

    The router never sends anything itself. Each handler appends
    ``(session_id, payload)`` pairs to ``outgoing`` and the caller delivers
    them. Every public method must be called with the hub state lock held;
    handlers validate everything before mutating any registry.
    """

    def __init__(
        self,
        config: ChatRuntimeConfig,
        store: MessageLog,
        *,
        sessions: SessionManager | None = None,
        rooms: RoomRegistry | None = None,
        presence: PresenceRegistry | None = None,
        stats: StatsManager | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.log = logging.getLogger("issuechatd.router")
        self._clock = clock

        self.sessions = sessions if sessions is not None else SessionManager(config)
        self.rooms = (
            rooms if rooms is not None else RoomRegistry(user_of=self.sessions.user_of)
        )
        self.presence = (
            presence
            if presence is not None
            else PresenceRegistry(in_room=self.rooms.contains_user, clock=clock)
        )
        self.stats = stats if stats is not None else StatsManager()

        self._handlers: dict[
            str, Callable[[ChatSession, dict[str, Any], Outgoing], None]
        ] = {
            E_REGISTER_USER: self._handle_register,
            E_JOIN_ISSUE: self._handle_join,
            E_LEAVE_ISSUE: self._handle_leave,
            E_GET_USER_PRESENCE: self._handle_get_presence,
            E_SEND_MESSAGE: self._handle_send,
            E_TYPING_START: self._handle_typing_start,
            E_TYPING_STOP: self._handle_typing_stop,
            E_MARK_MESSAGE_READ: self._handle_mark_read,
            E_GET_HISTORY: self._handle_history,
            E_GET_UNREAD_COUNT: self._handle_unread_count,
            E_PING: self._handle_ping,
            E_PONG: self._handle_pong,
        }

    # Connection lifecycle

    def connect(self, session_id: SessionId, *, peer: bytes | None = None) -> ChatSession:
        return self.sessions.open(session_id, peer=peer)

    def disconnect(self, session_id: SessionId, outgoing: Outgoing) -> ChatSession | None:
        """Tear down a session: implicit leave, then offline if it was the last one."""
        sess = self.sessions.get_session(session_id)
        if sess is None:
            return None

        channels_left = self.rooms.leave_all(session_id)
        sess.channel = None
        self.sessions.close(session_id)

        user_id = sess.user_id
        if user_id is None:
            return sess

        for channel_id in channels_left:
            if not self.rooms.contains_user(channel_id, user_id):
                self.presence.leave_channel(user_id, channel_id)
            self._emit_room(
                outgoing,
                channel_id,
                E_USER_LEFT_CHAT,
                {B_USER_ID: user_id, B_ISSUE_ID: channel_id},
            )

        if not self.sessions.is_user_connected(user_id):
            rec = self.presence.set_offline(user_id, self._clock())
            self._broadcast_presence(
                outgoing,
                user_id,
                E_USER_OFFLINE,
                {B_USER_ID: user_id, B_LAST_ACTIVE: _iso(rec.last_active_at)},
                channels=channels_left,
            )
            self.log.info("User offline user=%s", user_id)

        return sess

    # Inbound

    def route_packet(self, session_id: SessionId, data: bytes, outgoing: Outgoing) -> None:
        """Main entry point for one inbound frame."""
        sess = self.sessions.get_session(session_id)
        if sess is None:
            return

        self.stats.inc("events_in")
        self.stats.inc("bytes_in", len(data))

        if not self.sessions.refill_and_take(session_id, 1.0):
            self.stats.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited session=%s user=%s", session_id, sess.user_id)
            self._emit_error(outgoing, session_id, "rate limited")
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.stats.inc("events_bad")
            self.log.debug(
                "Bad frame session=%s bytes=%s err=%s", session_id, len(data), e
            )
            self._emit_error(outgoing, session_id, f"bad message: {e}")
            return

        self.handle_event(session_id, env[K_EVENT], env.get(K_BODY) or {}, outgoing)

    def handle_event(
        self,
        session_id: SessionId,
        event: str,
        body: dict[str, Any],
        outgoing: Outgoing,
    ) -> None:
        sess = self.sessions.get_session(session_id)
        if sess is None:
            return

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX session=%s user=%s state=%s event=%s keys=%s",
                session_id,
                sess.user_id,
                sess.state.value,
                event,
                sorted(body.keys()),
            )

        handler = self._handlers.get(event)
        if handler is None:
            self._emit_error(outgoing, session_id, f"unknown event: {event}")
            return

        try:
            handler(sess, body, outgoing)
        except Exception:
            # One bad event must not take the hub down for everyone else.
            self.log.exception("Handler failed event=%s session=%s", event, session_id)
            self._emit_error(outgoing, session_id, f"Failed to process {event}")

    # Handlers

    def _handle_register(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        user_id = normalize_id(body.get(B_USER_ID))
        if user_id is None:
            self._emit_error(outgoing, sess.session_id, "User ID is required")
            return
        if sess.user_id is not None and sess.user_id != user_id:
            self._emit_error(
                outgoing, sess.session_id, "Session is registered to another user"
            )
            return

        self.sessions.bind_user(sess.session_id, user_id)
        self.presence.set_online(user_id)

        self._broadcast_presence(
            outgoing,
            user_id,
            E_USER_ONLINE,
            {B_USER_ID: user_id, B_IS_ONLINE: True},
            channels=self._channels_of_user(user_id),
        )
        self.log.info("REGISTER user=%s session=%s", user_id, sess.session_id)

    def _handle_join(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        channel_id = normalize_id(
            body.get(B_ISSUE_ID), max_chars=self.config.max_channel_id_len
        )
        if channel_id is None:
            self._emit_error(outgoing, sess.session_id, "Issue ID is required")
            return

        given_user = normalize_id(body.get(B_USER_ID))
        if (
            given_user is not None
            and sess.user_id is not None
            and given_user != sess.user_id
        ):
            self._emit_error(
                outgoing, sess.session_id, "Session is registered to another user"
            )
            return

        if sess.user_id is None and given_user is not None:
            self.sessions.bind_user(sess.session_id, given_user)
        user_id = sess.user_id

        previous = self.rooms.join(channel_id, sess.session_id)
        sess.channel = channel_id
        self.stats.inc("joins")

        if previous is not None and user_id is not None:
            if not self.rooms.contains_user(previous, user_id):
                self.presence.leave_channel(user_id, previous)
            self._emit_room(
                outgoing,
                previous,
                E_USER_LEFT_CHAT,
                {B_USER_ID: user_id, B_ISSUE_ID: previous},
            )

        if user_id is not None:
            self.presence.set_online(user_id)
            self.presence.enter_channel(user_id, channel_id)

        others = sorted(self.rooms.other_users_in(channel_id, user_id))

        self._emit(
            outgoing,
            sess.session_id,
            E_JOINED_ISSUE,
            {
                B_ISSUE_ID: channel_id,
                B_ROOM_NAME: room_name(channel_id),
                B_OTHER_USERS: others,
            },
        )
        if user_id is not None:
            self._emit_room(
                outgoing,
                channel_id,
                E_USER_JOINED_CHAT,
                {B_USER_ID: user_id, B_ISSUE_ID: channel_id},
                exclude=sess.session_id,
            )
        # Tell the joiner who is already here, as if they had just joined.
        for other in others:
            self._emit(
                outgoing,
                sess.session_id,
                E_USER_JOINED_CHAT,
                {B_USER_ID: other, B_ISSUE_ID: channel_id},
            )

        if user_id is not None:
            self._broadcast_presence(
                outgoing,
                user_id,
                E_USER_ONLINE,
                {B_USER_ID: user_id, B_IS_ONLINE: True, B_CURRENT_CHAT: channel_id},
                channels=[channel_id],
            )

        self.log.info(
            "JOIN user=%s room=%s previous=%s others=%s session=%s",
            user_id,
            channel_id,
            previous,
            len(others),
            sess.session_id,
        )

    def _handle_leave(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        channel_id = normalize_id(body.get(B_ISSUE_ID))
        if channel_id is None:
            self._emit_error(outgoing, sess.session_id, "Issue ID is required")
            return

        if self.rooms.channel_of(sess.session_id) != channel_id:
            # Stale leave for a room this session already left or never joined.
            self.log.debug(
                "Ignoring leave room=%s session=%s current=%s",
                channel_id,
                sess.session_id,
                sess.channel,
            )
            return

        self.stats.inc("leaves")
        self.rooms.leave(channel_id, sess.session_id)
        sess.channel = None

        user_id = sess.user_id
        if user_id is not None:
            if not self.rooms.contains_user(channel_id, user_id):
                self.presence.leave_channel(user_id, channel_id)
            self._emit_room(
                outgoing,
                channel_id,
                E_USER_LEFT_CHAT,
                {B_USER_ID: user_id, B_ISSUE_ID: channel_id},
            )

        self.log.info(
            "LEAVE user=%s room=%s session=%s", user_id, channel_id, sess.session_id
        )

    def _handle_get_presence(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        target = normalize_id(body.get(B_USER_ID))
        if target is None:
            self._emit_error(outgoing, sess.session_id, "User ID is required")
            return
        channel_id = normalize_id(body.get(B_ISSUE_ID))

        view = self.presence.query(target, channel_id)
        self._emit(
            outgoing,
            sess.session_id,
            E_USER_PRESENCE,
            {
                B_USER_ID: target,
                B_IS_ONLINE: view.online,
                B_LAST_ACTIVE: _iso(view.last_active_at),
                B_CURRENT_CHAT: view.current_channel,
                B_IS_IN_CHAT: view.is_in_this_channel,
            },
        )

    def _handle_send(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        channel_id = normalize_id(body.get(B_ISSUE_ID))
        sender_id = normalize_id(body.get(B_SENDER_ID))
        role = normalize_id(body.get(B_SENDER_ROLE))
        text = normalize_text(body.get(B_TEXT))

        if channel_id is None or sender_id is None or role is None or text is None:
            self._emit_error(outgoing, sess.session_id, "Invalid message data")
            return
        if role not in self.config.allowed_roles:
            self._emit_error(outgoing, sess.session_id, "Invalid sender role")
            return
        if self.config.max_text_chars and len(text) > int(self.config.max_text_chars):
            self._emit_error(outgoing, sess.session_id, "Message too long")
            return
        if sess.user_id is not None and sess.user_id != sender_id:
            self._emit_error(
                outgoing, sess.session_id, "Sender does not match session user"
            )
            return

        client_id = normalize_id(body.get(B_CLIENT_MESSAGE_ID))

        try:
            msg = self.store.append(
                channel_id,
                sender_id=sender_id,
                sender_role=role,
                text=text,
                client_id=client_id,
            )
        except (MessageLogError, OSError) as e:
            self.stats.inc("messages_failed")
            self.log.warning(
                "Message persist failed room=%s sender=%s err=%s", channel_id, sender_id, e
            )
            self._emit_error(outgoing, sess.session_id, "Failed to send message")
            return

        sess.role = role
        self.presence.touch(sender_id)

        self._emit_room(outgoing, channel_id, E_NEW_MESSAGE, msg.to_wire())

        sent_body: dict[str, Any] = {B_MESSAGE_ID: msg.id, B_TEXT: msg.text}
        if client_id is not None:
            sent_body[B_CLIENT_MESSAGE_ID] = client_id
        self._emit(outgoing, sess.session_id, E_MESSAGE_SENT, sent_body)

        self.stats.inc("messages_sent")
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Message saved id=%s room=%s sender=%s recipients=%s",
                msg.id,
                channel_id,
                sender_id,
                len(self.rooms.members_of(channel_id)),
            )

    def _handle_typing_start(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        self._handle_typing(sess, body, outgoing, is_typing=True)

    def _handle_typing_stop(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        self._handle_typing(sess, body, outgoing, is_typing=False)

    def _handle_typing(
        self,
        sess: ChatSession,
        body: dict[str, Any],
        outgoing: Outgoing,
        *,
        is_typing: bool,
    ) -> None:
        channel_id = normalize_id(body.get(B_ISSUE_ID))
        sender_id = normalize_id(body.get(B_SENDER_ID))
        if channel_id is None or sender_id is None:
            self._emit_error(outgoing, sess.session_id, "Invalid typing data")
            return

        out: dict[str, Any] = {
            B_ISSUE_ID: channel_id,
            B_SENDER_ID: sender_id,
            B_IS_TYPING: is_typing,
        }
        role = normalize_id(body.get(B_SENDER_ROLE))
        if role is not None:
            out[B_SENDER_ROLE] = role

        self.stats.inc("typing_events")
        self._emit_room(
            outgoing, channel_id, E_USER_TYPING, out, exclude=sess.session_id
        )

    def _handle_mark_read(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        channel_id = normalize_id(body.get(B_ISSUE_ID))
        message_id = normalize_id(body.get(B_MESSAGE_ID_READ))
        reader_id = normalize_id(body.get(B_READER_ID))
        if channel_id is None or message_id is None or reader_id is None:
            self._emit_error(outgoing, sess.session_id, "Invalid read receipt data")
            return
        if sess.user_id is not None and sess.user_id != reader_id:
            self._emit_error(
                outgoing, sess.session_id, "Reader does not match session user"
            )
            return

        try:
            msg = self.store.get(channel_id, message_id)
        except MessageLogError as e:
            self.log.warning(
                "Message lookup failed room=%s id=%s err=%s", channel_id, message_id, e
            )
            self._emit_error(outgoing, sess.session_id, "Failed to mark message as read")
            return

        if msg is None:
            self._emit_error(outgoing, sess.session_id, "Message not found")
            return

        if msg.sender_id == reader_id:
            # Authors cannot read-receipt their own messages.
            return
        if msg.read:
            return

        read_at = self._clock()
        try:
            self.store.update(channel_id, message_id, {"read": True, "read_at": read_at})
        except (MessageLogError, KeyError) as e:
            self.log.warning(
                "Read receipt persist failed room=%s id=%s err=%s",
                channel_id,
                message_id,
                e,
            )
            self._emit_error(outgoing, sess.session_id, "Failed to mark message as read")
            return

        self.presence.touch(reader_id)
        self.stats.inc("read_receipts")

        self._emit_room(
            outgoing,
            channel_id,
            E_MESSAGE_READ,
            {
                B_ISSUE_ID: channel_id,
                B_MESSAGE_ID_READ: message_id,
                B_READ_AT: _iso(read_at),
                B_READER_ID: reader_id,
            },
        )

    def _handle_history(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        channel_id = normalize_id(body.get(B_ISSUE_ID))
        if channel_id is None:
            self._emit_error(outgoing, sess.session_id, "Issue ID is required")
            return
        try:
            since = parse_since(body.get(B_SINCE))
        except ValueError:
            self._emit_error(outgoing, sess.session_id, "Invalid history cursor")
            return

        limit = int(self.config.history_limit) or None
        try:
            messages = [m.to_wire() for m in self.store.list(channel_id, since, limit)]
        except MessageLogError as e:
            self.log.warning("History load failed room=%s err=%s", channel_id, e)
            self._emit_error(outgoing, sess.session_id, "Failed to load messages")
            return

        self._emit(
            outgoing,
            sess.session_id,
            E_HISTORY,
            {B_ISSUE_ID: channel_id, B_MESSAGES: messages},
        )

    def _handle_unread_count(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        channel_id = normalize_id(body.get(B_ISSUE_ID))
        user_id = normalize_id(body.get(B_USER_ID)) or sess.user_id
        if channel_id is None or user_id is None:
            self._emit_error(outgoing, sess.session_id, "Invalid unread count request")
            return

        try:
            count = unread_count(self.store.list(channel_id), user_id)
        except MessageLogError as e:
            self.log.warning("Unread count failed room=%s err=%s", channel_id, e)
            self._emit_error(outgoing, sess.session_id, "Failed to load messages")
            return

        self._emit(
            outgoing,
            sess.session_id,
            E_UNREAD_COUNT,
            {B_ISSUE_ID: channel_id, B_USER_ID: user_id, B_COUNT: count},
        )

    def _handle_ping(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        self._emit(outgoing, sess.session_id, E_PONG, dict(body))

    def _handle_pong(
        self, sess: ChatSession, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        sess.awaiting_pong = None

    # Outbound

    def _channels_of_user(self, user_id: str) -> list[str]:
        out: list[str] = []
        for session_id in self.sessions.sessions_of_user(user_id):
            channel_id = self.rooms.channel_of(session_id)
            if channel_id is not None and channel_id not in out:
                out.append(channel_id)
        return out

    def _broadcast_presence(
        self,
        outgoing: Outgoing,
        user_id: str,
        event: str,
        body: dict[str, Any],
        *,
        channels: Iterable[str],
    ) -> None:
        """Send an online/offline fact about ``user_id`` to other users.

        With the default "shared" scope only sessions in the given channels
        hear about it; "global" tells every connected session.
        """
        if self.config.presence_broadcast == PRESENCE_SCOPE_GLOBAL:
            recipients = set(self.sessions.sessions.keys())
        else:
            recipients = set()
            for channel_id in channels:
                recipients.update(self.rooms.members_of(channel_id))
        recipients = {s for s in recipients if self.sessions.user_of(s) != user_id}
        if not recipients:
            return

        payload = encode(make_envelope(event, body=body))
        for session_id in recipients:
            self._queue_payload(outgoing, session_id, payload)

    def _emit_room(
        self,
        outgoing: Outgoing,
        channel_id: str,
        event: str,
        body: dict[str, Any],
        *,
        exclude: SessionId | None = None,
    ) -> None:
        members = [m for m in self.rooms.members_of(channel_id) if m != exclude]
        if not members:
            return
        payload = encode(make_envelope(event, body=body))
        for session_id in members:
            self._queue_payload(outgoing, session_id, payload)

    def _emit(
        self,
        outgoing: Outgoing,
        session_id: SessionId,
        event: str,
        body: dict[str, Any],
    ) -> None:
        self._queue_payload(outgoing, session_id, encode(make_envelope(event, body=body)))

    def _emit_error(self, outgoing: Outgoing, session_id: SessionId, text: str) -> None:
        self.stats.inc("errors_sent")
        self._emit(outgoing, session_id, E_ERROR, {B_MESSAGE: text})

    def _queue_payload(
        self, outgoing: Outgoing, session_id: SessionId, payload: bytes
    ) -> None:
        self.stats.inc("bytes_out", len(payload))
        outgoing.append((session_id, payload))


def _iso(ts: float | None) -> str | None:
    return iso_from_epoch(ts) if ts is not None else None

from typing import Any

from issuechatd.codec import decode, encode
from issuechatd.config import ChatRuntimeConfig
from issuechatd.constants import K_BODY, K_EVENT
from issuechatd.envelope import make_envelope
from issuechatd.messages import MemoryMessageLog, MessageLogError
from issuechatd.router import EventRouter


class _Clock:
    def __init__(self, start: float = 1700000000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class _BrokenLog(MemoryMessageLog):
    def append(self, channel_id, **kwargs):
        raise MessageLogError("disk full")


def _router(store=None, **overrides: Any) -> EventRouter:
    cfg = ChatRuntimeConfig(**overrides)
    clock = _Clock()
    return EventRouter(cfg, store if store is not None else MemoryMessageLog(clock=clock), clock=clock)


def _send(router: EventRouter, sid: str, event: str, **body: Any) -> list[tuple[str, str, dict]]:
    outgoing: list = []
    router.route_packet(sid, encode(make_envelope(event, body=body)), outgoing)
    return _decoded(outgoing)


def _decoded(outgoing: list) -> list[tuple[str, str, dict]]:
    out = []
    for sid, payload in outgoing:
        env = decode(payload)
        out.append((sid, env[K_EVENT], env.get(K_BODY) or {}))
    return out


def _for(events: list[tuple[str, str, dict]], sid: str, event: str | None = None) -> list[dict]:
    return [b for s, e, b in events if s == sid and (event is None or e == event)]


def _errors(events: list[tuple[str, str, dict]], sid: str) -> list[str]:
    return [b["message"] for b in _for(events, sid, "error")]


def _joined(router: EventRouter, sid: str, user: str, issue: str) -> list:
    router.connect(sid)
    _send(router, sid, "register_user", userId=user)
    return _send(router, sid, "join_issue", issueID=issue, userId=user)


def test_requester_assignee_chat_scenario() -> None:
    router = _router(allowed_roles=("requester", "assignee"))
    _joined(router, "sb", "B", "issue-42")

    events = _joined(router, "sa", "A", "issue-42")
    joined = _for(events, "sa", "joined_issue")
    assert joined == [
        {"issueID": "issue-42", "roomName": "issue_issue-42", "otherUsersInChat": ["B"]}
    ]
    assert _for(events, "sb", "user_joined_chat") == [{"userId": "A", "issueID": "issue-42"}]
    assert _for(events, "sa", "user_joined_chat") == [{"userId": "B", "issueID": "issue-42"}]

    events = _send(
        router,
        "sb",
        "send_message",
        issueID="issue-42",
        senderID="B",
        senderRole="assignee",
        text="hello",
    )
    delivered = _for(events, "sa", "new_message")
    assert len(delivered) == 1
    assert delivered[0]["senderID"] == "B"
    assert delivered[0]["text"] == "hello"
    assert delivered[0]["read"] is False
    sent = _for(events, "sb", "message_sent")
    assert sent[0]["messageId"] == delivered[0]["id"]

    events = _send(
        router,
        "sa",
        "mark_message_read",
        issueID="issue-42",
        messageID=delivered[0]["id"],
        readerID="A",
    )
    receipt = _for(events, "sb", "message_read")
    assert receipt[0]["readerID"] == "A"
    assert receipt[0]["messageID"] == delivered[0]["id"]
    assert receipt[0]["readAt"].endswith("Z")

    events = _send(router, "sa", "get_user_presence", userId="B", issueID="issue-42")
    presence = _for(events, "sa", "user_presence")[0]
    assert presence["isOnline"] is True
    assert presence["isInChat"] is True
    assert presence["currentChat"] == "issue-42"

    outgoing: list = []
    router.disconnect("sb", outgoing)
    events = _decoded(outgoing)
    assert _for(events, "sa", "user_left_chat") == [{"userId": "B", "issueID": "issue-42"}]
    offline = _for(events, "sa", "user_offline")
    assert offline[0]["userId"] == "B"
    assert offline[0]["lastActive"].endswith("Z")

    events = _send(router, "sa", "get_user_presence", userId="B", issueID="issue-42")
    presence = _for(events, "sa", "user_presence")[0]
    assert presence["isOnline"] is False
    assert presence["isInChat"] is False
    assert presence["currentChat"] is None
    assert presence["lastActive"] is not None


def test_join_switches_rooms() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    events = _send(router, "s1", "join_issue", issueID="b", userId="alice")
    assert _for(events, "s2", "user_left_chat") == [{"userId": "alice", "issueID": "a"}]
    assert router.rooms.members_of("a") == frozenset({"s2"})
    assert router.rooms.members_of("b") == frozenset({"s1"})
    assert router.presence.get("alice").current_channel == "b"

    for sid in ("s1", "s2"):
        holding = [c for c, members in router.rooms.rooms.items() if sid in members]
        assert len(holding) == 1


def test_join_requires_issue_id() -> None:
    router = _router()
    router.connect("s1")
    events = _send(router, "s1", "join_issue", issueID="   ", userId="alice")
    assert _errors(events, "s1") == ["Issue ID is required"]
    assert router.rooms.rooms == {}


def test_join_cannot_rebind_session() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    events = _send(router, "s1", "join_issue", issueID="b", userId="mallory")
    assert _errors(events, "s1") == ["Session is registered to another user"]
    assert router.rooms.channel_of("s1") == "a"


def test_register_requires_user_id() -> None:
    router = _router()
    router.connect("s1")
    assert _errors(_send(router, "s1", "register_user"), "s1") == ["User ID is required"]


def test_leave_clears_presence_channel() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    events = _send(router, "s1", "leave_issue", issueID="a")
    assert _for(events, "s2", "user_left_chat") == [{"userId": "alice", "issueID": "a"}]
    assert router.presence.get("alice").current_channel is None
    assert router.presence.get("alice").online is True

    view = router.presence.query("alice", "a")
    assert view.is_in_this_channel is False


def test_stale_leave_is_ignored() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _send(router, "s1", "join_issue", issueID="b", userId="alice")

    events = _send(router, "s1", "leave_issue", issueID="a")
    assert events == []
    assert router.rooms.channel_of("s1") == "b"
    assert router.presence.get("alice").current_channel == "b"


def test_second_session_keeps_user_in_chat() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "alice", "a")
    _joined(router, "s3", "bob", "a")

    outgoing: list = []
    router.disconnect("s1", outgoing)
    events = _decoded(outgoing)
    assert _for(events, "s3", "user_offline") == []
    assert router.presence.query("alice", "a").is_in_this_channel is True
    assert router.presence.get("alice").online is True


def test_whitespace_text_is_rejected() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    events = _send(
        router, "s1", "send_message", issueID="a", senderID="alice", senderRole="student", text=" \n\t "
    )
    assert _errors(events, "s1") == ["Invalid message data"]
    assert _for(events, "s2") == []
    assert list(router.store.list("a")) == []


def test_send_validation_errors() -> None:
    router = _router(max_text_chars=5)
    _joined(router, "s1", "alice", "a")

    base = {"issueID": "a", "senderID": "alice", "senderRole": "student", "text": "hi"}
    cases = [
        ({"senderRole": "admin"}, "Invalid sender role"),
        ({"text": "far too long"}, "Message too long"),
        ({"senderID": "bob"}, "Sender does not match session user"),
        ({"issueID": None}, "Invalid message data"),
    ]
    for change, expected in cases:
        events = _send(router, "s1", "send_message", **{**base, **change})
        assert _errors(events, "s1") == [expected]
    assert list(router.store.list("a")) == []


def test_send_echoes_client_message_id_and_trims_text() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")

    events = _send(
        router,
        "s1",
        "send_message",
        issueID="a",
        senderID="alice",
        senderRole="student",
        text="  same text  ",
        clientMessageId="c-7",
    )
    sent = _for(events, "s1", "message_sent")[0]
    assert sent["clientMessageId"] == "c-7"
    assert sent["text"] == "same text"
    # The sender is in the room, so it gets the fan-out before the ack.
    assert [e for s, e, _ in events if s == "s1"] == ["new_message", "message_sent"]


def test_store_failure_reports_error_without_fanout() -> None:
    router = _router(store=_BrokenLog())
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    events = _send(
        router, "s1", "send_message", issueID="a", senderID="alice", senderRole="student", text="hi"
    )
    assert _errors(events, "s1") == ["Failed to send message"]
    assert _for(events, "s2") == []
    assert router.stats.get("messages_failed") == 1


def test_messages_are_delivered_in_log_order() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    received = []
    for i in range(5):
        sender, user = ("s1", "alice") if i % 2 == 0 else ("s2", "bob")
        events = _send(
            router, sender, "send_message", issueID="a", senderID=user, senderRole="student", text=f"m{i}"
        )
        received.extend(b["id"] for b in _for(events, "s2", "new_message"))

    assert received == [m.id for m in router.store.list("a")]


def test_mark_read_is_idempotent_and_ignores_self_reads() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    events = _send(
        router, "s1", "send_message", issueID="a", senderID="alice", senderRole="student", text="hi"
    )
    mid = _for(events, "s1", "message_sent")[0]["messageId"]

    events = _send(router, "s1", "mark_message_read", issueID="a", messageID=mid, readerID="alice")
    assert events == []
    assert router.store.get("a", mid).read is False

    events = _send(router, "s2", "mark_message_read", issueID="a", messageID=mid, readerID="bob")
    assert len(_for(events, "s1", "message_read")) == 1
    first = router.store.get("a", mid)
    assert first.read is True

    events = _send(router, "s2", "mark_message_read", issueID="a", messageID=mid, readerID="bob")
    assert events == []
    assert router.store.get("a", mid) == first


def test_mark_read_unknown_message() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    events = _send(router, "s1", "mark_message_read", issueID="a", messageID="nope", readerID="alice")
    assert _errors(events, "s1") == ["Message not found"]

    events = _send(router, "s1", "mark_message_read", issueID="a")
    assert _errors(events, "s1") == ["Invalid read receipt data"]


def test_typing_goes_to_others_only() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    events = _send(router, "s1", "typing_start", issueID="a", senderID="alice", senderRole="student")
    assert _for(events, "s1") == []
    assert _for(events, "s2", "user_typing") == [
        {"issueID": "a", "senderID": "alice", "isTyping": True, "senderRole": "student"}
    ]

    events = _send(router, "s1", "typing_stop", issueID="a", senderID="alice")
    assert _for(events, "s2", "user_typing")[0]["isTyping"] is False

    events = _send(router, "s1", "typing_start", issueID="a")
    assert _errors(events, "s1") == ["Invalid typing data"]


def test_presence_broadcast_scope() -> None:
    for scope, expect_outsider in (("shared", False), ("global", True)):
        router = _router(presence_broadcast=scope)
        router.connect("outsider")
        _send(router, "outsider", "register_user", userId="carol")

        events = _joined(router, "s1", "alice", "a")
        heard = _for(events, "outsider", "user_online")
        assert bool(heard) is expect_outsider


def test_history_and_unread_count() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")
    for text in ("one", "two"):
        _send(router, "s1", "send_message", issueID="a", senderID="alice", senderRole="student", text=text)

    history = _for(_send(router, "s2", "get_history", issueID="a"), "s2", "history")[0]
    assert [m["text"] for m in history["messages"]] == ["one", "two"]

    since = history["messages"][0]["timestamp"]
    later = _for(_send(router, "s2", "get_history", issueID="a", since=since), "s2", "history")[0]
    assert [m["text"] for m in later["messages"]] == ["two"]

    events = _send(router, "s2", "get_history", issueID="a", since="yesterday")
    assert _errors(events, "s2") == ["Invalid history cursor"]

    counts = _for(_send(router, "s2", "get_unread_count", issueID="a"), "s2", "unread_count")
    assert counts == [{"issueID": "a", "userId": "bob", "count": 2}]
    counts = _for(_send(router, "s2", "get_unread_count", issueID="a", userId="alice"), "s2", "unread_count")
    assert counts[0]["count"] == 0


def test_bad_frames_and_unknown_events() -> None:
    router = _router()
    router.connect("s1")

    outgoing: list = []
    router.route_packet("s1", b"\xff\x00", outgoing)
    errors = _errors(_decoded(outgoing), "s1")
    assert errors[0].startswith("bad message")

    assert _errors(_send(router, "s1", "launch_rockets"), "s1") == ["unknown event: launch_rockets"]
    assert router.stats.get("events_bad") == 1


def test_handler_failure_is_reported() -> None:
    class _Exploding(MemoryMessageLog):
        def list(self, channel_id, since=None, limit=None):
            raise RuntimeError("boom")

    router = _router(store=_Exploding())
    router.connect("s1")
    events = _send(router, "s1", "get_history", issueID="a")
    assert _errors(events, "s1") == ["Failed to process get_history"]


def test_rate_limit() -> None:
    router = _router(rate_limit_msgs_per_minute=2)
    router.connect("s1")
    _send(router, "s1", "ping")
    _send(router, "s1", "ping")
    assert _errors(_send(router, "s1", "ping"), "s1") == ["rate limited"]


def test_ping_pong() -> None:
    router = _router()
    sess = router.connect("s1")
    events = _send(router, "s1", "ping", ts=5)
    assert _for(events, "s1", "pong") == [{"ts": 5}]

    sess.awaiting_pong = 1.0
    _send(router, "s1", "pong")
    assert sess.awaiting_pong is None


def test_disconnect_unknown_session() -> None:
    router = _router()
    outgoing: list = []
    assert router.disconnect("ghost", outgoing) is None
    assert outgoing == []


def test_unbound_session_can_leave() -> None:
    router = _router()
    _joined(router, "s2", "bob", "a")
    router.connect("anon")

    events = _send(router, "anon", "join_issue", issueID="a")
    assert _for(events, "anon", "joined_issue")[0]["otherUsersInChat"] == ["bob"]
    assert _for(events, "s2", "user_joined_chat") == []

    _send(router, "anon", "leave_issue", issueID="a")
    assert router.rooms.channel_of("anon") is None
    assert router.rooms.members_of("a") == frozenset({"s2"})

    events = _send(
        router, "s2", "send_message", issueID="a", senderID="bob", senderRole="student", text="hi"
    )
    assert _for(events, "anon") == []


def test_mark_read_rejects_reader_other_than_session_user() -> None:
    router = _router()
    _joined(router, "s1", "alice", "a")
    _joined(router, "s2", "bob", "a")

    events = _send(
        router, "s1", "send_message", issueID="a", senderID="alice", senderRole="student", text="hi"
    )
    mid = _for(events, "s1", "message_sent")[0]["messageId"]

    events = _send(router, "s1", "mark_message_read", issueID="a", messageID=mid, readerID="bob")
    assert _errors(events, "s1") == ["Reader does not match session user"]
    assert _for(events, "s2") == []
    assert router.store.get("a", mid).read is False


def test_rejected_join_is_not_counted() -> None:
    router = _router()
    router.connect("s1")
    _send(router, "s1", "join_issue", issueID="", userId="alice")
    assert router.stats.get("joins") == 0

    _send(router, "s1", "join_issue", issueID="a", userId="alice")
    assert router.stats.get("joins") == 1

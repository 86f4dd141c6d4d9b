from issuechatd.messages import Message
from issuechatd.presence import PresenceRecord
from issuechatd.receipts import is_unread_for, receipt_status, unread_count


def _msg(mid: str, sender: str, *, read: bool = False) -> Message:
    return Message(
        id=mid,
        channel_id="42",
        sender_id=sender,
        sender_role="student",
        text="hello",
        timestamp=1000.0,
        read=read,
        read_at=1001.0 if read else None,
    )


def test_receipt_status() -> None:
    online = PresenceRecord(online=True, last_active_at=1.0, current_channel=None)
    offline = PresenceRecord(online=False, last_active_at=1.0, current_channel=None)

    assert receipt_status(_msg("m1", "alice"), None) == "sent"
    assert receipt_status(_msg("m1", "alice"), offline) == "sent"
    assert receipt_status(_msg("m1", "alice"), online) == "delivered"
    assert receipt_status(_msg("m1", "alice", read=True), offline) == "read"
    assert receipt_status(_msg("m1", "alice", read=True), online) == "read"


def test_unread_ignores_own_messages() -> None:
    assert is_unread_for(_msg("m1", "alice"), "bob")
    assert not is_unread_for(_msg("m1", "alice"), "alice")
    assert not is_unread_for(_msg("m1", "alice", read=True), "bob")


def test_unread_count() -> None:
    messages = [
        _msg("m1", "alice"),
        _msg("m2", "alice", read=True),
        _msg("m3", "bob"),
        _msg("m4", "alice"),
    ]
    assert unread_count(messages, "bob") == 2
    assert unread_count(messages, "alice") == 1
    assert unread_count([], "alice") == 0

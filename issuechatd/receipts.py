"""Read receipts as seen by a message's author.

Nothing here is stored. The tri-state indicator is derived from the message
itself and the recipient's current presence.
"""

from __future__ import annotations

from collections.abc import Iterable

from .constants import RECEIPT_DELIVERED, RECEIPT_READ, RECEIPT_SENT
from .messages import Message
from .presence import PresenceRecord, PresenceView


def receipt_status(
    message: Message, recipient: PresenceRecord | PresenceView | None
) -> str:
    """Return ``"read"``, ``"delivered"`` or ``"sent"``.

    ``delivered`` only needs the recipient to be online somewhere; being in
    this particular chat is not required.
    """
    if message.read:
        return RECEIPT_READ
    if recipient is not None and recipient.online:
        return RECEIPT_DELIVERED
    return RECEIPT_SENT


def is_unread_for(message: Message, user_id: str) -> bool:
    return message.sender_id != user_id and not message.read


def unread_count(messages: Iterable[Message], user_id: str) -> int:
    """Number of messages from other users that ``user_id`` has not read."""
    return sum(1 for m in messages if is_unread_for(m, user_id))

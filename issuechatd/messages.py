"""Per-issue message log.

The log is the only durable chat state. Messages are appended in order and
afterwards only the read receipt fields change. Nothing is ever deleted.

Two stores share one interface:

- :class:`MemoryMessageLog` keeps everything in process memory.
- :class:`CborFileMessageLog` additionally writes one append-only CBOR file
  per issue. Read receipts are appended as patch records and folded in on
  load, so a file is never rewritten.
"""

from __future__ import annotations

import abc
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any
from urllib.parse import quote

import cbor2

from .codec import encode
from .constants import (
    B_CLIENT_MESSAGE_ID,
    B_ISSUE_ID,
    B_READ_AT,
    B_SENDER_ID,
    B_SENDER_ROLE,
    B_TEXT,
)
from .util import iso_from_epoch


class MessageLogError(Exception):
    """Raised when the log store cannot persist or load a message."""


@dataclass(frozen=True)
class Message:
    id: str
    channel_id: str
    sender_id: str
    sender_role: str
    text: str
    timestamp: float
    sent: bool = True
    read: bool = False
    read_at: float | None = None
    client_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": self.id,
            B_ISSUE_ID: self.channel_id,
            B_SENDER_ID: self.sender_id,
            B_SENDER_ROLE: self.sender_role,
            B_TEXT: self.text,
            "timestamp": iso_from_epoch(self.timestamp),
            "sent": self.sent,
            "read": self.read,
            B_READ_AT: iso_from_epoch(self.read_at) if self.read_at is not None else None,
        }
        if self.client_id is not None:
            body[B_CLIENT_MESSAGE_ID] = self.client_id
        return body

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel_id,
            "sender": self.sender_id,
            "role": self.sender_role,
            "text": self.text,
            "ts": self.timestamp,
            "read": self.read,
            "read_at": self.read_at,
            "client_id": self.client_id,
        }

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> Message:
        return cls(
            id=str(rec["id"]),
            channel_id=str(rec["channel"]),
            sender_id=str(rec["sender"]),
            sender_role=str(rec["role"]),
            text=str(rec["text"]),
            timestamp=float(rec["ts"]),
            sent=True,
            read=bool(rec.get("read", False)),
            read_at=float(rec["read_at"]) if rec.get("read_at") is not None else None,
            client_id=rec.get("client_id"),
        )


# Only read receipts may change after append.
_PATCHABLE = {"read", "read_at"}


class MessageLog(abc.ABC):
    """Interface of a per-channel append-only message log."""

    @abc.abstractmethod
    def append(
        self,
        channel_id: str,
        *,
        sender_id: str,
        sender_role: str,
        text: str,
        client_id: str | None = None,
    ) -> Message:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, channel_id: str, message_id: str) -> Message | None:
        raise NotImplementedError

    @abc.abstractmethod
    def update(self, channel_id: str, message_id: str, patch: dict[str, Any]) -> Message:
        raise NotImplementedError

    @abc.abstractmethod
    def list(
        self, channel_id: str, since: float | None = None, limit: int | None = None
    ) -> Iterator[Message]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryMessageLog(MessageLog):
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.log = logging.getLogger("issuechatd.messages")
        self._clock = clock
        self._channels: dict[str, list[Message]] = {}
        self._index: dict[str, dict[str, int]] = {}

    def _ensure_loaded(self, channel_id: str) -> None:
        pass

    def _channel(self, channel_id: str) -> list[Message]:
        self._ensure_loaded(channel_id)
        return self._channels.setdefault(channel_id, [])

    def _next_timestamp(self, channel_id: str) -> float:
        now = float(self._clock())
        entries = self._channel(channel_id)
        if entries and entries[-1].timestamp > now:
            # Wall clock went backwards; keep the log nondecreasing.
            return entries[-1].timestamp
        return now

    def _new_id(self) -> str:
        return uuid.uuid4().hex

    def _store(self, msg: Message) -> None:
        entries = self._channel(msg.channel_id)
        self._index.setdefault(msg.channel_id, {})[msg.id] = len(entries)
        entries.append(msg)

    def _replace(self, msg: Message) -> None:
        pos = self._index[msg.channel_id][msg.id]
        self._channels[msg.channel_id][pos] = msg

    def _build(
        self,
        channel_id: str,
        *,
        sender_id: str,
        sender_role: str,
        text: str,
        client_id: str | None,
    ) -> Message:
        return Message(
            id=self._new_id(),
            channel_id=channel_id,
            sender_id=sender_id,
            sender_role=sender_role,
            text=text,
            timestamp=self._next_timestamp(channel_id),
            client_id=client_id,
        )

    def _patched(self, channel_id: str, message_id: str, patch: dict[str, Any]) -> Message:
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        current = self.get(channel_id, message_id)
        if current is None:
            raise KeyError(message_id)
        return replace(current, **patch)

    def append(
        self,
        channel_id: str,
        *,
        sender_id: str,
        sender_role: str,
        text: str,
        client_id: str | None = None,
    ) -> Message:
        msg = self._build(
            channel_id,
            sender_id=sender_id,
            sender_role=sender_role,
            text=text,
            client_id=client_id,
        )
        self._store(msg)
        return msg

    def get(self, channel_id: str, message_id: str) -> Message | None:
        self._ensure_loaded(channel_id)
        pos = self._index.get(channel_id, {}).get(message_id)
        if pos is None:
            return None
        return self._channels[channel_id][pos]

    def update(self, channel_id: str, message_id: str, patch: dict[str, Any]) -> Message:
        msg = self._patched(channel_id, message_id, patch)
        self._replace(msg)
        return msg

    def list(
        self, channel_id: str, since: float | None = None, limit: int | None = None
    ) -> Iterator[Message]:
        self._ensure_loaded(channel_id)
        snapshot = tuple(self._channels.get(channel_id, ()))
        if since is not None:
            snapshot = tuple(m for m in snapshot if m.timestamp > since)
        if limit is not None and limit > 0:
            snapshot = snapshot[-limit:]
        return iter(snapshot)


class CborFileMessageLog(MemoryMessageLog):
    """File-backed log: ``<root>/<quoted channel id>.cbor``.

    Each file is a sequence of CBOR maps, either ``{"op": "append", "msg":
    {...}}`` or ``{"op": "update", "id": ..., "patch": {...}}``. Channels are
    loaded lazily the first time they are touched.
    """

    def __init__(self, root: str | os.PathLike, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock=clock)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._loaded: set[str] = set()
        self._write_lock = threading.Lock()

    def path_for(self, channel_id: str) -> Path:
        return self.root / (quote(channel_id, safe="") + ".cbor")

    def _ensure_loaded(self, channel_id: str) -> None:
        if channel_id not in self._loaded:
            try:
                self._load(channel_id)
            except OSError as e:
                self._channels.pop(channel_id, None)
                self._index.pop(channel_id, None)
                raise MessageLogError(f"load failed for channel {channel_id}: {e}") from e
            self._loaded.add(channel_id)

    def _load(self, channel_id: str) -> None:
        path = self.path_for(channel_id)
        if not path.exists():
            return

        entries = self._channels.setdefault(channel_id, [])
        index = self._index.setdefault(channel_id, {})
        count = 0
        truncated_at: int | None = None
        size = path.stat().st_size
        with open(path, "rb") as f:
            while f.tell() < size:
                offset = f.tell()
                try:
                    rec = cbor2.load(f)
                except (cbor2.CBORDecodeError, EOFError) as e:
                    self.log.warning(
                        "Truncated message log channel=%s offset=%s err=%s",
                        channel_id,
                        f.tell(),
                        e,
                    )
                    truncated_at = offset
                    break
                if not isinstance(rec, dict):
                    continue
                op = rec.get("op")
                try:
                    if op == "append":
                        msg = Message.from_record(rec["msg"])
                        index[msg.id] = len(entries)
                        entries.append(msg)
                        count += 1
                    elif op == "update":
                        pos = index.get(str(rec.get("id")))
                        patch = rec.get("patch") or {}
                        if pos is not None and set(patch) <= _PATCHABLE:
                            entries[pos] = replace(entries[pos], **patch)
                except (KeyError, TypeError, ValueError) as e:
                    self.log.warning(
                        "Skipping bad message log record channel=%s err=%s", channel_id, e
                    )

        if truncated_at is not None:
            # Drop the partial record so later appends stay readable.
            os.truncate(path, truncated_at)

        self.log.debug("Loaded message log channel=%s messages=%s", channel_id, count)

    def _write(self, channel_id: str, record: dict[str, Any]) -> None:
        payload = encode(record)
        try:
            with self._write_lock:
                with open(self.path_for(channel_id), "ab") as f:
                    f.write(payload)
                    f.flush()
        except OSError as e:
            raise MessageLogError(f"write failed for channel {channel_id}: {e}") from e

    def append(
        self,
        channel_id: str,
        *,
        sender_id: str,
        sender_role: str,
        text: str,
        client_id: str | None = None,
    ) -> Message:
        msg = self._build(
            channel_id,
            sender_id=sender_id,
            sender_role=sender_role,
            text=text,
            client_id=client_id,
        )
        # Persist before the message becomes visible.
        self._write(channel_id, {"op": "append", "msg": msg.to_record()})
        self._store(msg)
        return msg

    def update(self, channel_id: str, message_id: str, patch: dict[str, Any]) -> Message:
        msg = self._patched(channel_id, message_id, patch)
        self._write(channel_id, {"op": "update", "id": message_id, "patch": dict(patch)})
        self._replace(msg)
        return msg

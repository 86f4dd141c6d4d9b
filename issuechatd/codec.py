from __future__ import annotations

import cbor2


class CodecError(ValueError):
    pass


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    if not isinstance(b, (bytes, bytearray, memoryview)):
        raise TypeError("payload must be bytes")
    try:
        return cbor2.loads(bytes(b))
    except cbor2.CBORDecodeError as e:
        raise CodecError(str(e)) from e

import pytest

from issuechatd.codec import CodecError, decode, encode
from issuechatd.constants import E_SEND_MESSAGE
from issuechatd.envelope import make_envelope, validate_envelope


def test_codec_round_trip() -> None:
    env = make_envelope(
        E_SEND_MESSAGE,
        body={"issueID": "issue-42", "senderID": "u1", "senderRole": "student", "text": "hi"},
    )
    decoded = decode(encode(env))
    assert decoded == env
    validate_envelope(decoded)


def test_decode_rejects_garbage() -> None:
    with pytest.raises(CodecError):
        decode(b"\xff\xff")


def test_decode_rejects_non_bytes() -> None:
    with pytest.raises(TypeError):
        decode("not bytes")  # type: ignore[arg-type]

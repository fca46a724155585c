import pytest

from havend.codec import decode, encode
from havend.constants import E_CHAT_MSG, K_BODY
from havend.envelope import make_envelope, validate_envelope


def test_codec_round_trip() -> None:
    env = make_envelope(E_CHAT_MSG, body={"message": {"roomName": "public", "text": ["hello"]}})
    data = encode(env)
    decoded = decode(data)
    assert decoded == env
    validate_envelope(decoded)
    assert decoded[K_BODY]["message"]["text"] == ["hello"]


def test_decode_rejects_truncated_input() -> None:
    with pytest.raises(ValueError):
        decode(b"\x82\x01")

import pytest

from havend.errors import InvalidInput
from havend.schemas import SCHEMAS, validate_request


def test_body_is_returned_as_received() -> None:
    body = {"user": {"userName": "alice", "password": "secret1", "colour": "red"}, "x": 1}
    assert validate_request("login", body) is body
    assert validate_request("history", None) == {}
    assert validate_request("whoAmI", {"anything": True}) == {"anything": True}


def test_missing_and_mistyped_fields() -> None:
    bad = [
        ("login", {"user": {"userName": "alice"}}),
        ("login", {"user": "alice"}),
        ("register", {"user": {"userName": None, "password": "secret1"}}),
        ("updateCommand", {"commandName": "follow", "accessLevel": True}),
        ("updateCommand", {"commandName": "follow", "accessLevel": "5"}),
        ("chatMsg", {"message": {"roomName": "public", "text": "hi"}}),
        ("chatMsg", {"message": {"roomName": "public", "text": ["hi", 3]}}),
        ("chatMsg", {"message": {"roomName": "public", "text": ["hi"]}, "skipSelf": 1}),
        ("whisperMsg", {"message": {"roomName": "bob", "text": ["x"]}}),
        ("historyAck", {"ackToken": "abc"}),
        ("importantMsg", {"message": {"text": ["x"], "morse": {"morseCode": 7}}}),
        ("roomAnswer", {"invitation": {"itemName": "den"}, "accepted": "yes"}),
        ("matchPartialUser", {}),
    ]
    for event, body in bad:
        with pytest.raises(InvalidInput):
            validate_request(event, body)

    with pytest.raises(InvalidInput):
        validate_request("login", ["not", "a", "map"])


def test_optional_fields_accept_null() -> None:
    validate_request("follow", {"room": {"roomName": "den", "password": None}})
    validate_request("updateId", {"user": None, "token": None})
    validate_request("history", {"room": {"roomName": None}, "lines": 3})
    validate_request("historyAck", {"ackToken": b"\x00" * 8})
    validate_request("importantMsg", {"message": {"text": ["x"], "morse": {"morseCode": "."}}})


def test_error_names_the_field() -> None:
    with pytest.raises(InvalidInput) as info:
        validate_request("createRoom", {"room": {"roomName": "den", "accessLevel": False}})
    assert "room.accessLevel" in info.value.text


def test_every_request_event_has_a_model() -> None:
    for event in ("register", "login", "chatMsg", "ban", "command", "userExists"):
        assert event in SCHEMAS

import os

import pytest

from havend.errors import DuplicateKeyError
from havend.models import Archive, Invitation, Message, Room, User
from havend.storage import SqliteStore


@pytest.fixture
def store():
    s = SqliteStore(":memory:")
    yield s
    s.close()


def _msg(room: str, ts: int, text: str = "hi", mid: bytes | None = None) -> Message:
    return Message(
        msg_id=mid or os.urandom(8),
        room_name=room,
        sender="alice",
        text=(text,),
        ts=ts,
        kind="chat",
    )


def test_user_round_trip_keeps_rooms(store: SqliteStore) -> None:
    store.add_user(User("alice", "hash", rooms={"public", "alice-whisper"}))
    user = store.get_user("alice")
    assert user is not None
    assert user.rooms == {"public", "alice-whisper"}
    assert user.verified and not user.banned

    assert store.add_user_room("alice", "den") is True
    assert store.add_user_room("alice", "den") is False
    assert store.remove_user_room("alice", "den") is True
    assert store.remove_user_room("alice", "den") is False


def test_duplicate_user_is_reported(store: SqliteStore) -> None:
    store.add_user(User("alice", "hash"))
    with pytest.raises(DuplicateKeyError):
        store.add_user(User("alice", "other"))


def test_update_user_rejects_unknown_fields(store: SqliteStore) -> None:
    store.add_user(User("alice", "hash"))
    with pytest.raises(ValueError):
        store.update_user("alice", user_name="bob")
    store.update_user("alice", online=True, last_online=42)
    user = store.get_user("alice")
    assert user is not None and user.online and user.last_online == 42


def test_append_messages_is_all_or_nothing(store: SqliteStore) -> None:
    mid = os.urandom(8)
    with pytest.raises(DuplicateKeyError):
        store.append_messages([_msg("public", 1, mid=mid), _msg("public", 2, mid=mid)])
    assert store.query_messages(["public"]) == []


def test_same_id_may_be_stored_in_two_rooms(store: SqliteStore) -> None:
    mid = os.urandom(8)
    stored = store.append_messages([_msg("a-whisper", 1, mid=mid), _msg("b-whisper", 1, mid=mid)])
    assert [m.room_name for m in stored] == ["a-whisper", "b-whisper"]
    assert stored[0].seq < stored[1].seq


def test_query_newest_keeps_latest_rows_in_ascending_order(store: SqliteStore) -> None:
    store.append_messages([_msg("public", ts, str(ts)) for ts in range(1, 11)])
    store.append_messages([_msg("other", 5, "elsewhere")])

    latest = store.query_messages(["public"], limit=3, newest=True)
    assert [m.text[0] for m in latest] == ["8", "9", "10"]

    window = store.query_messages(["public"], after=3, until=5)
    assert [m.ts for m in window] == [4, 5]


def test_remove_room_returns_followers(store: SqliteStore) -> None:
    store.add_room(Room("den", "alice"))
    store.add_user(User("alice", "hash", rooms={"den"}))
    store.add_user(User("bob", "hash", rooms={"den", "public"}))

    assert sorted(store.remove_room("den")) == ["alice", "bob"]
    assert store.get_room("den") is None
    bob = store.get_user("bob")
    assert bob is not None and bob.rooms == {"public"}


def test_invitations_are_unique_per_item(store: SqliteStore) -> None:
    store.add_invitation(Invitation("bob", "red", "team", "alice", 1))
    store.add_invitation(Invitation("bob", "blue", "team", "carol", 2))
    store.add_invitation(Invitation("bob", "den", "room", "alice", 3))
    with pytest.raises(DuplicateKeyError):
        store.add_invitation(Invitation("bob", "red", "team", "dave", 4))

    assert store.remove_invitations("bob", "team") == 2
    assert [i.item_name for i in store.list_invitations("bob")] == ["den"]


def test_archives_keep_text_lines(store: SqliteStore) -> None:
    store.add_archive(Archive("rules", "Rules", ("one", "two"), access_level=1, visibility=1))
    archive = store.get_archive("rules")
    assert archive is not None
    assert archive.text == ("one", "two")
    assert store.get_archive("missing") is None

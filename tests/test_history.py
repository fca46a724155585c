import os

import pytest

from havend.history import cap_on_timestamp, chunk, dedupe
from havend.models import Message


def _msg(ts: int, room: str = "public", text: str | None = None, mid: bytes | None = None) -> Message:
    return Message(
        msg_id=mid or os.urandom(8),
        room_name=room,
        sender="carol",
        text=(text or str(ts),),
        ts=ts,
        kind="chat",
    )


def test_chunk_sizes() -> None:
    msgs = [_msg(i) for i in range(25)]
    batches = chunk(msgs, 10)
    assert [len(b) for b in batches] == [10, 10, 5]
    assert [m for b in batches for m in b] == msgs
    assert chunk([], 10) == []
    with pytest.raises(ValueError):
        chunk(msgs, 0)


def test_dedupe_keeps_first_copy() -> None:
    mid = os.urandom(8)
    a = _msg(1, "a-whisper", mid=mid)
    b = _msg(1, "b-whisper", mid=mid)
    c = _msg(2)
    assert dedupe([a, b, c]) == [a, c]


def test_cap_never_splits_equal_timestamps() -> None:
    msgs = [_msg(ts) for ts in (1, 2, 3, 3, 3, 4)]
    kept, truncated = cap_on_timestamp(msgs, 3)
    assert [m.ts for m in kept] == [1, 2]
    assert truncated is True

    run = [_msg(5) for _ in range(4)]
    kept, truncated = cap_on_timestamp(run, 2)
    assert len(kept) == 4
    assert truncated is False


def _seed(hub, count: int, start: int = 2000) -> None:
    hub.store.append_messages([_msg(start + i) for i in range(count)])


def _prepare(hub, connect, name: str = "alice"):
    client = connect()
    client.register(name)
    hub.store.update_user(name, last_online=1000)
    return client


def test_catch_up_is_chunked_and_acknowledged(hub, connect) -> None:
    alice = _prepare(hub, connect)
    _seed(hub, 25)
    alice.login("alice")

    batches = alice.received("chatMsgs")
    assert [len(b["messages"]) for b in batches] == [10, 10, 5]
    assert all(b["catchUp"] is True for b in batches)
    assert [b["batch"] for b in batches] == [1, 2, 3]
    assert "ackToken" not in batches[0]
    token = batches[-1]["ackToken"]
    texts = [m["text"][0] for b in batches for m in b["messages"]]
    assert texts == [str(2000 + i) for i in range(25)]

    assert hub.store.get_user("alice").last_online == 1000

    data = alice.ok("historyAck", {"ackToken": token})
    assert data["lastOnline"] >= 2024
    assert hub.store.get_user("alice").last_online == data["lastOnline"]

    again = connect()
    again.login("alice")
    assert again.received("chatMsgs") == []


def test_unacknowledged_catch_up_is_replayed(hub, connect) -> None:
    alice = _prepare(hub, connect)
    _seed(hub, 3)
    alice.login("alice")
    assert len(alice.received("chatMsgs")) == 1
    alice.close()

    assert hub.store.get_user("alice").last_online == 1000
    assert hub.store.get_user("alice").online is False

    again = connect()
    again.login("alice")
    (batch,) = again.received("chatMsgs")
    assert len(batch["messages"]) == 3


def test_ack_with_wrong_token_is_rejected(hub, connect) -> None:
    alice = _prepare(hub, connect)
    _seed(hub, 2)
    alice.login("alice")

    assert alice.fail("historyAck", {"ackToken": b"\x00" * 8}) == {"code": "rejected"}
    assert hub.store.get_user("alice").last_online == 1000

    token = alice.received("chatMsgs")[-1]["ackToken"]
    alice.ok("historyAck", {"ackToken": token})
    assert alice.fail("historyAck", {"ackToken": token}) == {"code": "rejected"}


def test_truncated_catch_up_continues_after_ack(make_hub, connect) -> None:
    svc = make_hub(max_catchup_lines=10, chunk_length=10)
    alice = _prepare(svc, lambda: connect(svc))
    _seed(svc, 25)
    alice.login("alice")

    pages = []
    for _ in range(3):
        (batch,) = [b for b in alice.received("chatMsgs") if b.get("ackToken")][len(pages):]
        pages.append(batch)
        alice.ok("historyAck", {"ackToken": batch["ackToken"]})

    assert [len(p["messages"]) for p in pages] == [10, 10, 5]
    assert pages[0]["messages"][-1]["time"] == 2009
    assert pages[1]["messages"][0]["time"] == 2010
    assert svc.store.get_user("alice").last_online >= 2024


def test_catch_up_covers_followed_rooms_only(hub, connect, user) -> None:
    bob = user("bob")
    bob.ok("createRoom", {"room": {"roomName": "den"}})
    alice = _prepare(hub, connect)
    hub.store.append_messages([_msg(2000, "public", "seen"), _msg(2001, "den", "unseen")])

    alice.login("alice")
    (batch,) = alice.received("chatMsgs")
    assert [m["text"] for m in batch["messages"]] == [["seen"]]


def test_history_request_limits_lines(hub, user) -> None:
    alice = user("alice")
    for i in range(5):
        alice.chat("public", f"line {i}")

    data = alice.ok("history", {"room": {"roomName": "public"}, "lines": 3})
    assert data == {"count": 3, "batches": 1}
    (batch,) = alice.received("chatMsgs")
    assert [m["text"][0] for m in batch["messages"]] == ["line 2", "line 3", "line 4"]
    assert "catchUp" not in batch


def test_history_is_capped_by_config(make_hub, user) -> None:
    svc = make_hub(history_lines=4, chunk_length=3)
    alice = user("alice", target=svc)
    svc.store.append_messages([_msg(2000 + i) for i in range(10)])

    assert alice.ok("history", {"lines": 500}) == {"count": 4, "batches": 2}


def test_history_before_start_date(hub, user) -> None:
    alice = user("alice")
    _seed(hub, 10)
    assert alice.ok("history", {"startDate": 2004}) == {"count": 5, "batches": 1}


def test_anonymous_history_is_public_only(hub, connect, user) -> None:
    alice = user("alice")
    alice.ok("createRoom", {"room": {"roomName": "den"}})
    alice.chat("den", "private")
    alice.chat("public", "open")

    anon = connect()
    assert anon.ok("history", {}) == {"count": 1, "batches": 1}
    assert anon.received("chatMsgs")[0]["messages"][0]["text"] == ["open"]
    assert anon.fail("history", {"room": {"roomName": "den"}}) == {"code": "rejected"}

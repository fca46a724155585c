def _names(lines: list[str]) -> list[str]:
    return [line.split()[0] for line in lines[1:]]


def test_anonymous_help_lists_open_commands(connect) -> None:
    anon = connect()
    lines = anon.command("help")
    assert lines[0] == "Commands:"
    assert _names(lines) == ["help", "history", "rooms", "time", "whoami"]


def test_user_help_includes_user_commands(user) -> None:
    alice = user("alice")
    names = _names(alice.command("help"))
    assert "createroom" in names
    assert "invitations" in names


def test_unknown_and_denied_commands(connect) -> None:
    anon = connect()
    assert anon.command("frobnicate") == ["frobnicate: command not found"]
    assert anon.command("users") == ["You need to log in first"]
    assert anon.command("whoami") == ["You are not logged in"]


def test_whoami_and_follow(hub, user) -> None:
    alice = user("alice")
    bob = user("bob")
    alice.ok("createRoom", {"room": {"roomName": "den"}})

    assert bob.command("whoami") == ["User: bob", "Access level: 1"]
    assert bob.command("follow den") == ["Following den"]
    assert "den" in hub.store.get_user("bob").rooms
    assert bob.command("follow nowhere") == ["Room nowhere does not exist"]
    assert bob.command("unfollow den") == ["Stopped following den"]


def test_createroom_flow_rewinds_on_conflict(hub, user) -> None:
    alice = user("alice")

    data = alice.ok("command", {"line": "createroom"})
    assert data == {"lines": ["Enter a name for the room"], "command": "createroom", "active": True}

    assert alice.command("public") == ["Enter a password for the room (or - for none)"]
    data = alice.ok("command", {"line": "-"})
    assert data["lines"] == ["public is a reserved name", "Enter a name for the room"]
    assert data["active"] is True

    alice.command("den")
    data = alice.ok("command", {"line": "hush"})
    assert data == {"lines": ["Created room den"], "command": "createroom", "active": False}
    assert hub.store.get_room("den").protected
    assert hub.commands.active_flow(alice.link) is None


def test_password_flow(connect, user) -> None:
    alice = user("alice")

    assert alice.command("password") == ["Enter your current password"]
    alice.command("wrong")
    assert alice.command("newpass1") == ["Wrong password. Enter your current password"]
    assert alice.command("secret1") == ["Enter your new password"]
    assert alice.command("abc") == ["The password has to be at least 4 characters"]
    assert alice.command("newpass1") == ["Password changed"]

    again = connect()
    assert again.fail("login", {"user": {"userName": "alice", "password": "secret1"}}) == {
        "code": "rejected"
    }
    again.login("alice", "newpass1")


def test_invitations_flow(hub, user) -> None:
    alice = user("alice")
    bob = user("bob")
    assert bob.command("invitations") == ["You have no invitations"]

    alice.ok("createRoom", {"room": {"roomName": "den"}})
    alice.ok("inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "den"}})

    assert bob.command("invitations") == [
        "<1> Join room den. Sent by alice",
        "Answer with: <number> accept|a|decline|d",
    ]
    hold = ["You have to enter a number from the list and accept or decline"]
    assert bob.command("7 a") == hold
    assert bob.command("1 maybe") == hold
    assert bob.command("1 a") == ["Accepted invitation to den"]
    assert "den" in hub.store.get_user("bob").rooms
    assert hub.commands.active_flow(bob.link) is None


def test_exit_cancels_flow(hub, user) -> None:
    alice = user("alice")
    alice.command("createroom")
    data = alice.ok("command", {"line": "exit"})
    assert data == {"lines": ["Cancelled"], "command": "createroom", "active": False}
    assert hub.commands.active_flow(alice.link) is None


def test_supersede_cancels_flow(hub, connect, user) -> None:
    alice = user("alice")
    alice.command("createroom")
    assert hub.commands.active_flow(alice.link) is not None

    connect().login("alice")
    assert hub.commands.active_flow(alice.link) is None


def test_close_drops_engine(hub, user) -> None:
    alice = user("alice")
    alice.command("password")
    alice.close()
    assert hub.commands.active_flow(alice.link) is None

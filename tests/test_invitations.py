from havend.constants import K_BODY


def _invite_room(sender, target: str, room: str):
    return sender.request(
        "inviteToRoom", {"user": {"userName": target}, "room": {"roomName": room}}
    )


def _answer(client, event: str, item: str, accepted: bool = True):
    return client.request(event, {"invitation": {"itemName": item}, "accepted": accepted})


def test_room_invitation_skips_password(hub, user) -> None:
    alice = user("alice")
    bob = user("bob")
    alice.ok("createRoom", {"room": {"roomName": "den", "password": "opensesame"}})

    data = alice.ok("inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "den"}})
    assert data["invitation"]["itemName"] == "den"
    (event,) = bob.received("invitation")
    assert event["invitation"] == {
        "itemName": "den",
        "invitationType": "room",
        "sender": "alice",
        "time": data["invitation"]["time"],
    }

    assert bob.ok("roomAnswer", {"invitation": {"itemName": "den"}, "accepted": True}) == {
        "accepted": True
    }
    assert "den" in hub.store.get_user("bob").rooms
    assert bob.link in hub.rooms.members("den")
    assert hub.store.list_invitations("bob") == []


def test_duplicate_invitation_conflicts(user) -> None:
    alice = user("alice")
    user("bob")
    alice.ok("createRoom", {"room": {"roomName": "den"}})
    alice.ok("inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "den"}})

    answer = _invite_room(alice, "bob", "den")
    assert answer[K_BODY] == {"code": "conflict", "text": "bob has already been invited"}


def test_invite_requires_following_the_room(user) -> None:
    alice = user("alice")
    carol = user("carol")
    user("bob")
    alice.ok("createRoom", {"room": {"roomName": "den"}})

    assert carol.fail(
        "inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "den"}}
    ) == {"code": "rejected"}
    assert alice.fail(
        "inviteToRoom", {"user": {"userName": "ghost"}, "room": {"roomName": "den"}}
    ) == {"code": "not_found", "text": "User ghost does not exist"}


def test_invitation_to_offline_user_is_listed_later(hub, connect, user) -> None:
    alice = user("alice")
    bob = connect()
    bob.register("bob")
    alice.ok("createRoom", {"room": {"roomName": "den"}})
    alice.ok("inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "den"}})
    assert bob.received("invitation") == []

    bob.login("bob")
    invitations = bob.ok("getInvitations")["invitations"]
    assert [(i["itemName"], i["invitationType"]) for i in invitations] == [("den", "room")]


def test_decline_removes_only_that_invitation(hub, user) -> None:
    alice = user("alice")
    bob = user("bob")
    alice.ok("createRoom", {"room": {"roomName": "den"}})
    alice.ok("createRoom", {"room": {"roomName": "loft"}})
    alice.ok("inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "den"}})
    alice.ok("inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "loft"}})

    bob.ok("roomAnswer", {"invitation": {"itemName": "den"}, "accepted": False})
    assert [i.item_name for i in hub.store.list_invitations("bob")] == ["loft"]
    assert "den" not in hub.store.get_user("bob").rooms


def test_team_accept_withdraws_other_team_invitations(hub, user) -> None:
    alice = user("alice")
    carol = user("carol")
    bob = user("bob")
    assert alice.ok("createTeam", {"team": {"teamName": "red"}}) == {"teamName": "red"}
    carol.ok("createTeam", {"team": {"teamName": "blue"}})
    alice.ok("createRoom", {"room": {"roomName": "den"}})

    alice.ok("inviteToTeam", {"user": {"userName": "bob"}})
    carol.ok("inviteToTeam", {"user": {"userName": "bob"}})
    alice.ok("inviteToRoom", {"user": {"userName": "bob"}, "room": {"roomName": "den"}})
    assert len(bob.ok("getInvitations")["invitations"]) == 3

    assert bob.ok("teamAnswer", {"invitation": {"itemName": "red"}, "accepted": True}) == {
        "accepted": True
    }
    stored = hub.store.get_user("bob")
    assert stored.team == "red"
    assert "red-team" in stored.rooms
    assert [i.item_name for i in hub.store.list_invitations("bob")] == ["den"]

    assert _answer(bob, "teamAnswer", "red")[K_BODY] == {
        "code": "conflict",
        "text": "You are already part of red",
    }
    assert _answer(bob, "teamAnswer", "blue")[K_BODY] == {
        "code": "not_found",
        "text": "Invitation does not exist",
    }


def test_team_chat_uses_pseudo_room(hub, user) -> None:
    alice = user("alice")
    bob = user("bob")
    alice.ok("createTeam", {"team": {"teamName": "red"}})
    alice.ok("inviteToTeam", {"user": {"userName": "bob"}})
    bob.ok("teamAnswer", {"invitation": {"itemName": "red"}, "accepted": True})

    alice.chat("team", "huddle")
    assert [m["roomName"] for m in bob.received("chatMsg")] == ["red-team"]


def test_only_team_admins_invite(hub, user) -> None:
    alice = user("alice")
    bob = user("bob")
    dave = user("dave")
    user("erin")
    alice.ok("createTeam", {"team": {"teamName": "red"}})
    alice.ok("inviteToTeam", {"user": {"userName": "bob"}})
    bob.ok("teamAnswer", {"invitation": {"itemName": "red"}, "accepted": True})

    assert bob.fail("inviteToTeam", {"user": {"userName": "dave"}}) == {"code": "rejected"}
    assert bob.fail("addTeamAdmin", {"user": {"userName": "dave"}}) == {"code": "rejected"}
    assert alice.fail("addTeamAdmin", {"user": {"userName": "erin"}}) == {
        "code": "invalid_operation",
        "text": "erin is not part of red",
    }

    data = alice.ok("addTeamAdmin", {"user": {"userName": "bob"}})
    assert data == {"teamName": "red", "admins": ["alice", "bob"]}
    bob.ok("inviteToTeam", {"user": {"userName": "dave"}})
    (event,) = dave.received("invitation")
    assert event["invitation"]["sender"] == "bob"


def test_team_names_are_unique(user) -> None:
    alice = user("alice")
    bob = user("bob")
    alice.ok("createTeam", {"team": {"teamName": "red"}})
    assert bob.fail("createTeam", {"team": {"teamName": "red"}}) == {
        "code": "conflict",
        "text": "Team red already exists",
    }
    assert alice.fail("createTeam", {"team": {"teamName": "green"}}) == {
        "code": "conflict",
        "text": "You are already part of a team",
    }


def test_get_team(user) -> None:
    alice = user("alice")
    bob = user("bob")
    assert bob.fail("getTeam") == {"code": "not_found", "text": "You are not part of a team"}

    alice.ok("createTeam", {"team": {"teamName": "red"}})
    alice.ok("inviteToTeam", {"user": {"userName": "bob"}})
    bob.ok("teamAnswer", {"invitation": {"itemName": "red"}, "accepted": True})

    assert bob.ok("getTeam") == {
        "teamName": "red",
        "owner": "alice",
        "admins": ["alice"],
        "members": ["alice", "bob"],
    }

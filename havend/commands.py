"""Interactive text commands for haven clients.

Clients send raw lines with the ``command`` event. Each connection gets
its own :class:`CommandEngine`; one-shot commands answer immediately and
multi-step commands keep a flow until they finish or are cancelled. All
commands act through the same event API that remote clients use, so the
access policy applies to them unchanged.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from .constants import (
    E_CHANGE_PASSWORD,
    E_CREATE_ROOM,
    E_FOLLOW,
    E_GET_INVITATIONS,
    E_HISTORY,
    E_LIST_ROOMS,
    E_LIST_USERS,
    E_MY_ROOMS,
    E_ROOM_ANSWER,
    E_TEAM_ANSWER,
    E_UNFOLLOW,
    E_WHO_AM_I,
    INVITE_ROOM,
)
from .errors import AuthFailed, Conflict, HubError
from .steps import Command, CommandEngine, EngineOutput, StepResult

if TYPE_CHECKING:
    from .service import HubService
    from .steps import CommandFlow

_ANSWERS = {"accept": True, "a": True, "decline": False, "d": False}


def describe_error(err: HubError) -> str:
    if err.explained:
        return err.text
    if err.code == "forbidden":
        return "You are not allowed to do that"
    if err.code == "unauthenticated":
        return "You need to log in first"
    return "Request rejected"


class CommandHandler:
    """Hosts the per-connection command engines."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.commands")
        self._lock = threading.Lock()
        self._engines: dict[Any, CommandEngine] = {}
        self.table = self._build_table()

    def _build_table(self) -> dict[str, Command]:
        commands = [
            Command("help", "Show the commands you can use", func=self._help),
            Command("time", "Show the hub time", func=self._time),
            Command("whoami", "Show who you are logged in as", func=self._whoami),
            Command("rooms", "List rooms you can follow", func=self._rooms),
            Command("users", "List users", func=self._users),
            Command("myrooms", "List the rooms you follow and own", func=self._myrooms),
            Command("follow", "follow <room> [password]", func=self._follow),
            Command("unfollow", "unfollow <room>", func=self._unfollow),
            Command("history", "history [room] [lines]", func=self._history),
            Command(
                "invitations",
                "Show and answer your invitations",
                steps=(self._invitations_list, self._invitations_answer),
            ),
            Command(
                "password",
                "Change your password",
                steps=(self._password_prompt, self._password_current, self._password_new),
                fallback=1,
            ),
            Command(
                "createroom",
                "Create a room",
                steps=(self._createroom_prompt, self._createroom_name, self._createroom_password),
                fallback=1,
            ),
        ]
        return {c.name: c for c in commands}

    # Engine hosting

    def _engine_for(self, link: Any) -> CommandEngine:
        with self._lock:
            engine = self._engines.get(link)
            if engine is None:
                engine = CommandEngine(link, self.table, authorize=self._authorize)
                self._engines[link] = engine
            return engine

    def _authorize(self, link: Any, command: str) -> None:
        self.hub.policy.require(link, command)

    def handle_line(self, link: Any, line: str) -> EngineOutput:
        engine = self._engine_for(link)
        try:
            return engine.feed(line)
        except HubError as e:
            self.log.debug(
                "Command failed code=%s link_id=%s", e.code, self.hub.fmt_link_id(link)
            )
            return EngineOutput([describe_error(e)])

    def cancel(self, link: Any) -> bool:
        with self._lock:
            engine = self._engines.get(link)
        return engine.cancel() if engine is not None else False

    def drop(self, link: Any) -> None:
        with self._lock:
            engine = self._engines.pop(link, None)
        if engine is not None:
            engine.cancel()

    def active_flow(self, link: Any) -> CommandFlow | None:
        with self._lock:
            engine = self._engines.get(link)
        return engine.flow if engine is not None else None

    def _call(self, link: Any, event: str, body: dict | None = None) -> Any:
        return self.hub.dispatcher.call(link, event, body or {})

    # One-shot commands

    def _help(self, link: Any, args: list[str]) -> list[str]:
        user = self.hub.policy.require(link, "help")
        names = self.hub.policy.visible_commands(user, list(self.table))
        return ["Commands:"] + [f"  {n} - {self.table[n].help}" for n in names]

    def _time(self, link: Any, args: list[str]) -> list[str]:
        return [time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())]

    def _whoami(self, link: Any, args: list[str]) -> list[str]:
        data = self._call(link, E_WHO_AM_I)
        user = data.get("user")
        if not user:
            return ["You are not logged in"]
        lines = [f"User: {user['userName']}", f"Access level: {user['accessLevel']}"]
        if user.get("team"):
            lines.append(f"Team: {user['team']}")
        return lines

    def _rooms(self, link: Any, args: list[str]) -> list[str]:
        rooms = self._call(link, E_LIST_ROOMS)["rooms"]
        return ["Rooms:"] + [f"  {r}" for r in rooms] if rooms else ["There are no rooms"]

    def _users(self, link: Any, args: list[str]) -> list[str]:
        users = self._call(link, E_LIST_USERS)["users"]
        return [
            f"  {u['userName']}{' (online)' if u['online'] else ''}" for u in users
        ] or ["There are no users"]

    def _myrooms(self, link: Any, args: list[str]) -> list[str]:
        data = self._call(link, E_MY_ROOMS)
        lines = ["You are following:"] + [f"  {r}" for r in data["rooms"]]
        if data["ownedRooms"]:
            lines += ["You own:"] + [f"  {r}" for r in data["ownedRooms"]]
        return lines

    def _follow(self, link: Any, args: list[str]) -> list[str]:
        if not args:
            return ["usage: follow <room> [password]"]
        body: dict[str, Any] = {"room": {"roomName": args[0]}}
        if len(args) > 1:
            body["room"]["password"] = args[1]
        data = self._call(link, E_FOLLOW, body)
        return [f"Following {data['roomName']}"]

    def _unfollow(self, link: Any, args: list[str]) -> list[str]:
        if not args:
            return ["usage: unfollow <room>"]
        data = self._call(link, E_UNFOLLOW, {"room": {"roomName": args[0]}})
        return [f"Stopped following {data['roomName']}"]

    def _history(self, link: Any, args: list[str]) -> list[str]:
        body: dict[str, Any] = {}
        for arg in args:
            if arg.isdigit():
                body["lines"] = int(arg)
            else:
                body["room"] = {"roomName": arg}
        data = self._call(link, E_HISTORY, body)
        return [f"Sent {data['count']} messages"]

    # invitations

    def _invitations_list(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        invitations = self._call(link, E_GET_INVITATIONS)["invitations"]
        if not invitations:
            return StepResult.done("You have no invitations")
        flow.data["invitations"] = invitations
        lines = [
            f"<{i}> Join {inv['invitationType']} {inv['itemName']}. Sent by {inv['sender']}"
            for i, inv in enumerate(invitations, start=1)
        ]
        lines.append("Answer with: <number> accept|a|decline|d")
        return StepResult.advance(*lines)

    def _invitations_answer(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        invitations = flow.data["invitations"]
        parts = line.split()
        if (
            len(parts) != 2
            or not parts[0].isdigit()
            or not 1 <= int(parts[0]) <= len(invitations)
            or parts[1].lower() not in _ANSWERS
        ):
            return StepResult.hold(
                "You have to enter a number from the list and accept or decline"
            )

        invitation = invitations[int(parts[0]) - 1]
        accepted = _ANSWERS[parts[1].lower()]
        event = E_ROOM_ANSWER if invitation["invitationType"] == INVITE_ROOM else E_TEAM_ANSWER
        try:
            self._call(
                link,
                event,
                {
                    "invitation": {
                        "itemName": invitation["itemName"],
                        "invitationType": invitation["invitationType"],
                    },
                    "accepted": accepted,
                },
            )
        except HubError as e:
            return StepResult.done(describe_error(e))
        verb = "Accepted" if accepted else "Declined"
        return StepResult.done(f"{verb} invitation to {invitation['itemName']}")

    # password

    def _password_prompt(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        self.hub.policy.require_user(link, "password")
        return StepResult.advance("Enter your current password")

    def _password_current(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        if not line:
            return StepResult.hold("Enter your current password")
        flow.data["old"] = line
        return StepResult.advance("Enter your new password")

    def _password_new(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        if len(line) < 4:
            return StepResult.hold("The password has to be at least 4 characters")
        try:
            self._call(
                link, E_CHANGE_PASSWORD, {"oldPassword": flow.data["old"], "newPassword": line}
            )
        except AuthFailed:
            flow.data.pop("old", None)
            return StepResult.rewind("Wrong password. Enter your current password")
        return StepResult.done("Password changed")

    # createroom

    def _createroom_prompt(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        self.hub.policy.require_user(link, "createroom")
        return StepResult.advance("Enter a name for the room")

    def _createroom_name(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        name = line.strip().lower()
        if not name or " " in name:
            return StepResult.hold("Room names are a single word. Enter a name for the room")
        flow.data["roomName"] = name
        return StepResult.advance("Enter a password for the room (or - for none)")

    def _createroom_password(self, link: Any, flow: CommandFlow, line: str) -> StepResult:
        room: dict[str, Any] = {"roomName": flow.data["roomName"]}
        if line.strip() and line.strip() != "-":
            room["password"] = line.strip()
        try:
            data = self._call(link, E_CREATE_ROOM, {"room": room})
        except Conflict as e:
            flow.data.pop("roomName", None)
            return StepResult.rewind(e.text, "Enter a name for the room")
        return StepResult.done(f"Created room {data['roomName']}")

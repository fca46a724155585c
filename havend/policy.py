"""Command access policy.

Every event and interactive command has a name with a required access
level and a visibility. ``require`` is the gate every mutating path goes
through; it re-reads the caller's user record on each call so level
changes, bans and verification take effect immediately.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .config import command_level_overrides
from .constants import ACCESS_ADMIN, ACCESS_ANONYMOUS, ACCESS_USER
from .errors import Forbidden, HubError, Unauthenticated, UnknownCommand
from .models import User

if TYPE_CHECKING:
    from .service import HubService


@dataclass(frozen=True)
class CommandRule:
    access_level: int
    visibility: int
    category: str = "basic"


_A = ACCESS_ANONYMOUS
_U = ACCESS_USER
_ADM = ACCESS_ADMIN

DEFAULT_RULES: dict[str, CommandRule] = {
    # events
    "register": CommandRule(_A, _A),
    "login": CommandRule(_A, _A),
    "updateId": CommandRule(_A, _A),
    "whoAmI": CommandRule(_A, _A),
    "userExists": CommandRule(_A, _A),
    "listRooms": CommandRule(_A, _A),
    "history": CommandRule(_A, _A),
    "logout": CommandRule(_U, _U),
    "changePassword": CommandRule(_U, _U),
    "historyAck": CommandRule(_U, _U),
    "listUsers": CommandRule(_U, _U),
    "myRooms": CommandRule(_U, _U),
    "matchPartialUser": CommandRule(_U, _U),
    "msg": CommandRule(_U, _U),
    "whisper": CommandRule(_U, _U),
    "createRoom": CommandRule(_U, _U),
    "follow": CommandRule(_U, _U),
    "unfollow": CommandRule(_U, _U),
    "removeRoom": CommandRule(_U, _U),
    "inviteToRoom": CommandRule(_U, _U),
    "inviteToTeam": CommandRule(_U, _U),
    "getInvitations": CommandRule(_U, _U),
    "roomAnswer": CommandRule(_U, _U),
    "teamAnswer": CommandRule(_U, _U),
    "createTeam": CommandRule(_U, _U),
    "addTeamAdmin": CommandRule(_U, _U),
    "getTeam": CommandRule(_U, _U),
    "getArchivesList": CommandRule(_U, _U),
    "getArchive": CommandRule(_U, _U),
    "broadcast": CommandRule(_ADM, _ADM, "admin"),
    "importantmsg": CommandRule(_ADM, _ADM, "admin"),
    "morse": CommandRule(_ADM, _ADM, "admin"),
    "ban": CommandRule(_ADM, _ADM, "admin"),
    "unban": CommandRule(_ADM, _ADM, "admin"),
    "verifyUser": CommandRule(_ADM, _ADM, "admin"),
    "verifyAllUsers": CommandRule(_ADM, _ADM, "admin"),
    "bannedUsers": CommandRule(_ADM, _ADM, "admin"),
    "unverifiedUsers": CommandRule(_ADM, _ADM, "admin"),
    "updateUser": CommandRule(_ADM, _ADM, "admin"),
    "updateRoom": CommandRule(_ADM, _ADM, "admin"),
    "updateCommand": CommandRule(_ADM, _ADM, "admin"),
    # interactive commands
    "help": CommandRule(_A, _A),
    "time": CommandRule(_A, _A),
    "whoami": CommandRule(_A, _A),
    "rooms": CommandRule(_A, _A),
    "users": CommandRule(_U, _U),
    "myrooms": CommandRule(_U, _U),
    "invitations": CommandRule(_U, _U),
    "password": CommandRule(_U, _U),
    "createroom": CommandRule(_U, _U),
}


class AccessPolicy:
    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.policy")
        self._lock = threading.Lock()
        self._rules: dict[str, CommandRule] = dict(DEFAULT_RULES)
        for name, level in command_level_overrides(hub.config).items():
            if name in self._rules:
                self._rules[name] = replace(self._rules[name], access_level=int(level))
            else:
                self.log.warning("Ignoring level override for unknown command=%s", name)

    def rule(self, command: str) -> CommandRule | None:
        with self._lock:
            return self._rules.get(command)

    def set_level(self, command: str, level: int) -> CommandRule:
        with self._lock:
            current = self._rules.get(command)
            if current is None:
                raise UnknownCommand(command)
            updated = replace(current, access_level=int(level))
            self._rules[command] = updated
        self.log.info("Command level changed command=%s level=%s", command, level)
        return updated

    def is_usable(self, user: User | None) -> bool:
        """Whether ``user`` may act as an authenticated user at all."""
        if user is None or user.banned:
            return False
        if self.hub.config.user_verify and not user.verified:
            return False
        return True

    def _check(self, link: Any, command: str) -> tuple[User | None, HubError | None]:
        user_name = self.hub.registry.resolve(link)
        user = self.hub.store.get_user(user_name) if user_name else None
        if user_name and not self.is_usable(user):
            return None, Unauthenticated()

        rule = self.rule(command)
        if rule is None:
            # Anonymous callers are unauthenticated for any unregistered name.
            if user is None:
                return None, Unauthenticated()
            return user, UnknownCommand(command)

        if rule.access_level <= ACCESS_ANONYMOUS:
            return user, None
        if user is None:
            return None, Unauthenticated()
        if user.access_level < rule.access_level:
            return user, Forbidden()
        return user, None

    def authorize(self, link: Any, command: str) -> tuple[User | None, bool, str | None]:
        user, err = self._check(link, command)
        if err is not None:
            return user, False, err.code
        return user, True, None

    def require(self, link: Any, command: str) -> User | None:
        """Return the caller's current user, or raise why they may not run ``command``.

        Returns None only for anonymous callers of level 0 commands.
        """
        user, err = self._check(link, command)
        if err is not None:
            self.log.debug(
                "Denied command=%s user=%s reason=%s link_id=%s",
                command,
                user.user_name if user else "-",
                err.code,
                self.hub.fmt_link_id(link),
            )
            raise err
        return user

    def require_user(self, link: Any, command: str) -> User:
        user = self.require(link, command)
        if user is None:
            raise Unauthenticated()
        return user

    def visible_commands(self, user: User | None, names: list[str] | None = None) -> list[str]:
        level = user.access_level if user is not None else ACCESS_ANONYMOUS
        with self._lock:
            rules = dict(self._rules)
        picked = names if names is not None else list(rules)
        return sorted(n for n in picked if n in rules and rules[n].visibility <= level)

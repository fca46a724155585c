"""Room directory for the haven hub.

This module handles:
- Room records (create, remove, update) through the store
- Durable follows (User.rooms) and live membership per connection
- Password and access-level gates on follow
- Pseudo-name rewriting (``whisper``/``team``) and derived room names
- Listing rules that keep reserved and derived rooms out of enumerations

Durable follows and live membership are only changed through these
methods. Follow, unfollow, removal and message fan-out for one room
serialise on that room's lock.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Iterable

from .constants import (
    DERIVED_SUFFIXES,
    DEVICE_SUFFIX,
    E_FOLLOW,
    E_UNFOLLOW,
    PSEUDO_TEAM,
    PSEUDO_WHISPER,
    RESERVED_ROOMS,
)
from .errors import (
    Conflict,
    DuplicateKeyError,
    Forbidden,
    InvalidInput,
    InvalidOperation,
    NotFound,
)
from .models import Room, User, team_room, whisper_room
from .util import KeyedLocks, check_password, hash_password, normalize_room_name

if TYPE_CHECKING:
    from .service import HubService


def is_derived(room_name: str) -> bool:
    return room_name.endswith(DERIVED_SUFFIXES)


def is_hidden(room_name: str) -> bool:
    return room_name in RESERVED_ROOMS or is_derived(room_name)


class RoomDirectory:
    """Room records, follows and live membership."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.rooms")
        self._lock = threading.Lock()
        self._members: dict[str, set[Any]] = {}
        self._room_locks = KeyedLocks()

    def room_lock(self, *room_names: str):
        return self._room_locks.hold(*room_names)

    # Names

    def normalize(self, room_name: Any) -> str:
        name = normalize_room_name(room_name, max_chars=self.hub.config.max_room_name_len)
        if name is None:
            raise InvalidInput("bad room name")
        return name

    def resolve_name(self, user: User | None, room_name: Any) -> str:
        """Rewrite ``whisper``/``team`` to the caller's own derived room."""
        name = self.normalize(room_name)
        if name == PSEUDO_WHISPER:
            if user is None:
                raise InvalidInput("anonymous users have no whisper room")
            return whisper_room(user.user_name)
        if name == PSEUDO_TEAM:
            if user is None or not user.team:
                raise NotFound("You are not part of a team")
            return team_room(user.team)
        return name

    # Live membership

    def members(self, room_name: str) -> set[Any]:
        with self._lock:
            return set(self._members.get(room_name, ()))

    def join_live(self, link: Any, room_names: Iterable[str]) -> set[str]:
        """Add a connection to rooms. Returns the rooms it was not already in."""
        sess = self.hub.registry.get_session(link)
        if sess is None:
            return set()
        added: set[str] = set()
        with self._lock:
            for name in room_names:
                links = self._members.setdefault(name, set())
                if link not in links:
                    links.add(link)
                    added.add(name)
                sess.rooms.add(name)
        return added

    def leave_live(
        self,
        link: Any,
        room_names: Iterable[str] | None = None,
        *,
        keep_device: bool = True,
    ) -> set[str]:
        sess = self.hub.registry.get_session(link)
        left: set[str] = set()
        with self._lock:
            if room_names is None:
                candidates = {r for r, links in self._members.items() if link in links}
                if sess is not None:
                    candidates |= sess.rooms
            else:
                candidates = set(room_names)
            for name in candidates:
                if keep_device and name.endswith(DEVICE_SUFFIX):
                    continue
                links = self._members.get(name)
                if links is not None:
                    links.discard(link)
                    if not links:
                        self._members.pop(name, None)
                if sess is not None:
                    sess.rooms.discard(name)
                left.add(name)
        return left

    def drop_link(self, link: Any) -> int:
        """Remove a closed connection from every room, device rooms included."""
        return len(self.leave_live(link, keep_device=False))

    # Records

    def create_room(self, fields: dict[str, Any], owner: User) -> Room:
        name = self.normalize(fields.get("roomName"))
        if is_hidden(name) or name in (PSEUDO_WHISPER, PSEUDO_TEAM):
            raise Conflict(f"{name} is a reserved name")

        password = fields.get("password")
        room = Room(
            room_name=name,
            owner=owner.user_name,
            password_hash=hash_password(password) if password else None,
            access_level=int(fields.get("accessLevel", self.hub.config.default_access_level)),
            visibility=int(fields.get("visibility", self.hub.config.default_access_level)),
        )
        with self.room_lock(name):
            try:
                self.hub.store.add_room(room)
            except DuplicateKeyError as e:
                raise Conflict(f"Room {name} already exists") from e

        self.log.info("Room created room=%s owner=%s", name, owner.user_name)
        return room

    def follow_room(
        self,
        link: Any,
        room_name: Any,
        password: str | None = None,
        *,
        bypass_password: bool = False,
    ) -> Room:
        user = self.hub.policy.require_user(link, "follow")
        name = self.resolve_name(user, room_name)

        with self.room_lock(name):
            room = self.hub.store.get_room(name)
            if room is None:
                raise NotFound(f"Room {name} does not exist")
            if not bypass_password and not check_password(password, room.password_hash):
                raise Forbidden()
            if user.access_level < room.access_level:
                raise Forbidden()

            already_live = link in self.members(name)
            self.hub.store.add_user_room(user.user_name, name)
            self.join_live(link, [name])

            self.hub.message_helper.send_event(link, E_FOLLOW, {"room": room.public()})
            if not already_live:
                self.hub.message_helper.system_message_to_room(
                    name, [f"{user.user_name} is following {name}"], exclude=link
                )

        self.log.info("Follow user=%s room=%s", user.user_name, name)
        return room

    def unfollow_room(self, link: Any, room_name: Any) -> str:
        user = self.hub.policy.require_user(link, "unfollow")
        name = self.resolve_name(user, room_name)
        if name == whisper_room(user.user_name):
            raise InvalidOperation("You cannot unfollow your own room")

        with self.room_lock(name):
            if name not in user.rooms:
                raise NotFound(f"You are not following {name}")
            self.hub.store.remove_user_room(user.user_name, name)
            self.leave_live(link, [name], keep_device=False)

            self.hub.message_helper.send_event(link, E_UNFOLLOW, {"roomName": name})
            self.hub.message_helper.system_message_to_room(
                name, [f"{user.user_name} left {name}"]
            )

        self.log.info("Unfollow user=%s room=%s", user.user_name, name)
        return name

    def remove_room(self, room_name: Any, requester: User) -> str:
        name = self.normalize(room_name)
        if is_hidden(name):
            raise InvalidOperation(f"{name} cannot be removed")

        with self.room_lock(name):
            room = self.hub.store.get_room(name)
            if room is None:
                raise NotFound(f"Room {name} does not exist")
            if (
                requester.user_name != room.owner
                and requester.access_level < self.hub.config.admin_access_level
            ):
                raise Forbidden()

            live = self.members(name)
            self.hub.message_helper.system_message_to_room(
                name, [f"Room {name} has been removed by the room administrator"]
            )
            for member in live:
                self.hub.message_helper.send_event(
                    member, E_UNFOLLOW, {"roomName": name, "removed": True}
                )
                self.leave_live(member, [name], keep_device=False)
            followers = self.hub.store.remove_room(name)

        self.log.info(
            "Room removed room=%s by=%s followers=%s live=%s",
            name,
            requester.user_name,
            len(followers),
            len(live),
        )
        return name

    def update_room(self, room_name: Any, field: str, value: Any) -> Room:
        name = self.normalize(room_name)
        with self.room_lock(name):
            room = self.hub.store.get_room(name)
            if room is None:
                raise NotFound(f"Room {name} does not exist")
            if field == "password":
                if value is not None and not isinstance(value, str):
                    raise InvalidInput("password must be a string")
                self.hub.store.update_room(
                    name, password_hash=hash_password(value) if value else None
                )
            elif field in ("accessLevel", "visibility"):
                if not isinstance(value, int) or isinstance(value, bool):
                    raise InvalidInput(f"{field} must be an integer")
                column = "access_level" if field == "accessLevel" else "visibility"
                self.hub.store.update_room(name, **{column: value})
            else:
                raise InvalidInput(f"unknown room field {field}")
            updated = self.hub.store.get_room(name)
        if updated is None:
            raise NotFound(f"Room {name} does not exist")
        self.log.info("Room updated room=%s field=%s", name, field)
        return updated

    # Listings

    def list_rooms(self, user: User | None) -> list[str]:
        level = user.access_level if user is not None else 0
        return [
            r.room_name
            for r in self.hub.store.list_rooms()
            if not is_hidden(r.room_name) and r.visibility <= level
        ]

    def my_rooms(self, user: User) -> dict[str, list[str]]:
        owned = [
            r.room_name
            for r in self.hub.store.list_rooms()
            if r.owner == user.user_name and not is_hidden(r.room_name)
        ]
        return {
            "rooms": sorted(r for r in user.rooms if not is_hidden(r)),
            "ownedRooms": sorted(owned),
        }

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            rooms_total = len(self._members)
            memberships = sum(len(v) for v in self._members.values())
            top_rooms = sorted(
                ((room, len(links)) for room, links in self._members.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
        return {"rooms_total": rooms_total, "memberships": memberships, "top_rooms": top_rooms}

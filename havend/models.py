"""Records kept by the persistence gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .constants import DEVICE_SUFFIX, TEAM_SUFFIX, WHISPER_SUFFIX


def whisper_room(user_name: str) -> str:
    return f"{user_name}{WHISPER_SUFFIX}"


def team_room(team_name: str) -> str:
    return f"{team_name}{TEAM_SUFFIX}"


def device_room(device_id: str) -> str:
    return f"{device_id}{DEVICE_SUFFIX}"


@dataclass
class User:
    user_name: str
    password_hash: str
    access_level: int = 1
    visibility: int = 1
    team: str | None = None
    rooms: set[str] = field(default_factory=set)
    socket_id: str = ""
    online: bool = False
    verified: bool = True
    banned: bool = False
    last_online: int = 0
    resume_hash: str | None = None

    def public(self) -> dict[str, Any]:
        return {
            "userName": self.user_name,
            "accessLevel": self.access_level,
            "visibility": self.visibility,
            "team": self.team,
            "rooms": sorted(self.rooms),
            "online": self.online,
            "verified": self.verified,
        }


@dataclass
class Room:
    room_name: str
    owner: str
    password_hash: str | None = None
    access_level: int = 1
    visibility: int = 1

    @property
    def protected(self) -> bool:
        return bool(self.password_hash)

    def public(self) -> dict[str, Any]:
        return {
            "roomName": self.room_name,
            "owner": self.owner,
            "accessLevel": self.access_level,
            "visibility": self.visibility,
            "protected": self.protected,
        }


@dataclass
class Team:
    team_name: str
    owner: str
    admins: set[str] = field(default_factory=set)

    def can_invite(self, user_name: str) -> bool:
        return user_name == self.owner or user_name in self.admins


@dataclass(frozen=True)
class Message:
    msg_id: bytes
    room_name: str
    sender: str
    text: tuple[str, ...]
    ts: int
    kind: str
    seq: int = 0

    def to_wire(self, **extra: Any) -> dict[str, Any]:
        body: dict[str, Any] = {
            "msgId": self.msg_id,
            "roomName": self.room_name,
            "userName": self.sender,
            "text": list(self.text),
            "time": self.ts,
            "kind": self.kind,
        }
        body.update(extra)
        return body


@dataclass(frozen=True)
class Invitation:
    target: str
    item_name: str
    invitation_type: str
    sender: str
    time: int

    def public(self) -> dict[str, Any]:
        return {
            "itemName": self.item_name,
            "invitationType": self.invitation_type,
            "sender": self.sender,
            "time": self.time,
        }


@dataclass(frozen=True)
class Device:
    device_id: str
    user_name: str | None
    last_seen: int


@dataclass(frozen=True)
class Archive:
    archive_id: str
    title: str
    text: tuple[str, ...]
    access_level: int = 1
    visibility: int = 1

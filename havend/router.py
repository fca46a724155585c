from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import (
    E_CHAT_MSG,
    E_MORSE,
    KIND_BROADCAST,
    KIND_CHAT,
    KIND_IMPORTANT,
    KIND_MORSE,
    KIND_WHISPER,
    ROOM_BROADCAST,
    ROOM_IMPORTANT,
    ROOM_MORSE,
    WHISPER_SUFFIX,
)
from .envelope import msg_id, now_ms
from .errors import Forbidden, InvalidInput, NotFound
from .models import Message, User, device_room, whisper_room
from .util import normalize_user_name

if TYPE_CHECKING:
    from .service import HubService


KIND_COMMANDS: dict[str, str] = {
    KIND_CHAT: "msg",
    KIND_WHISPER: "whisper",
    KIND_BROADCAST: "broadcast",
    KIND_IMPORTANT: "importantmsg",
    KIND_MORSE: "morse",
}

MAX_LINES = 64
MAX_LINE_CHARS = 2000
MAX_MORSE_CHARS = 512


def clean_text(value: Any) -> tuple[str, ...]:
    """Validate message text: a non-empty list of strings with some content."""
    if not isinstance(value, list) or not value:
        raise InvalidInput("text must be a non-empty list")
    if len(value) > MAX_LINES:
        raise InvalidInput("too many lines")
    lines: list[str] = []
    for line in value:
        if not isinstance(line, str):
            raise InvalidInput("text lines must be strings")
        if len(line) > MAX_LINE_CHARS:
            raise InvalidInput("line too long")
        lines.append(line.replace("\x00", ""))
    if not any(line.strip() for line in lines):
        raise InvalidInput("text must not be blank")
    return tuple(lines)


def clean_morse(value: dict[str, Any]) -> tuple[str, bool]:
    """Validate a morse map; returns the code and the local flag."""
    code = value.get("morseCode")
    if not isinstance(code, str) or not code.strip():
        raise InvalidInput("morseCode must be a non-empty string")
    if len(code) > MAX_MORSE_CHARS:
        raise InvalidInput("morseCode too long")
    local = value.get("local", False)
    if not isinstance(local, bool):
        raise InvalidInput("local must be a boolean")
    return code, local


class MessageRouter:
    """
    Validates, persists and fans out chat traffic.

    Persisted kinds are stored before anything is sent, and the store write
    and the fan-out for a room happen under that room's lock, so members
    see messages in the order they were stored. Morse is never stored.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.router")

    def route(
        self, kind: str, link: Any, message: dict[str, Any], *, skip_self: bool = False
    ) -> Message:
        """Validate, store and fan out one persisted message."""
        command = KIND_COMMANDS.get(kind)
        if command is None or kind == KIND_MORSE:
            raise InvalidInput(f"unknown message kind {kind}")
        user = self.hub.policy.require_user(link, command)
        if not isinstance(message, dict):
            raise InvalidInput("message must be a map")

        text = clean_text(message.get("text"))
        if kind == KIND_CHAT:
            stored = self._route_chat(user, link, message, text, skip_self=skip_self)
        elif kind == KIND_WHISPER:
            stored = self._route_whisper(user, link, message, text)
        elif kind == KIND_BROADCAST:
            stored = self._route_broadcast(user, text)
        else:
            stored = self._route_important(user, link, message, text)

        self.hub.stats_manager.inc("msgs_forwarded")
        return stored

    def morse(self, link: Any, morse: dict[str, Any]) -> None:
        user = self.hub.policy.require_user(link, KIND_COMMANDS[KIND_MORSE])
        if not isinstance(morse, dict):
            raise InvalidInput("morse must be a map")
        self.send_morse(user, link, morse)

    def _new_message(self, room_name: str, sender: str, text: tuple[str, ...], kind: str) -> Message:
        return Message(
            msg_id=msg_id(),
            room_name=room_name,
            sender=sender,
            text=text,
            ts=now_ms(),
            kind=kind,
        )

    def _route_chat(
        self,
        user: User,
        link: Any,
        message: dict[str, Any],
        text: tuple[str, ...],
        *,
        skip_self: bool,
    ) -> Message:
        room_name = self.hub.rooms.resolve_name(user, message.get("roomName"))
        if room_name not in user.rooms:
            if self.hub.store.get_room(room_name) is None:
                raise NotFound(f"Room {room_name} does not exist")
            raise Forbidden()

        with self.hub.rooms.room_lock(room_name):
            msg = self._new_message(room_name, user.user_name, text, KIND_CHAT)
            (stored,) = self.hub.store.append_messages([msg])
            self.hub.message_helper.send_to_room(
                room_name,
                E_CHAT_MSG,
                stored.to_wire(),
                exclude=link if skip_self else None,
            )

        self.log.debug("Chat user=%s room=%s lines=%s", user.user_name, room_name, len(text))
        return stored

    def _route_whisper(
        self, user: User, link: Any, message: dict[str, Any], text: tuple[str, ...]
    ) -> Message:
        if message.get("whisper") is not True:
            raise InvalidInput("whisper flag missing")

        target = message.get("roomName")
        if isinstance(target, str) and target.strip().lower().endswith(WHISPER_SUFFIX):
            target = target.strip()[: -len(WHISPER_SUFFIX)]
        target_name = normalize_user_name(target, max_chars=self.hub.config.max_user_name_len)
        if target_name is None:
            raise InvalidInput("bad whisper target")
        if self.hub.store.get_user(target_name) is None:
            raise NotFound(f"User {target_name} does not exist")

        target_room = whisper_room(target_name)
        own_room = whisper_room(user.user_name)

        with self.hub.rooms.room_lock(target_room, own_room):
            first = self._new_message(target_room, user.user_name, text, KIND_WHISPER)
            copies = [first]
            if own_room != target_room:
                copies.append(
                    Message(
                        msg_id=first.msg_id,
                        room_name=own_room,
                        sender=first.sender,
                        text=first.text,
                        ts=first.ts,
                        kind=first.kind,
                    )
                )
            stored = self.hub.store.append_messages(copies)
            wire = stored[0].to_wire(whisper=True)
            self.hub.message_helper.send_to_room(target_room, E_CHAT_MSG, wire)
            if link not in self.hub.rooms.members(target_room):
                self.hub.message_helper.send_event(link, E_CHAT_MSG, wire)

        self.log.debug("Whisper user=%s target=%s", user.user_name, target_name)
        return stored[0]

    def _route_broadcast(self, user: User, text: tuple[str, ...]) -> Message:
        with self.hub.rooms.room_lock(ROOM_BROADCAST):
            msg = self._new_message(ROOM_BROADCAST, user.user_name, text, KIND_BROADCAST)
            (stored,) = self.hub.store.append_messages([msg])
            self.hub.message_helper.send_to_all(
                E_CHAT_MSG, stored.to_wire(extraClass="broadcast")
            )
        self.log.info("Broadcast user=%s lines=%s", user.user_name, len(text))
        return stored

    def _route_important(
        self, user: User, link: Any, message: dict[str, Any], text: tuple[str, ...]
    ) -> Message:
        device = message.get("device")
        if device is not None:
            if not isinstance(device, str) or not device.strip():
                raise InvalidInput("bad device")
            if self.hub.store.get_device(device.strip()) is None:
                raise NotFound(f"Device {device.strip()} does not exist")
            room_name = device_room(device.strip())
        else:
            room_name = ROOM_IMPORTANT

        morse = message.get("morse")
        if morse is not None:
            if not isinstance(morse, dict):
                raise InvalidInput("morse must be a map")
            morse = clean_morse(morse)

        with self.hub.rooms.room_lock(room_name):
            msg = self._new_message(room_name, user.user_name, text, KIND_IMPORTANT)
            (stored,) = self.hub.store.append_messages([msg])
            wire = stored.to_wire(extraClass="importantMsg")
            if device is not None:
                self.hub.message_helper.send_to_room(room_name, E_CHAT_MSG, wire)
            else:
                self.hub.message_helper.send_to_all(E_CHAT_MSG, wire)

        if morse is not None:
            self._emit_morse(user, link, *morse)

        self.log.info("Important user=%s room=%s", user.user_name, room_name)
        return stored

    def send_morse(self, user: User, link: Any, morse: dict[str, Any]) -> None:
        self._emit_morse(user, link, *clean_morse(morse))

    def _emit_morse(self, user: User, link: Any, code: str, local: bool) -> None:
        body = {"morseCode": code, "roomName": ROOM_MORSE, "userName": user.user_name}
        self.hub.message_helper.send_event(link, E_MORSE, body)
        if not local:
            self.hub.message_helper.send_to_all(E_MORSE, body, exclude=link)
        self.hub.stats_manager.inc("morse_sent")

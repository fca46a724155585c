from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING, Any, Callable

from .codec import decode
from .constants import (
    E_ADD_TEAM_ADMIN,
    E_BANNED_USERS,
    E_BAN,
    E_BROADCAST_MSG,
    E_CHANGE_PASSWORD,
    E_CHAT_MSG,
    E_COMMAND,
    E_CREATE_ROOM,
    E_CREATE_TEAM,
    E_ERROR,
    E_FOLLOW,
    E_GET_ARCHIVE,
    E_GET_ARCHIVES_LIST,
    E_GET_INVITATIONS,
    E_GET_TEAM,
    E_HISTORY,
    E_HISTORY_ACK,
    E_IMPORTANT_MSG,
    E_INVITE_TO_ROOM,
    E_INVITE_TO_TEAM,
    E_LIST_ROOMS,
    E_LIST_USERS,
    E_LOGIN,
    E_LOGOUT,
    E_MATCH_PARTIAL_USER,
    E_MORSE,
    E_MY_ROOMS,
    E_RECONNECT_SUCCESS,
    E_REGISTER,
    E_REMOVE_ROOM,
    E_ROOM_ANSWER,
    E_TEAM_ANSWER,
    E_UNBAN,
    E_UNFOLLOW,
    E_UNVERIFIED_USERS,
    E_UPDATE_COMMAND,
    E_UPDATE_ID,
    E_UPDATE_ROOM,
    E_UPDATE_USER,
    E_USER_EXISTS,
    E_VERIFY_ALL_USERS,
    E_VERIFY_USER,
    E_WHISPER_MSG,
    E_WHO_AM_I,
    INVITE_ROOM,
    INVITE_TEAM,
    K_BODY,
    K_ID,
    K_T,
    KIND_BROADCAST,
    KIND_CHAT,
    KIND_IMPORTANT,
    KIND_WHISPER,
    ROOM_ADMIN,
    ROOM_PUBLIC,
)
from .envelope import now_ms, validate_envelope
from .errors import (
    AuthFailed,
    Conflict,
    DuplicateKeyError,
    Forbidden,
    HubError,
    InvalidInput,
    InvalidOperation,
    NotFound,
    UnknownCommand,
)
from .models import Room, User, device_room, whisper_room
from .schemas import validate_request
from .util import check_password, hash_password, normalize_user_name

if TYPE_CHECKING:
    from .service import HubService

Handler = Callable[[Any, dict], Any]

MIN_PASSWORD_CHARS = 4
MAX_DEVICE_ID_CHARS = 64


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class EventDispatcher:
    """
    Decodes inbound envelopes and runs the matching event handler.

    Every request gets exactly one answer correlated by its message id: a
    ``reply`` carrying the handler's result, or an ``error``. Inputs from
    one connection are handled one at a time under its session lock.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.dispatch")
        self.handlers: dict[str, Handler] = {
            E_REGISTER: self._on_register,
            E_LOGIN: self._on_login,
            E_LOGOUT: self._on_logout,
            E_UPDATE_ID: self._on_update_id,
            E_WHO_AM_I: self._on_who_am_i,
            E_CHANGE_PASSWORD: self._on_change_password,
            E_CHAT_MSG: self._on_chat_msg,
            E_WHISPER_MSG: self._on_whisper_msg,
            E_BROADCAST_MSG: self._on_broadcast_msg,
            E_IMPORTANT_MSG: self._on_important_msg,
            E_MORSE: self._on_morse,
            E_CREATE_ROOM: self._on_create_room,
            E_FOLLOW: self._on_follow,
            E_UNFOLLOW: self._on_unfollow,
            E_REMOVE_ROOM: self._on_remove_room,
            E_UPDATE_ROOM: self._on_update_room,
            E_LIST_ROOMS: self._on_list_rooms,
            E_LIST_USERS: self._on_list_users,
            E_MY_ROOMS: self._on_my_rooms,
            E_USER_EXISTS: self._on_user_exists,
            E_MATCH_PARTIAL_USER: self._on_match_partial_user,
            E_HISTORY: self._on_history,
            E_HISTORY_ACK: self._on_history_ack,
            E_INVITE_TO_ROOM: self._on_invite_to_room,
            E_INVITE_TO_TEAM: self._on_invite_to_team,
            E_GET_INVITATIONS: self._on_get_invitations,
            E_ROOM_ANSWER: self._on_room_answer,
            E_TEAM_ANSWER: self._on_team_answer,
            E_CREATE_TEAM: self._on_create_team,
            E_ADD_TEAM_ADMIN: self._on_add_team_admin,
            E_GET_TEAM: self._on_get_team,
            E_BAN: self._on_ban,
            E_UNBAN: self._on_unban,
            E_VERIFY_USER: self._on_verify_user,
            E_VERIFY_ALL_USERS: self._on_verify_all_users,
            E_BANNED_USERS: self._on_banned_users,
            E_UNVERIFIED_USERS: self._on_unverified_users,
            E_UPDATE_USER: self._on_update_user,
            E_UPDATE_COMMAND: self._on_update_command,
            E_GET_ARCHIVES_LIST: self._on_get_archives_list,
            E_GET_ARCHIVE: self._on_get_archive,
            E_COMMAND: self._on_command,
        }

    # Entry points

    def route_packet(self, link: Any, data: bytes) -> None:
        """Main entry point for an inbound packet or resource payload."""
        sess = self.hub.registry.get_session(link)
        if sess is None:
            return

        self.hub.stats_manager.inc("pkts_in")
        self.hub.stats_manager.inc("bytes_in", len(data))

        if not self.hub.registry.refill_and_take(link, 1.0):
            self.hub.stats_manager.inc("rate_limited")
            self.log.debug("Rate limited link_id=%s", self.hub.fmt_link_id(link))
            self.hub.message_helper.send_event(link, E_ERROR, {"code": "rate_limited"})
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            self.hub.stats_manager.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub.fmt_link_id(link),
                len(data),
                e,
            )
            self.hub.message_helper.emit_error(link, InvalidInput(str(e)))
            return

        event = env[K_T]
        reply_to = bytes(env[K_ID])
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX event=%s user=%s link_id=%s bytes=%s",
                event,
                sess.user_name or "-",
                self.hub.fmt_link_id(link),
                len(data),
            )

        with sess.lock:
            try:
                self.invoke(link, event, env.get(K_BODY), reply_to=reply_to)
            except Exception:
                self.log.exception(
                    "Unhandled failure event=%s link_id=%s", event, self.hub.fmt_link_id(link)
                )
                self.hub.message_helper.emit_internal_error(link, reply_to=reply_to)

    def call(self, link: Any, event: str, body: Any) -> Any:
        """Run one event handler and return its result; raises HubError."""
        handler = self.handlers.get(event)
        if handler is None:
            raise UnknownCommand(event)
        return handler(link, validate_request(event, body))

    def invoke(self, link: Any, event: str, body: Any, *, reply_to: bytes | None = None) -> bool:
        try:
            data = self.call(link, event, body)
        except HubError as e:
            level = logging.WARNING if e.code == "storage" else logging.DEBUG
            self.log.log(
                level,
                "Rejected event=%s code=%s text=%s link_id=%s",
                event,
                e.code,
                e.text,
                self.hub.fmt_link_id(link),
            )
            self.hub.message_helper.emit_error(link, e, reply_to=reply_to)
            return False
        self.hub.message_helper.reply(link, reply_to, data)
        return True

    # Session

    def _user_name(self, value: Any) -> str:
        name = normalize_user_name(value, max_chars=self.hub.config.max_user_name_len)
        if name is None:
            raise InvalidInput("bad user name")
        return name

    def _existing_user(self, value: Any) -> User:
        name = self._user_name(value)
        user = self.hub.store.get_user(name)
        if user is None:
            raise NotFound(f"User {name} does not exist")
        return user

    def _device_id(self, body: dict) -> str | None:
        device = body.get("device")
        value = device.get("deviceId") if isinstance(device, dict) else None
        if value is None:
            return None
        value = value.strip()
        if not value or len(value) > MAX_DEVICE_ID_CHARS:
            raise InvalidInput("bad device id")
        return value

    def _issue_token(self, user_name: str) -> str:
        token = secrets.token_hex(16)
        self.hub.store.update_user(user_name, resume_hash=_token_hash(token))
        return token

    def _bring_online(self, link: Any, user_name: str, device_id: str | None) -> User:
        # Held across bind and room joins so a racing login of the same user
        # cannot supersede this link halfway through.
        with self.hub.registry.user_lock(user_name):
            sess = self.hub.registry.bind(link, user_name)
            self.hub.rooms.leave_live(link, keep_device=False)

            user = self.hub.store.get_user(user_name)
            if user is None:
                raise AuthFailed()

            rooms = set(user.rooms)
            if device_id:
                sess.device_id = device_id
                self.hub.store.touch_device(device_id, user_name, now_ms())
                rooms.add(device_room(device_id))
            self.hub.rooms.join_live(link, rooms)
            self.hub.store.update_user(
                user_name, socket_id=self.hub.fmt_link_id(link), online=True
            )
        return user

    def take_offline(self, link: Any, user_name: str) -> None:
        """Unbind a user from a connection that stays open."""
        pending = self.hub.history.pending(link)
        self.hub.commands.cancel(link)
        self.hub.rooms.leave_live(link, keep_device=True)
        self.hub.registry.unbind(link)
        fields: dict[str, Any] = {"socket_id": "", "online": False}
        if not pending:
            fields["last_online"] = now_ms()
        self.hub.store.update_user(user_name, **fields)

    def _on_register(self, link: Any, body: dict) -> Any:
        self.hub.policy.require(link, "register")
        name = self._user_name(body["user"]["userName"])
        password = body["user"]["password"]
        if len(password) < MIN_PASSWORD_CHARS:
            raise InvalidInput("password too short")

        cfg = self.hub.config
        user = User(
            user_name=name,
            password_hash=hash_password(password),
            access_level=cfg.default_access_level,
            visibility=cfg.default_access_level,
            rooms={ROOM_PUBLIC, whisper_room(name)},
            verified=not cfg.user_verify,
            last_online=now_ms(),
        )
        try:
            self.hub.store.add_user(user)
        except DuplicateKeyError as e:
            raise Conflict(f"User {name} already exists") from e
        try:
            self.hub.store.add_room(
                Room(
                    room_name=whisper_room(name),
                    owner=name,
                    access_level=cfg.admin_access_level,
                    visibility=cfg.admin_access_level,
                )
            )
        except DuplicateKeyError:
            self.log.warning("Whisper room already existed user=%s", name)

        if cfg.user_verify:
            self.hub.message_helper.system_message_to_room(
                ROOM_ADMIN, [f"User {name} needs to be verified"], exclude=link
            )
        self.log.info("Registered user=%s verified=%s", name, user.verified)
        return {"userName": name, "verified": user.verified}

    def _on_login(self, link: Any, body: dict) -> Any:
        self.hub.policy.require(link, "login")
        name = self._user_name(body["user"]["userName"])
        user = self.hub.store.get_user(name)
        if user is None or not check_password(body["user"]["password"], user.password_hash):
            raise AuthFailed()
        if not self.hub.policy.is_usable(user):
            raise AuthFailed()

        device_id = self._device_id(body)
        user = self._bring_online(link, name, device_id)
        token = self._issue_token(name)
        self.hub.message_helper.send_event(link, E_LOGIN, {"user": user.public()})
        self.hub.history.start_catch_up(link, user)
        self.log.info("Login user=%s link_id=%s", name, self.hub.fmt_link_id(link))
        return {"user": user.public(), "token": token}

    def _on_update_id(self, link: Any, body: dict) -> Any:
        self.hub.policy.require(link, "updateId")
        device_id = self._device_id(body)
        user_block = body.get("user")
        raw_name = user_block.get("userName") if isinstance(user_block, dict) else None

        if raw_name is None:
            current = self.hub.registry.resolve(link)
            if current is not None:
                self.take_offline(link, current)
            rooms = {ROOM_PUBLIC}
            if device_id:
                self.hub.store.touch_device(device_id, None, now_ms())
                rooms.add(device_room(device_id))
            self.hub.rooms.join_live(link, rooms)
            self.hub.message_helper.send_event(link, E_RECONNECT_SUCCESS, {"anonUser": True})
            msgs = self.hub.history.get_history([ROOM_PUBLIC])
            self.hub.history.deliver(link, msgs)
            return {"anonymous": True}

        name = self._user_name(raw_name)
        user = self.hub.store.get_user(name)
        token = body.get("token")
        if (
            user is None
            or not user.resume_hash
            or not isinstance(token, str)
            or not hmac.compare_digest(user.resume_hash, _token_hash(token))
        ):
            raise AuthFailed()

        user = self._bring_online(link, name, device_id)
        self.hub.message_helper.send_event(link, E_RECONNECT_SUCCESS, {"user": user.public()})
        count = self.hub.history.start_catch_up(link, user)
        self.log.info(
            "Reconnected user=%s missed=%s link_id=%s", name, count, self.hub.fmt_link_id(link)
        )
        return {"user": user.public(), "missed": count}

    def _on_logout(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "logout")
        self.take_offline(link, user.user_name)
        self.hub.store.update_user(user.user_name, resume_hash=None)
        self.hub.message_helper.send_event(link, E_LOGOUT, {})
        self.log.info("Logout user=%s link_id=%s", user.user_name, self.hub.fmt_link_id(link))
        return None

    def _on_who_am_i(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require(link, "whoAmI")
        return {"user": user.public() if user else None, "anonymous": user is None}

    def _on_change_password(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "changePassword")
        if not check_password(body["oldPassword"], user.password_hash):
            raise AuthFailed()
        if len(body["newPassword"]) < MIN_PASSWORD_CHARS:
            raise InvalidInput("password too short")
        self.hub.store.update_user(user.user_name, password_hash=hash_password(body["newPassword"]))
        self.log.info("Password changed user=%s", user.user_name)
        return None

    # Messages

    def _on_chat_msg(self, link: Any, body: dict) -> Any:
        msg = self.hub.router.route(
            KIND_CHAT, link, body["message"], skip_self=bool(body.get("skipSelf", False))
        )
        return {"msgId": msg.msg_id, "time": msg.ts}

    def _on_whisper_msg(self, link: Any, body: dict) -> Any:
        msg = self.hub.router.route(KIND_WHISPER, link, body["message"])
        return {"msgId": msg.msg_id, "time": msg.ts}

    def _on_broadcast_msg(self, link: Any, body: dict) -> Any:
        msg = self.hub.router.route(KIND_BROADCAST, link, body["message"])
        return {"msgId": msg.msg_id, "time": msg.ts}

    def _on_important_msg(self, link: Any, body: dict) -> Any:
        msg = self.hub.router.route(KIND_IMPORTANT, link, body["message"])
        return {"msgId": msg.msg_id, "time": msg.ts}

    def _on_morse(self, link: Any, body: dict) -> Any:
        self.hub.router.morse(link, body)
        return None

    # Rooms

    def _on_create_room(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "createRoom")
        fields = dict(body["room"])
        owner = fields.get("owner")
        if owner is not None and owner.strip().lower() != user.user_name:
            raise InvalidInput("owner must be the caller")
        for key in ("accessLevel", "visibility"):
            if key in fields and fields[key] > user.access_level:
                raise Forbidden()
        room = self.hub.rooms.create_room(fields, user)
        self.hub.rooms.follow_room(link, room.room_name, bypass_password=True)
        return {"roomName": room.room_name}

    def _on_follow(self, link: Any, body: dict) -> Any:
        room = self.hub.rooms.follow_room(
            link, body["room"]["roomName"], body["room"].get("password")
        )
        return {"roomName": room.room_name}

    def _on_unfollow(self, link: Any, body: dict) -> Any:
        name = self.hub.rooms.unfollow_room(link, body["room"]["roomName"])
        return {"roomName": name}

    def _on_remove_room(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "removeRoom")
        name = self.hub.rooms.remove_room(body["room"]["roomName"], user)
        self.hub.message_helper.system_message(link, ["Removed the room"])
        return {"roomName": name}

    def _on_update_room(self, link: Any, body: dict) -> Any:
        self.hub.policy.require_user(link, "updateRoom")
        room = self.hub.rooms.update_room(body["room"]["roomName"], body["field"], body.get("value"))
        return {"room": room.public()}

    def _on_list_rooms(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require(link, "listRooms")
        return {"rooms": self.hub.rooms.list_rooms(user)}

    def _on_list_users(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "listUsers")
        users = [
            {"userName": u.user_name, "online": u.online, "team": u.team}
            for u in self.hub.store.list_users()
            if self.hub.policy.is_usable(u) and u.visibility <= user.access_level
        ]
        return {"users": users}

    def _on_my_rooms(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "myRooms")
        return self.hub.rooms.my_rooms(user)

    def _on_user_exists(self, link: Any, body: dict) -> Any:
        self.hub.policy.require(link, "userExists")
        name = self._user_name(body["user"]["userName"])
        return {"userName": name, "exists": self.hub.store.get_user(name) is not None}

    def _on_match_partial_user(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "matchPartialUser")
        prefix = body["partialName"].strip().lower()
        names = [
            u.user_name
            for u in self.hub.store.list_users()
            if u.user_name.startswith(prefix)
            and self.hub.policy.is_usable(u)
            and u.visibility <= user.access_level
        ]
        data: dict[str, Any] = {"userNames": names}
        if len(names) == 1:
            data["matchedName"] = names[0]
        return data

    # History

    def _on_history(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require(link, "history")
        allowed = set(user.rooms) if user is not None else {ROOM_PUBLIC}
        sess = self.hub.registry.get_session(link)
        if sess is not None and sess.device_id:
            allowed.add(device_room(sess.device_id))

        room = body.get("room")
        if isinstance(room, dict) and room.get("roomName") is not None:
            name = self.hub.rooms.resolve_name(user, room["roomName"])
            if name not in allowed:
                raise Forbidden()
            rooms = {name}
        else:
            rooms = allowed

        msgs = self.hub.history.get_history(rooms, body.get("lines"), False, body.get("startDate"))
        batches = self.hub.history.deliver(link, msgs)
        return {"count": len(msgs), "batches": batches}

    def _on_history_ack(self, link: Any, body: dict) -> Any:
        watermark = self.hub.history.acknowledge(link, body["ackToken"])
        return {"lastOnline": watermark}

    # Invitations and teams

    def _on_invite_to_room(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "inviteToRoom")
        inv = self.hub.invitations.invite(
            user, body["user"]["userName"], body["room"]["roomName"], INVITE_ROOM
        )
        return {"invitation": inv.public()}

    def _on_invite_to_team(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "inviteToTeam")
        inv = self.hub.invitations.invite(user, body["user"]["userName"], None, INVITE_TEAM)
        return {"invitation": inv.public()}

    def _on_get_invitations(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "getInvitations")
        return {"invitations": [i.public() for i in self.hub.invitations.list_invitations(user)]}

    def _on_room_answer(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "roomAnswer")
        self.hub.invitations.answer(
            user, body["invitation"]["itemName"], INVITE_ROOM, body["accepted"], link
        )
        return {"accepted": body["accepted"]}

    def _on_team_answer(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "teamAnswer")
        self.hub.invitations.answer(
            user, body["invitation"]["itemName"], INVITE_TEAM, body["accepted"], link
        )
        return {"accepted": body["accepted"]}

    def _on_create_team(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "createTeam")
        team = self.hub.invitations.create_team(user, body["team"]["teamName"], link)
        return {"teamName": team.team_name}

    def _on_add_team_admin(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "addTeamAdmin")
        team = self.hub.invitations.add_team_admin(user, body["user"]["userName"])
        return {"teamName": team.team_name, "admins": sorted(team.admins)}

    def _on_get_team(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "getTeam")
        if not user.team:
            raise NotFound("You are not part of a team")
        team = self.hub.store.get_team(user.team)
        if team is None:
            raise NotFound(f"Team {user.team} does not exist")
        members = sorted(u.user_name for u in self.hub.store.list_users() if u.team == team.team_name)
        return {
            "teamName": team.team_name,
            "owner": team.owner,
            "admins": sorted(team.admins),
            "members": members,
        }

    # Administration

    def _on_ban(self, link: Any, body: dict) -> Any:
        admin = self.hub.policy.require_user(link, "ban")
        target = self._existing_user(body["user"]["userName"])
        if target.user_name == admin.user_name:
            raise InvalidOperation("You cannot ban yourself")

        self.hub.store.update_user(
            target.user_name, banned=True, socket_id="", online=False, resume_hash=None
        )
        target_link = self.hub.registry.active_connection_of(target.user_name)
        if target_link is not None:
            self.hub.commands.cancel(target_link)
            self.hub.rooms.leave_live(target_link, keep_device=True)
            self.hub.message_helper.send_event(target_link, E_BAN, {})
            self.hub.message_helper.system_message(target_link, ["You have been banned"])
            self.hub.registry.unbind(target_link)
        self.log.warning("Banned user=%s by=%s", target.user_name, admin.user_name)
        return {"userName": target.user_name}

    def _on_unban(self, link: Any, body: dict) -> Any:
        admin = self.hub.policy.require_user(link, "unban")
        target = self._existing_user(body["user"]["userName"])
        self.hub.store.update_user(target.user_name, banned=False)
        self.log.info("Unbanned user=%s by=%s", target.user_name, admin.user_name)
        return {"userName": target.user_name}

    def _on_verify_user(self, link: Any, body: dict) -> Any:
        admin = self.hub.policy.require_user(link, "verifyUser")
        target = self._existing_user(body["user"]["userName"])
        self.hub.store.update_user(target.user_name, verified=True)
        self.log.info("Verified user=%s by=%s", target.user_name, admin.user_name)
        return {"userName": target.user_name}

    def _on_verify_all_users(self, link: Any, body: dict) -> Any:
        admin = self.hub.policy.require_user(link, "verifyAllUsers")
        names = [u.user_name for u in self.hub.store.list_users() if not u.verified]
        for name in names:
            self.hub.store.update_user(name, verified=True)
        self.log.info("Verified users=%s by=%s", len(names), admin.user_name)
        return {"userNames": names}

    def _on_banned_users(self, link: Any, body: dict) -> Any:
        self.hub.policy.require_user(link, "bannedUsers")
        return {"userNames": [u.user_name for u in self.hub.store.list_users() if u.banned]}

    def _on_unverified_users(self, link: Any, body: dict) -> Any:
        self.hub.policy.require_user(link, "unverifiedUsers")
        return {"userNames": [u.user_name for u in self.hub.store.list_users() if not u.verified]}

    def _on_update_user(self, link: Any, body: dict) -> Any:
        self.hub.policy.require_user(link, "updateUser")
        target = self._existing_user(body["user"]["userName"])
        field, value = body["field"], body["value"]
        if field == "password":
            if not isinstance(value, str) or len(value) < MIN_PASSWORD_CHARS:
                raise InvalidInput("bad password")
            self.hub.store.update_user(target.user_name, password_hash=hash_password(value))
        elif field in ("accessLevel", "visibility"):
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidInput(f"{field} must be an integer")
            column = "access_level" if field == "accessLevel" else "visibility"
            self.hub.store.update_user(target.user_name, **{column: value})
        else:
            raise InvalidInput(f"unknown user field {field}")
        return {"userName": target.user_name, "field": field}

    def _on_update_command(self, link: Any, body: dict) -> Any:
        self.hub.policy.require_user(link, "updateCommand")
        rule = self.hub.policy.set_level(body["commandName"], body["accessLevel"])
        persisted = self.hub.config_manager.persist_command_level(
            body["commandName"], rule.access_level
        )
        return {
            "commandName": body["commandName"],
            "accessLevel": rule.access_level,
            "persisted": persisted,
        }

    def _on_get_archives_list(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "getArchivesList")
        archives = [
            {"archiveId": a.archive_id, "title": a.title}
            for a in self.hub.store.list_archives()
            if a.visibility <= user.access_level
        ]
        return {"archives": archives}

    def _on_get_archive(self, link: Any, body: dict) -> Any:
        user = self.hub.policy.require_user(link, "getArchive")
        archive = self.hub.store.get_archive(body["archiveId"])
        if archive is None or archive.visibility > user.access_level:
            raise NotFound("Archive does not exist")
        if archive.access_level > user.access_level:
            raise Forbidden()
        return {
            "archive": {
                "archiveId": archive.archive_id,
                "title": archive.title,
                "text": list(archive.text),
            }
        }

    # Interactive commands

    def _on_command(self, link: Any, body: dict) -> Any:
        out = self.hub.commands.handle_line(link, body["line"])
        return {"lines": out.lines, "command": out.command, "active": out.active}

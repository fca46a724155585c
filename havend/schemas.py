"""Structural request schemas, one pydantic model per inbound event.

Bodies are checked here before any handler runs; handlers may still apply
semantic checks (name formats, existence) of their own. Scalars are strict,
so a boolean is never taken for an integer, and unknown keys pass through.
"""

from __future__ import annotations

from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    StrictBool,
    StrictBytes,
    StrictInt,
    StrictStr,
    ValidationError,
)

from .constants import (
    E_ADD_TEAM_ADMIN,
    E_BAN,
    E_BROADCAST_MSG,
    E_CHANGE_PASSWORD,
    E_CHAT_MSG,
    E_COMMAND,
    E_CREATE_ROOM,
    E_CREATE_TEAM,
    E_FOLLOW,
    E_GET_ARCHIVE,
    E_HISTORY,
    E_HISTORY_ACK,
    E_IMPORTANT_MSG,
    E_INVITE_TO_ROOM,
    E_INVITE_TO_TEAM,
    E_LOGIN,
    E_MATCH_PARTIAL_USER,
    E_MORSE,
    E_REGISTER,
    E_REMOVE_ROOM,
    E_ROOM_ANSWER,
    E_TEAM_ANSWER,
    E_UNBAN,
    E_UNFOLLOW,
    E_UPDATE_COMMAND,
    E_UPDATE_ID,
    E_UPDATE_ROOM,
    E_UPDATE_USER,
    E_USER_EXISTS,
    E_VERIFY_USER,
    E_WHISPER_MSG,
)
from .errors import InvalidInput


class Body(BaseModel):
    model_config = ConfigDict(extra="allow")


# Nested parts


class Credentials(Body):
    userName: StrictStr
    password: StrictStr


class UserRef(Body):
    userName: StrictStr


class OptionalUserRef(Body):
    userName: StrictStr | None = None


class Device(Body):
    deviceId: StrictStr | None = None


class RoomRef(Body):
    roomName: StrictStr


class RoomPassword(RoomRef):
    password: StrictStr | None = None


class RoomFields(RoomPassword):
    owner: StrictStr | None = None
    accessLevel: StrictInt | None = None
    visibility: StrictInt | None = None


class OptionalRoomRef(Body):
    roomName: StrictStr | None = None


class TeamRef(Body):
    teamName: StrictStr


class InvitationRef(Body):
    itemName: StrictStr


class Morse(Body):
    morseCode: StrictStr
    local: StrictBool | None = None


class ChatText(Body):
    text: list[StrictStr]


class RoomChat(ChatText):
    roomName: StrictStr


class Whisper(RoomChat):
    whisper: StrictBool


class Important(ChatText):
    device: StrictStr | None = None
    morse: Morse | None = None


# Event bodies


class RegisterRequest(Body):
    user: Credentials


class LoginRequest(Body):
    user: Credentials
    device: Device | None = None


class UpdateIdRequest(Body):
    user: OptionalUserRef | None = None
    token: StrictStr | None = None
    device: Device | None = None


class ChangePasswordRequest(Body):
    oldPassword: StrictStr
    newPassword: StrictStr


class ChatRequest(Body):
    message: RoomChat
    skipSelf: StrictBool | None = None


class WhisperRequest(Body):
    message: Whisper


class BroadcastRequest(Body):
    message: ChatText


class ImportantRequest(Body):
    message: Important


class CreateRoomRequest(Body):
    room: RoomFields


class FollowRequest(Body):
    room: RoomPassword


class RoomRequest(Body):
    room: RoomRef


class UpdateRoomRequest(Body):
    room: RoomRef
    field: StrictStr
    value: Any = None


class HistoryRequest(Body):
    room: OptionalRoomRef | None = None
    lines: StrictInt | None = None
    startDate: StrictInt | None = None


class HistoryAckRequest(Body):
    ackToken: StrictBytes


class InviteToRoomRequest(Body):
    user: UserRef
    room: RoomRef


class UserRequest(Body):
    user: UserRef


class AnswerRequest(Body):
    invitation: InvitationRef
    accepted: StrictBool


class CreateTeamRequest(Body):
    team: TeamRef


class UpdateUserRequest(Body):
    user: UserRef
    field: StrictStr
    value: Any


class UpdateCommandRequest(Body):
    commandName: StrictStr
    accessLevel: StrictInt


class ArchiveRequest(Body):
    archiveId: StrictStr


class CommandRequest(Body):
    line: StrictStr


class PartialUserRequest(Body):
    partialName: StrictStr


SCHEMAS: dict[str, type[Body]] = {
    E_REGISTER: RegisterRequest,
    E_LOGIN: LoginRequest,
    E_UPDATE_ID: UpdateIdRequest,
    E_CHANGE_PASSWORD: ChangePasswordRequest,
    E_CHAT_MSG: ChatRequest,
    E_WHISPER_MSG: WhisperRequest,
    E_BROADCAST_MSG: BroadcastRequest,
    E_IMPORTANT_MSG: ImportantRequest,
    E_MORSE: Morse,
    E_CREATE_ROOM: CreateRoomRequest,
    E_FOLLOW: FollowRequest,
    E_UNFOLLOW: RoomRequest,
    E_REMOVE_ROOM: RoomRequest,
    E_UPDATE_ROOM: UpdateRoomRequest,
    E_HISTORY: HistoryRequest,
    E_HISTORY_ACK: HistoryAckRequest,
    E_INVITE_TO_ROOM: InviteToRoomRequest,
    E_INVITE_TO_TEAM: UserRequest,
    E_ROOM_ANSWER: AnswerRequest,
    E_TEAM_ANSWER: AnswerRequest,
    E_CREATE_TEAM: CreateTeamRequest,
    E_ADD_TEAM_ADMIN: UserRequest,
    E_BAN: UserRequest,
    E_UNBAN: UserRequest,
    E_VERIFY_USER: UserRequest,
    E_UPDATE_USER: UpdateUserRequest,
    E_UPDATE_COMMAND: UpdateCommandRequest,
    E_GET_ARCHIVE: ArchiveRequest,
    E_COMMAND: CommandRequest,
    E_USER_EXISTS: UserRequest,
    E_MATCH_PARTIAL_USER: PartialUserRequest,
}


def validate_request(event: str, body: Any) -> dict:
    """Check ``body`` against the event's model and return it as a dict.

    The body is returned as received; the model only decides whether it is
    acceptable.
    """
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise InvalidInput("body must be a map")
    model = SCHEMAS.get(event)
    if model is None:
        return body
    try:
        model.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(part) for part in first["loc"]) or "body"
        raise InvalidInput(f"bad {where}: {first['msg']}") from e
    return body

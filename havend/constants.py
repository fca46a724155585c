# Haven protocol constants (envelope keys, event names, reserved rooms)

HAVEN_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_REPLY = 4
K_BODY = 5

# Inbound events
E_REGISTER = "register"
E_LOGIN = "login"
E_LOGOUT = "logout"
E_UPDATE_ID = "updateId"
E_WHO_AM_I = "whoAmI"
E_CHANGE_PASSWORD = "changePassword"

E_CHAT_MSG = "chatMsg"
E_WHISPER_MSG = "whisperMsg"
E_BROADCAST_MSG = "broadcastMsg"
E_IMPORTANT_MSG = "importantMsg"
E_MORSE = "morse"

E_CREATE_ROOM = "createRoom"
E_FOLLOW = "follow"
E_UNFOLLOW = "unfollow"
E_REMOVE_ROOM = "removeRoom"
E_UPDATE_ROOM = "updateRoom"
E_LIST_ROOMS = "listRooms"
E_LIST_USERS = "listUsers"
E_MY_ROOMS = "myRooms"
E_USER_EXISTS = "userExists"
E_MATCH_PARTIAL_USER = "matchPartialUser"

E_HISTORY = "history"
E_HISTORY_ACK = "historyAck"

E_INVITE_TO_ROOM = "inviteToRoom"
E_INVITE_TO_TEAM = "inviteToTeam"
E_GET_INVITATIONS = "getInvitations"
E_ROOM_ANSWER = "roomAnswer"
E_TEAM_ANSWER = "teamAnswer"
E_CREATE_TEAM = "createTeam"
E_ADD_TEAM_ADMIN = "addTeamAdmin"
E_GET_TEAM = "getTeam"

E_BAN = "ban"
E_UNBAN = "unban"
E_VERIFY_USER = "verifyUser"
E_VERIFY_ALL_USERS = "verifyAllUsers"
E_BANNED_USERS = "bannedUsers"
E_UNVERIFIED_USERS = "unverifiedUsers"
E_UPDATE_USER = "updateUser"
E_UPDATE_COMMAND = "updateCommand"

E_GET_ARCHIVE = "getArchive"
E_GET_ARCHIVES_LIST = "getArchivesList"

E_COMMAND = "command"

# Outbound events (E_FOLLOW, E_UNFOLLOW, E_LOGIN, E_LOGOUT, E_MORSE, E_BAN,
# E_CHAT_MSG and E_WHO_AM_I are also sent by the hub)
E_REPLY = "reply"
E_ERROR = "error"
E_MESSAGE = "message"
E_CHAT_MSGS = "chatMsgs"
E_SESSION_SUPERSEDED = "sessionSuperseded"
E_RECONNECT_SUCCESS = "reconnectSuccess"
E_INVITATION = "invitation"

# Message kinds
KIND_CHAT = "chat"
KIND_WHISPER = "whisper"
KIND_BROADCAST = "broadcast"
KIND_IMPORTANT = "important"
KIND_MORSE = "morse"

# Reserved rooms
ROOM_PUBLIC = "public"
ROOM_IMPORTANT = "important"
ROOM_BROADCAST = "broadcast"
ROOM_MORSE = "morse"
ROOM_ADMIN = "admin"

RESERVED_ROOMS = frozenset(
    (ROOM_PUBLIC, ROOM_IMPORTANT, ROOM_BROADCAST, ROOM_MORSE, ROOM_ADMIN)
)

# Pseudo room names rewritten to the caller's derived rooms
PSEUDO_WHISPER = "whisper"
PSEUDO_TEAM = "team"

WHISPER_SUFFIX = "-whisper"
TEAM_SUFFIX = "-team"
DEVICE_SUFFIX = "-device"

DERIVED_SUFFIXES = (WHISPER_SUFFIX, TEAM_SUFFIX, DEVICE_SUFFIX)

SYSTEM_SENDER = "SYSTEM"

# Invitation types
INVITE_ROOM = "room"
INVITE_TEAM = "team"

# Access levels
ACCESS_ANONYMOUS = 0
ACCESS_USER = 1
ACCESS_ADMIN = 13

USER_NAME_MAX_CHARS = 20
PASSWORD_MAX_BYTES = 72

CANCEL_TOKENS = ("exit", "cancel")

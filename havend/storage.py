"""Persistence gateway.

The hub talks to storage only through the :class:`Store` protocol. The
shipped implementation keeps everything in one SQLite database opened with
``check_same_thread=False`` and guarded by a lock, since Reticulum calls
into the hub from several threads. Use ``":memory:"`` for tests.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Protocol

from .codec import decode, encode
from .errors import DuplicateKeyError, StorageError
from .models import Archive, Device, Invitation, Message, Room, Team, User

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_name     TEXT PRIMARY KEY,
    password_hash TEXT NOT NULL,
    access_level  INTEGER NOT NULL DEFAULT 1,
    visibility    INTEGER NOT NULL DEFAULT 1,
    team          TEXT,
    socket_id     TEXT NOT NULL DEFAULT '',
    online        INTEGER NOT NULL DEFAULT 0,
    verified      INTEGER NOT NULL DEFAULT 1,
    banned        INTEGER NOT NULL DEFAULT 0,
    last_online   INTEGER NOT NULL DEFAULT 0,
    resume_hash   TEXT
);

CREATE TABLE IF NOT EXISTS rooms (
    room_name     TEXT PRIMARY KEY,
    owner         TEXT NOT NULL,
    password_hash TEXT,
    access_level  INTEGER NOT NULL DEFAULT 1,
    visibility    INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS user_rooms (
    user_name TEXT NOT NULL REFERENCES users(user_name) ON DELETE CASCADE,
    room_name TEXT NOT NULL,
    PRIMARY KEY (user_name, room_name)
);

CREATE TABLE IF NOT EXISTS teams (
    team_name TEXT PRIMARY KEY,
    owner     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS team_admins (
    team_name TEXT NOT NULL REFERENCES teams(team_name) ON DELETE CASCADE,
    user_name TEXT NOT NULL,
    PRIMARY KEY (team_name, user_name)
);

CREATE TABLE IF NOT EXISTS invitations (
    target          TEXT NOT NULL,
    item_name       TEXT NOT NULL,
    invitation_type TEXT NOT NULL,
    sender          TEXT NOT NULL,
    time            INTEGER NOT NULL,
    UNIQUE (target, item_name, invitation_type)
);

CREATE TABLE IF NOT EXISTS messages (
    seq       INTEGER PRIMARY KEY AUTOINCREMENT,
    msg_id    BLOB NOT NULL,
    room_name TEXT NOT NULL,
    sender    TEXT NOT NULL,
    text      BLOB NOT NULL,
    ts        INTEGER NOT NULL,
    kind      TEXT NOT NULL,
    UNIQUE (msg_id, room_name)
);
CREATE INDEX IF NOT EXISTS idx_messages_room_ts ON messages(room_name, ts);

CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    user_name TEXT,
    last_seen INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS archives (
    archive_id   TEXT PRIMARY KEY,
    title        TEXT NOT NULL,
    text         BLOB NOT NULL,
    access_level INTEGER NOT NULL DEFAULT 1,
    visibility   INTEGER NOT NULL DEFAULT 1
);
"""

_USER_FIELDS = frozenset(
    {
        "password_hash",
        "access_level",
        "visibility",
        "team",
        "socket_id",
        "online",
        "verified",
        "banned",
        "last_online",
        "resume_hash",
    }
)
_ROOM_FIELDS = frozenset({"owner", "password_hash", "access_level", "visibility"})


class Store(Protocol):
    def get_user(self, user_name: str) -> User | None: ...
    def add_user(self, user: User) -> None: ...
    def update_user(self, user_name: str, **fields: Any) -> None: ...
    def list_users(self) -> list[User]: ...
    def add_user_room(self, user_name: str, room_name: str) -> bool: ...
    def remove_user_room(self, user_name: str, room_name: str) -> bool: ...

    def get_room(self, room_name: str) -> Room | None: ...
    def add_room(self, room: Room) -> None: ...
    def remove_room(self, room_name: str) -> list[str]: ...
    def update_room(self, room_name: str, **fields: Any) -> None: ...
    def list_rooms(self) -> list[Room]: ...

    def get_team(self, team_name: str) -> Team | None: ...
    def add_team(self, team: Team) -> None: ...
    def add_team_admin(self, team_name: str, user_name: str) -> None: ...

    def add_invitation(self, invitation: Invitation) -> None: ...
    def get_invitation(self, target: str, item_name: str, invitation_type: str) -> Invitation | None: ...
    def list_invitations(self, target: str) -> list[Invitation]: ...
    def remove_invitation(self, target: str, item_name: str, invitation_type: str) -> bool: ...
    def remove_invitations(self, target: str, invitation_type: str) -> int: ...

    def append_messages(self, messages: Iterable[Message]) -> list[Message]: ...
    def query_messages(
        self,
        rooms: Iterable[str],
        *,
        after: int | None = None,
        until: int | None = None,
        limit: int | None = None,
        newest: bool = False,
    ) -> list[Message]: ...

    def get_device(self, device_id: str) -> Device | None: ...
    def touch_device(self, device_id: str, user_name: str | None, when: int) -> None: ...

    def add_archive(self, archive: Archive) -> None: ...
    def get_archive(self, archive_id: str) -> Archive | None: ...
    def list_archives(self) -> list[Archive]: ...

    def close(self) -> None: ...


class SqliteStore:
    """SQLite-backed :class:`Store`."""

    def __init__(self, path: str = ":memory:") -> None:
        self.path = path
        self.log = logging.getLogger("havend.store")
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys=ON")
            if path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"cannot open store: {e}") from e

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise DuplicateKeyError(str(e)) from e
            except sqlite3.Error as e:
                self._conn.rollback()
                self.log.error("Store failure path=%s err=%s", self.path, e)
                raise StorageError() from e
            except BaseException:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Users

    def _user_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> User:
        rooms = {
            r["room_name"]
            for r in conn.execute(
                "SELECT room_name FROM user_rooms WHERE user_name = ?", (row["user_name"],)
            )
        }
        return User(
            user_name=row["user_name"],
            password_hash=row["password_hash"],
            access_level=row["access_level"],
            visibility=row["visibility"],
            team=row["team"],
            rooms=rooms,
            socket_id=row["socket_id"],
            online=bool(row["online"]),
            verified=bool(row["verified"]),
            banned=bool(row["banned"]),
            last_online=row["last_online"],
            resume_hash=row["resume_hash"],
        )

    def get_user(self, user_name: str) -> User | None:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_name = ?", (user_name,)).fetchone()
            return self._user_from_row(conn, row) if row else None

    def add_user(self, user: User) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO users (user_name, password_hash, access_level, visibility, team, "
                "socket_id, online, verified, banned, last_online, resume_hash) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    user.user_name,
                    user.password_hash,
                    user.access_level,
                    user.visibility,
                    user.team,
                    user.socket_id,
                    int(user.online),
                    int(user.verified),
                    int(user.banned),
                    user.last_online,
                    user.resume_hash,
                ),
            )
            conn.executemany(
                "INSERT INTO user_rooms (user_name, room_name) VALUES (?, ?)",
                [(user.user_name, r) for r in sorted(user.rooms)],
            )

    def update_user(self, user_name: str, **fields: Any) -> None:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if not fields:
            return
        cols = ", ".join(f"{k} = ?" for k in fields)
        values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        with self._tx() as conn:
            conn.execute(f"UPDATE users SET {cols} WHERE user_name = ?", (*values, user_name))

    def list_users(self) -> list[User]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY user_name").fetchall()
            return [self._user_from_row(conn, row) for row in rows]

    def add_user_room(self, user_name: str, room_name: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO user_rooms (user_name, room_name) VALUES (?, ?)",
                (user_name, room_name),
            )
            return cur.rowcount > 0

    def remove_user_room(self, user_name: str, room_name: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM user_rooms WHERE user_name = ? AND room_name = ?",
                (user_name, room_name),
            )
            return cur.rowcount > 0

    # Rooms

    @staticmethod
    def _room_from_row(row: sqlite3.Row) -> Room:
        return Room(
            room_name=row["room_name"],
            owner=row["owner"],
            password_hash=row["password_hash"],
            access_level=row["access_level"],
            visibility=row["visibility"],
        )

    def get_room(self, room_name: str) -> Room | None:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE room_name = ?", (room_name,)).fetchone()
            return self._room_from_row(row) if row else None

    def add_room(self, room: Room) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO rooms (room_name, owner, password_hash, access_level, visibility) "
                "VALUES (?, ?, ?, ?, ?)",
                (room.room_name, room.owner, room.password_hash, room.access_level, room.visibility),
            )

    def remove_room(self, room_name: str) -> list[str]:
        """Delete a room and its follows. Returns the users who followed it."""
        with self._tx() as conn:
            followers = [
                r["user_name"]
                for r in conn.execute(
                    "SELECT user_name FROM user_rooms WHERE room_name = ?", (room_name,)
                )
            ]
            conn.execute("DELETE FROM user_rooms WHERE room_name = ?", (room_name,))
            conn.execute("DELETE FROM rooms WHERE room_name = ?", (room_name,))
            return followers

    def update_room(self, room_name: str, **fields: Any) -> None:
        unknown = set(fields) - _ROOM_FIELDS
        if unknown:
            raise ValueError(f"unknown room fields: {sorted(unknown)}")
        if not fields:
            return
        cols = ", ".join(f"{k} = ?" for k in fields)
        with self._tx() as conn:
            conn.execute(
                f"UPDATE rooms SET {cols} WHERE room_name = ?", (*fields.values(), room_name)
            )

    def list_rooms(self) -> list[Room]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM rooms ORDER BY room_name").fetchall()
            return [self._room_from_row(row) for row in rows]

    # Teams

    def get_team(self, team_name: str) -> Team | None:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM teams WHERE team_name = ?", (team_name,)).fetchone()
            if row is None:
                return None
            admins = {
                r["user_name"]
                for r in conn.execute(
                    "SELECT user_name FROM team_admins WHERE team_name = ?", (team_name,)
                )
            }
            return Team(team_name=row["team_name"], owner=row["owner"], admins=admins)

    def add_team(self, team: Team) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO teams (team_name, owner) VALUES (?, ?)", (team.team_name, team.owner)
            )
            conn.executemany(
                "INSERT INTO team_admins (team_name, user_name) VALUES (?, ?)",
                [(team.team_name, a) for a in sorted(team.admins)],
            )

    def add_team_admin(self, team_name: str, user_name: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO team_admins (team_name, user_name) VALUES (?, ?)",
                (team_name, user_name),
            )

    # Invitations

    @staticmethod
    def _invitation_from_row(row: sqlite3.Row) -> Invitation:
        return Invitation(
            target=row["target"],
            item_name=row["item_name"],
            invitation_type=row["invitation_type"],
            sender=row["sender"],
            time=row["time"],
        )

    def add_invitation(self, invitation: Invitation) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO invitations (target, item_name, invitation_type, sender, time) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    invitation.target,
                    invitation.item_name,
                    invitation.invitation_type,
                    invitation.sender,
                    invitation.time,
                ),
            )

    def get_invitation(self, target: str, item_name: str, invitation_type: str) -> Invitation | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM invitations WHERE target = ? AND item_name = ? AND invitation_type = ?",
                (target, item_name, invitation_type),
            ).fetchone()
            return self._invitation_from_row(row) if row else None

    def list_invitations(self, target: str) -> list[Invitation]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM invitations WHERE target = ? ORDER BY time, rowid", (target,)
            ).fetchall()
            return [self._invitation_from_row(row) for row in rows]

    def remove_invitation(self, target: str, item_name: str, invitation_type: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM invitations WHERE target = ? AND item_name = ? AND invitation_type = ?",
                (target, item_name, invitation_type),
            )
            return cur.rowcount > 0

    def remove_invitations(self, target: str, invitation_type: str) -> int:
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM invitations WHERE target = ? AND invitation_type = ?",
                (target, invitation_type),
            )
            return cur.rowcount

    # Messages

    @staticmethod
    def _message_from_row(row: sqlite3.Row) -> Message:
        return Message(
            msg_id=bytes(row["msg_id"]),
            room_name=row["room_name"],
            sender=row["sender"],
            text=tuple(decode(row["text"])),
            ts=row["ts"],
            kind=row["kind"],
            seq=row["seq"],
        )

    def append_messages(self, messages: Iterable[Message]) -> list[Message]:
        """Store messages in one transaction; all or none are kept."""
        stored: list[Message] = []
        with self._tx() as conn:
            for m in messages:
                cur = conn.execute(
                    "INSERT INTO messages (msg_id, room_name, sender, text, ts, kind) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (m.msg_id, m.room_name, m.sender, encode(list(m.text)), m.ts, m.kind),
                )
                stored.append(
                    Message(
                        msg_id=m.msg_id,
                        room_name=m.room_name,
                        sender=m.sender,
                        text=m.text,
                        ts=m.ts,
                        kind=m.kind,
                        seq=int(cur.lastrowid or 0),
                    )
                )
        return stored

    def query_messages(
        self,
        rooms: Iterable[str],
        *,
        after: int | None = None,
        until: int | None = None,
        limit: int | None = None,
        newest: bool = False,
    ) -> list[Message]:
        """Messages from ``rooms`` ordered by (ts, seq).

        ``after`` is exclusive and ``until`` inclusive. With ``newest`` the
        limit keeps the latest rows; the result is still ascending.
        """
        room_list = sorted(set(rooms))
        if not room_list:
            return []

        marks = ", ".join("?" for _ in room_list)
        sql = f"SELECT * FROM messages WHERE room_name IN ({marks})"
        params: list[Any] = list(room_list)
        if after is not None:
            sql += " AND ts > ?"
            params.append(int(after))
        if until is not None:
            sql += " AND ts <= ?"
            params.append(int(until))
        sql += " ORDER BY ts DESC, seq DESC" if newest else " ORDER BY ts ASC, seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._tx() as conn:
            rows = conn.execute(sql, params).fetchall()
        msgs = [self._message_from_row(row) for row in rows]
        if newest:
            msgs.reverse()
        return msgs

    # Devices

    def get_device(self, device_id: str) -> Device | None:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
            if row is None:
                return None
            return Device(row["device_id"], row["user_name"], row["last_seen"])

    def touch_device(self, device_id: str, user_name: str | None, when: int) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO devices (device_id, user_name, last_seen) VALUES (?, ?, ?) "
                "ON CONFLICT(device_id) DO UPDATE SET user_name = excluded.user_name, "
                "last_seen = excluded.last_seen",
                (device_id, user_name, when),
            )

    # Archives

    @staticmethod
    def _archive_from_row(row: sqlite3.Row) -> Archive:
        return Archive(
            archive_id=row["archive_id"],
            title=row["title"],
            text=tuple(decode(row["text"])),
            access_level=row["access_level"],
            visibility=row["visibility"],
        )

    def add_archive(self, archive: Archive) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO archives (archive_id, title, text, access_level, visibility) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    archive.archive_id,
                    archive.title,
                    encode(list(archive.text)),
                    archive.access_level,
                    archive.visibility,
                ),
            )

    def get_archive(self, archive_id: str) -> Archive | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM archives WHERE archive_id = ?", (archive_id,)
            ).fetchone()
            return self._archive_from_row(row) if row else None

    def list_archives(self) -> list[Archive]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM archives ORDER BY archive_id").fetchall()
            return [self._archive_from_row(row) for row in rows]

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from typing import Iterator

import bcrypt

from .constants import PASSWORD_MAX_BYTES, USER_NAME_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_user_name(value, *, max_chars: int = USER_NAME_MAX_CHARS) -> str | None:
    """Lower-cased user name, or None when it is not a short alphanumeric word."""
    if not isinstance(value, str):
        return None

    s = value.strip().lower()
    if not s or len(s) > int(max_chars):
        return None
    if not (s.isascii() and s.isalnum()):
        return None
    return s


def normalize_room_name(value, *, max_chars: int = 32) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip().lower()
    if not s or len(s) > int(max_chars):
        return None

    # Room names end up in logs and listings.
    if any(ch.isspace() or not ch.isprintable() for ch in s):
        return None
    return s


def hash_password(password: str) -> str:
    raw = password.encode("utf-8")[:PASSWORD_MAX_BYTES]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("ascii")


def check_password(password: str | None, hashed: str | None) -> bool:
    if not hashed:
        return True
    if not isinstance(password, str):
        return False
    raw = password.encode("utf-8")[:PASSWORD_MAX_BYTES]
    try:
        return bcrypt.checkpw(raw, hashed.encode("ascii"))
    except ValueError:
        return False


class KeyedLocks:
    """Lazily created re-entrant locks, one per key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # Sorted acquisition keeps multi-key holders from deadlocking.
        locks = [self.get(k) for k in sorted(set(keys))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

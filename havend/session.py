from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .constants import E_LOGOUT, E_SESSION_SUPERSEDED
from .envelope import now_ms
from .errors import AuthFailed
from .util import KeyedLocks

if TYPE_CHECKING:
    from .service import HubService


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass
class PendingCatchUp:
    token: bytes
    watermark: int
    truncated: bool


@dataclass
class Session:
    link: Any
    user_name: str | None = None
    device_id: str | None = None
    rooms: set[str] = field(default_factory=set)
    catch_up: PendingCatchUp | None = None
    # Serialises the inputs of one connection.
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def authenticated(self) -> bool:
        return self.user_name is not None


class ConnectionRegistry:
    """
    Tracks live connections and the user bound to each.

    At most one connection is bound to a user name. Binding a user that is
    already bound elsewhere evicts the older connection first: it is forced
    out of its non-device rooms, told it was superseded, has its command
    flow cancelled and is unbound. Binds for the same user serialise on a
    per-user lock. Connections that never bind stay anonymous.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.session")
        # Guards the index dicts only; never held while calling out.
        self._lock = threading.Lock()
        self.sessions: dict[Any, Session] = {}
        self._by_user: dict[str, Any] = {}
        self._rate: dict[Any, _RateState] = {}
        self._user_locks = KeyedLocks()

    def on_link_established(self, link: Any) -> Session:
        sess = Session(link=link)
        with self._lock:
            self.sessions[link] = sess
            self._rate[link] = _RateState(
                tokens=float(self.hub.config.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )
        self.log.info("Session created link_id=%s", self.hub.fmt_link_id(link))
        return sess

    def on_link_closed(self, link: Any) -> tuple[Session | None, bool]:
        """Forget a closed connection.

        Returns the session and whether it was still the active connection
        of its user.
        """
        with self._lock:
            sess = self.sessions.pop(link, None)
            self._rate.pop(link, None)
            if sess is None:
                return None, False
            was_active = False
            if sess.user_name and self._by_user.get(sess.user_name) is link:
                self._by_user.pop(sess.user_name, None)
                was_active = True
        return sess, was_active

    def get_session(self, link: Any) -> Session | None:
        with self._lock:
            return self.sessions.get(link)

    def resolve(self, link: Any) -> str | None:
        with self._lock:
            sess = self.sessions.get(link)
            return sess.user_name if sess is not None else None

    def active_connection_of(self, user_name: str) -> Any | None:
        with self._lock:
            return self._by_user.get(user_name)

    def all_links(self) -> list[Any]:
        with self._lock:
            return list(self.sessions)

    def user_lock(self, user_name: str):
        return self._user_locks.hold(user_name)

    def bind(self, link: Any, user_name: str) -> Session:
        user = self.hub.store.get_user(user_name)
        if not self.hub.policy.is_usable(user):
            raise AuthFailed()

        with self._user_locks.hold(user_name):
            sess = self.get_session(link)
            if sess is None:
                raise AuthFailed("connection closed")

            previous = self.active_connection_of(user_name)
            if previous is not None and previous is not link:
                self._supersede(previous, user_name)

            if sess.user_name and sess.user_name != user_name:
                self.unbind(link)

            with self._lock:
                sess.user_name = user_name
                self._by_user[user_name] = link

        self.log.info("Bound user=%s link_id=%s", user_name, self.hub.fmt_link_id(link))
        return sess

    def _supersede(self, old_link: Any, user_name: str) -> None:
        self.log.info(
            "Superseding session user=%s link_id=%s",
            user_name,
            self.hub.fmt_link_id(old_link),
        )
        old = self.get_session(old_link)
        if old is not None and old.catch_up is None:
            # The live connection saw everything up to now.
            self.hub.store.update_user(user_name, last_online=now_ms())
        self.hub.rooms.leave_live(old_link, keep_device=True)
        self.hub.message_helper.send_event(
            old_link, E_SESSION_SUPERSEDED, {"userName": user_name}
        )
        self.hub.message_helper.send_event(old_link, E_LOGOUT, {})
        self.hub.message_helper.system_message(
            old_link,
            ["Your user has been logged in on another device", "You have been logged out"],
        )
        self.hub.commands.cancel(old_link)
        self.unbind(old_link)
        self.hub.stats_manager.inc("superseded")

    def unbind(self, link: Any) -> str | None:
        with self._lock:
            sess = self.sessions.get(link)
            if sess is None or sess.user_name is None:
                return None
            user_name = sess.user_name
            sess.user_name = None
            sess.catch_up = None
            if self._by_user.get(user_name) is link:
                self._by_user.pop(user_name, None)
        self.log.info("Unbound user=%s link_id=%s", user_name, self.hub.fmt_link_id(link))
        return user_name

    def refill_and_take(self, link: Any, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        with self._lock:
            state = self._rate.get(link)
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * per_min / 60.0)
            state.last_refill = now

            if state.tokens < cost:
                return False
            state.tokens -= cost
            return True

    def clear_all(self) -> list[Any]:
        with self._lock:
            links = list(self.sessions)
            self.sessions.clear()
            self._by_user.clear()
            self._rate.clear()
        return links

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            total = len(self.sessions)
            bound = len(self._by_user)
        return {"total": total, "bound": bound, "anonymous": total - bound}

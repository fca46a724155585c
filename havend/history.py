"""History retrieval and offline catch-up.

Normal queries return the newest lines up to a point in time. Catch-up
returns everything a user's rooms received after their ``last_online``
watermark. Both are delivered as ``chatMsgs`` batches of the configured
chunk length. A catch-up ends with an ack token; ``last_online`` only
moves forward when the client sends that token back in ``historyAck``, so
an interrupted delivery is repeated on the next connect rather than lost.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from .constants import E_CHAT_MSGS
from .envelope import now_ms
from .errors import InvalidInput
from .models import Message, User
from .session import PendingCatchUp

if TYPE_CHECKING:
    from .service import HubService


def chunk(messages: Sequence[Message], size: int) -> list[list[Message]]:
    """Split ``messages`` into ceil(N/size) ordered batches of at most ``size``."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(messages[i : i + size]) for i in range(0, len(messages), size)]


def dedupe(messages: Iterable[Message]) -> list[Message]:
    seen: set[bytes] = set()
    out: list[Message] = []
    for m in messages:
        if m.msg_id in seen:
            continue
        seen.add(m.msg_id)
        out.append(m)
    return out


def cap_on_timestamp(messages: list[Message], limit: int) -> tuple[list[Message], bool]:
    """Keep at most ``limit`` messages without splitting a run of equal timestamps.

    A single run longer than ``limit`` is kept whole.
    """
    if len(messages) <= limit:
        return messages, False
    cut = limit
    boundary_ts = messages[cut].ts
    while cut > 0 and messages[cut - 1].ts == boundary_ts:
        cut -= 1
    if cut == 0:
        cut = limit
        while cut < len(messages) and messages[cut].ts == boundary_ts:
            cut += 1
    return messages[:cut], cut < len(messages)


class HistoryEngine:
    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.history")

    def get_history(
        self,
        rooms: Iterable[str],
        max_lines: int | None = None,
        since_incomplete: bool = False,
        since: int | None = None,
    ) -> list[Message]:
        room_list = sorted(set(rooms))
        if since_incomplete:
            msgs, _ = self._missed(room_list, since or 0)
            return msgs

        ceiling = int(self.hub.config.history_lines)
        lines = ceiling if max_lines is None else max(0, min(int(max_lines), ceiling))
        if lines == 0:
            return []
        # Fetch a little extra so whisper copies removed by dedupe do not
        # shrink the result.
        msgs = self.hub.store.query_messages(room_list, until=since, limit=lines * 2, newest=True)
        return dedupe(msgs)[-lines:]

    def _missed(self, rooms: list[str], since: int) -> tuple[list[Message], bool]:
        limit = int(self.hub.config.max_catchup_lines)
        # One row past the cap tells whether anything was left behind.
        msgs = dedupe(self.hub.store.query_messages(rooms, after=since, limit=limit * 2 + 1))
        return cap_on_timestamp(msgs, limit)

    def deliver(
        self,
        link: Any,
        messages: Sequence[Message],
        *,
        token: bytes | None = None,
    ) -> int:
        """Send ``messages`` as chunked ``chatMsgs`` events. Returns the batch count."""
        batches = chunk(messages, int(self.hub.config.chunk_length))
        total = len(batches)
        for index, batch in enumerate(batches, start=1):
            body: dict[str, Any] = {
                "messages": [m.to_wire() for m in batch],
                "batch": index,
                "batches": total,
            }
            if token is not None:
                body["catchUp"] = True
                if index == total:
                    body["ackToken"] = token
            self.hub.message_helper.send_event(link, E_CHAT_MSGS, body)
        self.hub.stats_manager.inc("history_batches", total)
        return total

    def start_catch_up(self, link: Any, user: User) -> int:
        """Replay what ``user`` missed while offline. Returns the message count."""
        sess = self.hub.registry.get_session(link)
        if sess is None:
            return 0

        started = now_ms()
        rooms = set(sess.rooms) | set(user.rooms)
        msgs, truncated = self._missed(sorted(rooms), user.last_online)
        if not msgs:
            sess.catch_up = None
            return 0

        watermark = msgs[-1].ts if truncated else max(started, msgs[-1].ts)
        token = os.urandom(8)
        sess.catch_up = PendingCatchUp(token=token, watermark=watermark, truncated=truncated)

        batches = self.deliver(link, msgs, token=token)
        self.log.info(
            "Catch-up user=%s since=%s messages=%s batches=%s truncated=%s",
            user.user_name,
            user.last_online,
            len(msgs),
            batches,
            truncated,
        )
        return len(msgs)

    def acknowledge(self, link: Any, token: Any) -> int:
        """Advance ``last_online`` for a delivered catch-up.

        Returns the new watermark. Continues with the next page when the
        acknowledged catch-up was truncated.
        """
        user = self.hub.policy.require_user(link, "historyAck")
        sess = self.hub.registry.get_session(link)
        pending = sess.catch_up if sess is not None else None
        if pending is None or not isinstance(token, (bytes, bytearray)) or bytes(token) != pending.token:
            raise InvalidInput("no matching catch-up")

        sess.catch_up = None
        watermark = max(user.last_online, pending.watermark)
        self.hub.store.update_user(user.user_name, last_online=watermark)
        self.log.debug("Catch-up acknowledged user=%s watermark=%s", user.user_name, watermark)

        if pending.truncated:
            refreshed = self.hub.store.get_user(user.user_name)
            if refreshed is not None:
                self.start_catch_up(link, refreshed)
        return watermark

    def pending(self, link: Any) -> bool:
        sess = self.hub.registry.get_session(link)
        return sess is not None and sess.catch_up is not None

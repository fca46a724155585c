"""Outbound event helpers for the haven hub."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

from .codec import encode
from .constants import E_ERROR, E_MESSAGE, E_REPLY, SYSTEM_SENDER
from .envelope import make_envelope, now_ms
from .errors import HubError

if TYPE_CHECKING:
    from .service import HubService


class MessageHelper:
    """
    Builds envelopes and hands them to the hub transport.

    Handles:
    - Single-connection, room and hub-wide event delivery
    - SYSTEM text messages
    - Correlated replies and structured errors
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.messages")

    def send_env(self, link: Any, env: dict) -> bool:
        payload = encode(env)
        self.hub.stats_manager.inc("bytes_out", len(payload))
        try:
            return bool(self.hub.transport.send(link, payload))
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.hub.fmt_link_id(link),
                len(payload),
                e,
            )
            return False

    def send_event(
        self,
        link: Any,
        event: str,
        body: dict | None = None,
        *,
        reply_to: bytes | None = None,
    ) -> bool:
        return self.send_env(link, make_envelope(event, body=body, reply_to=reply_to))

    def send_many(self, links: Iterable[Any], event: str, body: dict | None) -> int:
        # One envelope (and one msg id) for every recipient.
        payload = encode(make_envelope(event, body=body))
        sent = 0
        for link in links:
            self.hub.stats_manager.inc("bytes_out", len(payload))
            try:
                if self.hub.transport.send(link, payload):
                    sent += 1
            except OSError as e:
                self.log.warning(
                    "Send failed link_id=%s bytes=%s err=%s",
                    self.hub.fmt_link_id(link),
                    len(payload),
                    e,
                )
        return sent

    def send_to_room(
        self, room_name: str, event: str, body: dict | None, *, exclude: Any = None
    ) -> int:
        links = [m for m in self.hub.rooms.members(room_name) if m is not exclude]
        return self.send_many(links, event, body)

    def send_to_all(self, event: str, body: dict | None, *, exclude: Any = None) -> int:
        links = [link for link in self.hub.registry.all_links() if link is not exclude]
        return self.send_many(links, event, body)

    def _system_body(self, lines: list[str], room_name: str | None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "userName": SYSTEM_SENDER,
            "text": list(lines),
            "time": now_ms(),
        }
        if room_name is not None:
            body["roomName"] = room_name
        return body

    def system_message(self, link: Any, lines: list[str], room_name: str | None = None) -> bool:
        return self.send_event(link, E_MESSAGE, self._system_body(lines, room_name))

    def system_message_to_room(
        self, room_name: str, lines: list[str], *, exclude: Any = None
    ) -> int:
        return self.send_to_room(
            room_name, E_MESSAGE, self._system_body(lines, room_name), exclude=exclude
        )

    def reply(self, link: Any, reply_to: bytes | None, data: Any = None) -> bool:
        body: dict[str, Any] = {"ok": True}
        if data is not None:
            body["data"] = data
        return self.send_event(link, E_REPLY, body, reply_to=reply_to)

    def emit_error(self, link: Any, err: HubError, *, reply_to: bytes | None = None) -> bool:
        """Report a rejected action; unexplained errors carry no reason."""
        self.hub.stats_manager.inc("errors_sent")
        if err.explained:
            body = {"code": err.code, "text": err.text}
        else:
            body = {"code": "rejected"}
        return self.send_event(link, E_ERROR, body, reply_to=reply_to)

    def emit_internal_error(self, link: Any, *, reply_to: bytes | None = None) -> bool:
        self.hub.stats_manager.inc("errors_sent")
        return self.send_event(link, E_ERROR, {"code": "internal"}, reply_to=reply_to)

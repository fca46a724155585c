from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from . import __version__
from .codec import encode
from .commands import CommandHandler
from .config import ConfigManager, HubRuntimeConfig
from .constants import (
    RESERVED_ROOMS,
    ROOM_ADMIN,
    SYSTEM_SENDER,
)
from .dispatch import EventDispatcher
from .envelope import now_ms
from .errors import DuplicateKeyError
from .history import HistoryEngine
from .invitations import InvitationWorkflow
from .messages import MessageHelper
from .models import Room
from .policy import AccessPolicy
from .rooms import RoomDirectory
from .router import MessageRouter
from .session import ConnectionRegistry
from .stats import StatsManager
from .storage import SqliteStore, Store
from .util import expand_path


class RnsTransport:
    """Sends payloads over Reticulum links.

    Payloads that fit the link MDU go out as single packets; larger ones are
    sent as an RNS Resource.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("havend.transport")

    def _packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        mdu = getattr(link, "MDU", None)
        if mdu is not None:
            return len(payload) <= mdu
        try:
            RNS.Packet(link, payload).pack()
            return True
        except Exception:
            return False

    def send(self, link: RNS.Link, payload: bytes) -> bool:
        if self._packet_would_fit(link, payload):
            try:
                RNS.Packet(link, payload).send()
                return True
            except Exception:
                self.log.debug(
                    "Send failed link_id=%s bytes=%s",
                    self.hub.fmt_link_id(link),
                    len(payload),
                    exc_info=True,
                )
                return False

        if len(payload) > int(self.hub.config.max_resource_bytes):
            self.log.error(
                "Payload too large for resource transfer link_id=%s bytes=%s max=%s",
                self.hub.fmt_link_id(link),
                len(payload),
                self.hub.config.max_resource_bytes,
            )
            return False
        try:
            RNS.Resource(payload, link, advertise=True, auto_compress=False)
        except Exception as e:
            self.log.error(
                "Failed to create resource link_id=%s: %s", self.hub.fmt_link_id(link), e
            )
            return False
        self.hub.stats_manager.inc("resources_sent")
        self.log.debug(
            "Sent resource link_id=%s bytes=%s", self.hub.fmt_link_id(link), len(payload)
        )
        return True

    def configure_link_callbacks(self, link: RNS.Link) -> None:
        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(self._resource_concluded)
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s",
                self.hub.fmt_link_id(link),
                e,
            )

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        link = resource.link
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > int(self.hub.config.max_resource_bytes):
            self.log.warning(
                "Rejecting resource (too large: %s > %s) link_id=%s",
                size,
                self.hub.config.max_resource_bytes,
                self.hub.fmt_link_id(link),
            )
            return False
        if self.hub.registry.get_session(link) is None:
            return False
        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = resource.link
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s status=%s",
                self.hub.fmt_link_id(link),
                resource.status,
            )
            return
        payload = resource.data.read() if hasattr(resource.data, "read") else resource.data
        self.hub.stats_manager.inc("resources_received")
        self.hub.dispatcher.route_packet(link, bytes(payload))


class HubService:
    """
    Wires the hub components together and owns the Reticulum lifecycle.

    Construction touches no network state, so a hub can be built over any
    :class:`Store` and transport (tests pass an in-memory store and a
    recording transport). :meth:`start` brings up Reticulum.
    """

    def __init__(
        self,
        config: HubRuntimeConfig,
        store: Store | None = None,
        transport: Any = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("havend.hub")

        # Guards the stats counters.
        self._state_lock = threading.RLock()
        self._shutdown = threading.Event()

        self.store: Store = store if store is not None else SqliteStore(
            expand_path(config.db_path) if config.db_path else ":memory:"
        )
        self.transport = transport if transport is not None else RnsTransport(self)
        self.config_manager = ConfigManager(config.config_path)

        self.stats_manager = StatsManager(self)
        self.message_helper = MessageHelper(self)
        self.policy = AccessPolicy(self)
        self.registry = ConnectionRegistry(self)
        self.rooms = RoomDirectory(self)
        self.router = MessageRouter(self)
        self.history = HistoryEngine(self)
        self.invitations = InvitationWorkflow(self)
        self.commands = CommandHandler(self)
        self.dispatcher = EventDispatcher(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self._announce_thread: threading.Thread | None = None

        self._ensure_reserved_rooms()

    def _ensure_reserved_rooms(self) -> None:
        for name in sorted(RESERVED_ROOMS):
            if self.store.get_room(name) is not None:
                continue
            level = (
                self.config.admin_access_level
                if name == ROOM_ADMIN
                else self.config.default_access_level
            )
            try:
                self.store.add_room(
                    Room(room_name=name, owner=SYSTEM_SENDER, access_level=level, visibility=level)
                )
            except DuplicateKeyError:
                continue
            self.log.debug("Created reserved room=%s", name)

    def fmt_link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="havend-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s version=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
            __version__,
        )
        self.log.info(
            "Policy user_verify=%s history_lines=%s chunk_length=%s rate_limit_msgs_per_minute=%s",
            self.config.user_verify,
            self.config.history_lines,
            self.config.chunk_length,
            self.config.rate_limit_msgs_per_minute,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "haven", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if self._shutdown.wait(period if period > 0 else 1.0):
                break
            if period > 0:
                self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        self._shutdown.set()
        links = self.registry.clear_all()
        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed link_id=%s", self.fmt_link_id(link), exc_info=True)
        self.log.info("Hub stopped\n%s", self.stats_manager.format_stats())
        self.store.close()

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        self.registry.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        if isinstance(self.transport, RnsTransport):
            self.transport.configure_link_callbacks(link)

        self.log.info("Link established link_id=%s", self.fmt_link_id(link))
        if self.config.greeting:
            self.message_helper.system_message(link, [str(self.config.greeting)])

    def _on_packet(self, link: Any, data: bytes) -> None:
        self.dispatcher.route_packet(link, data)

    def _on_close(self, link: Any) -> None:
        self.commands.drop(link)
        pending = self.history.pending(link)
        rooms_count = self.rooms.drop_link(link)
        sess, was_active = self.registry.on_link_closed(link)

        user_name = sess.user_name if sess is not None else None
        if user_name and was_active:
            fields: dict[str, Any] = {"online": False, "socket_id": ""}
            if not pending:
                fields["last_online"] = now_ms()
            self.store.update_user(user_name, **fields)

        self.log.info(
            "Link closed user=%s rooms=%s pending_catch_up=%s link_id=%s",
            user_name or "-",
            rooms_count,
            pending,
            self.fmt_link_id(link),
        )

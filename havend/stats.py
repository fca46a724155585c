"""Statistics tracking and reporting for the haven hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Manages hub statistics collection and reporting.

    Tracks counters for:
    - Bytes in/out
    - Packets processed and rejected
    - Rate limiting events
    - Errors sent
    - Messages forwarded and morse signals
    - History batches delivered
    - Superseded sessions
    - Announces and resource transfers
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "msgs_forwarded": 0,
            "morse_sent": 0,
            "history_batches": 0,
            "superseded": 0,
            "announces": 0,
            "resources_sent": 0,
            "resources_received": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        session_stats = self.hub.registry.get_stats()
        room_stats = self.hub.rooms.get_stats()
        with self.hub._state_lock:
            c = dict(self._counters)

        cfg = self.hub.config
        lines: list[str] = []
        lines.append(f"havend {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"clients_total={session_stats['total']} "
            f"clients_bound={session_stats['bound']} "
            f"clients_anonymous={session_stats['anonymous']}"
        )
        lines.append(f"rooms_live={room_stats['rooms_total']} memberships={room_stats['memberships']}")

        top_rooms = room_stats["top_rooms"]
        if top_rooms:
            lines.append("top_rooms=" + ", ".join(f"{r}:{n}" for r, n in top_rooms))

        lines.append(
            f"limits: rate_limit_msgs_per_minute={cfg.rate_limit_msgs_per_minute} "
            f"history_lines={cfg.history_lines} "
            f"chunk_length={cfg.chunk_length} "
            f"max_catchup_lines={cfg.max_catchup_lines}"
        )
        lines.append(
            f"features: user_verify={cfg.user_verify} "
            f"announce_on_start={cfg.announce_on_start} "
            f"announce_period_s={cfg.announce_period_s}"
        )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "events: msgs_fwd={} morse={} history_batches={} superseded={} "
            "errors_sent={} rate_limited={}".format(
                c.get("msgs_forwarded", 0),
                c.get("morse_sent", 0),
                c.get("history_batches", 0),
                c.get("superseded", 0),
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "resources: sent={} received={} announces={}".format(
                c.get("resources_sent", 0),
                c.get("resources_received", 0),
                c.get("announces", 0),
            )
        )

        return "\n".join(lines)

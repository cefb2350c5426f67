"""Statistics tracking and reporting for the relay hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Lifetime counters for the hub.

    Tracks counters for:
    - Bytes and packets in/out
    - Bad packets, rate limiting events and errors sent
    - Registrations and disconnects
    - Messages persisted, delivered immediately, deferred and replayed
    - Typing signals, pings and announces
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_out": 0,
            "pkts_bad": 0,
            "send_failures": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "registrations": 0,
            "registrations_rejected": 0,
            "superseded": 0,
            "disconnects": 0,
            "msgs_persisted": 0,
            "msgs_persist_failed": 0,
            "msgs_too_large": 0,
            "msgs_delivered": 0,
            "msgs_deferred": 0,
            "msgs_replayed": 0,
            "typing_forwarded": 0,
            "history_requests": 0,
            "signups": 0,
            "logins": 0,
            "pings_in": 0,
            "pongs_in": 0,
            "pings_out": 0,
            "pongs_out": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self.hub._state_lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with self.hub._state_lock:
            s = self.hub.session_manager.get_stats()
            c = dict(self._counters)

        lines: list[str] = []
        lines.append(f"rdmd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"clients_total={s['total']} "
            f"clients_identified={s['identified']} "
            f"online={s['online']}"
        )
        lines.append(
            "io: pkts_in={} pkts_out={} pkts_bad={} bytes_in={} bytes_out={} send_failures={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_out", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
                c.get("send_failures", 0),
            )
        )
        lines.append(
            "presence: registrations={} rejected={} superseded={} disconnects={}".format(
                c.get("registrations", 0),
                c.get("registrations_rejected", 0),
                c.get("superseded", 0),
                c.get("disconnects", 0),
            )
        )
        lines.append(
            "messages: persisted={} persist_failed={} too_large={} delivered={} deferred={} replayed={} typing={}".format(
                c.get("msgs_persisted", 0),
                c.get("msgs_persist_failed", 0),
                c.get("msgs_too_large", 0),
                c.get("msgs_delivered", 0),
                c.get("msgs_deferred", 0),
                c.get("msgs_replayed", 0),
                c.get("typing_forwarded", 0),
            )
        )
        lines.append(
            "errors_sent={} rate_limited={} history={} signups={} logins={}".format(
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
                c.get("history_requests", 0),
                c.get("signups", 0),
                c.get("logins", 0),
            )
        )
        lines.append(
            "pings: in={} out={} pongs: in={} out={} announces={}".format(
                c.get("pings_in", 0),
                c.get("pings_out", 0),
                c.get("pongs_in", 0),
                c.get("pongs_out", 0),
                c.get("announces", 0),
            )
        )

        return "\n".join(lines)

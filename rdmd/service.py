from __future__ import annotations

import logging
import os
import queue
import signal
import threading
import time
from typing import Any, Callable

import RNS

from .accounts import AccountService
from .codec import encode
from .config import HubRuntimeConfig
from .constants import T_PING, T_USER_DISCONNECTED
from .errors import PersistenceError
from .messages import MessageHelper, Outgoing
from .presence import PresenceDirectory
from .relay import MessageRelay
from .router import MessageRouter
from .session import SessionManager
from .stats import StatsManager
from .store import MessageStore, UserStore
from .util import expand_path

_STOP = object()


class HubService:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        message_store: MessageStore | None = None,
        user_store: UserStore | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("rdmd.hub")

        # Sessions, presence and counters are touched from Reticulum callbacks,
        # the relay worker and background threads. Guard them with a single
        # re-entrant lock, never held across I/O or packet sends.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.presence = PresenceDirectory()
        self.stats_manager = StatsManager(self)
        self.message_helper = MessageHelper(self)
        self.session_manager = SessionManager(self)
        self.router = MessageRouter(self)
        self.relay = MessageRelay(self)
        self.accounts = AccountService(self)

        self.message_store = message_store
        self.user_store = user_store

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        # Store-bound work runs here, one job at a time, in arrival order.
        self._jobs: queue.Queue[Any] = queue.Queue()
        self._worker_thread: threading.Thread | None = None

        self._ping_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None

    def _fmt_hash(self, h: Any, *, prefix: int = 12) -> str:
        if isinstance(h, (bytes, bytearray)):
            s = bytes(h).hex()
            return s if prefix <= 0 else s[: min(prefix, len(s))]
        return "-"

    def _fmt_link_id(self, link: RNS.Link) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def open_stores(self) -> None:
        if self.message_store is not None and self.user_store is not None:
            return
        if not self.config.database_path:
            raise RuntimeError("database_path is not set")
        path = expand_path(str(self.config.database_path))
        if self.message_store is None:
            self.message_store = MessageStore(path)
        if self.user_store is None:
            self.user_store = UserStore(path, iterations=self.config.password_iterations)
        self.log.info("Opened message database %s", path)

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        self.open_stores()
        self.start_worker()

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
                name="rdmd-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy max_content_bytes=%s rate_limit_msgs_per_minute=%s mark_delivered=%s close_superseded=%s",
            self.config.max_content_bytes,
            self.config.rate_limit_msgs_per_minute,
            self.config.mark_delivered,
            self.config.close_superseded,
        )

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = threading.Thread(
                target=self._ping_loop, name="rdmd-ping", daemon=True
            )
            self._ping_thread.start()

    # --- Relay worker ---

    def start_worker(self) -> None:
        if self._worker_thread is not None and self._worker_thread.is_alive():
            return
        self._worker_thread = threading.Thread(
            target=self._worker_loop, name="rdmd-relay", daemon=True
        )
        self._worker_thread.start()

    def _worker_loop(self) -> None:
        while True:
            job = self._jobs.get()
            try:
                if job is _STOP:
                    return
                self._run_job(job)
            finally:
                self._jobs.task_done()

    def _run_job(self, job: Callable[[], Any]) -> None:
        try:
            job()
        except PersistenceError as e:
            self.log.error("Relay job failed: %s", e)
        except Exception:
            self.log.exception("Relay job failed")

    def submit(self, job: Callable[[], Any]) -> None:
        """Queue a job for the relay worker, or run it inline if none is running."""
        if self._worker_thread is not None and self._worker_thread.is_alive():
            self._jobs.put(job)
        else:
            self._run_job(job)

    def drain(self) -> None:
        """Block until every queued job has run."""
        self._jobs.join()

    def _stop_worker(self, timeout: float = 5.0) -> None:
        t = self._worker_thread
        if t is None or not t.is_alive():
            return
        self._jobs.put(_STOP)
        t.join(timeout)
        self._worker_thread = None

    # --- Lifecycle ---

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rdm", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(period):
                break
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        self._stop_worker()

        with self._state_lock:
            links = self.session_manager.clear_all()

        for link in links:
            self._teardown(link)

        for store in (self.message_store, self.user_store):
            if store is not None:
                try:
                    store.close()
                except Exception:
                    self.log.debug("Store close failed", exc_info=True)

        self.log.info("Hub stopped\n%s", self.stats_manager.format_stats())

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _teardown(self, link: RNS.Link) -> None:
        try:
            link.teardown()
        except Exception:
            self.log.debug(
                "Teardown failed link_id=%s", self._fmt_link_id(link), exc_info=True
            )

    # --- Link callbacks ---

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.session_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.log.info("Link established link_id=%s", self._fmt_link_id(link))

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Route under the shared lock, but send and do store I/O outside it.
        outgoing: Outgoing = []
        with self._state_lock:
            job = self.router.route_packet(link, data, outgoing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d response(s) link_id=%s",
                len(outgoing),
                self._fmt_link_id(link),
            )
        self.message_helper.flush(outgoing)

        if job is not None:
            self.submit(job)

    def _on_close(self, link: RNS.Link) -> None:
        # Queued behind any work this link already handed off, so an earlier
        # sendMessage is still persisted and a pending register cannot
        # resurrect the entry afterwards.
        self.submit(lambda: self._close_session(link))

    def _close_session(self, link: RNS.Link) -> str | None:
        outgoing: Outgoing = []
        with self._state_lock:
            freed = self.session_manager.on_link_closed(link)
            if freed is not None:
                remaining = self.session_manager.links()
                self.message_helper.queue_user_list(
                    outgoing, remaining, self.presence.snapshot()
                )
                self.message_helper.queue_broadcast(
                    outgoing, remaining, T_USER_DISCONNECTED, freed
                )

        self.stats_manager.inc("disconnects")
        self.log.info(
            "Link closed identity=%s link_id=%s",
            freed or "-",
            self._fmt_link_id(link),
        )
        self.message_helper.flush(outgoing)
        return freed

    # --- Liveness ---

    def _ping_loop(self) -> None:
        while not self._shutdown.is_set():
            interval = float(self.config.ping_interval_s)
            timeout = float(self.config.ping_timeout_s)
            if interval <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(interval):
                break
            self.ping_sweep(timeout=timeout)

    def ping_sweep(self, *, timeout: float) -> tuple[list[RNS.Link], list[RNS.Link]]:
        """Ping idle links and tear down those that missed the last pong."""
        now = time.monotonic()
        to_teardown: list[RNS.Link] = []
        to_ping: list[RNS.Link] = []

        with self._state_lock:
            for link, sess in list(self.session_manager.sessions.items()):
                awaiting = sess.get("awaiting_pong")
                if (
                    timeout > 0
                    and awaiting is not None
                    and (now - float(awaiting)) > timeout
                ):
                    to_teardown.append(link)
                    continue

                if awaiting is None:
                    sess["awaiting_pong"] = now
                    to_ping.append(link)

        for link in to_teardown:
            self.log.info("Ping timeout link_id=%s", self._fmt_link_id(link))
            self._teardown(link)

        for link in to_ping:
            self.stats_manager.inc("pings_out")
            self.message_helper.send(link, T_PING, int(now * 1000))

        return to_teardown, to_ping

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

if TYPE_CHECKING:
    from .service import HubService


class SessionState(enum.Enum):
    ANONYMOUS = "anonymous"
    IDENTIFIED = "identified"
    CLOSED = "closed"


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class SessionManager:
    """
    Manages the per-link connection state machine.

    ANONYMOUS (link established) -> IDENTIFIED (successful register)
    -> CLOSED (link closed). A superseded link drops back to ANONYMOUS.

    This class is responsible for:
    - Session creation and teardown
    - Binding a link to an identity through the presence directory
    - Rate limiting with a token bucket
    - Liveness bookkeeping for hub-initiated pings

    Every method must be called with the hub state lock held.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rdmd.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        self.sessions[link] = {
            "state": SessionState.ANONYMOUS,
            "identity": None,
            "awaiting_pong": None,
        }

        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )

        self.log.info("Session created link_id=%s", self.hub._fmt_link_id(link))

    def on_link_closed(self, link: RNS.Link) -> str | None:
        """
        Close the session and release its presence entry.

        Returns the freed identity, or None if the link held no entry.
        """
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)
        if sess is not None:
            sess["state"] = SessionState.CLOSED

        return self.hub.presence.unregister(link)

    def is_open(self, link: RNS.Link) -> bool:
        return link in self.sessions

    def identify(self, link: RNS.Link, identity: str) -> RNS.Link | None:
        """
        Transition link to IDENTIFIED(identity).

        Returns the link previously holding this identity, which is demoted
        to ANONYMOUS.
        """
        sess = self.sessions.get(link)
        if sess is None:
            return None

        superseded = self.hub.presence.register(identity, link)
        sess["state"] = SessionState.IDENTIFIED
        sess["identity"] = identity

        if superseded is not None:
            self.demote(superseded)
        return superseded

    def demote(self, link: RNS.Link) -> None:
        sess = self.sessions.get(link)
        if sess is None:
            return
        if self.hub.presence.identity_of(link) is not None:
            self.hub.presence.unregister(link)
        sess["state"] = SessionState.ANONYMOUS
        sess["identity"] = None

    def identity_for(self, link: RNS.Link) -> str | None:
        sess = self.sessions.get(link)
        if sess is None or sess["state"] is not SessionState.IDENTIFIED:
            return None
        return sess["identity"]

    def state_of(self, link: RNS.Link) -> SessionState:
        sess = self.sessions.get(link)
        if sess is None:
            return SessionState.CLOSED
        return sess["state"]

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def links(self) -> list[RNS.Link]:
        return list(self.sessions.keys())

    def clear_all(self) -> list[RNS.Link]:
        """Clear all sessions and return the links for teardown."""
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        self.hub.presence.clear()
        return links

    def get_stats(self) -> dict[str, int]:
        total = len(self.sessions)
        identified = sum(
            1 for s in self.sessions.values() if s["state"] is SessionState.IDENTIFIED
        )
        return {
            "total": total,
            "identified": identified,
            "anonymous": total - identified,
            "online": len(self.hub.presence),
        }

"""Outbound packet construction, queueing and sending for the hub."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

import RNS

from .codec import encode
from .constants import B_LIST_MORE, B_LIST_USERS, LINK_MDU, T_ERROR, T_USER_LIST
from .envelope import make_envelope, record_envelope_size

if TYPE_CHECKING:
    from .service import HubService

Outgoing = list[tuple[RNS.Link, bytes]]


class MessageHelper:
    """
    Helper methods for sending and queueing envelopes.

    Handles:
    - Envelope construction with the hub's source hash
    - Outgoing queues, filled under the state lock and flushed after it
    - userList chunking to fit the link MDU
    - MDU checks for message records before they are stored
    - Error emission
    - Immediate sends that report whether the link accepted the packet
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log

    def envelope(self, msg_type: int, body: Any = None) -> dict:
        src = self.hub.identity.hash if self.hub.identity is not None else None
        return make_envelope(msg_type, src=src, body=body)

    def link_mdu(self, link: RNS.Link) -> int:
        mdu = getattr(link, "MDU", None)
        return int(mdu) if mdu is not None else LINK_MDU

    def packet_would_fit(self, link: RNS.Link, size: int) -> bool:
        """Check if a payload of ``size`` bytes fits within the link MDU."""
        return size <= self.link_mdu(link)

    def record_fits(self, link: RNS.Link, body: dict) -> bool:
        """True if every envelope carrying this message record fits the link."""
        return self.packet_would_fit(link, record_envelope_size(body))

    def queue_payload(self, outgoing: Outgoing, link: RNS.Link, payload: bytes) -> None:
        outgoing.append((link, payload))

    def queue_env(self, outgoing: Outgoing, link: RNS.Link, env: dict) -> None:
        self.queue_payload(outgoing, link, encode(env))

    def queue(self, outgoing: Outgoing, link: RNS.Link, msg_type: int, body: Any = None) -> None:
        self.queue_env(outgoing, link, self.envelope(msg_type, body))

    def queue_broadcast(
        self, outgoing: Outgoing, links: Iterable[RNS.Link], msg_type: int, body: Any = None
    ) -> None:
        payload = encode(self.envelope(msg_type, body))
        for link in links:
            self.queue_payload(outgoing, link, payload)

    def queue_error(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        text: str,
        *,
        msg_type: int = T_ERROR,
    ) -> None:
        self.hub.stats_manager.inc("errors_sent")
        self.queue(outgoing, link, msg_type, text)

    def user_list_payloads(self, users: list[str], mdu: int | None) -> list[bytes]:
        """
        Encode a presence snapshot as one or more userList envelopes.

        Every envelope but the last carries ``more=True``. The list is split
        into halves until each part fits ``mdu``.
        """
        def _payload(part: list[str], more: bool) -> bytes:
            return encode(self.envelope(T_USER_LIST, {B_LIST_USERS: part, B_LIST_MORE: more}))

        if mdu is None or not users or len(_payload(users, False)) <= mdu:
            return [_payload(users, False)]

        parts: list[list[str]] = []
        remaining = list(users)
        per_part = len(remaining)
        while remaining:
            take = min(per_part, len(remaining))
            part = remaining[:take]
            # CBOR encodes True and False in one byte, so the flag never changes the size.
            fits = len(_payload(part, True)) <= mdu
            if fits or take <= 1:
                if fits:
                    parts.append(part)
                else:
                    self.log.warning("userList entry would not fit MTU; dropping it")
                remaining = remaining[take:]
                continue
            per_part = max(1, take // 2)

        return [_payload(p, i < len(parts) - 1) for i, p in enumerate(parts)]

    def queue_user_list(
        self, outgoing: Outgoing, links: Iterable[RNS.Link], users: list[str]
    ) -> None:
        cache: dict[int | None, list[bytes]] = {}
        for link in links:
            mdu = getattr(link, "MDU", None)
            key = int(mdu) if mdu is not None else None
            if key not in cache:
                cache[key] = self.user_list_payloads(users, key)
            for payload in cache[key]:
                self.queue_payload(outgoing, link, payload)

    def flush(self, outgoing: Outgoing) -> None:
        """Send queued payloads. Must be called without the state lock held."""
        for link, payload in outgoing:
            self.send_payload(link, payload)

    def send(self, link: RNS.Link, msg_type: int, body: Any = None) -> bool:
        return self.send_payload(link, encode(self.envelope(msg_type, body)))

    def send_error(self, link: RNS.Link, text: str, *, msg_type: int = T_ERROR) -> bool:
        self.hub.stats_manager.inc("errors_sent")
        return self.send(link, msg_type, text)

    def send_payload(self, link: RNS.Link, payload: bytes) -> bool:
        """
        Hand one packet to a link. Returns False if the link refused it.

        Failures are logged and never raised: a closed or broken link must
        not affect other links.
        """
        try:
            receipt = RNS.Packet(link, payload).send()
        except OSError as e:
            # Common failure modes: packet too large, link already closed.
            self.hub.stats_manager.inc("send_failures")
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                e,
            )
            return False
        except Exception:
            self.hub.stats_manager.inc("send_failures")
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
            return False

        if receipt is False:
            self.hub.stats_manager.inc("send_failures")
            return False

        self.hub.stats_manager.inc("pkts_out")
        self.hub.stats_manager.inc("bytes_out", len(payload))
        return True

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import RNS


class PresenceDirectory:
    """
    Who is online, and on which link.

    Holds at most one entry per identity and at most one identity per link.
    Not thread-safe by itself: every call must be made with the hub state
    lock held, and no I/O may happen between a read and the write that
    depends on it.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("rdmd.presence")
        self._entries: dict[str, RNS.Link] = {}

    def register(self, identity: str, link: RNS.Link) -> RNS.Link | None:
        """
        Associate identity with link, replacing any prior association.

        If the link was already registered under another identity, that entry
        is released first. Returns the superseded link for this identity, if
        it was a different link.
        """
        previous_identity = self.identity_of(link)
        if previous_identity is not None and previous_identity != identity:
            self._entries.pop(previous_identity, None)

        previous = self._entries.get(identity)
        self._entries[identity] = link

        if previous is not None and previous is not link:
            self.log.debug("Presence superseded identity=%s", identity)
            return previous
        return None

    def unregister(self, link: RNS.Link) -> str | None:
        """Remove the entry held by link; returns the freed identity."""
        identity = self.identity_of(link)
        if identity is not None:
            del self._entries[identity]
        return identity

    def lookup(self, identity: str) -> RNS.Link | None:
        return self._entries.get(identity)

    def identity_of(self, link: RNS.Link) -> str | None:
        # Linear scan; connection counts are small.
        for identity, entry_link in self._entries.items():
            if entry_link is link:
                return identity
        return None

    def snapshot(self) -> list[str]:
        return sorted(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

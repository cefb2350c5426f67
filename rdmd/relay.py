from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import RNS

from .constants import (
    B_HIST_COUNT,
    B_HIST_REQ,
    B_USER_TYPING_ID,
    T_ERROR,
    T_HISTORY_END,
    T_HISTORY_ITEM,
    T_MESSAGE_ERROR,
    T_MESSAGE_SENT,
    T_RECEIVE_MESSAGE,
    T_USER_DISCONNECTED,
    T_USER_TYPING,
)
from .errors import DeliveryFailure, PersistenceError
from .messages import Outgoing
from .store import MessageRecord

if TYPE_CHECKING:
    from .service import HubService


class MessageRelay:
    """
    Persist-then-forward message relay.

    Every message is written to the message store before any delivery
    attempt. Delivery to an online recipient is best-effort; anything that
    is not delivered stays pending and is replayed when the recipient
    registers again.

    All public methods run on the relay worker with the state lock released;
    they take the lock only around session and presence reads and writes.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rdmd.relay")

    # --- Presence ---

    def register(self, link: RNS.Link, identity: str) -> bool:
        hub = self.hub
        try:
            user = hub.user_store.get_user(identity)
        except PersistenceError as e:
            self.log.error(
                "Register lookup failed identity=%s link_id=%s err=%s",
                identity,
                hub._fmt_link_id(link),
                e,
            )
            hub.stats_manager.inc("registrations_rejected")
            hub.message_helper.send_error(link, "failed to register user")
            return False

        if user is None:
            self.log.info(
                "Register rejected unknown identity=%s link_id=%s",
                identity,
                hub._fmt_link_id(link),
            )
            hub.stats_manager.inc("registrations_rejected")
            hub.message_helper.send_error(link, "unknown identity")
            return False

        outgoing: Outgoing = []
        with hub._state_lock:
            if not hub.session_manager.is_open(link):
                # Closed while the lookup was in flight.
                self.log.debug(
                    "Register dropped for closed link_id=%s", hub._fmt_link_id(link)
                )
                return False

            previous = hub.session_manager.identity_for(link)
            superseded = hub.session_manager.identify(link, identity)
            if previous is not None and previous != identity:
                hub.message_helper.queue_broadcast(
                    outgoing, hub.session_manager.links(), T_USER_DISCONNECTED, previous
                )
            if superseded is not None:
                hub.message_helper.queue_error(
                    outgoing,
                    superseded,
                    "superseded: identity registered from another connection",
                )
            hub.message_helper.queue_user_list(
                outgoing, hub.session_manager.links(), hub.presence.snapshot()
            )
            hub.stats_manager.inc("registrations")

        self.log.info(
            "Registered identity=%s username=%r link_id=%s",
            identity,
            user.username,
            hub._fmt_link_id(link),
        )
        if superseded is not None:
            hub.stats_manager.inc("superseded")
            self.log.info(
                "Superseded identity=%s old_link_id=%s",
                identity,
                hub._fmt_link_id(superseded),
            )

        hub.message_helper.flush(outgoing)

        if superseded is not None and hub.config.close_superseded:
            hub._teardown(superseded)

        self.replay(link, identity)
        return True

    def replay(self, link: RNS.Link, identity: str) -> int:
        """Send undelivered messages for identity to link, oldest first."""
        try:
            pending = self.hub.message_store.pending_for(identity)
        except PersistenceError as e:
            self.log.error("Replay query failed identity=%s err=%s", identity, e)
            self.hub.message_helper.send_error(link, "failed to load pending messages")
            return 0

        sent: list[str] = []
        for record in pending:
            if not self.hub.message_helper.record_fits(link, record.to_body()):
                # Stored before the size check existed, or under a larger MDU.
                self.log.warning(
                    "Skipping oversize pending message_id=%s identity=%s",
                    record.message_id,
                    identity,
                )
                continue
            try:
                self._deliver(link, record)
            except DeliveryFailure as e:
                # The rest stays pending for the next registration.
                self.log.debug("Replay interrupted identity=%s: %s", identity, e)
                break
            sent.append(record.message_id)

        if sent:
            self.hub.stats_manager.inc("msgs_replayed", len(sent))
            self.log.info(
                "Replayed %d/%d pending message(s) identity=%s",
                len(sent),
                len(pending),
                identity,
            )
        self._mark_delivered(sent)
        return len(sent)

    # --- Messages ---

    def send(
        self, link: RNS.Link, claimed_sender: Any, recipient: str, content: str
    ) -> MessageRecord | None:
        hub = self.hub
        sender = self._bind_sender(link, claimed_sender, T_MESSAGE_ERROR)
        if sender is None:
            return None

        record = MessageRecord.new(sender, recipient, content)
        if not hub.message_helper.record_fits(link, record.to_body()):
            self.log.info(
                "Rejected oversize message sender=%s recipient=%s content_bytes=%d",
                sender,
                recipient,
                len(content.encode("utf-8")),
            )
            hub.stats_manager.inc("msgs_too_large")
            hub.message_helper.send_error(
                link, "message too large for link", msg_type=T_MESSAGE_ERROR
            )
            return None

        try:
            hub.message_store.append(record)
        except PersistenceError as e:
            self.log.error(
                "Persist failed sender=%s recipient=%s err=%s", sender, recipient, e
            )
            hub.stats_manager.inc("msgs_persist_failed")
            hub.message_helper.send_error(
                link, "failed to send message", msg_type=T_MESSAGE_ERROR
            )
            return None

        hub.stats_manager.inc("msgs_persisted")

        with hub._state_lock:
            target = hub.presence.lookup(recipient)

        if target is None:
            hub.stats_manager.inc("msgs_deferred")
            self.log.debug(
                "Deferred message_id=%s recipient=%s offline",
                record.message_id,
                recipient,
            )
        else:
            try:
                self._deliver(target, record)
            except DeliveryFailure as e:
                hub.stats_manager.inc("msgs_deferred")
                self.log.debug("Deferred message_id=%s: %s", record.message_id, e)
            else:
                hub.stats_manager.inc("msgs_delivered")
                self._mark_delivered([record.message_id])

        hub.message_helper.send(link, T_MESSAGE_SENT, record.to_body())
        return record

    def typing(self, link: RNS.Link, claimed_sender: Any, recipient: str) -> bool:
        """Forward a transient typing signal to an online recipient."""
        sender = self._bind_sender(link, claimed_sender, T_ERROR)
        if sender is None:
            return False

        with self.hub._state_lock:
            target = self.hub.presence.lookup(recipient)
        if target is None:
            return False

        self.hub.stats_manager.inc("typing_forwarded")
        return self.hub.message_helper.send(
            target, T_USER_TYPING, {B_USER_TYPING_ID: sender}
        )

    def history(self, link: RNS.Link, peer: str, req_id: bytes) -> int:
        hub = self.hub
        identity = self._bind_sender(link, None, T_ERROR)
        if identity is None:
            return 0

        hub.stats_manager.inc("history_requests")
        try:
            records = hub.message_store.between(
                identity, peer, limit=int(hub.config.history_limit)
            )
        except PersistenceError as e:
            self.log.error("History query failed identity=%s err=%s", identity, e)
            hub.message_helper.send_error(link, "failed to load history")
            return 0

        # Items carry no request id; they precede the matching historyEnd on the link.
        for record in records:
            hub.message_helper.send(link, T_HISTORY_ITEM, record.to_body())

        hub.message_helper.send(
            link, T_HISTORY_END, {B_HIST_COUNT: len(records), B_HIST_REQ: req_id}
        )
        return len(records)

    def _bind_sender(self, link: RNS.Link, claimed: Any, error_type: int) -> str | None:
        """
        The identity registered on link.

        A payload may name its sender, but it must match the registration;
        anonymous links and mismatches get an error and None.
        """
        with self.hub._state_lock:
            identity = self.hub.session_manager.identity_for(link)

        if identity is None:
            self.hub.message_helper.send_error(link, "register first", msg_type=error_type)
            return None
        if claimed is not None and claimed != identity:
            self.log.warning(
                "Sender mismatch claimed=%r identity=%s link_id=%s",
                claimed,
                identity,
                self.hub._fmt_link_id(link),
            )
            self.hub.message_helper.send_error(link, "sender mismatch", msg_type=error_type)
            return None
        return identity

    def _deliver(self, link: RNS.Link, record: MessageRecord) -> None:
        if not self.hub.message_helper.send(link, T_RECEIVE_MESSAGE, record.to_body()):
            raise DeliveryFailure(
                f"link {self.hub._fmt_link_id(link)} refused message_id={record.message_id}"
            )

    def _mark_delivered(self, message_ids: list[str]) -> None:
        if not message_ids or not self.hub.config.mark_delivered:
            return
        try:
            self.hub.message_store.mark_delivered(message_ids)
        except PersistenceError as e:
            # Left pending; the recipient sees them again on its next replay.
            self.log.warning(
                "Could not mark %d message(s) delivered: %s", len(message_ids), e
            )

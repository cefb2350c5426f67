from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

import RNS

from .codec import decode
from .constants import (
    B_ACCT_PASSWORD,
    B_ACCT_USERNAME,
    B_HIST_PEER,
    B_SEND_CONTENT,
    B_SEND_RECIPIENT,
    B_SEND_SENDER,
    B_TYPING_RECIPIENT,
    B_TYPING_SENDER,
    K_BODY,
    K_ID,
    K_T,
    T_ERROR,
    T_HISTORY,
    T_LOGIN,
    T_MESSAGE_ERROR,
    T_PING,
    T_PONG,
    T_REGISTER,
    T_SEND_MESSAGE,
    T_SIGNUP,
    T_TYPING,
    TYPE_NAMES,
)
from .envelope import validate_envelope
from .errors import ValidationError
from .messages import Outgoing
from .util import normalize_identity, normalize_username, validate_content

if TYPE_CHECKING:
    from .service import HubService

Job = Callable[[], Any]


class MessageRouter:
    """
    Decodes inbound packets and dispatches them by type.

    This class is responsible for:
    - Decoding and validating envelopes
    - Rate limiting
    - Validating event bodies
    - Answering ping/pong immediately
    - Returning a job for every other event; the hub runs jobs in arrival
      order on the relay worker, so an event never overtakes an earlier
      register from the same link

    route_packet must be called with the state lock held.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rdmd.router")

    def route_packet(
        self,
        link: RNS.Link,
        data: bytes,
        outgoing: Outgoing,
    ) -> Job | None:
        sess = self.hub.session_manager.get_session(link)
        if sess is None:
            return None

        stats = self.hub.stats_manager
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        if not self.hub.session_manager.refill_and_take(link, 1.0):
            stats.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited link_id=%s", self.hub._fmt_link_id(link))
            self.hub.message_helper.queue_error(outgoing, link, "rate limited")
            return None

        try:
            env = decode(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(data),
                e,
            )
            self.hub.message_helper.queue_error(outgoing, link, f"bad message: {e}")
            return None

        t = env[K_T]
        body = env.get(K_BODY)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s t=%s identity=%s bytes=%s",
                self.hub._fmt_link_id(link),
                TYPE_NAMES.get(t, t),
                sess.get("identity"),
                len(data),
            )

        try:
            if t == T_PONG:
                stats.inc("pongs_in")
                sess["awaiting_pong"] = None
            elif t == T_PING:
                stats.inc("pings_in")
                stats.inc("pongs_out")
                self.hub.message_helper.queue(outgoing, link, T_PONG, body)
            elif t == T_REGISTER:
                return self._handle_register(link, body)
            elif t == T_SEND_MESSAGE:
                return self._handle_send(link, body)
            elif t == T_TYPING:
                return self._handle_typing(link, body)
            elif t == T_HISTORY:
                return self._handle_history(link, env)
            elif t in (T_SIGNUP, T_LOGIN):
                return self._handle_account(link, t, body)
            else:
                self.hub.message_helper.queue_error(
                    outgoing, link, f"unsupported message type {t}"
                )
        except ValidationError as e:
            msg_type = T_MESSAGE_ERROR if t == T_SEND_MESSAGE else T_ERROR
            self.hub.message_helper.queue_error(outgoing, link, str(e), msg_type=msg_type)
        return None

    def _handle_register(self, link: RNS.Link, body: Any) -> Job:
        identity = normalize_identity(body, max_chars=self.hub.config.identity_max_chars)
        return lambda: self.hub.relay.register(link, identity)

    def _handle_send(self, link: RNS.Link, body: Any) -> Job:
        if not isinstance(body, dict):
            raise ValidationError("sendMessage body must be a map")

        claimed = body.get(B_SEND_SENDER)
        recipient = normalize_identity(
            body.get(B_SEND_RECIPIENT), max_chars=self.hub.config.identity_max_chars
        )
        content = validate_content(
            body.get(B_SEND_CONTENT), max_bytes=self.hub.config.max_content_bytes
        )
        return lambda: self.hub.relay.send(link, claimed, recipient, content)

    def _handle_typing(self, link: RNS.Link, body: Any) -> Job:
        if not isinstance(body, dict):
            raise ValidationError("typing body must be a map")

        claimed = body.get(B_TYPING_SENDER)
        recipient = normalize_identity(
            body.get(B_TYPING_RECIPIENT), max_chars=self.hub.config.identity_max_chars
        )
        return lambda: self.hub.relay.typing(link, claimed, recipient)

    def _handle_history(self, link: RNS.Link, env: dict) -> Job:
        body = env.get(K_BODY)
        if not isinstance(body, dict):
            raise ValidationError("history body must be a map")

        peer = normalize_identity(
            body.get(B_HIST_PEER), max_chars=self.hub.config.identity_max_chars
        )
        req_id = bytes(env[K_ID])
        return lambda: self.hub.relay.history(link, peer, req_id)

    def _handle_account(self, link: RNS.Link, t: int, body: Any) -> Job:
        if not isinstance(body, dict):
            raise ValidationError("account body must be a map")

        username = normalize_username(
            body.get(B_ACCT_USERNAME), max_chars=self.hub.config.username_max_chars
        )
        password = body.get(B_ACCT_PASSWORD)
        if not isinstance(password, str) or not password:
            raise ValidationError("password must be a non-empty string")

        if t == T_SIGNUP:
            return lambda: self.hub.accounts.signup(link, username, password)
        return lambda: self.hub.accounts.login(link, username, password)

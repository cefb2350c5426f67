from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Any

import pytest
import RNS

from rdmd.codec import decode, encode
from rdmd.config import HubRuntimeConfig
from rdmd.constants import K_BODY, K_T, T_REGISTER
from rdmd.envelope import make_envelope
from rdmd.service import HubService
from rdmd.store import MessageStore, UserStore


class FakeLink:
    """Stands in for RNS.Link: records callbacks and tears down locally."""

    MDU = 431

    def __init__(self) -> None:
        self.link_id = os.urandom(16)
        self.closed = False
        self.packet_callback = None
        self.closed_callback = None

    def set_packet_callback(self, cb) -> None:
        self.packet_callback = cb

    def set_link_closed_callback(self, cb) -> None:
        self.closed_callback = cb

    def teardown(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.closed_callback is not None:
            self.closed_callback(self)


class Wire:
    """Every packet the hub handed to RNS, in send order."""

    def __init__(self) -> None:
        self.sent: list[tuple[Any, bytes]] = []

    def envelopes(self, link, msg_type: int | None = None) -> list[dict]:
        out = []
        for dst, payload in self.sent:
            if dst is not link:
                continue
            env = decode(payload)
            if msg_type is None or env[K_T] == msg_type:
                out.append(env)
        return out

    def bodies(self, link, msg_type: int) -> list[Any]:
        return [env.get(K_BODY) for env in self.envelopes(link, msg_type)]

    def types(self, link) -> list[int]:
        return [env[K_T] for env in self.envelopes(link)]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def wire(monkeypatch) -> Wire:
    w = Wire()

    class FakePacket:
        def __init__(self, link, payload: bytes) -> None:
            self.link = link
            self.payload = payload

        def send(self):
            if getattr(self.link, "closed", False):
                raise OSError("Attempt to transmit over a closed link")
            mdu = getattr(self.link, "MDU", None)
            if mdu is not None and len(self.payload) > mdu:
                raise OSError(f"Packet size of {len(self.payload)} exceeds MDU of {mdu} bytes")
            w.sent.append((self.link, self.payload))
            return True

    monkeypatch.setattr(RNS, "Packet", FakePacket)
    return w


class Harness:
    def __init__(self, hub: HubService, wire: Wire) -> None:
        self.hub = hub
        self.wire = wire

    def connect(self) -> FakeLink:
        link = FakeLink()
        self.hub._on_link(link)
        return link

    def packet(self, link: FakeLink, msg_type: int, body: Any = None, **kw) -> None:
        self.hub._on_packet(link, encode(make_envelope(msg_type, body=body, **kw)))

    def user(self, name: str, password: str = "secret") -> str:
        return self.hub.user_store.create_user(name, password).user_id

    def online(self, name: str) -> tuple[FakeLink, str]:
        """Create a user, connect a link and register it."""
        identity = self.user(name)
        link = self.connect()
        self.packet(link, T_REGISTER, identity)
        return link, identity


@pytest.fixture
def make_hub(wire):
    hubs: list[HubService] = []

    def _make(**overrides) -> Harness:
        cfg = HubRuntimeConfig(password_iterations=1000, **overrides)
        hub = HubService(
            cfg,
            message_store=MessageStore(":memory:"),
            user_store=UserStore(":memory:", iterations=1000),
        )
        # Envelopes carry a source hash as they do in production.
        hub.identity = SimpleNamespace(hash=os.urandom(16))
        hubs.append(hub)
        return Harness(hub, wire)

    yield _make

    for hub in hubs:
        hub.message_store.close()
        hub.user_store.close()


@pytest.fixture
def h(make_hub) -> Harness:
    return make_hub()

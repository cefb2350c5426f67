from __future__ import annotations

from rdmd.constants import (
    B_ACCT_NAME,
    B_ACCT_PASSWORD,
    B_ACCT_USER_ID,
    B_ACCT_USERNAME,
    T_ERROR,
    T_LOGIN,
    T_LOGIN_OK,
    T_PING,
    T_PONG,
    T_REGISTER,
    T_SEND_MESSAGE,
    T_SIGNUP,
    T_SIGNUP_OK,
    T_USER_LIST,
)


def test_ping_is_answered_with_same_body(h) -> None:
    link = h.connect()
    h.packet(link, T_PING, 12345)

    assert h.wire.bodies(link, T_PONG) == [12345]


def test_pong_clears_pending_liveness_check(h) -> None:
    link = h.connect()
    h.hub.session_manager.get_session(link)["awaiting_pong"] = 1.0

    h.packet(link, T_PONG, 1)

    assert h.hub.session_manager.get_session(link)["awaiting_pong"] is None


def test_garbage_is_reported_as_bad_message(h) -> None:
    link = h.connect()
    h.hub._on_packet(link, b"\xff\xfe not cbor")

    errors = h.wire.bodies(link, T_ERROR)
    assert len(errors) == 1
    assert errors[0].startswith("bad message:")
    assert h.hub.stats_manager.get("pkts_bad") == 1


def test_envelope_must_be_a_map(h) -> None:
    from rdmd.codec import encode

    link = h.connect()
    h.hub._on_packet(link, encode([1, 2, 3]))

    assert h.wire.bodies(link, T_ERROR) == [
        "bad message: envelope must be a CBOR map (dict)"
    ]


def test_unknown_type_is_rejected(h) -> None:
    link = h.connect()
    h.packet(link, 99)

    assert h.wire.bodies(link, T_ERROR) == ["unsupported message type 99"]


def test_send_body_must_be_a_map(h) -> None:
    from rdmd.constants import T_MESSAGE_ERROR

    link = h.connect()
    h.packet(link, T_SEND_MESSAGE, "hello")

    assert h.wire.bodies(link, T_MESSAGE_ERROR) == ["sendMessage body must be a map"]


def test_rate_limit_drops_excess_packets(make_hub) -> None:
    h = make_hub(rate_limit_msgs_per_minute=2)
    link = h.connect()

    for i in range(3):
        h.packet(link, T_PING, i)

    assert h.wire.bodies(link, T_PONG) == [0, 1]
    assert h.wire.bodies(link, T_ERROR) == ["rate limited"]
    assert h.hub.stats_manager.get("rate_limited") == 1


def test_packets_after_close_are_ignored(h) -> None:
    link = h.connect()
    link.teardown()

    h.packet(link, T_PING, 1)

    assert h.wire.envelopes(link) == []
    assert h.hub.stats_manager.get("pkts_in") == 0


def test_signup_then_login_then_register(h) -> None:
    link = h.connect()
    creds = {B_ACCT_USERNAME: "alice", B_ACCT_PASSWORD: "pw"}

    h.packet(link, T_SIGNUP, creds)
    (signed_up,) = h.wire.bodies(link, T_SIGNUP_OK)
    assert signed_up[B_ACCT_NAME] == "alice"

    h.packet(link, T_LOGIN, creds)
    (logged_in,) = h.wire.bodies(link, T_LOGIN_OK)
    assert logged_in[B_ACCT_USER_ID] == signed_up[B_ACCT_USER_ID]

    h.packet(link, T_REGISTER, logged_in[B_ACCT_USER_ID])
    assert h.wire.bodies(link, T_USER_LIST)
    assert h.hub.presence.lookup(logged_in[B_ACCT_USER_ID]) is link


def test_signup_rejects_duplicate_username(h) -> None:
    h.user("alice")
    link = h.connect()

    h.packet(link, T_SIGNUP, {B_ACCT_USERNAME: "alice", B_ACCT_PASSWORD: "pw"})

    assert h.wire.bodies(link, T_ERROR) == ["username already exists"]


def test_signup_can_be_disabled(make_hub) -> None:
    h = make_hub(allow_signup=False)
    link = h.connect()

    h.packet(link, T_SIGNUP, {B_ACCT_USERNAME: "alice", B_ACCT_PASSWORD: "pw"})

    assert h.wire.bodies(link, T_ERROR) == ["signup disabled"]
    assert h.hub.user_store.get_by_username("alice") is None


def test_login_rejects_wrong_password(h) -> None:
    h.user("alice", password="right")
    link = h.connect()

    h.packet(link, T_LOGIN, {B_ACCT_USERNAME: "alice", B_ACCT_PASSWORD: "wrong"})
    h.packet(link, T_LOGIN, {B_ACCT_USERNAME: "nobody", B_ACCT_PASSWORD: "right"})

    assert h.wire.bodies(link, T_ERROR) == ["invalid credentials", "invalid credentials"]
    assert h.wire.bodies(link, T_LOGIN_OK) == []


def test_account_requests_need_a_password(h) -> None:
    link = h.connect()
    h.packet(link, T_SIGNUP, {B_ACCT_USERNAME: "alice"})

    assert h.wire.bodies(link, T_ERROR) == ["password must be a non-empty string"]

import time

from rdmd.config import HubRuntimeConfig
from rdmd.service import HubService
from rdmd.session import SessionState


class _Link:
    link_id = b"\x00" * 16


def _hub(**overrides) -> HubService:
    return HubService(HubRuntimeConfig(**overrides))


def test_new_link_is_anonymous() -> None:
    hub = _hub()
    link = _Link()
    hub.session_manager.on_link_established(link)

    assert hub.session_manager.state_of(link) is SessionState.ANONYMOUS
    assert hub.session_manager.identity_for(link) is None
    assert hub.session_manager.is_open(link)


def test_identify_binds_identity_and_presence() -> None:
    hub = _hub()
    sm = hub.session_manager
    link = _Link()
    sm.on_link_established(link)

    assert sm.identify(link, "alice") is None
    assert sm.state_of(link) is SessionState.IDENTIFIED
    assert sm.identity_for(link) == "alice"
    assert hub.presence.lookup("alice") is link


def test_identify_again_switches_identity() -> None:
    hub = _hub()
    sm = hub.session_manager
    link = _Link()
    sm.on_link_established(link)

    sm.identify(link, "alice")
    sm.identify(link, "bob")

    assert sm.identity_for(link) == "bob"
    assert hub.presence.snapshot() == ["bob"]


def test_identify_supersedes_and_demotes_previous_link() -> None:
    hub = _hub()
    sm = hub.session_manager
    old, new = _Link(), _Link()
    sm.on_link_established(old)
    sm.on_link_established(new)

    sm.identify(old, "carol")
    superseded = sm.identify(new, "carol")

    assert superseded is old
    assert sm.state_of(old) is SessionState.ANONYMOUS
    assert sm.identity_for(old) is None
    assert sm.identity_for(new) == "carol"


def test_close_returns_freed_identity() -> None:
    hub = _hub()
    sm = hub.session_manager
    link = _Link()
    sm.on_link_established(link)
    sm.identify(link, "alice")

    assert sm.on_link_closed(link) == "alice"
    assert sm.state_of(link) is SessionState.CLOSED
    assert not sm.is_open(link)
    assert "alice" not in hub.presence


def test_close_anonymous_link_frees_nothing() -> None:
    hub = _hub()
    sm = hub.session_manager
    link = _Link()
    sm.on_link_established(link)

    assert sm.on_link_closed(link) is None


def test_identify_unknown_link_does_nothing() -> None:
    hub = _hub()
    assert hub.session_manager.identify(_Link(), "alice") is None
    assert len(hub.presence) == 0


def test_rate_limit_token_bucket() -> None:
    hub = _hub(rate_limit_msgs_per_minute=3)
    sm = hub.session_manager
    link = _Link()
    sm.on_link_established(link)

    assert [sm.refill_and_take(link) for _ in range(4)] == [True, True, True, False]

    # 20s at 3/min refills one token.
    sm._rate[link].last_refill = time.monotonic() - 20.0
    assert sm.refill_and_take(link) is True


def test_stats_and_clear_all() -> None:
    hub = _hub()
    sm = hub.session_manager
    a, b = _Link(), _Link()
    sm.on_link_established(a)
    sm.on_link_established(b)
    sm.identify(a, "alice")

    assert sm.get_stats() == {"total": 2, "identified": 1, "anonymous": 1, "online": 1}

    links = sm.clear_all()
    assert set(links) == {a, b}
    assert len(hub.presence) == 0
    assert sm.get_stats()["total"] == 0

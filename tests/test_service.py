import threading
import time

from rdmd.constants import T_PING, T_REGISTER


def test_worker_runs_jobs_in_submission_order(h) -> None:
    hub = h.hub
    seen: list[int] = []
    hub.start_worker()
    try:
        for i in range(20):
            hub.submit(lambda i=i: seen.append(i))
        hub.drain()
    finally:
        hub._stop_worker()

    assert seen == list(range(20))


def test_worker_runs_off_the_callback_thread(h) -> None:
    hub = h.hub
    threads: list[str] = []
    hub.start_worker()
    try:
        hub.submit(lambda: threads.append(threading.current_thread().name))
        hub.drain()
    finally:
        hub._stop_worker()

    assert threads == ["rdmd-relay"]


def test_failing_job_does_not_stop_worker(h) -> None:
    hub = h.hub
    seen: list[str] = []

    def boom():
        raise RuntimeError("boom")

    hub.start_worker()
    try:
        hub.submit(boom)
        hub.submit(lambda: seen.append("after"))
        hub.drain()
    finally:
        hub._stop_worker()

    assert seen == ["after"]


def test_register_through_worker_then_close(h) -> None:
    hub = h.hub
    alice = h.user("alice")
    hub.start_worker()
    try:
        link = h.connect()
        h.packet(link, T_REGISTER, alice)
        link.teardown()
        hub.drain()
    finally:
        hub._stop_worker()

    # Close was queued behind the register, so nothing is left behind.
    assert alice not in hub.presence
    assert not hub.session_manager.is_open(link)


def test_ping_sweep_pings_then_times_out(h) -> None:
    hub = h.hub
    link = h.connect()

    torn, pinged = hub.ping_sweep(timeout=10.0)
    assert (torn, pinged) == ([], [link])
    assert len(h.wire.envelopes(link, T_PING)) == 1

    # Still within the timeout: no second ping while one is outstanding.
    assert hub.ping_sweep(timeout=10.0) == ([], [])

    hub.session_manager.get_session(link)["awaiting_pong"] = time.monotonic() - 60.0
    torn, pinged = hub.ping_sweep(timeout=10.0)
    assert torn == [link]
    assert link.closed is True
    assert not hub.session_manager.is_open(link)


def test_stop_tears_down_links_and_reports_stats(h) -> None:
    hub = h.hub
    link, alice = h.online("alice")

    report = hub.stats_manager.format_stats()
    assert "registrations=1" in report
    assert "online=1" in report
    assert "\n" in report

    hub.stop()

    assert link.closed is True
    assert len(hub.presence) == 0

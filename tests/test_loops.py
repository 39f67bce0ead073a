import threading
from datetime import timedelta
from evowhats_relay.core.db import utcnow
from evowhats_relay.repo import repo
from evowhats_relay.tasks.loops import LoopRegistry, PeriodicLoop
from evowhats_relay.tasks.token_refresh import (
    refresh_tick, start_all_token_refresh_loops, stop_token_refresh_loop, token_loop_key,
)


def idle_loop(name="idle"):
    return PeriodicLoop(name, lambda: False, interval_s=30)


def test_loop_finishes_when_fn_returns_true():
    calls = []
    loop = PeriodicLoop("t", lambda: calls.append(1) or len(calls) >= 3, interval_s=0)
    loop.run()
    assert loop.result == "done" and loop.iterations == 3


def test_stop_ends_a_running_loop():
    loop = idle_loop()
    loop.start()
    loop.stop()
    loop.join(2)
    assert not loop.is_alive()
    assert loop.result == "stopped"


def test_registry_replaces_and_stops_previous_loop():
    reg = LoopRegistry()
    key = ("t1", 1, "status")
    first = reg.register(key, idle_loop("a"))
    second = reg.register(key, idle_loop("b"))
    first.join(2)
    assert first.result == "stopped"
    assert reg.lookup(key) is second
    assert reg.unregister(key) is second
    second.join(2)
    assert reg.lookup(key) is None and reg.keys() == []


def test_registry_forgets_finished_loops():
    reg = LoopRegistry()
    done = threading.Event()
    loop = PeriodicLoop("once", lambda: True, interval_s=0, on_exit=lambda lp: done.set())
    reg.register(("t1", 2, "status"), loop)
    loop.join(2)
    assert done.is_set()
    assert reg.keys() == []


def test_stop_all():
    reg = LoopRegistry()
    loops = [reg.register(("t1", i, "token"), idle_loop(f"l{i}")) for i in range(3)]
    assert reg.stop_all() == 3
    assert all(not lp.is_alive() for lp in loops)


def test_refresh_tick_refreshes_and_stops_for_inactive_credentials(wiring, seeded):
    cred = wiring.store.update_tokens(seeded.credential.id, access_token="at-1", refresh_token="rt-1",
                                      expires_at=utcnow() + timedelta(seconds=10))
    assert refresh_tick(cred.id, wiring.refresher, wiring.store) is False
    assert wiring.store.get(cred.id).access_token == "at-new"
    wiring.store.deactivate("t1")
    assert refresh_tick(cred.id, wiring.refresher, wiring.store) is True
    assert refresh_tick(999, wiring.refresher, wiring.store) is True


def test_token_loops_per_active_credential(wiring, seeded):
    repo.upsert_tenant("t2")
    wiring.store.save("t2", "beta.bitrix24.com", access_token="x", refresh_token="y",
                      expires_at=utcnow() + timedelta(hours=1))
    assert start_all_token_refresh_loops(registry=wiring.loops, store=wiring.store) == 2
    assert wiring.loops.lookup(token_loop_key(seeded.credential)) is not None
    assert stop_token_refresh_loop(seeded.credential, registry=wiring.loops)
    assert not stop_token_refresh_loop(seeded.credential, registry=wiring.loops)

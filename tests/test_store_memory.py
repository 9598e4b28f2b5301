import asyncio

import pytest

from cardclash.core.errors import StoreError

from .conftest import wait_for


async def test_set_get_and_remove(stores):
    alice, bob = stores
    await alice.set("users/alice/stats", {"wins": 1})
    assert await bob.get("users/alice/stats") == {"wins": 1}
    await bob.remove("users/alice/stats")
    assert await alice.get("users/alice") is None


async def test_update_applies_all_paths_at_once(stores, backend):
    alice, _ = stores
    await alice.set("matchmaking/alice", {"playerId": "alice"})
    await alice.update(
        "",
        {"gameRooms/r1/id": "r1", "pairings/alice": "r1", "matchmaking/alice": None},
    )
    assert backend.snapshot() == {"gameRooms": {"r1": {"id": "r1"}}, "pairings": {"alice": "r1"}}


async def test_increment_is_atomic_across_clients(stores):
    alice, bob = stores
    await asyncio.gather(
        *(client.increment("counter", 0.5) for client in (alice, bob) for _ in range(10))
    )
    assert await alice.get("counter") == 10


async def test_increment_rejects_non_numbers(stores):
    alice, _ = stores
    await alice.set("name", "Goku")
    with pytest.raises(StoreError):
        await alice.increment("name", 1)


async def test_set_if_absent_has_single_winner(stores):
    alice, bob = stores
    results = await asyncio.gather(
        alice.set_if_absent("claim", "alice"), bob.set_if_absent("claim", "bob")
    )
    assert sorted(results) == [False, True]
    assert await alice.get("claim") in ("alice", "bob")


async def test_subscription_fires_with_current_value_then_latest(stores):
    alice, bob = stores
    seen = []

    async def on_change(value):
        seen.append(value)

    await alice.set("gameRooms/r1/gameState/currentRound", 1)
    sub = alice.subscribe("gameRooms/r1", on_change)
    await wait_for(lambda: len(seen) == 1)

    await bob.set("gameRooms/r1/gameState/currentRound", 2)
    await wait_for(lambda: seen[-1] == {"gameState": {"currentRound": 2}})
    sub.cancel()


async def test_cancelled_subscription_gets_nothing(stores):
    alice, bob = stores
    seen = []

    async def on_change(value):
        seen.append(value)

    sub = alice.subscribe("pairings/alice", on_change)
    await wait_for(lambda: seen == [None])
    sub.cancel()
    await bob.set("pairings/alice", "r1")
    await asyncio.sleep(0.05)
    assert seen == [None]


async def test_callback_errors_do_not_stop_delivery(stores):
    alice, bob = stores
    seen = []

    async def on_change(value):
        seen.append(value)
        if value is None:
            raise RuntimeError("boom")

    alice.subscribe("x", on_change)
    await wait_for(lambda: seen == [None])
    await bob.set("x", 1)
    await wait_for(lambda: seen == [None, 1])


async def test_disconnect_runs_registered_writes(backend):
    alice = backend.connect("alice")
    observer = backend.connect("observer")
    await alice.set("matchmaking/alice", {"playerId": "alice"})
    await alice.run_on_disconnect("matchmaking/alice")

    await alice.disconnect()
    assert await observer.get("matchmaking/alice") is None
    await observer.close()


async def test_graceful_close_discards_disconnect_writes(backend):
    alice = backend.connect("alice")
    await alice.set("matchmaking/alice", {"playerId": "alice"})
    await alice.run_on_disconnect("matchmaking/alice")

    await alice.close()
    assert backend.snapshot("matchmaking/alice") == {"playerId": "alice"}


async def test_cancel_on_disconnect(backend):
    alice = backend.connect("alice")
    await alice.set("a", 1)
    await alice.run_on_disconnect("a")
    await alice.cancel_on_disconnect("a")

    await alice.disconnect()
    assert backend.snapshot("a") == 1


async def test_injected_failure_and_closed_client(backend):
    alice = backend.connect("alice")
    backend.fail_next("set", "gameRooms")
    with pytest.raises(StoreError):
        await alice.set("gameRooms/r1", {"id": "r1"})
    await alice.set("gameRooms/r1", {"id": "r1"})

    await alice.close()
    with pytest.raises(StoreError):
        await alice.get("gameRooms/r1")

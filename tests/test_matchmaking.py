import asyncio
import dataclasses

import pytest

from cardclash.core.errors import MatchmakingTimeout
from cardclash.game.matchmaking import WITHDRAWN, MatchmakingCoordinator, available_entries
from cardclash.shared import paths
from cardclash.shared.models import PlayerIdentity

from .conftest import ALICE, BOB, wait_for

CAROL = PlayerIdentity("carol", "Carol")


def test_available_entries_skips_live_claims():
    entries = {
        "alice": {"playerId": "alice", "displayName": "Alice", "enqueuedAt": 3.0},
        "bob": {"playerId": "bob", "displayName": "Bob", "enqueuedAt": 1.0, "claimedBy": "alice"},
        "carol": {"playerId": "carol", "displayName": "Carol", "enqueuedAt": 2.0, "claimedBy": "gone"},
        "broken": {"displayName": "?"},
    }
    assert [e.player_id for e in available_entries(entries)] == ["carol", "alice"]


async def test_two_players_are_paired_into_one_room(stores, config, backend):
    alice, bob = stores
    room_ids = await asyncio.gather(
        MatchmakingCoordinator(alice, config).start_matchmaking(ALICE),
        MatchmakingCoordinator(bob, config).start_matchmaking(BOB),
    )

    assert room_ids[0] == room_ids[1]
    room = backend.snapshot(paths.room(room_ids[0]))
    assert set(room["players"]) == {"alice", "bob"}
    assert room["players"]["bob"] == {"displayName": "Bob", "score": 0}
    assert room["gameState"] == {"currentRound": 1, "timer": 20, "status": "in_progress"}
    assert backend.snapshot(paths.MATCHMAKING) is None
    assert backend.snapshot(paths.PAIRINGS) is None


async def test_timeout_reports_no_opponent_and_leaves_queue(stores, config, backend):
    alice, _ = stores
    config = dataclasses.replace(config, matchmaking_timeout=0.1)

    with pytest.raises(MatchmakingTimeout) as excinfo:
        await MatchmakingCoordinator(alice, config).start_matchmaking(ALICE)

    assert str(excinfo.value) == "No opponent found."
    assert backend.snapshot(paths.queue_entry("alice")) is None


async def test_retry_after_timeout_can_pair(stores, config, backend):
    alice, bob = stores
    short = dataclasses.replace(config, matchmaking_timeout=0.1)
    with pytest.raises(MatchmakingTimeout):
        await MatchmakingCoordinator(alice, short).start_matchmaking(ALICE)
    assert backend.snapshot(paths.pairing("alice")) == WITHDRAWN

    room_ids = await asyncio.gather(
        MatchmakingCoordinator(alice, config).start_matchmaking(ALICE),
        MatchmakingCoordinator(bob, config).start_matchmaking(BOB),
    )
    assert room_ids[0] == room_ids[1]


async def test_stale_pairing_token_is_ignored(stores, config, backend):
    alice, _ = stores
    await alice.set(paths.room_player("old", "alice"), {"displayName": "Alice", "score": 3})
    await alice.set(paths.pairing("alice"), "old")
    config = dataclasses.replace(config, matchmaking_timeout=0.1)

    with pytest.raises(MatchmakingTimeout):
        await MatchmakingCoordinator(alice, config).start_matchmaking(ALICE)


async def test_disconnect_removes_queue_entry(backend, config):
    alice = backend.connect("alice")
    observer = backend.connect("observer")
    task = asyncio.create_task(MatchmakingCoordinator(alice, config).start_matchmaking(ALICE))
    await wait_for(lambda: backend.snapshot(paths.queue_entry("alice")) is not None)

    await alice.disconnect()
    assert await observer.get(paths.queue_entry("alice")) is None

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await observer.close()


async def test_cancel_stops_searching(stores, config, backend):
    alice, _ = stores
    coordinator = MatchmakingCoordinator(alice, config)
    task = asyncio.create_task(coordinator.start_matchmaking(ALICE))
    await wait_for(lambda: backend.snapshot(paths.queue_entry("alice")) is not None)

    coordinator.cancel()
    assert await task is None
    assert backend.snapshot(paths.queue_entry("alice")) is None


async def test_three_players_make_exactly_one_room(backend, config):
    config = dataclasses.replace(config, matchmaking_timeout=0.5)
    players = [ALICE, BOB, CAROL]
    clients = [backend.connect(p.id) for p in players]

    results = await asyncio.gather(
        *(MatchmakingCoordinator(c, config).start_matchmaking(p) for c, p in zip(clients, players)),
        return_exceptions=True,
    )

    room_ids = [r for r in results if isinstance(r, str)]
    timeouts = [r for r in results if isinstance(r, MatchmakingTimeout)]
    assert len(room_ids) == 2 and room_ids[0] == room_ids[1]
    assert len(timeouts) == 1
    assert list(backend.snapshot(paths.GAME_ROOMS)) == [room_ids[0]]
    assert len(backend.snapshot(paths.room_players(room_ids[0]))) == 2
    assert backend.snapshot(paths.MATCHMAKING) is None

    for client in clients:
        await client.close()


async def test_stale_pairing_token_is_removed_while_searching(stores, config, backend):
    alice, _ = stores
    coordinator = MatchmakingCoordinator(alice, config)
    task = asyncio.create_task(coordinator.start_matchmaking(ALICE))
    await wait_for(lambda: backend.snapshot(paths.queue_entry("alice")) is not None)

    await alice.set(paths.room_player("ghost", "bob"), {"displayName": "Bob", "score": 0})
    await alice.set(paths.pairing("alice"), "ghost")

    await wait_for(lambda: backend.snapshot(paths.pairing("alice")) is None)
    assert not task.done()
    coordinator.cancel()
    assert await task is None


async def test_no_room_can_be_made_for_a_player_who_timed_out(stores, config, backend):
    alice, bob = stores
    short = dataclasses.replace(config, matchmaking_timeout=0.1)
    with pytest.raises(MatchmakingTimeout):
        await MatchmakingCoordinator(alice, short).start_matchmaking(ALICE)
    assert backend.snapshot(paths.pairing("alice")) == WITHDRAWN

    # A peer that claimed alice before she gave up finishes its room now.
    assert await MatchmakingCoordinator(bob, config)._create_room(BOB, ALICE) is None
    assert backend.snapshot(paths.GAME_ROOMS) is None
    assert backend.snapshot(paths.pairing("bob")) is None


async def test_room_made_while_timing_out_is_left(stores, config, backend, monkeypatch):
    alice, bob = stores
    short = dataclasses.replace(config, matchmaking_timeout=0.1)
    creator = MatchmakingCoordinator(bob, config)
    made = []
    take_slot = alice.set_if_absent

    async def peer_pairs_first(path, value):
        if path == paths.pairing("alice") and not made:
            made.append(await creator._create_room(BOB, ALICE))
        return await take_slot(path, value)

    monkeypatch.setattr(alice, "set_if_absent", peer_pairs_first)
    with pytest.raises(MatchmakingTimeout):
        await MatchmakingCoordinator(alice, short).start_matchmaking(ALICE)

    [room_id] = made
    assert room_id is not None
    assert list(backend.snapshot(paths.room_players(room_id))) == ["bob"]

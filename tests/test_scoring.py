import asyncio

import pytest

from cardclash.core.errors import RoomAbandoned
from cardclash.game.room import GameRoomStateMachine, RoomPhase
from cardclash.game.scoring import (
    ScoreTracker,
    decide_winner,
    is_match_over,
    local_outcome,
    score_delta,
    winner_for,
)
from cardclash.shared import paths
from cardclash.shared.models import TIE, ArbiterOutcome, GameRoom, LocalOutcome

from .conftest import ALICE, BOB, wait_for


def test_winner_for_uses_the_ordered_ids():
    assert winner_for(ArbiterOutcome.FIRST, "alice", "bob") == "alice"
    assert winner_for(ArbiterOutcome.SECOND, "alice", "bob") == "bob"
    assert winner_for(ArbiterOutcome.TIE, "alice", "bob") == TIE


def test_score_delta():
    assert score_delta("bob", ["alice", "bob"]) == {"bob": 1}
    assert score_delta(TIE, ["alice", "bob"]) == {"alice": 0.5, "bob": 0.5}


def test_local_outcome():
    assert local_outcome("alice", "alice") == LocalOutcome.WIN
    assert local_outcome("bob", "alice") == LocalOutcome.LOSE
    assert local_outcome(TIE, "alice") == LocalOutcome.TIE


def test_completion_rules():
    assert not is_match_over({"alice": 2.5, "bob": 2.5}, 3)
    assert is_match_over({"alice": 3, "bob": 1}, 3)
    assert decide_winner({"alice": 3, "bob": 1}) == "alice"
    assert decide_winner({"alice": 3, "bob": 3}) == TIE
    assert decide_winner({"alice": 3.5, "bob": 3}) == "alice"


async def make_room(store, config, characters, scores=(0, 0)):
    room = GameRoom.new("r1", [ALICE, BOB], created_at=0, timer=config.round_timer)
    await store.set(paths.room("r1"), room.to_dict())
    for player, score in zip((ALICE, BOB), scores):
        if score:
            await store.set(paths.player_score("r1", player.id), score)
    machine = GameRoomStateMachine(store, characters, config, ALICE, "r1")
    return machine, ScoreTracker(store, machine, config)


async def test_commit_round_increments_atomically(stores, config, characters):
    store, _ = stores
    _, tracker = await make_room(store, config, characters)

    assert await tracker.commit_round("alice", ["alice", "bob"]) == {"alice": 1, "bob": 0}
    assert await tracker.commit_round(TIE, ["alice", "bob"]) == {"alice": 1.5, "bob": 0.5}


async def test_commit_round_refuses_abandoned_room(stores, config, characters):
    store, _ = stores
    _, tracker = await make_room(store, config, characters)
    await store.remove(paths.room_player("r1", "bob"))

    with pytest.raises(RoomAbandoned):
        await tracker.commit_round("alice", ["alice", "bob"])
    # No ghost score entry for the player who left.
    assert await store.get(paths.room_player("r1", "bob")) is None


async def test_reaching_threshold_finishes_room(stores, config, characters, backend):
    store, _ = stores
    machine, tracker = await make_room(store, config, characters, scores=(2, 1))

    await tracker.commit_round("alice", ["alice", "bob"])
    assert await tracker.evaluate(3) is True

    state = backend.snapshot(paths.game_state("r1"))
    assert state["status"] == "finished"
    assert state["winner"] == "alice"
    assert machine.phase == RoomPhase.FINISHED


async def test_evaluate_schedules_next_round(stores, config, characters, backend):
    store, _ = stores
    _, tracker = await make_room(store, config, characters, scores=(1, 0))
    await store.set(paths.selection("r1", "alice"), {"hasSelected": True, "round": 1})

    assert await tracker.evaluate(1) is False
    await wait_for(lambda: backend.snapshot(paths.game_state("r1"))["currentRound"] == 2)

    room = backend.snapshot(paths.room("r1"))
    assert "roundData" not in room
    assert room["gameState"]["status"] == "in_progress"
    assert room["gameState"]["timer"] == config.round_timer


async def test_cancelled_advance_never_fires(stores, config, characters, backend):
    store, _ = stores
    _, tracker = await make_room(store, config, characters)

    tracker.schedule_advance(1)
    tracker.cancel()
    await asyncio.sleep(config.result_display_delay * 3)
    assert backend.snapshot(paths.game_state("r1"))["currentRound"] == 1


async def test_advance_round_refuses_finished_or_moved_rooms(stores, config, characters, backend):
    store, _ = stores
    machine, _ = await make_room(store, config, characters)
    snapshot = GameRoom.from_dict("r1", backend.snapshot(paths.room("r1")))

    assert await machine.advance_round(snapshot) is True
    # Same snapshot again: the room already moved to round 2.
    assert await machine.advance_round(snapshot) is False

    await machine.finish("alice")
    moved = GameRoom.from_dict("r1", backend.snapshot(paths.room("r1")))
    assert await machine.advance_round(moved) is False
    assert backend.snapshot(paths.game_state("r1"))["status"] == "finished"

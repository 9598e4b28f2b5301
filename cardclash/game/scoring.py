"""Score commit and match completion."""

from __future__ import annotations

import asyncio
import logging

from cardclash.core.config import GameConfig
from cardclash.core.errors import RoomAbandoned, StoreError
from cardclash.shared import paths
from cardclash.shared.models.room import (
    TIE,
    ArbiterOutcome,
    GameRoom,
    LocalOutcome,
    RoomStatus,
)
from cardclash.shared.store.base import SharedStore

from .room import GameRoomStateMachine

LOGGER = logging.getLogger("ScoreTracker")


def winner_for(outcome: ArbiterOutcome, first_id: str, second_id: str) -> str:
    """Map an arbiter verdict on (first, second) to a player id or ``tie``."""
    if outcome == ArbiterOutcome.FIRST:
        return first_id
    if outcome == ArbiterOutcome.SECOND:
        return second_id
    return TIE


def score_delta(winner: str, player_ids: list[str]) -> dict[str, float]:
    if winner == TIE:
        return {pid: 0.5 for pid in player_ids}
    return {winner: 1}


def local_outcome(winner: str, player_id: str) -> LocalOutcome:
    if winner == TIE:
        return LocalOutcome.TIE
    return LocalOutcome.WIN if winner == player_id else LocalOutcome.LOSE


def is_match_over(scores: dict[str, float], threshold: float) -> bool:
    return bool(scores) and max(scores.values()) >= threshold


def decide_winner(scores: dict[str, float]) -> str:
    """Highest scorer, or ``tie`` when the top scores are equal."""
    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return TIE
    return ranked[0][0]


class ScoreTracker:
    """Commits round scores and decides between finishing and advancing.

    Only the client that resolved a round drives its tracker, so each
    round's delta is applied once and ``finish`` is written once.
    """

    def __init__(self, store: SharedStore, room: GameRoomStateMachine, config: GameConfig):
        self.store = store
        self.room = room
        self.config = config
        self._advance_task: asyncio.Task[None] | None = None

    @property
    def room_id(self) -> str:
        return self.room.room_id

    async def _scores(self) -> dict[str, float]:
        players = await self.store.get(paths.room_players(self.room_id)) or {}
        return {
            pid: float(raw.get("score") or 0)
            for pid, raw in players.items()
            if isinstance(raw, dict) and "displayName" in raw
        }

    async def commit_round(self, winner: str, player_ids: list[str]) -> dict[str, float]:
        """Apply the round's delta with atomic increments.

        Raises RoomAbandoned if a player already left; scores of a dead
        room are not touched.
        """
        scores = await self._scores()
        if len(scores) < 2 or any(pid not in scores for pid in player_ids):
            raise RoomAbandoned(self.room_id)

        for pid, delta in score_delta(winner, player_ids).items():
            scores[pid] = await self.store.increment(paths.player_score(self.room_id, pid), delta)
        LOGGER.info(f"Room {self.room_id}: round won by {winner}, scores now {scores}")
        return scores

    async def evaluate(self, round_number: int) -> bool:
        """Finish the match if someone reached the threshold, else schedule the next round.

        Returns True when the match was finished.
        """
        state = await self.store.get(paths.game_state(self.room_id)) or {}
        if state.get("status") == RoomStatus.FINISHED.value:
            return True

        scores = await self._scores()
        if is_match_over(scores, self.config.win_threshold):
            await self.room.finish(decide_winner(scores))
            return True

        self.schedule_advance(round_number)
        return False

    @property
    def advance_pending(self) -> bool:
        return self._advance_task is not None and not self._advance_task.done()

    def schedule_advance(self, round_number: int) -> None:
        self.cancel()
        self._advance_task = asyncio.create_task(
            self._advance_later(round_number), name=f"advance:{self.room_id}:{round_number}"
        )

    async def _advance_later(self, round_number: int) -> None:
        await asyncio.sleep(self.config.result_display_delay)
        try:
            data = await self.store.get(paths.room(self.room_id))
            if not data:
                return
            room = GameRoom.from_dict(self.room_id, data)
            if room.is_abandoned or room.current_round != round_number:
                return
            await self.room.advance_round(room)
        except StoreError:
            LOGGER.exception(f"Room {self.room_id}: could not start round {round_number + 1}")

    def cancel(self) -> None:
        if self._advance_task is not None and not self._advance_task.done():
            self._advance_task.cancel()
        self._advance_task = None

    @staticmethod
    def scores_view(room: GameRoom, player_id: str) -> tuple[float, float]:
        """(self, opponent) scores as seen by ``player_id``."""
        opponent = room.opponent_of(player_id)
        return room.score_of(player_id), room.score_of(opponent) if opponent else 0

"""Round resolution protocol.

Every client evaluates the dual-selection predicate on each room change,
but only the client that wins ``resolutions/{round}/claimedBy`` calls the
arbiter, commits the score and publishes the round record. Both clients
then build their own view of the round from that record.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable

from cardclash.core.errors import RoomAbandoned, SelectionRejected, StoreError
from cardclash.services.arbiter import RoundArbiter
from cardclash.shared import paths
from cardclash.shared.models.room import GameRoom, Resolution, RoundResult, Selection
from cardclash.shared.store.base import SharedStore

from .room import GameRoomStateMachine, RoomPhase
from .scoring import ScoreTracker, local_outcome, winner_for

LOGGER = logging.getLogger("RoundResolution")

ResultCallback = Callable[[RoundResult], Awaitable[None]]


def both_selected(room: GameRoom) -> bool:
    """True iff exactly two players hold a selection for the current round."""
    if len(room.players) != 2:
        return False
    return all(room.selection_for(pid) is not None for pid in room.players)


class RoundResolutionProtocol:
    def __init__(
        self,
        store: SharedStore,
        arbiter: RoundArbiter,
        tracker: ScoreTracker,
        room: GameRoomStateMachine,
        *,
        on_result: ResultCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.arbiter = arbiter
        self.tracker = tracker
        self.room = room
        self.on_result = on_result
        self._clock = clock
        self._submitted_round: int | None = None
        self._last_viewed_round = 0
        # Records we resolved but have not managed to publish yet.
        self._unpublished: dict[int, Resolution] = {}

    @property
    def player_id(self) -> str:
        return self.room.player.id

    @property
    def room_id(self) -> str:
        return self.room.room_id

    async def submit_selection(self, room: GameRoom, card_index: int) -> Selection:
        """Write our pick for the current round, then check for dual completion.

        Raises SelectionRejected when we already picked this round, the
        index is outside the hand, or the match is over.
        """
        if room.game_state.is_finished or self.room.is_over:
            raise SelectionRejected("The match is over")
        if not 0 <= card_index < len(self.room.cards):
            raise SelectionRejected(f"No card at index {card_index}")
        round_number = room.current_round
        if self._submitted_round == round_number or room.selection_for(self.player_id):
            raise SelectionRejected(f"Already selected a card for round {round_number}")

        selection = Selection(
            has_selected=True,
            card=self.room.cards[card_index],
            timestamp=self._clock(),
            round=round_number,
        )
        path = paths.selection(self.room_id, self.player_id)
        if not await self.store.set_if_absent(path, selection.to_dict()):
            existing = Selection.from_dict(await self.store.get(path) or {})
            if existing.has_selected and existing.round in (None, round_number):
                raise SelectionRejected(f"Already selected a card for round {round_number}")
            # Left over from an earlier round.
            await self.store.set(path, selection.to_dict())

        self._submitted_round = round_number
        LOGGER.info(
            f"{self.room.player.display_name} picked {selection.card.name} "  # type: ignore[union-attr]
            f"for round {round_number}"
        )

        data = await self.store.get(paths.room(self.room_id))
        if data:
            await self.on_room_update(GameRoom.from_dict(self.room_id, data))
        return selection

    async def on_room_update(self, room: GameRoom) -> RoundResult | None:
        """Resolve the round if both picks are in, then surface any new result.

        The resolving client also finishes its own work left over from a
        failed write: an unpublished record or a missing evaluation.
        """
        if not room.game_state.is_finished:
            await self._drive_round(room)

        latest = max(
            (r for r in room.resolutions.values() if r.is_complete),
            key=lambda r: r.round,
            default=None,
        )
        if latest is None or latest.round <= self._last_viewed_round:
            return None
        self._last_viewed_round = latest.round
        result = self.build_result(latest)
        self.room.move_to(RoomPhase.ROUND_RESOLVED)
        if self.on_result is not None:
            await self.on_result(result)
        return result

    async def _drive_round(self, room: GameRoom) -> None:
        round_number = room.current_round
        record = room.resolutions.get(round_number)
        if record is None:
            if both_selected(room):
                resolution = await self.on_both_selected(room)
                if resolution is not None:
                    room.resolutions[round_number] = resolution
            return
        if record.claimed_by != self.player_id:
            return

        if not record.is_complete:
            resolution = self._unpublished.get(round_number)
            if resolution is None:
                return
            LOGGER.info(f"Publishing round {round_number} of {self.room_id} again")
            await self._publish(resolution)
            room.resolutions[round_number] = resolution
            await self.tracker.evaluate(round_number)
        elif not self.tracker.advance_pending:
            await self.tracker.evaluate(round_number)

    async def _publish(self, resolution: Resolution) -> None:
        """Write the result fields; scores were committed before this."""
        await self.store.update(
            paths.resolution(self.room_id, resolution.round), resolution.result_fields()
        )
        self._unpublished.pop(resolution.round, None)

    async def on_both_selected(self, room: GameRoom) -> Resolution | None:
        """Resolve the current round if we win its claim.

        Returns the published record, or None when the other client owns
        the round (its record arrives through the store).
        """
        if not both_selected(room):
            return None
        round_number = room.current_round
        claim = paths.resolution_claim(self.room_id, round_number)
        if not await self.store.set_if_absent(claim, self.player_id):
            LOGGER.debug(f"Round {round_number} of {self.room_id} is resolved by the opponent")
            return None

        first_id, second_id = room.ordered_player_ids()
        first_card = room.selection_for(first_id).card  # type: ignore[union-attr]
        second_card = room.selection_for(second_id).card  # type: ignore[union-attr]
        try:
            judgment = await self.arbiter.judge(first_card, second_card)  # type: ignore[arg-type]
            winner = winner_for(judgment.outcome, first_id, second_id)
            await self.tracker.commit_round(winner, [first_id, second_id])
        except StoreError:
            # Release the round so the next room change retries it.
            await self.store.remove(claim)
            raise
        except RoomAbandoned:
            LOGGER.info(f"Room {self.room_id} lost a player during round {round_number}")
            raise

        resolution = Resolution(
            round=round_number,
            claimed_by=self.player_id,
            winner=winner,
            outcome=judgment.outcome,
            explanation=judgment.explanation,
            cards={first_id: first_card, second_id: second_card},  # type: ignore[dict-item]
        )
        # Scores are committed; from here a failed write is retried, never redone.
        self._unpublished[round_number] = resolution
        await self._publish(resolution)
        await self.tracker.evaluate(round_number)
        return resolution

    def build_result(self, resolution: Resolution) -> RoundResult:
        """The local player's view of a published round record."""
        opponent = next((pid for pid in resolution.cards if pid != self.player_id), None)
        return RoundResult(
            round=resolution.round,
            self_card=resolution.cards.get(self.player_id),
            opponent_card=resolution.cards.get(opponent) if opponent else None,
            outcome=local_outcome(resolution.winner or "", self.player_id),
            explanation=resolution.explanation,
            winner=resolution.winner or "",
        )

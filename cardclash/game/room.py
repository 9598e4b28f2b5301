"""Game room state machine (one instance per client per room).

Phases::

    awaiting_cards -> round_active -> round_resolved -> round_active ...
                                                    \\-> finished
    any non-terminal phase -> abandoned
"""

from __future__ import annotations

import logging
from enum import Enum

from cardclash.core.config import GameConfig
from cardclash.shared import paths
from cardclash.shared.models.character import Character
from cardclash.shared.models.player import PlayerIdentity
from cardclash.shared.models.room import GameRoom, RoomStatus
from cardclash.shared.store.base import SharedStore
from cardclash.services.characters import CharacterSource, fill_hand

LOGGER = logging.getLogger("GameRoom")


class RoomPhase(str, Enum):
    AWAITING_CARDS = "awaiting_cards"
    ROUND_ACTIVE = "round_active"
    ROUND_RESOLVED = "round_resolved"
    FINISHED = "finished"
    ABANDONED = "abandoned"


_TRANSITIONS: dict[RoomPhase, set[RoomPhase]] = {
    RoomPhase.AWAITING_CARDS: {RoomPhase.ROUND_ACTIVE, RoomPhase.FINISHED, RoomPhase.ABANDONED},
    RoomPhase.ROUND_ACTIVE: {RoomPhase.ROUND_RESOLVED, RoomPhase.FINISHED, RoomPhase.ABANDONED},
    RoomPhase.ROUND_RESOLVED: {RoomPhase.ROUND_ACTIVE, RoomPhase.FINISHED, RoomPhase.ABANDONED},
    RoomPhase.FINISHED: set(),
    RoomPhase.ABANDONED: set(),
}


class GameRoomStateMachine:
    """Owns this client's view of a room's lifecycle and its hand of cards."""

    def __init__(
        self,
        store: SharedStore,
        characters: CharacterSource,
        config: GameConfig,
        player: PlayerIdentity,
        room_id: str,
    ) -> None:
        self.store = store
        self.characters = characters
        self.config = config
        self.player = player
        self.room_id = room_id
        self.phase = RoomPhase.AWAITING_CARDS
        self.cards: list[Character] = []

    @property
    def is_over(self) -> bool:
        return self.phase in (RoomPhase.FINISHED, RoomPhase.ABANDONED)

    def move_to(self, phase: RoomPhase) -> bool:
        """Apply a transition; invalid ones are ignored and reported as False."""
        if phase == self.phase:
            return True
        if phase not in _TRANSITIONS[self.phase]:
            LOGGER.debug(f"Room {self.room_id}: ignoring {self.phase.value} -> {phase.value}")
            return False
        LOGGER.debug(f"Room {self.room_id}: {self.phase.value} -> {phase.value}")
        self.phase = phase
        return True

    async def initialize_room(self) -> list[Character]:
        """Deal this client's hand and publish it under ``playerCards``."""
        cards = await self.characters.fetch_characters(self.config.cards_per_hand)
        self.cards = fill_hand(cards, self.config.cards_per_hand)
        await self.store.set(
            paths.player_cards(self.room_id, self.player.id), [c.to_dict() for c in self.cards]
        )
        # An abrupt disconnect removes us from the room so the opponent is not left waiting.
        await self.store.run_on_disconnect(paths.room_player(self.room_id, self.player.id))
        self.move_to(RoomPhase.ROUND_ACTIVE)
        LOGGER.info(
            f"{self.player.display_name} dealt {len(self.cards)} cards in room {self.room_id}"
        )
        return self.cards

    def observe(self, room: GameRoom) -> RoomPhase:
        """Follow phase changes made by either client."""
        if room.game_state.is_finished:
            self.move_to(RoomPhase.FINISHED)
        elif room.is_abandoned:
            self.move_to(RoomPhase.ABANDONED)
        elif self.phase == RoomPhase.ROUND_RESOLVED and room.current_round not in room.resolutions:
            self.move_to(RoomPhase.ROUND_ACTIVE)
        return self.phase

    async def advance_round(self, room: GameRoom) -> bool:
        """Clear ``roundData`` and open the round after ``room.current_round``.

        No-op (False) when the room is finished or already moved on.
        """
        state = await self.store.get(paths.game_state(self.room_id)) or {}
        if state.get("status") == RoomStatus.FINISHED.value:
            return False
        if int(state.get("currentRound") or 1) != room.current_round:
            return False

        next_round = room.current_round + 1
        await self.store.update(
            paths.room(self.room_id),
            {
                "roundData": None,
                "gameState": {
                    "currentRound": next_round,
                    "timer": self.config.round_timer,
                    "status": RoomStatus.IN_PROGRESS.value,
                },
            },
        )
        self.move_to(RoomPhase.ROUND_ACTIVE)
        LOGGER.info(f"Room {self.room_id}: round {next_round} started")
        return True

    async def finish(self, winner: str) -> None:
        """Mark the room finished; ``winner`` is a player id or ``tie``."""
        await self.store.update(
            paths.game_state(self.room_id),
            {"status": RoomStatus.FINISHED.value, "winner": winner},
        )
        self.move_to(RoomPhase.FINISHED)
        LOGGER.info(f"Room {self.room_id} finished, winner: {winner}")

    async def leave(self) -> None:
        """Remove only our own player entry; the opponent's entry is never touched."""
        self.move_to(RoomPhase.ABANDONED)
        await self.store.remove(paths.room_player(self.room_id, self.player.id))
        await self.store.cancel_on_disconnect(paths.room_player(self.room_id, self.player.id))
        LOGGER.info(f"{self.player.display_name} left room {self.room_id}")

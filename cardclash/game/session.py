"""Client session: the UI-facing side of one player's matchmaking and matches.

``GameSession`` ties the matchmaking coordinator, the room state machine,
round resolution and the score tracker together behind a small set of
actions (``start_matchmaking``, ``select_card``, ``leave_game``,
``play_again``) and a flat, observable view of the current game.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from cardclash.core.config import GameConfig
from cardclash.core.errors import (
    MatchmakingTimeout,
    RoomAbandoned,
    SelectionRejected,
    StoreError,
)
from cardclash.services.arbiter import RoundArbiter
from cardclash.services.characters import CharacterSource
from cardclash.shared import paths
from cardclash.shared.models.character import Character
from cardclash.shared.models.player import PlayerIdentity
from cardclash.shared.models.room import GameRoom, RoundResult
from cardclash.shared.repositories.stats import StatsRepository
from cardclash.shared.store.base import SharedStore, Subscription

from .matchmaking import MatchmakingCoordinator
from .room import GameRoomStateMachine
from .rounds import RoundResolutionProtocol
from .scoring import ScoreTracker, local_outcome

LOGGER = logging.getLogger("GameSession")

OPPONENT_LEFT = "Opponent left the game."

ChangeListener = Callable[["GameSession"], Awaitable[None] | None]


class SessionPhase(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    IN_GAME = "in_game"
    FINISHED = "finished"


class GameSession:
    def __init__(
        self,
        store: SharedStore,
        characters: CharacterSource,
        arbiter: RoundArbiter,
        player: PlayerIdentity,
        config: GameConfig,
    ) -> None:
        self.store = store
        self.characters = characters
        self.arbiter = arbiter
        self.player = player
        self.config = config
        self.matchmaking = MatchmakingCoordinator(store, config)
        self.stats = StatsRepository(store)
        self._listeners: list[ChangeListener] = []
        self._room_sub: Subscription | None = None
        self._machine: GameRoomStateMachine | None = None
        self._tracker: ScoreTracker | None = None
        self._protocol: RoundResolutionProtocol | None = None
        self._room: GameRoom | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._stats_recorded: set[str] = set()
        self._reset_view()
        self.phase = SessionPhase.IDLE
        self.error: str | None = None
        self.loading = False

    def _reset_view(self) -> None:
        self.room_id: str | None = None
        self.current_round = 1
        self.timer = self.config.round_timer
        self.scores: dict[str, float] = {"self": 0, "opponent": 0}
        self.opponent_name: str | None = None
        self.selected_card: Character | None = None
        self.opponent_selected = False
        self.round_result: RoundResult | None = None
        self.player_cards: list[Character] = []
        self.winner: str | None = None

    @property
    def room(self) -> GameRoom | None:
        """Latest snapshot of the room being played, once observed."""
        return self._room

    # --- observers ---

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener called after every view change; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(self)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Session listener raised")

    # --- actions ---

    async def start_matchmaking(self) -> bool:
        """Search for an opponent and enter the room. Returns True once in game."""
        if self.phase != SessionPhase.IDLE:
            return False
        self.phase = SessionPhase.SEARCHING
        self.error = None
        await self._changed()

        try:
            room_id = await self.matchmaking.start_matchmaking(self.player)
        except MatchmakingTimeout as e:
            self.error = str(e)
            room_id = None
        except StoreError:
            LOGGER.exception(f"Matchmaking failed for {self.player.id}")
            self.error = "Failed to start matchmaking"
            room_id = None

        if room_id is None:
            self.phase = SessionPhase.IDLE
            await self._changed()
            return False
        return await self._enter_room(room_id)

    async def _enter_room(self, room_id: str) -> bool:
        self._reset_view()
        self.room_id = room_id
        self.loading = True
        await self._changed()

        machine = GameRoomStateMachine(
            self.store, self.characters, self.config, self.player, room_id
        )
        tracker = ScoreTracker(self.store, machine, self.config)
        self._machine = machine
        self._tracker = tracker
        self._protocol = RoundResolutionProtocol(
            self.store, self.arbiter, tracker, machine, on_result=self._on_round_result
        )

        try:
            self.player_cards = await machine.initialize_room()
        except StoreError:
            LOGGER.exception(f"Could not initialize room {room_id}")
            self.error = "Failed to initialize game"
            await self._teardown(leave=True)
            self.loading = False
            self.phase = SessionPhase.IDLE
            await self._changed()
            return False

        self.loading = False
        self.phase = SessionPhase.IN_GAME
        self._room_sub = self.store.subscribe(paths.room(room_id), self._on_room)
        await self._changed()
        return True

    async def select_card(self, index: int) -> bool:
        """Pick a card for the current round. Returns False when refused."""
        if self.phase != SessionPhase.IN_GAME or self._protocol is None or self._room is None:
            return False
        if self.selected_card is not None or not 0 <= index < len(self.player_cards):
            return False

        # Shown right away; not rolled back if the write fails.
        self.selected_card = self.player_cards[index]
        await self._changed()
        try:
            await self._protocol.submit_selection(self._room, index)
        except SelectionRejected as e:
            LOGGER.info(f"Selection refused: {e}")
            return False
        except RoomAbandoned:
            await self._abandon()
            return False
        except StoreError:
            LOGGER.exception(f"Could not submit selection in room {self.room_id}")
            self.error = "Failed to select card"
            self._schedule_retry()
            await self._changed()
            return False
        return True

    async def leave_game(self) -> None:
        """Leave the current room (or stop searching) and go back to idle."""
        if self.phase == SessionPhase.SEARCHING:
            self.matchmaking.cancel()
        await self._teardown(leave=True)
        self._reset_view()
        self.phase = SessionPhase.IDLE
        await self._changed()

    async def play_again(self) -> bool:
        await self.leave_game()
        await asyncio.sleep(self.config.play_again_delay)
        return await self.start_matchmaking()

    async def close(self) -> None:
        if self.phase != SessionPhase.IDLE:
            await self.leave_game()
        self._listeners.clear()

    # --- room observation ---

    async def _teardown(self, *, leave: bool) -> None:
        self._cancel_retry()
        if self._room_sub is not None:
            self._room_sub.cancel()
            self._room_sub = None
        if self._tracker is not None:
            self._tracker.cancel()
        machine = self._machine
        self._machine = None
        self._tracker = None
        self._protocol = None
        self._room = None
        if leave and machine is not None:
            try:
                await machine.leave()
            except StoreError:
                LOGGER.exception(f"Could not leave room {machine.room_id}")

    async def _abandon(self) -> None:
        LOGGER.info(f"Room {self.room_id} abandoned, back to idle")
        await self._teardown(leave=True)
        self._reset_view()
        self.error = OPPONENT_LEFT
        self.phase = SessionPhase.IDLE
        await self._changed()

    async def _on_room(self, value: Any) -> None:
        if self._machine is None or self._protocol is None:
            return
        if not value:
            await self._abandon()
            return

        room = GameRoom.from_dict(self._machine.room_id, value)
        self._room = room
        self._machine.observe(room)

        if room.current_round != self.current_round:
            self.selected_card = None
            self.round_result = None
        self.current_round = room.current_round
        self.timer = room.game_state.timer
        self.opponent_name = next(
            (p.display_name for pid, p in room.players.items() if pid != self.player.id),
            self.opponent_name,
        )
        opponent = room.opponent_of(self.player.id)
        self.opponent_selected = opponent is not None and room.selection_for(opponent) is not None
        self._update_scores(room)

        try:
            await self._protocol.on_room_update(room)
        except RoomAbandoned:
            await self._abandon()
            return
        except StoreError:
            LOGGER.exception(f"Could not resolve round {room.current_round} of {room.id}")
            self.error = "Failed to resolve round"
            self._schedule_retry()

        if room.game_state.is_finished:
            await self._finish(room)
        elif room.is_abandoned or self.player.id not in room.players:
            await self._abandon()
        else:
            await self._changed()

    def _schedule_retry(self) -> None:
        """Look at the room again later, in case no further change arrives."""
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(
            self._retry_room(), name=f"retry-room:{self.player.id}"
        )

    def _cancel_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None

    async def _retry_room(self) -> None:
        await asyncio.sleep(self.config.result_display_delay)
        machine = self._machine
        if machine is None:
            return
        try:
            value = await self.store.get(paths.room(machine.room_id))
        except StoreError:
            LOGGER.exception(f"Could not reload room {machine.room_id}")
            self._retry_task = None
            self._schedule_retry()
            return
        # Detach first: the room handler may tear the session down.
        self._retry_task = None
        await self._on_room(value)

    def _update_scores(self, room: GameRoom) -> None:
        mine, theirs = ScoreTracker.scores_view(room, self.player.id)
        # Scores only grow; a lagging snapshot must not move them back.
        self.scores = {
            "self": max(mine, self.scores["self"]),
            "opponent": max(theirs, self.scores["opponent"]),
        }

    async def _on_round_result(self, result: RoundResult) -> None:
        self.round_result = result
        await self._changed()

    async def _finish(self, room: GameRoom) -> None:
        if self.phase == SessionPhase.FINISHED:
            return
        if self._room_sub is not None:
            self._room_sub.cancel()
            self._room_sub = None
        self._cancel_retry()
        if self._tracker is not None:
            self._tracker.cancel()

        self.winner = room.game_state.winner
        self.phase = SessionPhase.FINISHED
        LOGGER.info(f"{self.player.display_name}: match {room.id} over, winner {self.winner}")

        if self.winner and room.id not in self._stats_recorded:
            self._stats_recorded.add(room.id)
            try:
                await self.stats.record_result(
                    self.player.id, local_outcome(self.winner, self.player.id)
                )
            except StoreError:
                LOGGER.exception(f"Could not record stats for {self.player.id}")
        await self._changed()

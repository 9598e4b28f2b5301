"""Matchmaking coordinator.

A searching client writes its queue entry and watches two things: the
queue itself (to pair up) and its own ``pairings/{id}`` token (to learn
it was paired). Pairing is decided client-side with claims:

1. a client only ever pairs *itself* with the oldest other available entry;
2. it claims both entries (``claimedBy``) in ascending id order with
   ``set_if_absent``; losing any claim releases what it holds;
3. the claim winner writes the room, then takes both pairing tokens with
   ``set_if_absent``. A room nobody's token points at is never joined.

A client that stops searching takes its own pairing slot the same way,
so no room can be made for it afterwards; a room made just before is
left. A claim is stale once its claimer's own entry has left the queue.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from cardclash.core.config import GameConfig
from cardclash.core.errors import MatchmakingTimeout, StoreError
from cardclash.shared import paths
from cardclash.shared.models.player import PlayerIdentity, QueueEntry
from cardclash.shared.models.room import GameRoom
from cardclash.shared.store.base import SharedStore

LOGGER = logging.getLogger("Matchmaking")

# Pairing token value of a client that stopped searching.
WITHDRAWN = "withdrawn"


def available_entries(entries: dict[str, Any]) -> list[QueueEntry]:
    """Unclaimed (or stale-claimed) entries, oldest first."""
    found = []
    for key, raw in entries.items():
        if not isinstance(raw, dict) or raw.get("playerId") != key:
            continue
        claimer = raw.get("claimedBy")
        if claimer and claimer in entries:
            continue
        found.append(QueueEntry.from_dict(raw))
    return sorted(found, key=lambda e: (e.enqueued_at, e.player_id))


class MatchmakingCoordinator:
    """Puts one player in the queue and waits until a room holds them."""

    def __init__(
        self,
        store: SharedStore,
        config: GameConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config
        self._clock = clock
        self._pending: asyncio.Future[str | None] | None = None
        self._creating: str | None = None

    def cancel(self) -> None:
        """Abort an ongoing search; ``start_matchmaking`` returns None."""
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(None)

    async def start_matchmaking(self, player: PlayerIdentity) -> str | None:
        """Queue ``player`` and return the id of the room they were paired into.

        Raises MatchmakingTimeout when nobody pairs within the window.
        Returns None when cancelled.
        """
        entry_path = paths.queue_entry(player.id)
        found: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self._pending = found
        attempt: asyncio.Future[str | None] | None = None

        # A token left over from a previous match must not resolve this search.
        await self.store.remove(paths.pairing(player.id))
        entry = QueueEntry(player.id, player.display_name, enqueued_at=self._clock())
        await self.store.set(entry_path, entry.to_dict())
        await self.store.run_on_disconnect(entry_path)
        await self.store.run_on_disconnect(paths.pairing(player.id), WITHDRAWN)
        LOGGER.info(f"{player.display_name} ({player.id}) joined the matchmaking queue")

        async def on_pairing(room_id: Any) -> None:
            if found.done() or not room_id or room_id in (WITHDRAWN, self._creating):
                return
            room_id = str(room_id)
            players = await self.store.get(paths.room_players(room_id)) or {}
            if player.id in players:
                if not found.done():
                    found.set_result(room_id)
                return
            LOGGER.info(f"Dropping stale pairing token for room {room_id}")
            await self._drop_token(player.id, room_id)

        async def on_queue(entries: Any) -> None:
            nonlocal attempt
            if found.done():
                return
            # Shielded so a claim sequence is never cut in half by unsubscribing.
            attempt = asyncio.ensure_future(self._try_pair(player, entries or {}))
            room_id = await asyncio.shield(attempt)
            if room_id is not None and not found.done():
                found.set_result(room_id)

        pairing_sub = self.store.subscribe(paths.pairing(player.id), on_pairing)
        queue_sub = self.store.subscribe(paths.MATCHMAKING, on_queue)

        async def stop_watching() -> None:
            pairing_sub.cancel()
            queue_sub.cancel()
            if attempt is not None:
                await asyncio.wait([attempt])

        try:
            room_id = await asyncio.wait_for(
                asyncio.shield(found), timeout=self.config.matchmaking_timeout
            )
        except asyncio.TimeoutError:
            # Unsubscribe first: a late pairing must not resolve a timed-out search.
            if not found.done():
                found.cancel()
            await stop_watching()
            await self._withdraw(player)
            LOGGER.info(f"No opponent found for {player.display_name}")
            raise MatchmakingTimeout(self.config.matchmaking_timeout) from None
        except asyncio.CancelledError:
            await stop_watching()
            try:
                await self._withdraw(player)
            except StoreError as e:
                LOGGER.warning(f"Could not leave the queue for {player.id}: {e}")
            raise
        finally:
            self._pending = None

        await stop_watching()
        if room_id is None:
            await self._withdraw(player)
            LOGGER.info(f"{player.display_name} stopped searching")
        else:
            await self._leave_queue(player)
            await self.store.remove(paths.pairing(player.id))
            LOGGER.info(f"{player.display_name} paired into room {room_id}")
        return room_id

    async def _leave_queue(self, player: PlayerIdentity) -> None:
        await self.store.remove(paths.queue_entry(player.id))
        await self.store.cancel_on_disconnect(paths.queue_entry(player.id))
        await self.store.cancel_on_disconnect(paths.pairing(player.id))

    async def _withdraw(self, player: PlayerIdentity) -> None:
        """Stop searching, leaving any room paired in the meantime.

        The ``withdrawn`` token stays until the next search, so a peer that
        claimed us earlier cannot finish making a room for us.
        """
        token = paths.pairing(player.id)
        if not await self.store.set_if_absent(token, WITHDRAWN):
            late_room = await self.store.get(token)
            if late_room and late_room != WITHDRAWN:
                LOGGER.info(f"Ignoring late pairing into room {late_room}, leaving it")
                await self.store.remove(paths.room_player(str(late_room), player.id))
        await self._leave_queue(player)

    async def _drop_token(self, player_id: str, room_id: str) -> None:
        if await self.store.get(paths.pairing(player_id)) == room_id:
            await self.store.remove(paths.pairing(player_id))

    async def _try_pair(self, player: PlayerIdentity, entries: dict[str, Any]) -> str | None:
        candidates = available_entries(entries)
        if not any(e.player_id == player.id for e in candidates):
            return None
        others = [e for e in candidates if e.player_id != player.id]
        if not others:
            return None
        opponent = others[0]

        held: list[str] = []
        try:
            for pid in sorted([player.id, opponent.player_id]):
                claim_path = paths.queue_claim(pid)
                stale = (entries.get(pid) or {}).get("claimedBy")
                if stale:
                    await self._remove_claim(pid, stale)
                if not await self.store.set_if_absent(claim_path, player.id):
                    LOGGER.debug(f"Lost claim on {pid}, backing off")
                    await self._release(player.id, held)
                    return None
                held.append(pid)

            # Either entry may have left while we were claiming.
            for pid in held:
                current = await self.store.get(paths.queue_entry(pid)) or {}
                if current.get("playerId") != pid or current.get("claimedBy") != player.id:
                    await self._release(player.id, held)
                    return None

            room_id = await self._create_room(player, opponent.identity)
        except StoreError:
            LOGGER.exception(f"Pairing attempt by {player.id} failed")
            await self._release(player.id, held)
            return None
        if room_id is None:
            await self._release(player.id, held)
        return room_id

    async def _remove_claim(self, pid: str, claimer: str) -> None:
        """Drop the claim on ``pid`` only while ``claimer`` still holds it."""
        if await self.store.get(paths.queue_claim(pid)) == claimer:
            await self.store.remove(paths.queue_claim(pid))

    async def _release(self, player_id: str, held: list[str]) -> None:
        for pid in held:
            try:
                await self._remove_claim(pid, player_id)
            except StoreError as e:
                LOGGER.warning(f"Could not release claim on {pid}: {e}")

    async def _create_room(self, player: PlayerIdentity, opponent: PlayerIdentity) -> str | None:
        """Write a room for both players and point their pairing tokens at it.

        The room is written first, so a token always points at an existing
        room. Returns None, and deletes the room, when either token is
        already taken.
        """
        room_id = uuid.uuid4().hex
        room = GameRoom.new(
            room_id, [player, opponent], created_at=self._clock(), timer=self.config.round_timer
        )
        self._creating = room_id
        taken: list[str] = []
        try:
            await self.store.set(paths.room(room_id), room.to_dict())
            for pid in sorted([player.id, opponent.id]):
                if not await self.store.set_if_absent(paths.pairing(pid), room_id):
                    LOGGER.info(f"{pid} stopped searching, dropping room {room_id}")
                    await self._drop_room(room_id, taken)
                    return None
                taken.append(pid)
        except StoreError:
            await self._drop_room(room_id, taken)
            raise
        finally:
            self._creating = None

        try:
            await self.store.update(
                "",
                {paths.queue_entry(player.id): None, paths.queue_entry(opponent.id): None},
            )
        except StoreError as e:
            # Each player also removes its own entry once paired.
            LOGGER.warning(f"Could not clear queue entries for room {room_id}: {e}")

        LOGGER.info(
            f"Created room {room_id}: {player.display_name} vs {opponent.display_name}"
        )
        return room_id

    async def _drop_room(self, room_id: str, taken: list[str]) -> None:
        try:
            for pid in taken:
                await self._drop_token(pid, room_id)
            await self.store.remove(paths.room(room_id))
        except StoreError as e:
            LOGGER.warning(f"Could not drop unused room {room_id}: {e}")

"""Repository for per-player match statistics."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cardclash.shared import paths
from cardclash.shared.models.room import LocalOutcome
from cardclash.shared.store.base import SharedStore

logger = logging.getLogger(__name__)

_OUTCOME_COUNTER = {
    LocalOutcome.WIN: "wins",
    LocalOutcome.LOSE: "losses",
    LocalOutcome.TIE: "ties",
}


@dataclass
class PlayerStats:
    total_games: int = 0
    wins: int = 0
    losses: int = 0
    ties: int = 0


class StatsRepository:
    """Match counters kept under ``users/{id}/stats``, bumped with atomic increments."""

    def __init__(self, store: SharedStore) -> None:
        self.store = store

    async def record_result(self, player_id: str, outcome: LocalOutcome) -> None:
        base = paths.user_stats(player_id)
        await self.store.increment(paths.join(base, "totalGames"), 1)
        await self.store.increment(paths.join(base, _OUTCOME_COUNTER[outcome]), 1)
        logger.info(f"Recorded {outcome.value} for {player_id}")

    async def get(self, player_id: str) -> PlayerStats:
        data = await self.store.get(paths.user_stats(player_id)) or {}
        return PlayerStats(
            total_games=int(data.get("totalGames") or 0),
            wins=int(data.get("wins") or 0),
            losses=int(data.get("losses") or 0),
            ties=int(data.get("ties") or 0),
        )

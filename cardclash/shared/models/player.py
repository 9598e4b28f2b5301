"""Data models for player identity and the matchmaking queue."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class PlayerIdentity:
    """Authenticated player handed to the core by the session layer."""

    id: str
    display_name: str


@dataclass
class QueueEntry:
    """Matchmaking queue record."""

    player_id: str
    display_name: str
    enqueued_at: float
    claimed_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "playerId": self.player_id,
            "displayName": self.display_name,
            "enqueuedAt": self.enqueued_at,
        }
        if self.claimed_by:
            data["claimedBy"] = self.claimed_by
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
        return cls(
            player_id=str(data["playerId"]),
            display_name=str(data.get("displayName") or "Anonymous"),
            enqueued_at=float(data.get("enqueuedAt") or 0.0),
            claimed_by=data.get("claimedBy"),
        )

    @property
    def identity(self) -> PlayerIdentity:
        return PlayerIdentity(id=self.player_id, display_name=self.display_name)

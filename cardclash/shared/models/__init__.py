"""Shared data models for cardclash."""

from .character import Character
from .player import PlayerIdentity, QueueEntry
from .room import (
    TIE,
    ArbiterOutcome,
    GameRoom,
    GameStateRecord,
    Judgment,
    LocalOutcome,
    Resolution,
    RoomPlayer,
    RoomStatus,
    RoundResult,
    Selection,
)

__all__ = [
    "TIE",
    "ArbiterOutcome",
    "Character",
    "GameRoom",
    "GameStateRecord",
    "Judgment",
    "LocalOutcome",
    "PlayerIdentity",
    "QueueEntry",
    "Resolution",
    "RoomPlayer",
    "RoomStatus",
    "RoundResult",
    "Selection",
]

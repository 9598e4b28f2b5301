"""Two-player coordination over the shared store: matchmaking, rooms, rounds, scoring."""

from .matchmaking import MatchmakingCoordinator
from .room import GameRoomStateMachine, RoomPhase
from .rounds import RoundResolutionProtocol, both_selected
from .scoring import ScoreTracker
from .session import GameSession, SessionPhase

__all__ = [
    "GameRoomStateMachine",
    "GameSession",
    "MatchmakingCoordinator",
    "RoomPhase",
    "RoundResolutionProtocol",
    "ScoreTracker",
    "SessionPhase",
    "both_selected",
]

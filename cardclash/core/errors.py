"""Error types raised by the cardclash game layer."""

from __future__ import annotations


class CardClashError(Exception):
    """Base class for every cardclash error."""


class StoreError(CardClashError):
    """A shared store operation failed."""

    def __init__(self, operation: str, path: str, cause: BaseException | None = None):
        self.operation = operation
        self.path = path
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"Store {operation} failed at '{path}'{detail}")


class MatchmakingTimeout(CardClashError):
    """No opponent was paired within the matchmaking window."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__("No opponent found.")


class RoomAbandoned(CardClashError):
    """The room disappeared or has fewer than two players."""

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Room {room_id} was abandoned")


class SelectionRejected(CardClashError):
    """A card selection was refused (already submitted, bad index, stale round)."""

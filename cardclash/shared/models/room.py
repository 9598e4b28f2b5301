"""Data models for game rooms, rounds and their results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cardclash.shared.paths import selection_key

from .character import Character
from .player import PlayerIdentity

TIE = "tie"


class RoomStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class ArbiterOutcome(str, Enum):
    """Arbiter verdict relative to the (first, second) card order."""

    FIRST = "first"
    SECOND = "second"
    TIE = "tie"


class LocalOutcome(str, Enum):
    """Round outcome from one player's point of view."""

    WIN = "win"
    LOSE = "lose"
    TIE = "tie"


def as_list(value: Any) -> list[Any]:
    """Normalize a stored sequence (list, or dict keyed by index) to a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if v is not None]
    if isinstance(value, dict):
        return [value[k] for k in sorted(value, key=lambda k: int(k)) if value[k] is not None]
    return []


@dataclass(frozen=True)
class Judgment:
    """Arbiter answer for one pair of cards."""

    outcome: ArbiterOutcome
    explanation: str


@dataclass
class RoomPlayer:
    display_name: str
    score: float = 0

    def to_dict(self) -> dict[str, Any]:
        return {"displayName": self.display_name, "score": self.score}


@dataclass
class Selection:
    """One player's secret pick for a round."""

    has_selected: bool
    card: Character | None
    timestamp: float
    round: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasSelected": self.has_selected,
            "card": self.card.to_dict() if self.card else None,
            "timestamp": self.timestamp,
            "round": self.round,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Selection:
        card = data.get("card")
        round_number = data.get("round")
        return cls(
            has_selected=bool(data.get("hasSelected")),
            card=Character.from_dict(card) if isinstance(card, dict) else None,
            timestamp=float(data.get("timestamp") or 0.0),
            round=int(round_number) if round_number is not None else None,
        )


@dataclass
class GameStateRecord:
    current_round: int = 1
    timer: int = 20
    status: RoomStatus = RoomStatus.IN_PROGRESS
    winner: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status == RoomStatus.FINISHED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "currentRound": self.current_round,
            "timer": self.timer,
            "status": self.status.value,
        }
        if self.winner is not None:
            data["winner"] = self.winner
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GameStateRecord:
        data = data or {}
        try:
            status = RoomStatus(data.get("status") or RoomStatus.IN_PROGRESS)
        except ValueError:
            status = RoomStatus.IN_PROGRESS
        return cls(
            current_round=int(data.get("currentRound") or 1),
            timer=int(data.get("timer") or 0),
            status=status,
            winner=data.get("winner"),
        )


@dataclass
class Resolution:
    """Round record written by the single client that won the round claim."""

    round: int
    claimed_by: str
    winner: str | None = None  # player id or TIE once complete
    outcome: ArbiterOutcome | None = None
    explanation: str = ""
    cards: dict[str, Character] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.winner is not None

    def result_fields(self) -> dict[str, Any]:
        """Fields written after the claim; ``claimedBy`` is never rewritten."""
        return {
            "winner": self.winner,
            "outcome": self.outcome.value if self.outcome else None,
            "explanation": self.explanation,
            "cards": {pid: card.to_dict() for pid, card in self.cards.items()},
        }

    @classmethod
    def from_dict(cls, round_number: int, data: dict[str, Any]) -> Resolution:
        outcome = data.get("outcome")
        return cls(
            round=round_number,
            claimed_by=str(data.get("claimedBy") or ""),
            winner=data.get("winner"),
            outcome=ArbiterOutcome(outcome) if outcome else None,
            explanation=str(data.get("explanation") or ""),
            cards={
                pid: Character.from_dict(card)
                for pid, card in (data.get("cards") or {}).items()
                if isinstance(card, dict)
            },
        )


@dataclass
class RoundResult:
    """Round result as shown to the local player."""

    round: int
    self_card: Character | None
    opponent_card: Character | None
    outcome: LocalOutcome
    explanation: str
    winner: str


@dataclass
class GameRoom:
    """Snapshot of a ``gameRooms/{id}`` subtree."""

    id: str
    players: dict[str, RoomPlayer] = field(default_factory=dict)
    player_cards: dict[str, list[Character]] = field(default_factory=dict)
    round_data: dict[str, Selection] = field(default_factory=dict)
    game_state: GameStateRecord = field(default_factory=GameStateRecord)
    resolutions: dict[int, Resolution] = field(default_factory=dict)
    created_at: float = 0.0

    @classmethod
    def new(
        cls, room_id: str, players: list[PlayerIdentity], *, created_at: float, timer: int
    ) -> GameRoom:
        """Fresh room for a freshly paired couple of players."""
        return cls(
            id=room_id,
            players={p.id: RoomPlayer(display_name=p.display_name) for p in players},
            game_state=GameStateRecord(current_round=1, timer=timer),
            created_at=created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Initial record written at pairing time."""
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "players": {pid: p.to_dict() for pid, p in self.players.items()},
            "gameState": self.game_state.to_dict(),
        }

    @classmethod
    def from_dict(cls, room_id: str, data: dict[str, Any]) -> GameRoom:
        players = {}
        for pid, raw in (data.get("players") or {}).items():
            # A bare score left behind by a late write is not a player.
            if not isinstance(raw, dict) or "displayName" not in raw:
                continue
            players[pid] = RoomPlayer(
                display_name=str(raw["displayName"]), score=raw.get("score") or 0
            )

        round_data = {
            key: Selection.from_dict(raw)
            for key, raw in (data.get("roundData") or {}).items()
            if isinstance(raw, dict)
        }

        resolutions = {}
        for key, raw in (data.get("resolutions") or {}).items():
            if isinstance(raw, dict) and str(key).isdigit():
                resolutions[int(key)] = Resolution.from_dict(int(key), raw)

        return cls(
            id=room_id,
            players=players,
            player_cards={
                pid: [Character.from_dict(c) for c in as_list(cards) if isinstance(c, dict)]
                for pid, cards in (data.get("playerCards") or {}).items()
            },
            round_data=round_data,
            game_state=GameStateRecord.from_dict(data.get("gameState")),
            resolutions=resolutions,
            created_at=float(data.get("createdAt") or 0.0),
        )

    # --- derived views ---

    @property
    def current_round(self) -> int:
        return self.game_state.current_round

    @property
    def is_abandoned(self) -> bool:
        return len(self.players) < 2

    def ordered_player_ids(self) -> list[str]:
        """Player ids in ascending lexical order, identical on every client."""
        return sorted(self.players)

    def opponent_of(self, player_id: str) -> str | None:
        return next((pid for pid in self.players if pid != player_id), None)

    def score_of(self, player_id: str) -> float:
        player = self.players.get(player_id)
        return player.score if player else 0

    def selection_for(self, player_id: str) -> Selection | None:
        """Selection made by ``player_id`` for the current round, if any."""
        found = self.round_data.get(selection_key(player_id))
        if found is None or not found.has_selected:
            return None
        if found.round is not None and found.round != self.current_round:
            return None
        return found

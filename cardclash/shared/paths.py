"""Locations of every record in the shared store tree.

Layout::

    matchmaking/{playerId}                       queue entry
    pairings/{playerId}                          room id the player was paired into
    gameRooms/{roomId}/players/{playerId}        {displayName, score}
    gameRooms/{roomId}/playerCards/{playerId}    list of 5 characters
    gameRooms/{roomId}/roundData/{pid}_selection {hasSelected, card, timestamp, round}
    gameRooms/{roomId}/gameState                 {currentRound, timer, status, winner}
    gameRooms/{roomId}/resolutions/{round}       single-writer round record
    users/{playerId}/stats                       {totalGames, wins, losses, ties}
"""

from __future__ import annotations

MATCHMAKING = "matchmaking"
PAIRINGS = "pairings"
GAME_ROOMS = "gameRooms"
USERS = "users"


def join(*parts: object) -> str:
    return "/".join(str(p).strip("/") for p in parts if str(p).strip("/"))


def split(path: str) -> list[str]:
    return [p for p in path.split("/") if p]


def queue_entry(player_id: str) -> str:
    return join(MATCHMAKING, player_id)


def queue_claim(player_id: str) -> str:
    return join(MATCHMAKING, player_id, "claimedBy")


def pairing(player_id: str) -> str:
    return join(PAIRINGS, player_id)


def room(room_id: str) -> str:
    return join(GAME_ROOMS, room_id)


def room_player(room_id: str, player_id: str) -> str:
    return join(GAME_ROOMS, room_id, "players", player_id)


def room_players(room_id: str) -> str:
    return join(GAME_ROOMS, room_id, "players")


def player_score(room_id: str, player_id: str) -> str:
    return join(GAME_ROOMS, room_id, "players", player_id, "score")


def player_cards(room_id: str, player_id: str) -> str:
    return join(GAME_ROOMS, room_id, "playerCards", player_id)


def selection_key(player_id: str) -> str:
    return f"{player_id}_selection"


def selection(room_id: str, player_id: str) -> str:
    return join(GAME_ROOMS, room_id, "roundData", selection_key(player_id))


def game_state(room_id: str) -> str:
    return join(GAME_ROOMS, room_id, "gameState")


def resolution(room_id: str, round_number: int) -> str:
    return join(GAME_ROOMS, room_id, "resolutions", round_number)


def resolution_claim(room_id: str, round_number: int) -> str:
    return join(GAME_ROOMS, room_id, "resolutions", round_number, "claimedBy")


def user_stats(player_id: str) -> str:
    return join(USERS, player_id, "stats")

"""Character source backed by the Jikan (MyAnimeList) REST API.

Random catalog ids are tried until enough characters are found. Every
result (hits and misses) is cached for the session; anything that cannot
be fetched is replaced by a fallback character keyed by its position in
the hand, so callers always get exactly the number they asked for.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from cardclash.shared.cache import _MISSING, CharacterCache
from cardclash.shared.models.character import NO_DESCRIPTION, Character

LOGGER = logging.getLogger("CharacterSource")

JIKAN_BASE_URL = "https://api.jikan.moe/v4"
MAX_CHARACTER_ID = 50000
ATTEMPTS_PER_SLOT = 10
REQUEST_PAUSE = 0.1

_FALLBACK_ROSTER: list[tuple[str, str, str]] = [
    (
        "Goku",
        "Goku",
        "A Saiyan warrior with incredible strength and the ability to transform "
        "into Super Saiyan forms.",
    ),
    (
        "Naruto Uzumaki",
        "Naruto",
        "A ninja with the Nine-Tailed Fox sealed within him, possessing immense "
        "chakra and determination.",
    ),
    ("Luffy", "Luffy", "A pirate with rubber powers who dreams of becoming the Pirate King."),
    (
        "Ichigo Kurosaki",
        "Ichigo",
        "A Soul Reaper with the power to see and fight spirits, wielding a massive sword.",
    ),
    (
        "Edward Elric",
        "Edward",
        "A young alchemist who can transmute matter without a transmutation circle.",
    ),
]


def fallback_character(index: int) -> Character:
    """Deterministic stand-in for hand position ``index``."""
    name, label, description = _FALLBACK_ROSTER[index % len(_FALLBACK_ROSTER)]
    return Character(
        id=f"fallback_{index}",
        name=name,
        image=f"https://via.placeholder.com/300x400?text={label}",
        description=description,
    )


def fill_hand(cards: list[Character], count: int) -> list[Character]:
    """Trim or pad ``cards`` to exactly ``count`` entries."""
    hand = list(cards[:count])
    while len(hand) < count:
        hand.append(fallback_character(len(hand)))
    return hand


def parse_character(payload: dict[str, Any]) -> Character | None:
    data = payload.get("data")
    if not isinstance(data, dict) or not data.get("name"):
        return None
    images = data.get("images") or {}
    image = (images.get("jpg") or {}).get("image_url") or (images.get("webp") or {}).get(
        "image_url"
    )
    return Character(
        id=data.get("mal_id", ""),
        name=data["name"],
        image=image or "",
        description=data.get("about") or NO_DESCRIPTION,
    )


class CharacterSource:
    """Fetches random characters; never raises to the caller."""

    def __init__(
        self,
        *,
        base_url: str = JIKAN_BASE_URL,
        cache: CharacterCache | None = None,
        client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
        request_pause: float = REQUEST_PAUSE,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.cache = cache or CharacterCache()
        self._client = client or httpx.AsyncClient(timeout=8.0)
        self._owns_client = client is None
        self._rng = rng or random.Random()
        self.request_pause = request_pause

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_characters(self, count: int = 5) -> list[Character]:
        """Return exactly ``count`` characters, padding with fallbacks."""
        if count <= 0:
            return []
        try:
            cached = self.cache.sample(count, self._rng)
            if cached:
                LOGGER.debug(f"Serving {count} characters from cache")
                return cached

            characters: list[Character] = []
            used_ids: set[int] = set()
            for _ in range(count):
                character = await self._fill_slot(used_ids)
                if character is not None:
                    characters.append(character)

            if len(characters) < count:
                LOGGER.warning(
                    f"Fetched {len(characters)}/{count} characters, using fallback data"
                )
            return fill_hand(characters, count)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.error(f"Error fetching characters: {e}, using fallback data")
            return fill_hand([], count)

    async def warm_cache(self, count: int = 20) -> None:
        """Pre-fetch characters so later hands are served from the cache."""
        LOGGER.info("Pre-caching characters...")
        await self.fetch_characters(count)
        LOGGER.info(f"Pre-cached {self.cache.size} characters")

    async def _fill_slot(self, used_ids: set[int]) -> Character | None:
        for _ in range(ATTEMPTS_PER_SLOT):
            char_id = self._rng.randint(1, MAX_CHARACTER_ID)
            if char_id in used_ids:
                continue
            used_ids.add(char_id)

            cached = self.cache.get(char_id)
            if cached is not _MISSING:
                if cached is not None:
                    return cached
                continue

            async with self.cache.lock_for(char_id):
                cached = self.cache.get(char_id)
                if cached is _MISSING:
                    cached = await self._fetch_one(char_id)
                    # Small delay to stay under the catalog's rate limit
                    await asyncio.sleep(self.request_pause)
            if cached is not None:
                return cached
        return None

    async def _fetch_one(self, char_id: int) -> Character | None:
        try:
            response = await self._client.get(f"{self.base_url}/characters/{char_id}")
        except httpx.HTTPError as e:
            LOGGER.warning(f"Failed to fetch character {char_id}: {e}")
            return None

        if response.status_code == 404:
            self.cache.set(char_id, None)
            return None
        if response.status_code != 200:
            LOGGER.warning(f"Character {char_id}: HTTP {response.status_code}")
            return None

        try:
            character = parse_character(response.json())
        except ValueError as e:
            LOGGER.warning(f"Character {char_id}: invalid JSON ({e})")
            return None

        self.cache.set(char_id, character)
        return character

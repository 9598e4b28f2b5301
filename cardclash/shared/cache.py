"""Session-lifetime cache of fetched characters.

Uses cachetools.LRUCache, bounded by *maxsize*. One instance is owned by
each ``CharacterSource``; there is no process-global cache.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any

from cachetools import LRUCache  # type: ignore[import-untyped]

from cardclash.shared.models.character import Character

# Sentinel object to distinguish "not in cache" from cached None values
_MISSING = object()


class CharacterCache:
    """LRU map of catalog id -> :class:`Character` plus per-id fetch locks.

    ``None`` may be cached for ids the catalog does not have, so they are
    not requested again during the session.
    """

    def __init__(self, maxsize: int = 256):
        self._maxsize = maxsize
        self._cache: LRUCache = LRUCache(maxsize=maxsize)
        self._locks: dict[Any, asyncio.Lock] = {}

    def lock_for(self, key: Any) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
            # Prune locks whose id has been evicted or resolved
            if len(self._locks) > self._maxsize * 2:
                for k in list(self._locks):
                    if k not in self._cache and not self._locks[k].locked():
                        del self._locks[k]
        return self._locks[key]

    def get(self, key: Any) -> Any:
        """Return the cached value (possibly ``None``) or ``_MISSING``."""
        return self._cache.get(key, _MISSING)

    def __contains__(self, key: Any) -> bool:
        return key in self._cache

    def set(self, key: Any, value: Character | None) -> None:
        self._cache[key] = value

    def characters(self) -> list[Character]:
        """Cached characters (misses excluded)."""
        return [c for c in self._cache.values() if c is not None]

    def sample(self, count: int, rng: random.Random | None = None) -> list[Character]:
        pool = self.characters()
        if len(pool) < count:
            return []
        return (rng or random).sample(pool, count)

    def clear(self) -> None:
        self._cache.clear()

    @property
    def size(self) -> int:
        return len(self.characters())

"""External collaborators: character catalog and round arbiter."""

from .arbiter import RoundArbiter
from .characters import CharacterSource

__all__ = ["CharacterSource", "RoundArbiter"]

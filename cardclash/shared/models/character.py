"""Data model for character cards."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

NO_DESCRIPTION = "No description available"


@dataclass(frozen=True)
class Character:
    """A character card as stored in a player's hand."""

    id: int | str
    name: str
    image: str
    description: str = NO_DESCRIPTION

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Character:
        description = data.get("description") or data.get("about") or data.get("synopsis")
        return cls(
            id=data.get("id", ""),
            name=str(data.get("name") or "Unknown"),
            image=str(data.get("image") or ""),
            description=str(description or NO_DESCRIPTION),
        )

"""cardclash configuration"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).parent.parent
PROJECT_DIR = PACKAGE_DIR.parent


class Settings(BaseSettings):
    """Settings loaded from the environment or a ``.env`` file"""

    model_config = SettingsConfigDict(
        env_file=PROJECT_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Shared store (empty = in-process memory store)
    database_url: str = Field(default="", description="PostgreSQL database URL")

    # Character catalog
    jikan_base_url: str = Field(
        default="https://api.jikan.moe/v4", description="Jikan REST API base URL"
    )

    # OpenRouter AI (round arbiter)
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    openrouter_model: str = Field(
        default="tngtech/deepseek-r1t2-chimera:free", description="OpenRouter model"
    )
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1", description="OpenRouter API base URL"
    )

    # Game rules and pacing
    win_threshold: float = Field(default=3, description="Score that ends a match")
    cards_per_hand: int = Field(default=5, description="Cards dealt to each player")
    matchmaking_timeout: float = Field(default=30.0, description="Seconds to wait for a match")
    result_display_delay: float = Field(
        default=5.0, description="Seconds a round result stays up before the next round"
    )
    play_again_delay: float = Field(default=1.0, description="Pause before re-queueing")
    round_timer: int = Field(default=20, description="Informational round timer (seconds)")
    cache_warm_count: int = Field(default=20, description="Characters to pre-cache on start")
    cache_size: int = Field(default=256, description="Max characters kept in the session cache")

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL starts with postgresql:// when set"""
        if v and not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid logging level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


@dataclass(frozen=True)
class GameConfig:
    """Rules and delays handed to the game components.

    Kept separate from ``Settings`` so components never read the
    environment themselves and tests can shrink every delay.
    """

    win_threshold: float = 3
    cards_per_hand: int = 5
    matchmaking_timeout: float = 30.0
    result_display_delay: float = 5.0
    play_again_delay: float = 1.0
    round_timer: int = 20
    cache_warm_count: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> GameConfig:
        return cls(
            win_threshold=settings.win_threshold,
            cards_per_hand=settings.cards_per_hand,
            matchmaking_timeout=settings.matchmaking_timeout,
            result_display_delay=settings.result_display_delay,
            play_again_delay=settings.play_again_delay,
            round_timer=settings.round_timer,
            cache_warm_count=settings.cache_warm_count,
        )

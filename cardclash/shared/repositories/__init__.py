"""Repositories over the shared store."""

from .stats import PlayerStats, StatsRepository

__all__ = ["PlayerStats", "StatsRepository"]

"""Shared state store: interface and backends."""

from .base import SharedStore, Subscription
from .memory import MemoryBackend, MemoryStore

__all__ = [
    "MemoryBackend",
    "MemoryStore",
    "SharedStore",
    "Subscription",
]

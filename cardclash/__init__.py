"""Two-player character card battles coordinated through a shared store."""

__version__ = "1.0.0"

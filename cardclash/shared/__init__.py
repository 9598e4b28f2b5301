"""Shared layer: data models, store, cache and repositories."""

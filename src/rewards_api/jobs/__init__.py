"""Recurring job entrypoints."""

__all__ = ["settlement"]

"""Incremental document build orchestration with a watch-and-rebuild daemon."""

__version__ = "0.1.0"

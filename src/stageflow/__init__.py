"""Staged task execution engine for rate-limited, unreliable, costly work."""

__version__ = "0.1.0"

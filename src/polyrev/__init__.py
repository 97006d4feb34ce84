"""Parallel AI code review runner."""

__version__ = "0.1.0"

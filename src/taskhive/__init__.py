"""Hierarchical bounded-concurrency task delegation scheduler."""

__version__ = "0.1.0"

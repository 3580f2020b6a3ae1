"""
Exception types shared across digitnet.
"""

from typing import Optional


class GraphConfigError(ValueError):
    """Malformed ensemble graph configuration. Fatal at build time."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        if node_id is not None:
            message = f"{message} (node '{node_id}')"
        super().__init__(message)


class ScoreShapeError(ValueError):
    """A score vector does not have exactly one entry per class."""


class CacheError(RuntimeError):
    """Any failure of the score cache backend."""


class LeakageError(RuntimeError):
    """Learning was requested while evaluating a held-out test set."""

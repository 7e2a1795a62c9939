"""Undo/redo history for fittrackr-py."""

from .stack import HistoryStack, MAX_HISTORY, fingerprint

__all__ = ["HistoryStack", "MAX_HISTORY", "fingerprint"]

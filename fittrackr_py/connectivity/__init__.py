"""Connectivity tracking for fittrackr-py."""

from .monitor import ConnectivityMonitor, ConnectivityState, ConnectivityListener
from .probe import ConnectivityProbe

__all__ = [
    "ConnectivityMonitor",
    "ConnectivityState",
    "ConnectivityListener",
    "ConnectivityProbe",
]

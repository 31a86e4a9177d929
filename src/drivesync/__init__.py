"""Bidirectional sync between a local folder and a Google Drive folder."""

from .core import SyncEngine, SyncStats
from .config import SyncConfig, ConflictPolicy

__version__ = "1.0.0"

__all__ = [
    "SyncEngine",
    "SyncStats",
    "SyncConfig",
    "ConflictPolicy",
]

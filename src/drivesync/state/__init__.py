"""Persistent sync state."""

from .models import TrackedFile, chunk_key_for, chunk_name_for, parse_timestamp
from .store import FileStateStore, STATE_VERSION, META_FILE_NAME, LEGACY_STATE_FILE_NAME

__all__ = [
    "TrackedFile",
    "chunk_key_for",
    "chunk_name_for",
    "parse_timestamp",
    "FileStateStore",
    "STATE_VERSION",
    "META_FILE_NAME",
    "LEGACY_STATE_FILE_NAME",
]

"""Local filesystem watching."""

from .local_watcher import LocalWatcher

__all__ = ["LocalWatcher"]

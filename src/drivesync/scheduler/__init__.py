"""Scheduling for the periodic remote poll."""

from .poll_scheduler import RemotePollScheduler

__all__ = ["RemotePollScheduler"]

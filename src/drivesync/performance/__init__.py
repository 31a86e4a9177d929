"""Performance helpers package."""

from .metrics import (
    MetricsCollector,
    MetricPoint,
    memory_usage_mb,
    reclaim_memory
)
from .async_optimizer import (
    AsyncRateLimiter,
    RetryingExecutor
)

__all__ = [
    "MetricsCollector",
    "MetricPoint",
    "memory_usage_mb",
    "reclaim_memory",

    "AsyncRateLimiter",
    "RetryingExecutor",
]

"""Performance metrics collection and memory management."""

import gc
import threading
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional, Union

import psutil

from ..utils.logging import get_logger


@dataclass
class MetricPoint:
    """Individual metric measurement point."""

    timestamp: datetime
    value: Union[float, int]
    tags: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """Collects counters, gauges and timings for remote calls and sync passes."""

    def __init__(self, max_points_per_metric: int = 1000):
        self.max_points_per_metric = max_points_per_metric
        self.logger = get_logger(self.__class__.__name__)

        self._metrics: Dict[str, Deque[MetricPoint]] = defaultdict(
            lambda: deque(maxlen=max_points_per_metric)
        )
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = defaultdict(float)

        # Drive calls complete on executor threads
        self._lock = threading.RLock()

    def record_timing(self, metric_name: str, duration: float, tags: Optional[Dict[str, str]] = None):
        self.record_value(metric_name, duration, tags)

    def record_value(
        self,
        metric_name: str,
        value: Union[float, int],
        tags: Optional[Dict[str, str]] = None
    ):
        with self._lock:
            self._metrics[metric_name].append(MetricPoint(
                timestamp=datetime.now(timezone.utc),
                value=float(value),
                tags=tags or {}
            ))

    def increment_counter(self, counter_name: str, value: int = 1):
        with self._lock:
            self._counters[counter_name] += value

    def set_gauge(self, gauge_name: str, value: Union[float, int]):
        with self._lock:
            self._gauges[gauge_name] = float(value)

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters.get(counter_name, 0)

    @asynccontextmanager
    async def time_operation(self, metric_name: str, tags: Optional[Dict[str, str]] = None):
        """Context manager for timing operations."""
        start_time = time.time()
        try:
            yield
        finally:
            self.record_timing(metric_name, time.time() - start_time, tags)

    def snapshot(self) -> Dict[str, Any]:
        """Current counters, gauges and per-metric point counts."""
        with self._lock:
            return {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "samples": {name: len(points) for name, points in self._metrics.items()},
            }


def memory_usage_mb() -> float:
    """Resident set size of this process in megabytes."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def reclaim_memory(context: str = "") -> float:
    """Run a full garbage collection and log the resulting memory footprint.

    Returns:
        Resident memory in megabytes after collection
    """
    collected = gc.collect()
    rss = memory_usage_mb()
    get_logger("reclaim_memory").debug(
        "Memory reclaimed",
        context=context,
        objects_collected=collected,
        rss_mb=round(rss, 1)
    )
    return rss

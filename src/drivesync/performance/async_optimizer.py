"""Async helpers: rate limiting and retrying execution of remote calls."""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Deque, Optional, TypeVar

from ..exceptions import NotFoundError, RateLimitError, is_auth_error
from ..utils.logging import get_logger


T = TypeVar('T')

RetryCallback = Callable[[str, int, int, float, BaseException], None]


class AsyncRateLimiter:
    """Sliding-window limit on calls to the Drive API.

    At most ``max_calls`` acquisitions succeed in any ``time_window`` seconds;
    further callers wait, in arrival order, for the oldest call to age out.
    """

    def __init__(self, max_calls: int, time_window: float):
        self.max_calls = max_calls
        self.time_window = time_window
        self.calls: Deque[float] = deque()
        self.lock = asyncio.Lock()

        self.logger = get_logger(self.__class__.__name__)

    async def acquire(self):
        async with self.lock:
            while True:
                now = time.monotonic()
                while self.calls and now - self.calls[0] >= self.time_window:
                    self.calls.popleft()

                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    return

                wait_time = self.time_window - (now - self.calls[0])
                self.logger.debug("Drive request window full, waiting", wait_seconds=round(wait_time, 2))
                await asyncio.sleep(max(wait_time, 0.0))

    @asynccontextmanager
    async def limit(self):
        await self.acquire()
        yield


class RetryingExecutor:
    """Runs a remote operation with bounded exponential backoff.

    Authorization-class errors and not-found responses are raised on the
    first attempt. Everything else is retried until ``max_attempts`` is
    exhausted; the delay before retry ``n`` is ``base_delay * 2 ** (n - 1)``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        on_retry: Optional[RetryCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.on_retry = on_retry
        self._sleep = sleep
        self.logger = get_logger(self.__class__.__name__)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return self.base_delay * (2 ** (attempt - 1))

    async def run(self, operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()

            except NotFoundError:
                raise

            except Exception as e:
                if is_auth_error(e):
                    self.logger.error(
                        "Operation failed with authorization error, not retrying",
                        operation=operation_name,
                        error=str(e)
                    )
                    raise

                if attempt >= self.max_attempts:
                    self.logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(e)
                    )
                    raise

                delay = self.delay_for(attempt)
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = max(delay, float(e.retry_after))
                self.logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e)
                )
                if self.on_retry:
                    self.on_retry(operation_name, attempt, self.max_attempts, delay, e)

                await self._sleep(delay)

        raise RuntimeError("Unexpected end of retry loop")

"""Bounded-concurrency dispatcher for local filesystem events."""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional, Set

from .local_scanner import LocalFileInfo, LocalTreeScanner
from .status import StatusReporter
from .transfers import TransferService
from ..config.schema import MAX_CONCURRENCY, MIN_CONCURRENCY
from ..exceptions import NotFoundError, is_auth_error
from ..state import FileStateStore, TrackedFile
from ..utils.logging import get_logger


class OperationKind(str, Enum):
    ADD = "add"
    CHANGE = "change"
    DELETE = "delete"


@dataclass
class Operation:
    kind: OperationKind
    path: str
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


AuthErrorHandler = Callable[[BaseException], Awaitable[None]]


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


class OperationQueue:
    """FIFO of local events drained by at most ``max_concurrency`` workers.

    Draining runs on every enqueue and every completion. :meth:`clear`
    drops pending work and resets the worker count at once; operations
    already running finish on their own and no longer affect the count.
    """

    def __init__(
        self,
        store: FileStateStore,
        transfers: TransferService,
        local_scanner: LocalTreeScanner,
        reporter: StatusReporter,
        max_concurrency: int = 3,
        on_auth_error: Optional[AuthErrorHandler] = None
    ):
        self.store = store
        self.transfers = transfers
        self.local_scanner = local_scanner
        self.reporter = reporter
        self.max_concurrency = clamp_concurrency(max_concurrency)
        self.on_auth_error = on_auth_error
        self.logger = get_logger(self.__class__.__name__)

        self._queue: Deque[Operation] = deque()
        self._active = 0
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def active_count(self) -> int:
        return self._active

    def set_max_concurrency(self, value: int) -> int:
        self.max_concurrency = clamp_concurrency(value)
        self.logger.info("Max concurrent operations updated", max_concurrency=self.max_concurrency)
        self._drain()
        return self.max_concurrency

    def enqueue(self, kind: OperationKind, path: str):
        self._queue.append(Operation(OperationKind(kind), path))
        self.logger.debug("Operation queued", kind=kind, path=path, pending=len(self._queue))
        self._drain()

    def clear(self):
        dropped = len(self._queue)
        self._queue.clear()
        self._active = 0
        self._generation += 1
        self.logger.info("Operation queue cleared", dropped=dropped, in_flight=len(self._tasks))

    async def join(self):
        """Wait until the queue is empty and no worker is running."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    def _drain(self):
        while self._queue and self._active < self.max_concurrency:
            operation = self._queue.popleft()
            self._active += 1
            task = asyncio.ensure_future(self._run(operation, self._generation))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, operation: Operation, generation: int):
        try:
            if await self._process(operation):
                await self.store.save()
        except Exception as e:
            if is_auth_error(e):
                self.logger.error("Authentication failed during local operation", path=operation.path, error=str(e))
                self.reporter.error("Authentication failed. Please sign in again.")
                if self.on_auth_error is not None:
                    await self.on_auth_error(e)
            else:
                self.logger.error(
                    "Local operation failed",
                    kind=operation.kind.value,
                    path=operation.path,
                    error=str(e)
                )
                self.reporter.failure(operation.path, str(e))
        finally:
            if generation == self._generation:
                self._active -= 1
                self._drain()

    async def _process(self, operation: Operation) -> bool:
        path = operation.path
        if self.transfers.is_busy(path):
            self.logger.debug("Path is being transferred, ignoring event", path=path)
            return False

        if operation.kind is OperationKind.DELETE:
            return await self._handle_delete(path)

        local = await self.local_scanner.file_info(path)
        if local is None:
            self.logger.debug("File vanished before processing", path=path)
            return False

        tracked = await self.store.get_tracked_file(path)
        if tracked is None:
            return await self._handle_add(path)
        return await self._handle_change(path, tracked, local)

    async def _handle_add(self, path: str) -> bool:
        if await self.transfers.upload_new(path) is None:
            return False
        self.reporter.success(f"Uploaded: {path}", current_path=path)
        return True

    async def _handle_change(self, path: str, tracked: TrackedFile, local: LocalFileInfo) -> bool:
        if local.checksum == tracked.checksum and local.size == tracked.size:
            self.logger.debug("File unchanged since last sync", path=path)
            return False

        try:
            await self.transfers.upload_update(path, tracked.remote_id)
        except NotFoundError:
            self.logger.info("Remote file missing, uploading as new", path=path)
            self.store.untrack_file(path)
            return await self._handle_add(path)

        self.reporter.success(f"Updated in Drive: {path}", current_path=path)
        return True

    async def _handle_delete(self, path: str) -> bool:
        if await self.local_scanner.file_info(path, with_checksum=False) is not None:
            self.logger.debug("Deleted file reappeared, treating as change", path=path)
            return await self._process(Operation(OperationKind.CHANGE, path))

        tracked = await self.store.get_tracked_file(path)
        if tracked is None:
            return False

        await self.transfers.delete_remote(tracked.remote_id, path)
        self.store.untrack_file(path)
        self.reporter.info(f"Deleted from Drive: {path}", current_path=path)
        return True

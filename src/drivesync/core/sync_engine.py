"""Sync engine owning the lifecycle of one local root mirrored to one Drive folder."""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .conflict import ConflictDecision, ConflictDecisionChannel, ConflictResolver
from .local_scanner import IgnoreRules, LocalTreeScanner
from .operation_queue import OperationKind, OperationQueue, clamp_concurrency
from .reconciler import Reconciler, SyncStats
from .remote_scanner import resolve_item_path
from .status import StatusReporter, StatusSink
from .transfers import TransferService
from ..api_clients.base import BaseRemoteClient
from ..config.schema import ConflictPolicy, SyncConfig
from ..exceptions import SyncEngineError, is_auth_error
from ..performance import RetryingExecutor
from ..scheduler import RemotePollScheduler
from ..state import FileStateStore
from ..utils.logging import get_logger, log_async_execution_time
from ..watcher import LocalWatcher


AUTH_FAILED_MESSAGE = "Authentication failed. Please sign in again."


class SyncEngine:
    """Runs bidirectional sync for one local root.

    ``start`` authenticates, loads state and performs one full
    reconciliation; only then are the local watcher and the periodic
    remote poll started. ``stop`` clears the active flag, which gates both.
    """

    def __init__(
        self,
        config: SyncConfig,
        client: BaseRemoteClient,
        status_sink: Optional[StatusSink] = None,
        enable_watcher: bool = True,
        enable_polling: bool = True,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config
        self.client = client
        self.local_root = Path(config.local_path).expanduser()
        self.enable_watcher = enable_watcher
        self.enable_polling = enable_polling
        self.logger = get_logger(self.__class__.__name__)

        self.reporter = StatusReporter(status_sink)
        self.ignore_rules = IgnoreRules()
        self.store = FileStateStore(self.local_root, config.state_dir_name, config.max_loaded_chunks)
        self.local_scanner = LocalTreeScanner(self.local_root, self.ignore_rules)
        self.executor = RetryingExecutor(
            max_attempts=config.retry_attempts,
            base_delay=config.retry_base_delay_seconds,
            on_retry=self._report_retry,
            sleep=retry_sleep
        )
        self.channel = ConflictDecisionChannel(timeout=config.ask_timeout_seconds)

        self.conflict_policy = ConflictPolicy(config.conflict_policy)
        self.max_concurrency = clamp_concurrency(config.max_concurrent_operations)
        self.root_folder_id: Optional[str] = config.drive_folder_id
        self.last_stats: Optional[SyncStats] = None

        self.transfers: Optional[TransferService] = None
        self.resolver: Optional[ConflictResolver] = None
        self.reconciler: Optional[Reconciler] = None
        self.queue: Optional[OperationQueue] = None
        self.watcher: Optional[LocalWatcher] = None
        self.scheduler: Optional[RemotePollScheduler] = None

        self._active = False
        self._full_sync_running = False

    @property
    def is_active(self) -> bool:
        return self._active

    @log_async_execution_time
    async def start(self) -> SyncStats:
        """Run the initial full reconciliation and begin monitoring both sides.

        Raises:
            SyncEngineError: already running, or the initial sync failed
            AuthenticationError: credentials missing or rejected
        """
        if self._active:
            raise SyncEngineError("Sync is already running")

        self.local_root.mkdir(parents=True, exist_ok=True)
        self._active = True
        self.channel.open()
        self.reporter.info(f"Starting sync for {self.local_root}")

        self._full_sync_running = True
        try:
            await self.client.authenticate()
            if not self.root_folder_id:
                self.root_folder_id = await self.client.ensure_folder_path(self.config.drive_folder_path)
            self._build_components(self.root_folder_id)

            await self.store.load()
            self.last_stats = await self.reconciler.full_sync()

        except Exception as e:
            self._active = False
            if is_auth_error(e):
                await self._handle_auth_error(e)
                raise
            self.logger.error("Initial sync failed", error=str(e))
            self.reporter.error(f"Sync failed: {e}")
            raise SyncEngineError(f"Initial sync failed: {e}") from e

        finally:
            self._full_sync_running = False

        if not self._active:
            return self.last_stats

        if self.enable_watcher:
            self.watcher.start()
        if self.enable_polling:
            self.scheduler.start()

        self.reporter.success("Sync started - monitoring for changes")
        return self.last_stats

    async def stop(self):
        """Stop monitoring; in-flight remote calls are not awaited."""
        was_active = self._active
        self._active = False

        if self.watcher is not None:
            self.watcher.stop()
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.queue is not None:
            self.queue.clear()
        self.channel.cancel_all()

        if self.reconciler is not None:
            await self.store.save()

        if was_active:
            self.reporter.info("Sync stopped")

    async def poll_once(self) -> Optional[SyncStats]:
        """One remote poll cycle; failures are reported and monitoring continues."""
        if not self._active or self._full_sync_running or self.reconciler is None:
            return None

        try:
            return await self.reconciler.poll()
        except Exception as e:
            if is_auth_error(e):
                await self._handle_auth_error(e)
            else:
                self.logger.error("Remote poll failed", error=str(e))
                self.reporter.error(f"Error checking Drive changes: {e}")
            return None

    def handle_local_event(self, kind: OperationKind, path: str):
        if self._active and self.queue is not None:
            self.queue.enqueue(kind, path)

    def get_status(self) -> Dict[str, Any]:
        return {
            "syncing": self._active,
            "full_sync_running": self._full_sync_running,
            "local_path": str(self.local_root),
            "drive_folder_id": self.root_folder_id,
            "tracked_files": self.store.tracked_count,
            "last_sync": self.store.last_sync.isoformat() if self.store.last_sync else None,
            "queue_length": self.queue.pending_count if self.queue else 0,
            "active_operations": self.queue.active_count if self.queue else 0,
            "max_concurrent_operations": self.max_concurrency,
            "conflict_policy": self.conflict_policy.value,
            "pending_conflict": self.channel.pending_path,
            "last_stats": self.last_stats.to_dict() if self.last_stats else None,
            "poll": self.scheduler.get_status() if self.scheduler else None,
        }

    def set_max_concurrency(self, value: int) -> int:
        self.max_concurrency = clamp_concurrency(value)
        if self.queue is not None:
            self.queue.set_max_concurrency(self.max_concurrency)
        return self.max_concurrency

    def set_conflict_policy(self, policy: Union[ConflictPolicy, str]) -> ConflictPolicy:
        """Change the resolution policy.

        Raises:
            ValueError: unknown policy name
        """
        self.conflict_policy = ConflictPolicy(policy)
        if self.resolver is not None:
            self.resolver.policy = self.conflict_policy
        self.logger.info("Conflict policy updated", policy=self.conflict_policy.value)
        return self.conflict_policy

    def set_drive_folder(self, folder_id: Optional[str] = None, folder_path: Optional[str] = None):
        """Point the next ``start()`` at another Drive folder.

        Raises:
            SyncEngineError: sync is running
            ValueError: neither or both of ``folder_id`` and ``folder_path`` given
        """
        if self._active:
            raise SyncEngineError("Stop sync before changing the Drive folder")
        if bool(folder_id) == bool(folder_path):
            raise ValueError("Give exactly one of drive_folder_id or drive_folder_path")

        self.config = self.config.model_copy(update={
            "drive_folder_id": folder_id,
            "drive_folder_path": folder_path
        })
        self.root_folder_id = folder_id
        self.logger.info("Drive folder updated", folder_id=folder_id, folder_path=folder_path)

    def submit_conflict_decision(self, decision: Union[ConflictDecision, str], path: Optional[str] = None) -> bool:
        return self.channel.submit(ConflictDecision(decision), path)

    async def list_drive_folders(self) -> List[Dict[str, str]]:
        """Every Drive folder with its reconstructed path, sorted by path."""
        folders = await self.client.list_all_folders()
        by_id = {folder.id: folder for folder in folders}

        result = [
            {"id": folder.id, "name": folder.name, "path": resolve_item_path(folder.id, by_id)}
            for folder in folders
        ]
        return sorted(result, key=lambda folder: folder["path"].lower())

    def _build_components(self, root_folder_id: str):
        self.transfers = TransferService(
            self.client, self.store, self.local_scanner, self.executor, root_folder_id
        )
        self.resolver = ConflictResolver(
            self.transfers,
            self.reporter,
            self.channel,
            policy=self.conflict_policy,
            snooze_seconds=self.config.skip_snooze_seconds
        )
        self.reconciler = Reconciler(
            self.config,
            self.client,
            self.store,
            self.local_scanner,
            self.transfers,
            self.resolver,
            self.reporter,
            root_folder_id,
            is_active=lambda: self._active
        )
        self.queue = OperationQueue(
            self.store,
            self.transfers,
            self.local_scanner,
            self.reporter,
            max_concurrency=self.max_concurrency,
            on_auth_error=self._handle_auth_error
        )
        self.watcher = LocalWatcher(
            self.local_root,
            self.handle_local_event,
            is_active=lambda: self._active,
            ignore_rules=self.ignore_rules,
            debounce_seconds=self.config.watcher_debounce_seconds
        )
        self.scheduler = RemotePollScheduler(
            self.poll_once,
            self.config.poll_interval_seconds,
            is_active=lambda: self._active
        )

    async def _handle_auth_error(self, error: BaseException):
        self.logger.error("Authentication failure", error=str(error))
        self.reporter.error(AUTH_FAILED_MESSAGE)
        try:
            await self.client.invalidate_credentials()
        except Exception as e:
            self.logger.warning("Failed to invalidate credentials", error=str(e))

    def _report_retry(self, operation: str, attempt: int, max_attempts: int, delay: float, error: BaseException):
        self.reporter.warning(f"{operation} failed, retrying in {delay:g}s (attempt {attempt}/{max_attempts}): {error}")

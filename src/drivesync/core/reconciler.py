"""Full reconciliation and the incremental remote poll."""

from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from .conflict import Action, ConflictCase, ConflictResolver, classify, is_unchanged
from .local_scanner import LocalFileInfo, LocalTreeScanner
from .remote_scanner import RemoteTreeScanner
from .status import StatusReporter
from .transfers import TransferService
from ..api_clients.base import BaseRemoteClient, RemoteItem
from ..config.schema import SyncConfig
from ..exceptions import is_auth_error
from ..performance import reclaim_memory
from ..state import FileStateStore, TrackedFile
from ..utils.logging import get_logger, log_async_execution_time


@dataclass
class SyncStats:
    """Counters for one reconciliation pass."""

    downloaded: int = 0
    uploaded: int = 0
    skipped: int = 0
    conflicts: int = 0
    deleted: int = 0
    failed: int = 0
    folders: int = 0
    virtual: int = 0

    @property
    def changes(self) -> int:
        return self.downloaded + self.uploaded + self.conflicts + self.deleted

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    def summary(self) -> str:
        return (
            f"Downloaded: {self.downloaded}, Uploaded: {self.uploaded}, "
            f"Skipped: {self.skipped}, Conflicts: {self.conflicts}, Deleted: {self.deleted}"
        )


class SyncInterrupted(Exception):
    """The active flag cleared while a pass was running."""
    pass


class Reconciler:
    """Diffs the remote tree and the local tree against the tracked state.

    :meth:`full_sync` runs once at start and handles both directions.
    :meth:`poll` runs periodically and only applies remote-side changes;
    local changes reach the remote side through the operation queue.
    """

    def __init__(
        self,
        config: SyncConfig,
        client: BaseRemoteClient,
        store: FileStateStore,
        local_scanner: LocalTreeScanner,
        transfers: TransferService,
        resolver: ConflictResolver,
        reporter: StatusReporter,
        root_folder_id: str,
        is_active: Callable[[], bool]
    ):
        self.config = config
        self.store = store
        self.local_scanner = local_scanner
        self.transfers = transfers
        self.resolver = resolver
        self.reporter = reporter
        self.remote_scanner = RemoteTreeScanner(client, root_folder_id)
        self.is_active = is_active
        self.logger = get_logger(self.__class__.__name__)

    @log_async_execution_time
    async def full_sync(self) -> SyncStats:
        """Bring both sides in line once.

        Raises:
            AuthenticationError: halts the pass
        """
        stats = SyncStats()
        self.reporter.info("Scanning Drive and local files...")

        tracked_before = await self.store.get_all_tracked_files()
        remote = await self.remote_scanner.scan()
        self.transfers.reset_folder_cache(remote.folders)
        local_files = await self.local_scanner.scan()

        stats.folders = remote.folder_count
        stats.virtual = remote.virtual_count
        self.reporter.info(f"Found {len(remote.files)} files in Drive, {len(local_files)} files locally")

        remote_only = set()
        if self.config.local_authoritative:
            remote_only = {path for path in remote.files if path not in local_files}

        remote_items = sorted(remote.files.items())
        local_only = sorted(path for path in local_files if path not in remote.files)
        total = len(remote_items) + len(local_only)
        processed = 0

        try:
            for batch in _batches(remote_items, self.config.batch_size):
                for path, item in batch:
                    self._ensure_active()
                    processed += 1
                    self.reporter.progress(processed, total, "Syncing from Drive", path)

                    if path in remote_only:
                        continue
                    if self.local_scanner.ignore_rules.is_ignored(path):
                        stats.skipped += 1
                        continue

                    await self._reconcile_guarded(path, item, local_files.get(path), stats, restore_missing=True)
                await self._checkpoint()

            for batch in _batches(local_only, self.config.batch_size):
                for path in batch:
                    self._ensure_active()
                    processed += 1
                    self.reporter.progress(processed, total, "Uploading local files", path)
                    await self._guarded(path, stats, self._sync_local_only(path, local_files[path], stats))
                await self._checkpoint()

            for path, tracked in tracked_before.items():
                if path not in remote.files and path not in local_files:
                    self.store.untrack_file(path)

            if remote_only:
                await self._delete_remote_only(remote_only, remote.files, stats)

        except SyncInterrupted:
            self.logger.info("Full sync interrupted", processed=processed, total=total)
            await self.store.save()
            return stats

        self.store.update_last_sync()
        await self.store.save()

        self.reporter.success(f"Sync complete - {stats.summary()}", stats=stats.to_dict())
        return stats

    async def poll(self) -> SyncStats:
        """Apply remote-side changes since the last pass.

        Raises:
            AuthenticationError: aborts this cycle
        """
        stats = SyncStats()
        if not self.is_active():
            return stats

        tracked_before = await self.store.get_all_tracked_files()
        remote = await self.remote_scanner.scan()
        self.transfers.reset_folder_cache(remote.folders)
        changed = 0

        for path, item in sorted(remote.files.items()):
            if not self.is_active():
                break
            if self.local_scanner.ignore_rules.is_ignored(path) or self.transfers.is_busy(path):
                continue

            tracked = await self.store.get_tracked_file(path)
            if tracked is not None and item.modified_time <= tracked.modified_time:
                continue

            if tracked is None:
                self.reporter.info(f"New file detected in Drive: {path}", current_path=path)
            local = await self.local_scanner.file_info(path, with_checksum=False)
            if await self._reconcile_guarded(path, item, local, stats, restore_missing=False):
                changed += 1

        for path, before in tracked_before.items():
            if not self.is_active():
                break
            if path in remote.files or self.transfers.is_busy(path):
                continue

            tracked = await self.store.get_tracked_file(path)
            # re-tracked under a new id while the listing was taken
            if tracked is None or tracked.remote_id != before.remote_id:
                continue

            if await self._guarded(path, stats, self._delete_local(path, stats)):
                changed += 1

        if changed:
            self.store.update_last_sync()
            await self.store.save()
            self.reporter.success(f"Remote changes applied - {stats.summary()}", stats=stats.to_dict())
        else:
            self.logger.debug("No remote changes detected")

        return stats

    async def reconcile_item(
        self,
        path: str,
        item: RemoteItem,
        local: Optional[LocalFileInfo],
        stats: SyncStats,
        restore_missing: bool = True
    ) -> bool:
        """Classify and apply one remote file. Returns True if the store changed."""
        tracked = await self.store.get_tracked_file(path)

        if local is not None and not is_unchanged(tracked, local, item):
            if await self.local_scanner.checksum(local) is None:
                local = None

        action = classify(
            tracked,
            local,
            item,
            tolerance_seconds=self.config.same_file_tolerance_seconds,
            restore_missing=restore_missing
        )
        self.logger.debug("Classified remote file", path=path, action=action.value)

        if action is Action.SKIP:
            stats.skipped += 1
            return False

        if action in (Action.DOWNLOAD, Action.DOWNLOAD_UPDATE):
            await self.transfers.download(item, path)
            stats.downloaded += 1
            if action is Action.DOWNLOAD_UPDATE:
                self.reporter.info(f"Updated from Drive: {path}", current_path=path)

        elif action is Action.UPLOAD_UPDATE:
            await self.transfers.upload_update(path, item.id)
            stats.uploaded += 1

        elif action in (Action.ADOPT, Action.RESTAMP):
            self.transfers.restamp(path, item, local)
            stats.skipped += 1

        else:
            stats.conflicts += 1
            case = ConflictCase(
                path=path,
                local_modified=local.modified_time,
                remote_modified=item.modified_time,
                local_size=local.size,
                remote_size=item.size
            )
            await self.resolver.resolve(case, item)

        return True

    async def _reconcile_guarded(self, path, item, local, stats, restore_missing) -> bool:
        return await self._guarded(path, stats, self.reconcile_item(path, item, local, stats, restore_missing))

    async def _guarded(self, path: str, stats: SyncStats, operation) -> bool:
        """Await one per-path operation; only authentication failures escape."""
        try:
            return bool(await operation)
        except Exception as e:
            if is_auth_error(e):
                raise
            stats.failed += 1
            self.logger.error("Failed to sync file", path=path, error=str(e))
            self.reporter.failure(path, str(e))
            return False

    async def _sync_local_only(self, path: str, local: LocalFileInfo, stats: SyncStats) -> bool:
        tracked = await self.store.get_tracked_file(path)

        if tracked is not None:
            if await self._changed_since(tracked, local):
                # edited locally after it was removed from Drive
                self.store.untrack_file(path)
            else:
                return await self._delete_local(path, stats)

        if await self.transfers.upload_new(path) is not None:
            stats.uploaded += 1
        return True

    async def _changed_since(self, tracked: TrackedFile, local: LocalFileInfo) -> bool:
        if local.modified_time <= tracked.modified_time:
            return False
        return await self.local_scanner.checksum(local) != tracked.checksum

    async def _delete_local(self, path: str, stats: SyncStats) -> bool:
        await self.transfers.delete_local(path)
        self.store.untrack_file(path)
        stats.deleted += 1
        self.reporter.info(f"Removed locally (deleted from Drive): {path}", current_path=path)
        return True

    async def _delete_remote_only(self, paths, remote_files: Dict[str, RemoteItem], stats: SyncStats):
        self.reporter.info(f"Local authoritative: deleting {len(paths)} files from Drive")

        for path in sorted(paths):
            self._ensure_active()

            async def _delete(path=path):
                await self.transfers.delete_remote(remote_files[path].id, path)
                self.store.untrack_file(path)
                stats.deleted += 1
                return True

            await self._guarded(path, stats, _delete())

    async def _checkpoint(self):
        await self.store.save()
        if self.config.reclaim_memory:
            reclaim_memory("reconciliation batch")

    def _ensure_active(self):
        if not self.is_active():
            raise SyncInterrupted()


def _batches(items: List, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]

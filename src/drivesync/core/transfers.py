"""Remote transfers that keep the state store in step with both replicas."""

import asyncio
import posixpath
from contextlib import contextmanager
from typing import Dict, Optional, Set

from .local_scanner import LocalFileInfo, LocalTreeScanner
from ..api_clients.base import BaseRemoteClient, RemoteItem
from ..exceptions import NotFoundError
from ..performance import RetryingExecutor
from ..state import FileStateStore, TrackedFile
from ..utils.logging import get_logger


class TransferService:
    """Downloads, uploads and deletes through the retrying executor.

    Every successful transfer re-tracks the path. The recorded modification
    time is the later of the local and remote timestamps so that clock skew
    between the two sides does not look like a fresh change.
    """

    def __init__(
        self,
        client: BaseRemoteClient,
        store: FileStateStore,
        local_scanner: LocalTreeScanner,
        executor: RetryingExecutor,
        root_folder_id: str
    ):
        self.client = client
        self.store = store
        self.local_scanner = local_scanner
        self.executor = executor
        self.root_folder_id = root_folder_id
        self.logger = get_logger(self.__class__.__name__)

        self._folder_ids: Dict[str, str] = {"": root_folder_id}
        self._busy: Set[str] = set()

    def reset_folder_cache(self, folders: Dict[str, str]):
        """Replace the relative-path → folder-id cache with a fresh scan."""
        self._folder_ids = dict(folders)
        self._folder_ids[""] = self.root_folder_id

    def is_busy(self, relative_path: str) -> bool:
        return relative_path in self._busy

    @contextmanager
    def _claim(self, *paths: str):
        claimed = [path for path in paths if path not in self._busy]
        self._busy.update(claimed)
        try:
            yield
        finally:
            self._busy.difference_update(claimed)

    async def download(self, item: RemoteItem, relative_path: str) -> Optional[TrackedFile]:
        destination = self.local_scanner.absolute(relative_path)

        with self._claim(relative_path):
            await self.executor.run(
                lambda: self.client.get(item.id, destination),
                f"Download {posixpath.basename(relative_path)}"
            )
            local = await self.local_scanner.file_info(relative_path)

        if local is None:
            self.logger.warning("Downloaded file disappeared before tracking", path=relative_path)
            return None

        self.logger.info("Downloaded file", path=relative_path, remote_id=item.id, size=local.size)
        return self._track(relative_path, item, local)

    async def upload_new(self, relative_path: str) -> Optional[TrackedFile]:
        """Upload a local file as a new remote file, creating missing ancestor folders."""
        source = self.local_scanner.absolute(relative_path)
        directory, name = posixpath.split(relative_path)

        with self._claim(relative_path):
            parent_id = await self.ensure_remote_folder(directory)
            item = await self.executor.run(
                lambda: self.client.create(name, parent_id, source),
                f"Upload {name}"
            )
            local = await self.local_scanner.file_info(relative_path)

        if local is None:
            self.logger.warning("Uploaded file disappeared before tracking", path=relative_path)
            return None

        self.logger.info("Uploaded new file", path=relative_path, remote_id=item.id)
        return self._track(relative_path, item, local)

    async def upload_update(self, relative_path: str, remote_id: str) -> Optional[TrackedFile]:
        """Overwrite the content of an existing remote file in place."""
        source = self.local_scanner.absolute(relative_path)

        with self._claim(relative_path):
            item = await self.executor.run(
                lambda: self.client.update(remote_id, source),
                f"Update {posixpath.basename(relative_path)}"
            )
            local = await self.local_scanner.file_info(relative_path)

        if local is None:
            self.logger.warning("Updated file disappeared before tracking", path=relative_path)
            return None

        self.logger.info("Updated remote file", path=relative_path, remote_id=item.id)
        return self._track(relative_path, item, local)

    async def delete_remote(self, remote_id: str, relative_path: str):
        """Delete a remote file; a missing remote file counts as deleted."""
        try:
            await self.executor.run(
                lambda: self.client.delete(remote_id),
                f"Delete {posixpath.basename(relative_path)}"
            )
        except NotFoundError:
            self.logger.info("Remote file already gone", path=relative_path, remote_id=remote_id)
        else:
            self.logger.info("Deleted remote file", path=relative_path, remote_id=remote_id)

    async def delete_local(self, relative_path: str):
        target = self.local_scanner.absolute(relative_path)

        def _unlink():
            try:
                target.unlink()
            except FileNotFoundError:
                pass

        with self._claim(relative_path):
            await asyncio.get_event_loop().run_in_executor(None, _unlink)
        self.logger.info("Deleted local file", path=relative_path)

    async def rename_local(self, relative_path: str, new_relative_path: str):
        source = self.local_scanner.absolute(relative_path)
        target = self.local_scanner.absolute(new_relative_path)

        with self._claim(relative_path, new_relative_path):
            await asyncio.get_event_loop().run_in_executor(None, source.rename, target)
        self.logger.info("Renamed local file", path=relative_path, new_path=new_relative_path)

    def restamp(self, relative_path: str, item: RemoteItem, local: LocalFileInfo) -> TrackedFile:
        """Record both sides as in sync without transferring anything."""
        return self._track(relative_path, item, local)

    async def ensure_remote_folder(self, relative_dir: str) -> str:
        """Return the remote folder id mirroring ``relative_dir``, creating missing folders."""
        relative_dir = relative_dir.strip("/")
        if relative_dir in self._folder_ids:
            return self._folder_ids[relative_dir]

        parent_id = self.root_folder_id
        current = ""
        for part in relative_dir.split("/"):
            current = f"{current}/{part}" if current else part
            folder_id = self._folder_ids.get(current)

            if folder_id is None:
                folder_id = await self.executor.run(
                    lambda: self.client.find_folder(part, parent_id),
                    f"Find folder {part}"
                )
            if folder_id is None:
                folder_id = await self.executor.run(
                    lambda: self.client.create_folder(part, parent_id),
                    f"Create folder {part}"
                )
                self.logger.info("Created remote folder", path=current, folder_id=folder_id)

            self._folder_ids[current] = folder_id
            parent_id = folder_id

        return parent_id

    def _track(self, relative_path: str, item: RemoteItem, local: LocalFileInfo) -> TrackedFile:
        tracked = TrackedFile(
            path=relative_path,
            remote_id=item.id,
            modified_time=max(local.modified_time, item.modified_time),
            size=local.size,
            checksum=local.checksum or item.checksum
        )
        self.store.track_file(tracked)
        return tracked

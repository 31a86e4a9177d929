"""Shared fixtures: an in-memory remote client and engine configuration helpers."""

import hashlib
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from drivesync.api_clients.base import BaseRemoteClient, RemoteItem, FOLDER_MIME_TYPE
from drivesync.config.schema import SyncConfig
from drivesync.exceptions import NotFoundError


ROOT_FOLDER_ID = "root-folder"
BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def md5(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


class FakeRemoteClient(BaseRemoteClient):
    """Drive stand-in keeping items and contents in memory.

    ``fail_next(operation, *errors)`` queues exceptions that the named
    operation raises on its next calls, in order.
    """

    def __init__(self):
        super().__init__()
        self.items: Dict[str, RemoteItem] = {}
        self.contents: Dict[str, bytes] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.invalidated = False
        self._next_id = 0

    # test helpers

    def fail_next(self, operation: str, *errors: Exception):
        self.failures.setdefault(operation, []).extend(errors)

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def add_folder(self, name: str, parent_id: str = ROOT_FOLDER_ID) -> str:
        folder_id = self._new_id("folder")
        self.items[folder_id] = RemoteItem(
            id=folder_id,
            name=name,
            mime_type=FOLDER_MIME_TYPE,
            modified_time=BASE_TIME,
            parents=[parent_id]
        )
        return folder_id

    def add_file(self, path: str, content: bytes, modified_time: Optional[datetime] = None) -> RemoteItem:
        directory, _, name = path.rpartition("/")
        parent_id = self._ensure_folders(directory)
        item = RemoteItem(
            id=self._new_id("file"),
            name=name,
            mime_type="application/octet-stream",
            modified_time=modified_time or BASE_TIME,
            size=len(content),
            checksum=md5(content),
            parents=[parent_id]
        )
        self.items[item.id] = item
        self.contents[item.id] = content
        return item

    def add_virtual(self, name: str, parent_id: str = ROOT_FOLDER_ID) -> RemoteItem:
        item = RemoteItem(
            id=self._new_id("doc"),
            name=name,
            mime_type="application/vnd.google-apps.document",
            modified_time=BASE_TIME,
            parents=[parent_id]
        )
        self.items[item.id] = item
        return item

    def modify_file(self, path: str, content: bytes, modified_time: datetime) -> RemoteItem:
        item = self.find_by_path(path)
        item.modified_time = modified_time
        item.size = len(content)
        item.checksum = md5(content)
        self.contents[item.id] = content
        return item

    def remove(self, path: str):
        item = self.find_by_path(path)
        del self.items[item.id]
        self.contents.pop(item.id, None)

    def path_of(self, item_id: str) -> str:
        names = []
        current = item_id
        while current != ROOT_FOLDER_ID:
            item = self.items[current]
            names.append(item.name)
            current = item.parents[0]
        return "/".join(reversed(names))

    def find_by_path(self, path: str) -> Optional[RemoteItem]:
        for item in self.items.values():
            if not item.is_folder and self.path_of(item.id) == path:
                return item
        return None

    def content_at(self, path: str) -> Optional[bytes]:
        item = self.find_by_path(path)
        return self.contents.get(item.id) if item else None

    def file_paths(self) -> List[str]:
        return sorted(
            self.path_of(item.id) for item in self.items.values()
            if not item.is_folder and not item.is_virtual
        )

    # remote client contract

    async def authenticate(self) -> bool:
        self._record("authenticate")
        self._authenticated = True
        return True

    async def list_folder(self, parent_id: str) -> List[RemoteItem]:
        self._record("list_folder", parent_id)
        return [item for item in list(self.items.values()) if parent_id in item.parents]

    async def get(self, item_id: str, destination: Path) -> None:
        self._record("get", item_id)
        if item_id not in self.contents:
            raise NotFoundError(f"File not found: {item_id}")
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.contents[item_id])

    async def create(self, name: str, parent_id: str, source: Path) -> RemoteItem:
        self._record("create", name, parent_id)
        content = Path(source).read_bytes()
        item = RemoteItem(
            id=self._new_id("file"),
            name=name,
            mime_type="application/octet-stream",
            modified_time=datetime.now(timezone.utc),
            size=len(content),
            checksum=md5(content),
            parents=[parent_id]
        )
        self.items[item.id] = item
        self.contents[item.id] = content
        return item

    async def update(self, item_id: str, source: Path) -> RemoteItem:
        self._record("update", item_id)
        if item_id not in self.items:
            raise NotFoundError(f"File not found: {item_id}")
        content = Path(source).read_bytes()
        item = self.items[item_id]
        item.modified_time = datetime.now(timezone.utc)
        item.size = len(content)
        item.checksum = md5(content)
        self.contents[item_id] = content
        return item

    async def delete(self, item_id: str) -> None:
        self._record("delete", item_id)
        if item_id not in self.items:
            raise NotFoundError(f"File not found: {item_id}")
        del self.items[item_id]
        self.contents.pop(item_id, None)

    async def find_folder(self, name: str, parent_id: str) -> Optional[str]:
        self._record("find_folder", name, parent_id)
        for item in self.items.values():
            if item.is_folder and item.name == name and parent_id in item.parents:
                return item.id
        return None

    async def create_folder(self, name: str, parent_id: Optional[str]) -> str:
        self._record("create_folder", name, parent_id)
        return self.add_folder(name, parent_id or ROOT_FOLDER_ID)

    async def list_all_folders(self) -> List[RemoteItem]:
        self._record("list_all_folders")
        return [item for item in self.items.values() if item.is_folder]

    async def invalidate_credentials(self) -> None:
        await super().invalidate_credentials()
        self.invalidated = True

    # internals

    def _record(self, operation: str, *args):
        self.calls.append((operation,) + args)
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}_{self._next_id}"

    def _ensure_folders(self, directory: str) -> str:
        parent_id = ROOT_FOLDER_ID
        if not directory:
            return parent_id
        for part in directory.split("/"):
            existing = next(
                (item.id for item in self.items.values()
                 if item.is_folder and item.name == part and parent_id in item.parents),
                None
            )
            parent_id = existing or self.add_folder(part, parent_id)
        return parent_id


class SleepRecorder:
    """Async sleep replacement recording requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_sync_config(local_root: Path, **overrides) -> SyncConfig:
    values = {
        "local_path": str(local_root),
        "drive_folder_id": ROOT_FOLDER_ID,
        "reclaim_memory": False,
    }
    values.update(overrides)
    return SyncConfig(**values)


def write_local(root: Path, relative_path: str, content: bytes, mtime: Optional[float] = None) -> Path:
    target = root / relative_path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    if mtime is not None:
        os.utime(target, (mtime, mtime))
    return target


def future_timestamp(seconds: int = 3600) -> float:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).timestamp()


@pytest.fixture
def fake_client():
    return FakeRemoteClient()


@pytest.fixture
def local_root(tmp_path):
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()

"""Durable, chunked store of tracked-file state."""

import asyncio
import functools
import json
import os
import tempfile
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .models import CHUNK_PREFIX, CHUNK_SUFFIX, TrackedFile, chunk_name_for, parse_timestamp
from ..exceptions import PersistenceError
from ..utils.logging import get_logger


STATE_VERSION = "2.0"
META_FILE_NAME = "meta.json"
LEGACY_STATE_FILE_NAME = ".gdrive-sync-state.json"


class FileStateStore:
    """Mapping from relative path to the last synchronized metadata.

    Records are partitioned into chunk files under ``<root>/.gdrive-sync``.
    Only the summary file is read at startup; chunks load on demand and at
    most ``max_loaded_chunks`` clean chunks stay resident (LRU). Chunks with
    unsaved changes are never evicted.

    All mutation must happen on the event loop thread; only file I/O is
    handed to the default executor. Saves are serialized so that at most
    one writer thread touches the state directory at a time.
    """

    def __init__(
        self,
        local_root: Path,
        state_dir_name: str = ".gdrive-sync",
        max_loaded_chunks: int = 20
    ):
        self.local_root = Path(local_root)
        self.state_dir = self.local_root / state_dir_name
        self.meta_file = self.state_dir / META_FILE_NAME
        self.legacy_file = self.local_root / LEGACY_STATE_FILE_NAME
        self.max_loaded_chunks = max_loaded_chunks

        self.last_sync: Optional[datetime] = None

        self._files: Dict[str, TrackedFile] = {}
        self._loaded: "OrderedDict[str, Dict[str, TrackedFile]]" = OrderedDict()
        # chunk name -> paths removed since the chunk was last written
        self._dirty: Dict[str, Set[str]] = {}
        self._saved_once = False
        self._save_lock: Optional[asyncio.Lock] = None

        self.logger = get_logger(self.__class__.__name__)

    @property
    def tracked_count(self) -> int:
        """Number of records currently resident in memory."""
        return len(self._files)

    @property
    def loaded_chunks(self) -> List[str]:
        return list(self._loaded)

    @property
    def dirty_chunks(self) -> List[str]:
        return list(self._dirty)

    async def load(self):
        """Prepare the state directory and read the summary file.

        A legacy single-file state is migrated into chunks, saved, and
        removed; the migrated records are then dropped from memory.
        """
        self._files.clear()
        self._loaded.clear()
        self._dirty.clear()
        self._saved_once = False
        self.last_sync = None

        try:
            await self._run(functools.partial(self.state_dir.mkdir, parents=True, exist_ok=True))
        except OSError as e:
            self.logger.error("Failed to create state directory", state_dir=str(self.state_dir), error=str(e))
            return

        try:
            legacy = await self._run(_read_json, self.legacy_file)
        except PersistenceError as e:
            self.logger.warning("Ignoring unreadable legacy state file", error=str(e))
            legacy = None

        if legacy and legacy.get("files"):
            await self._migrate_legacy(legacy)
            return

        try:
            meta = await self._run(_read_json, self.meta_file)
        except PersistenceError as e:
            self.logger.warning("Ignoring unreadable state summary", error=str(e))
            meta = None

        if meta and meta.get("lastSync"):
            try:
                self.last_sync = parse_timestamp(meta["lastSync"])
            except ValueError:
                self.logger.warning("Invalid lastSync in state summary", value=meta["lastSync"])

        self.logger.info(
            "State store loaded",
            state_dir=str(self.state_dir),
            last_sync=self.last_sync.isoformat() if self.last_sync else None
        )

    async def _migrate_legacy(self, legacy: Dict[str, Any]):
        self.logger.info("Migrating legacy single-file state", files=len(legacy["files"]))

        if legacy.get("lastSync"):
            self.last_sync = parse_timestamp(legacy["lastSync"])

        for path, record in legacy["files"].items():
            try:
                self.track_file(TrackedFile.from_record(path, record))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning("Skipping malformed legacy record", path=path, error=str(e))

        if not await self.save():
            self.logger.warning("Legacy migration not persisted, keeping legacy file")
            return

        try:
            await self._run(self.legacy_file.unlink)
        except OSError as e:
            self.logger.warning("Failed to remove legacy state file", error=str(e))

        self._files.clear()
        self._loaded.clear()
        self.logger.info("Legacy state migration complete")

    async def get_tracked_file(self, path: str) -> Optional[TrackedFile]:
        tracked = self._files.get(path)
        name = chunk_name_for(path)

        if tracked is not None or name in self._loaded:
            if name in self._loaded:
                self._loaded.move_to_end(name)
            return tracked

        await self._load_chunk(name)
        return self._files.get(path)

    def track_file(self, tracked: TrackedFile):
        name = chunk_name_for(tracked.path)
        self._files[tracked.path] = tracked
        self._dirty.setdefault(name, set()).discard(tracked.path)

        if name in self._loaded:
            self._loaded[name][tracked.path] = tracked

    def untrack_file(self, path: str):
        name = chunk_name_for(path)
        self._files.pop(path, None)
        self._dirty.setdefault(name, set()).add(path)

        if name in self._loaded:
            self._loaded[name].pop(path, None)

    def update_last_sync(self):
        self.last_sync = datetime.now(timezone.utc)

    async def get_all_tracked_files(self) -> Dict[str, TrackedFile]:
        """Load every chunk on disk and return all records.

        Touches every chunk file, so it is meant for full reconciliation and
        the remote poll only. The result is accumulated while chunks load and
        is complete even when loading evicts earlier chunks.
        """
        try:
            chunk_names = await self._run(self._list_chunk_files)
        except OSError as e:
            self.logger.error("Failed to list chunk files", error=str(e))
            chunk_names = []

        result = dict(self._files)
        for name in chunk_names:
            payload = await self._load_chunk(name)
            if payload:
                result.update(payload)

        return result

    async def save(self) -> bool:
        """Persist the summary and changed chunks.

        Every chunk is written on the first save of a session; afterwards only
        dirty chunks are. Failures are logged and the changes stay pending.
        A save that starts while another is writing waits for it and then
        writes the changes made in the meantime.

        Returns:
            True if everything was written
        """
        if self._save_lock is None:
            self._save_lock = asyncio.Lock()

        async with self._save_lock:
            return await self._save_locked()

    async def _save_locked(self) -> bool:
        groups: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for path, tracked in self._files.items():
            groups.setdefault(chunk_name_for(path), {})[path] = tracked.to_record()
        for name, payload in self._loaded.items():
            chunk = groups.setdefault(name, {})
            for path, tracked in payload.items():
                chunk.setdefault(path, tracked.to_record())

        names = set(self._dirty) if self._saved_once else set(groups) | set(self._dirty)
        pending = {name: self._dirty.pop(name, set()) for name in names}
        plan = {
            name: (groups.get(name, {}), name in self._loaded, removed)
            for name, removed in pending.items()
        }
        meta = {
            "lastSync": self.last_sync.isoformat() if self.last_sync else None,
            "version": STATE_VERSION,
            "chunked": True
        }

        try:
            await self._run(self._write_chunks, meta, plan)
        except (PersistenceError, OSError) as e:
            for name, removed in pending.items():
                self._dirty.setdefault(name, set()).update(removed)
            self.logger.error("Failed to save sync state", state_dir=str(self.state_dir), error=str(e))
            return False

        self._saved_once = True
        self.logger.debug("Sync state saved", chunks_written=len(plan))
        return True

    async def _load_chunk(self, name: str) -> Optional[Dict[str, TrackedFile]]:
        if name in self._loaded:
            self._loaded.move_to_end(name)
            return self._loaded[name]

        try:
            data = await self._run(_read_json, self.state_dir / name)
        except PersistenceError as e:
            self.logger.warning("Failed to load chunk", chunk=name, error=str(e))
            return None

        removed = self._dirty.get(name, set())
        payload: Dict[str, TrackedFile] = {}

        for path, record in (data or {}).items():
            if path in removed:
                continue
            tracked = self._files.get(path)
            if tracked is None:
                try:
                    tracked = TrackedFile.from_record(path, record)
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning("Skipping malformed state record", chunk=name, path=path, error=str(e))
                    continue
                self._files[path] = tracked
            payload[path] = tracked

        for path, tracked in self._files.items():
            if path not in payload and chunk_name_for(path) == name:
                payload[path] = tracked

        self._loaded[name] = payload
        self._evict_clean_chunks(keep=name)
        return payload

    def _evict_clean_chunks(self, keep: str):
        for name in list(self._loaded):
            if len(self._loaded) <= self.max_loaded_chunks:
                break
            if name == keep or name in self._dirty:
                continue

            payload = self._loaded.pop(name)
            for path in payload:
                self._files.pop(path, None)
            self.logger.debug("Evicted chunk from memory", chunk=name, files=len(payload))

    def _list_chunk_files(self) -> List[str]:
        if not self.state_dir.exists():
            return []
        return sorted(
            entry.name for entry in self.state_dir.iterdir()
            if entry.name.startswith(CHUNK_PREFIX) and entry.name.endswith(CHUNK_SUFFIX)
        )

    def _write_chunks(self, meta: Dict[str, Any], plan: Dict[str, tuple]):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        _write_json_atomic(self.meta_file, meta)

        for name, (records, loaded, removed) in plan.items():
            chunk_path = self.state_dir / name
            if loaded:
                payload = dict(records)
            else:
                try:
                    on_disk = _read_json(chunk_path) or {}
                except PersistenceError:
                    # unreadable chunk is replaced by what is known in memory
                    on_disk = {}
                payload = {p: r for p, r in on_disk.items() if p not in removed}
                payload.update(records)

            if payload:
                _write_json_atomic(chunk_path, payload)
            else:
                try:
                    chunk_path.unlink()
                except FileNotFoundError:
                    pass

    async def _run(self, func, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON object from disk; a missing file yields ``None``."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e


def _write_json_atomic(path: Path, data: Dict[str, Any]):
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            'w', encoding='utf-8', dir=path.parent, prefix=f"{path.name}.", suffix=".tmp", delete=False
        ) as f:
            tmp_name = f.name
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
        raise PersistenceError(f"Failed to write {path}: {e}") from e

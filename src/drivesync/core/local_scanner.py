"""Local tree enumeration, file fingerprints and ignore rules."""

import asyncio
import functools
import hashlib
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..utils.logging import get_logger


DEFAULT_IGNORED_DIRS = frozenset({
    "node_modules", "dist", "build", "target", "__pycache__",
    "venv", "env", "coverage", "out", "tmp", "temp",
})
DEFAULT_IGNORED_SUFFIXES = (".pyc", ".log")
CHECKSUM_BLOCK_SIZE = 1024 * 1024


class IgnoreRules:
    """Path filter shared by the local scanner and the local watcher.

    Any dot-prefixed segment is ignored (this also covers the state
    directory and VCS folders). Dependency and build directory names are
    ignored wherever they appear as a directory.
    """

    def __init__(
        self,
        ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS,
        ignored_suffixes: Iterable[str] = DEFAULT_IGNORED_SUFFIXES
    ):
        self.ignored_dirs = frozenset(ignored_dirs)
        self.ignored_suffixes = tuple(ignored_suffixes)

    def is_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        parts = [part for part in relative_path.replace("\\", "/").split("/") if part]
        if not parts:
            return False

        if any(part.startswith(".") for part in parts):
            return True

        directories = parts if is_dir else parts[:-1]
        if any(part in self.ignored_dirs for part in directories):
            return True

        return not is_dir and parts[-1].endswith(self.ignored_suffixes)


@dataclass
class LocalFileInfo:
    """Current state of a local file; ``checksum`` is filled on demand."""

    path: str
    size: int
    modified_time: datetime
    checksum: Optional[str] = None


def calculate_checksum(file_path: Path) -> str:
    """MD5 hex digest of a file, matching Drive's ``md5Checksum``."""
    digest = hashlib.md5()
    with open(file_path, 'rb') as f:
        for block in iter(functools.partial(f.read, CHECKSUM_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def get_file_info(file_path: Path, relative_path: str, with_checksum: bool = True) -> Optional[LocalFileInfo]:
    """Stat (and optionally hash) a file; ``None`` when it is missing or not a file."""
    try:
        stats = os.stat(file_path)
        if not os.path.isfile(file_path):
            return None
        checksum = calculate_checksum(file_path) if with_checksum else None
    except FileNotFoundError:
        return None

    return LocalFileInfo(
        path=relative_path,
        size=stats.st_size,
        modified_time=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
        checksum=checksum
    )


def to_relative(root: Path, file_path: Path) -> str:
    """Relative path of ``file_path`` under ``root`` with ``/`` separators."""
    return Path(os.path.relpath(file_path, root)).as_posix()


class LocalTreeScanner:
    """Enumerates the local root, skipping ignored paths."""

    def __init__(self, root: Path, ignore_rules: Optional[IgnoreRules] = None):
        self.root = Path(root)
        self.ignore_rules = ignore_rules or IgnoreRules()
        self.logger = get_logger(self.__class__.__name__)

    def absolute(self, relative_path: str) -> Path:
        return self.root / Path(relative_path)

    async def scan(self) -> Dict[str, LocalFileInfo]:
        """Return every non-ignored file keyed by relative path (stat only, no hashing)."""
        loop = asyncio.get_event_loop()
        files = await loop.run_in_executor(None, self._scan_tree)
        self.logger.info("Scanned local tree", root=str(self.root), files=len(files))
        return files

    async def file_info(self, relative_path: str, with_checksum: bool = True) -> Optional[LocalFileInfo]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, get_file_info, self.absolute(relative_path), relative_path, with_checksum
        )

    async def checksum(self, info: LocalFileInfo) -> Optional[str]:
        """Fill in and return the checksum of a scanned file."""
        if info.checksum is None:
            loop = asyncio.get_event_loop()
            try:
                info.checksum = await loop.run_in_executor(
                    None, calculate_checksum, self.absolute(info.path)
                )
            except FileNotFoundError:
                return None
        return info.checksum

    def _scan_tree(self) -> Dict[str, LocalFileInfo]:
        files: Dict[str, LocalFileInfo] = {}
        pending: List[Path] = [self.root]

        while pending:
            directory = pending.pop()
            try:
                entries = list(os.scandir(directory))
            except OSError as e:
                self.logger.warning("Failed to scan directory", directory=str(directory), error=str(e))
                continue

            for entry in entries:
                relative = to_relative(self.root, Path(entry.path))
                try:
                    is_dir = entry.is_dir(follow_symlinks=False)
                    if self.ignore_rules.is_ignored(relative, is_dir=is_dir):
                        continue
                    if is_dir:
                        pending.append(Path(entry.path))
                    elif entry.is_file():
                        stats = entry.stat()
                        files[relative] = LocalFileInfo(
                            path=relative,
                            size=stats.st_size,
                            modified_time=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)
                        )
                except OSError as e:
                    self.logger.warning("Failed to stat local entry", path=relative, error=str(e))

        return files

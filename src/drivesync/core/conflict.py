"""Divergence classification and conflict resolution policies."""

import asyncio
import posixpath
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from .local_scanner import LocalFileInfo
from .status import StatusReporter
from .transfers import TransferService
from ..api_clients.base import RemoteItem
from ..config.schema import ConflictPolicy
from ..exceptions import ConflictAlreadyPendingError
from ..state import TrackedFile
from ..utils.logging import get_logger


class Action(str, Enum):
    DOWNLOAD = "download"
    ADOPT = "adopt"
    CONFLICT = "conflict"
    DOWNLOAD_UPDATE = "download-update"
    UPLOAD_UPDATE = "upload-update"
    RESTAMP = "restamp"
    SKIP = "skip"


def is_unchanged(tracked: Optional[TrackedFile], local: Optional[LocalFileInfo], remote: RemoteItem) -> bool:
    """True when neither side is newer than the tracked record, so no hashing is needed."""
    return (
        tracked is not None
        and local is not None
        and local.modified_time <= tracked.modified_time
        and remote.modified_time <= tracked.modified_time
    )


def classify(
    tracked: Optional[TrackedFile],
    local: Optional[LocalFileInfo],
    remote: RemoteItem,
    tolerance_seconds: float = 5.0,
    restore_missing: bool = True
) -> Action:
    """Decide what to do with one remote file given the local copy and the tracked record.

    ``local.checksum`` must be filled in unless :func:`is_unchanged` holds.
    With ``restore_missing`` a tracked file missing locally is downloaded
    even when the remote copy did not change; otherwise only a newer remote
    copy brings it back.
    """
    if local is None:
        if tracked is None or restore_missing or remote.modified_time > tracked.modified_time:
            return Action.DOWNLOAD
        return Action.SKIP

    if tracked is None:
        if remote.checksum is not None and local.checksum == remote.checksum:
            return Action.ADOPT
        delta = abs((local.modified_time - remote.modified_time).total_seconds())
        if delta <= tolerance_seconds:
            return Action.ADOPT
        return Action.CONFLICT

    local_newer = local.modified_time > tracked.modified_time
    remote_newer = remote.modified_time > tracked.modified_time

    if not local_newer and not remote_newer:
        return Action.SKIP

    if remote.checksum is not None and local.checksum == remote.checksum:
        return Action.RESTAMP

    local_changed = local_newer and local.checksum != tracked.checksum
    remote_changed = remote_newer and (remote.checksum is None or remote.checksum != tracked.checksum)

    if local_changed and remote_changed:
        return Action.CONFLICT
    if remote_changed:
        return Action.DOWNLOAD_UPDATE
    if local_changed:
        return Action.UPLOAD_UPDATE
    return Action.RESTAMP


@dataclass
class ConflictCase:
    path: str
    local_modified: datetime
    remote_modified: datetime
    local_size: Optional[int]
    remote_size: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "local_modified": self.local_modified.isoformat(),
            "remote_modified": self.remote_modified.isoformat(),
            "local_size": self.local_size,
            "remote_size": self.remote_size,
        }


class ConflictDecision(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"
    SKIP = "skip"


class ConflictDecisionChannel:
    """Hands 'ask' conflicts to an external decider, one at a time.

    Each outstanding ask is a future keyed by path. Further asks wait for
    the current one to be answered; asking again for a path that is already
    waiting raises :class:`ConflictAlreadyPendingError`.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.logger = get_logger(self.__class__.__name__)

        self._pending: Dict[str, asyncio.Future] = {}
        self._waiting: Set[str] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def pending_path(self) -> Optional[str]:
        return next(iter(self._pending), None)

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    def open(self):
        self._closed = False

    async def ask(self, case: ConflictCase, notify: Callable[[ConflictCase], None]) -> ConflictDecision:
        if case.path in self._waiting:
            raise ConflictAlreadyPendingError(case.path)

        self._waiting.add(case.path)
        try:
            async with self._lock:
                if self._closed:
                    return ConflictDecision.SKIP

                future = asyncio.get_event_loop().create_future()
                self._pending[case.path] = future
                notify(case)

                try:
                    if self.timeout:
                        return await asyncio.wait_for(future, self.timeout)
                    return await future
                except asyncio.TimeoutError:
                    self.logger.warning("Conflict decision timed out", path=case.path)
                    return ConflictDecision.SKIP
                finally:
                    self._pending.pop(case.path, None)
        finally:
            self._waiting.discard(case.path)

    def submit(self, decision: ConflictDecision, path: Optional[str] = None) -> bool:
        """Answer the pending ask (for ``path``, or the only one). Returns False if none matches."""
        path = path or self.pending_path
        future = self._pending.get(path) if path else None
        if future is None or future.done():
            self.logger.warning("No pending conflict decision", path=path)
            return False

        future.set_result(ConflictDecision(decision))
        return True

    def cancel_all(self):
        """Answer every pending ask with skip and refuse new ones until reopened."""
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_result(ConflictDecision.SKIP)


def conflict_file_name(relative_path: str, now: Optional[datetime] = None) -> str:
    """Sibling path for the local side of a keep-both resolution."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"

    directory, name = posixpath.split(relative_path)
    stem, ext = posixpath.splitext(name)
    return posixpath.join(directory, f"{stem}_conflict_{timestamp}{ext}")


class ConflictResolver:
    """Applies the configured policy to a detected conflict.

    A skipped 'ask' conflict is snoozed for ``snooze_seconds`` so it is not
    raised again on every poll.
    """

    def __init__(
        self,
        transfers: TransferService,
        reporter: StatusReporter,
        channel: ConflictDecisionChannel,
        policy: ConflictPolicy = ConflictPolicy.KEEP_BOTH,
        snooze_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic
    ):
        self.transfers = transfers
        self.reporter = reporter
        self.channel = channel
        self.policy = ConflictPolicy(policy)
        self.snooze_seconds = snooze_seconds
        self._clock = clock
        self._snoozed: Dict[str, float] = {}
        self.logger = get_logger(self.__class__.__name__)

    def is_snoozed(self, path: str) -> bool:
        until = self._snoozed.get(path)
        if until is None:
            return False
        if self._clock() >= until:
            del self._snoozed[path]
            return False
        return True

    async def resolve(self, case: ConflictCase, remote: RemoteItem) -> ConflictDecision:
        """Resolve one conflict and return the decision that was applied."""
        if self.is_snoozed(case.path):
            self.logger.debug("Conflict snoozed", path=case.path)
            return ConflictDecision.SKIP

        self.reporter.warning(f"Content conflict detected: {case.path}", current_path=case.path)

        if self.policy is ConflictPolicy.LOCAL_WINS:
            decision = ConflictDecision.LOCAL
        elif self.policy is ConflictPolicy.DRIVE_WINS:
            decision = ConflictDecision.REMOTE
        elif self.policy is ConflictPolicy.ASK:
            decision = await self._ask(case)
        else:
            decision = ConflictDecision.BOTH

        await self.apply(decision, case, remote)
        return decision

    async def apply(self, decision: ConflictDecision, case: ConflictCase, remote: RemoteItem):
        path = case.path

        if decision is ConflictDecision.LOCAL:
            await self.transfers.upload_update(path, remote.id)
            self.reporter.info(f"Conflict resolved (local wins): {path}", current_path=path)

        elif decision is ConflictDecision.REMOTE:
            await self.transfers.download(remote, path)
            self.reporter.info(f"Conflict resolved (Drive wins): {path}", current_path=path)

        elif decision is ConflictDecision.BOTH:
            await self._keep_both(path, remote)

        else:
            self._snoozed[path] = self._clock() + self.snooze_seconds
            self.reporter.info(f"Skipped conflict: {path}", current_path=path)

    async def _ask(self, case: ConflictCase) -> ConflictDecision:
        def notify(pending: ConflictCase):
            self.reporter.conflict(f"Conflict needs a decision: {pending.path}", pending.to_dict())

        try:
            return await self.channel.ask(case, notify)
        except ConflictAlreadyPendingError:
            self.logger.info("Conflict decision already pending", path=case.path)
            return ConflictDecision.SKIP

    async def _keep_both(self, path: str, remote: RemoteItem):
        self.reporter.info(f"Conflict resolution: keeping both versions of {path}", current_path=path)

        conflict_path = conflict_file_name(path)
        await self.transfers.rename_local(path, conflict_path)
        self.reporter.info(f"Saved local version as: {posixpath.basename(conflict_path)}", current_path=path)

        await self.transfers.download(remote, path)
        await self.transfers.upload_new(conflict_path)

"""Tests for divergence classification and conflict resolution."""

import asyncio
import re
from datetime import datetime, timedelta, timezone

import pytest

from drivesync.api_clients.base import RemoteItem
from drivesync.config.schema import ConflictPolicy
from drivesync.core.conflict import (
    Action,
    ConflictCase,
    ConflictDecision,
    ConflictDecisionChannel,
    ConflictResolver,
    classify,
    conflict_file_name,
    is_unchanged,
)
from drivesync.core.local_scanner import LocalFileInfo, LocalTreeScanner
from drivesync.core.status import Severity, StatusReporter
from drivesync.core.transfers import TransferService
from drivesync.exceptions import ConflictAlreadyPendingError
from drivesync.performance import RetryingExecutor
from drivesync.state import FileStateStore, TrackedFile

from conftest import ROOT_FOLDER_ID, md5, write_local


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def remote(checksum="r", modified=T0, size=1):
    return RemoteItem(
        id="remote-1", name="f.txt", mime_type="text/plain",
        modified_time=modified, size=size, checksum=checksum
    )


def local(checksum="l", modified=T0, size=1):
    return LocalFileInfo(path="f.txt", size=size, modified_time=modified, checksum=checksum)


def tracked(checksum="c", modified=T0):
    return TrackedFile(path="f.txt", remote_id="remote-1", modified_time=modified, size=1, checksum=checksum)


LATER = T0 + timedelta(minutes=10)


class TestClassify:
    """Truth table of the per-file decision."""

    def test_missing_locally_untracked_downloads(self):
        assert classify(None, None, remote()) is Action.DOWNLOAD

    def test_missing_locally_tracked_restores_by_default(self):
        assert classify(tracked(), None, remote()) is Action.DOWNLOAD

    def test_missing_locally_without_restore_waits_for_newer_remote(self):
        assert classify(tracked(), None, remote(), restore_missing=False) is Action.SKIP
        assert classify(tracked(), None, remote(modified=LATER), restore_missing=False) is Action.DOWNLOAD

    def test_untracked_equal_content_is_adopted(self):
        result = classify(None, local(checksum="x", modified=T0), remote(checksum="x", modified=LATER))
        assert result is Action.ADOPT

    def test_untracked_within_tolerance_is_adopted(self):
        result = classify(None, local(checksum="a"), remote(checksum="b", modified=T0 + timedelta(seconds=4)))
        assert result is Action.ADOPT

    def test_untracked_different_content_is_conflict(self):
        result = classify(None, local(checksum="a"), remote(checksum="b", modified=LATER))
        assert result is Action.CONFLICT

    def test_untracked_without_remote_checksum_uses_time(self):
        result = classify(None, local(checksum="a"), remote(checksum=None, modified=LATER))
        assert result is Action.CONFLICT

    def test_nothing_newer_is_skipped(self):
        assert classify(tracked(), local(), remote()) is Action.SKIP

    def test_only_remote_changed_downloads(self):
        result = classify(tracked("c"), local("c"), remote("r", modified=LATER))
        assert result is Action.DOWNLOAD_UPDATE

    def test_only_local_changed_uploads(self):
        result = classify(tracked("c"), local("l", modified=LATER), remote("c"))
        assert result is Action.UPLOAD_UPDATE

    def test_both_changed_is_conflict(self):
        result = classify(tracked("c"), local("l", modified=LATER), remote("r", modified=LATER))
        assert result is Action.CONFLICT

    def test_both_changed_to_same_content_is_restamped(self):
        result = classify(tracked("c"), local("same", modified=LATER), remote("same", modified=LATER))
        assert result is Action.RESTAMP

    def test_touched_without_content_change_is_restamped(self):
        result = classify(tracked("c"), local("c", modified=LATER), remote("c2"))
        assert result is Action.RESTAMP

    def test_remote_without_checksum_counts_as_changed(self):
        result = classify(tracked("c"), local("c"), remote(None, modified=LATER))
        assert result is Action.DOWNLOAD_UPDATE

    def test_is_unchanged(self):
        assert is_unchanged(tracked(), local(), remote())
        assert not is_unchanged(tracked(), local(modified=LATER), remote())
        assert not is_unchanged(None, local(), remote())
        assert not is_unchanged(tracked(), None, remote())


class TestConflictFileName:

    def test_format(self):
        now = datetime(2024, 2, 3, 4, 5, 6, 789000, tzinfo=timezone.utc)
        assert conflict_file_name("docs/report.pdf", now) == "docs/report_conflict_2024-02-03T04-05-06-789Z.pdf"

    def test_top_level_without_extension(self):
        now = datetime(2024, 2, 3, 4, 5, 6, tzinfo=timezone.utc)
        assert conflict_file_name("Makefile", now) == "Makefile_conflict_2024-02-03T04-05-06-000Z"

    def test_default_clock(self):
        name = conflict_file_name("a/b.txt")
        assert re.fullmatch(r"a/b_conflict_\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z\.txt", name)


def case_for(path):
    return ConflictCase(path=path, local_modified=T0, remote_modified=LATER, local_size=1, remote_size=2)


class TestConflictDecisionChannel:
    """Test the ask/submit rendezvous."""

    @pytest.mark.asyncio
    async def test_submit_answers_pending_ask(self):
        channel = ConflictDecisionChannel()
        notified = []

        task = asyncio.ensure_future(channel.ask(case_for("a.txt"), notified.append))
        await asyncio.sleep(0)

        assert channel.pending_path == "a.txt"
        assert [case.path for case in notified] == ["a.txt"]
        assert channel.submit(ConflictDecision.LOCAL) is True
        assert await task is ConflictDecision.LOCAL
        assert channel.pending_path is None

    @pytest.mark.asyncio
    async def test_submit_without_pending_returns_false(self):
        channel = ConflictDecisionChannel()
        assert channel.submit(ConflictDecision.REMOTE) is False

    @pytest.mark.asyncio
    async def test_submit_accepts_string_decision_for_named_path(self):
        channel = ConflictDecisionChannel()
        task = asyncio.ensure_future(channel.ask(case_for("a.txt"), lambda case: None))
        await asyncio.sleep(0)

        assert channel.submit("both", path="other.txt") is False
        assert channel.submit("both", path="a.txt") is True
        assert await task is ConflictDecision.BOTH

    @pytest.mark.asyncio
    async def test_asks_are_serialized(self):
        channel = ConflictDecisionChannel()
        notified = []

        first = asyncio.ensure_future(channel.ask(case_for("a.txt"), notified.append))
        second = asyncio.ensure_future(channel.ask(case_for("b.txt"), notified.append))
        await asyncio.sleep(0)

        assert [case.path for case in notified] == ["a.txt"]
        assert channel.waiting_count == 2

        channel.submit(ConflictDecision.REMOTE)
        assert await first is ConflictDecision.REMOTE

        for _ in range(3):
            await asyncio.sleep(0)
        assert channel.pending_path == "b.txt"
        channel.submit(ConflictDecision.SKIP)
        assert await second is ConflictDecision.SKIP

    @pytest.mark.asyncio
    async def test_duplicate_ask_for_waiting_path_raises(self):
        channel = ConflictDecisionChannel()
        task = asyncio.ensure_future(channel.ask(case_for("a.txt"), lambda case: None))
        await asyncio.sleep(0)

        with pytest.raises(ConflictAlreadyPendingError):
            await channel.ask(case_for("a.txt"), lambda case: None)

        channel.submit(ConflictDecision.LOCAL)
        await task

    @pytest.mark.asyncio
    async def test_timeout_answers_skip(self):
        channel = ConflictDecisionChannel(timeout=0.01)
        assert await channel.ask(case_for("a.txt"), lambda case: None) is ConflictDecision.SKIP
        assert channel.pending_path is None

    @pytest.mark.asyncio
    async def test_cancel_all_skips_and_closes(self):
        channel = ConflictDecisionChannel()
        task = asyncio.ensure_future(channel.ask(case_for("a.txt"), lambda case: None))
        await asyncio.sleep(0)

        channel.cancel_all()

        assert await task is ConflictDecision.SKIP
        assert await channel.ask(case_for("b.txt"), lambda case: None) is ConflictDecision.SKIP

        channel.open()
        late = asyncio.ensure_future(channel.ask(case_for("c.txt"), lambda case: None))
        await asyncio.sleep(0)
        assert channel.pending_path == "c.txt"
        channel.submit(ConflictDecision.LOCAL)
        assert await late is ConflictDecision.LOCAL


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestConflictResolver:
    """Test policy application against the in-memory remote."""

    async def _setup(self, fake_client, local_root, policy, channel=None):
        self.store = FileStateStore(local_root)
        await self.store.load()
        self.scanner = LocalTreeScanner(local_root)
        self.transfers = TransferService(
            fake_client, self.store, self.scanner, RetryingExecutor(), ROOT_FOLDER_ID
        )
        self.events = []
        self.reporter = StatusReporter(sink=self.events.append)
        self.channel = channel or ConflictDecisionChannel()
        self.clock = FakeClock()
        self.resolver = ConflictResolver(
            self.transfers, self.reporter, self.channel, policy=policy, clock=self.clock
        )

        self.remote_item = fake_client.add_file("notes/todo.txt", b"drive version", LATER)
        write_local(local_root, "notes/todo.txt", b"local version")
        self.case = ConflictCase(
            path="notes/todo.txt", local_modified=T0, remote_modified=LATER, local_size=13, remote_size=13
        )

    @pytest.mark.asyncio
    async def test_keep_both(self, fake_client, local_root):
        await self._setup(fake_client, local_root, ConflictPolicy.KEEP_BOTH)

        decision = await self.resolver.resolve(self.case, self.remote_item)

        assert decision is ConflictDecision.BOTH
        assert (local_root / "notes/todo.txt").read_bytes() == b"drive version"
        conflict_copies = list((local_root / "notes").glob("todo_conflict_*.txt"))
        assert len(conflict_copies) == 1
        assert conflict_copies[0].read_bytes() == b"local version"

        remote_paths = fake_client.file_paths()
        assert "notes/todo.txt" in remote_paths
        assert f"notes/{conflict_copies[0].name}" in remote_paths
        assert await self.store.get_tracked_file(f"notes/{conflict_copies[0].name}") is not None
        assert (await self.store.get_tracked_file("notes/todo.txt")).checksum == md5(b"drive version")

    @pytest.mark.asyncio
    async def test_local_wins(self, fake_client, local_root):
        await self._setup(fake_client, local_root, ConflictPolicy.LOCAL_WINS)

        await self.resolver.resolve(self.case, self.remote_item)

        assert fake_client.content_at("notes/todo.txt") == b"local version"
        assert fake_client.call_count("update") == 1
        assert fake_client.call_count("get") == 0

    @pytest.mark.asyncio
    async def test_drive_wins(self, fake_client, local_root):
        await self._setup(fake_client, local_root, ConflictPolicy.DRIVE_WINS)

        await self.resolver.resolve(self.case, self.remote_item)

        assert (local_root / "notes/todo.txt").read_bytes() == b"drive version"
        assert fake_client.call_count("update") == 0
        assert any(event.severity is Severity.WARNING for event in self.events)

    @pytest.mark.asyncio
    async def test_ask_applies_submitted_decision(self, fake_client, local_root):
        await self._setup(fake_client, local_root, ConflictPolicy.ASK)

        task = asyncio.ensure_future(self.resolver.resolve(self.case, self.remote_item))
        await asyncio.sleep(0)

        conflict_events = [event for event in self.events if event.severity is Severity.CONFLICT]
        assert len(conflict_events) == 1
        assert conflict_events[0].conflict_case["path"] == "notes/todo.txt"

        self.channel.submit(ConflictDecision.REMOTE)
        assert await task is ConflictDecision.REMOTE
        assert (local_root / "notes/todo.txt").read_bytes() == b"drive version"

    @pytest.mark.asyncio
    async def test_skip_snoozes_path(self, fake_client, local_root):
        await self._setup(fake_client, local_root, ConflictPolicy.ASK, ConflictDecisionChannel(timeout=0.01))

        assert await self.resolver.resolve(self.case, self.remote_item) is ConflictDecision.SKIP
        assert self.resolver.is_snoozed("notes/todo.txt")

        warnings_before = sum(1 for event in self.events if event.severity is Severity.WARNING)
        assert await self.resolver.resolve(self.case, self.remote_item) is ConflictDecision.SKIP
        warnings_after = sum(1 for event in self.events if event.severity is Severity.WARNING)
        assert warnings_after == warnings_before

        self.clock.now += 601
        assert not self.resolver.is_snoozed("notes/todo.txt")
        assert (local_root / "notes/todo.txt").read_bytes() == b"local version"

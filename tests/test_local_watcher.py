"""Tests for debouncing and filtering in the local watcher."""

import asyncio

import pytest

from drivesync.core.operation_queue import OperationKind
from drivesync.watcher import LocalWatcher

from conftest import write_local


DEBOUNCE = 0.05


class TestLocalWatcher:
    """Test event collapsing without a real filesystem observer."""

    def _watcher(self, local_root, active=True):
        self.received = []
        self.active = active
        return LocalWatcher(
            local_root,
            lambda kind, path: self.received.append((kind, path)),
            is_active=lambda: self.active,
            debounce_seconds=DEBOUNCE
        )

    async def settle(self):
        await asyncio.sleep(DEBOUNCE * 4)

    @pytest.mark.asyncio
    async def test_burst_collapses_to_one_event(self, local_root):
        watcher = self._watcher(local_root)
        target = write_local(local_root, "doc.txt", b"x")

        for _ in range(5):
            watcher.notify(OperationKind.CHANGE, str(target))
        assert watcher.pending_count == 1

        await self.settle()
        assert self.received == [(OperationKind.CHANGE, "doc.txt")]

    @pytest.mark.asyncio
    async def test_add_followed_by_change_stays_add(self, local_root):
        watcher = self._watcher(local_root)
        target = write_local(local_root, "new.txt", b"x")

        watcher.notify(OperationKind.ADD, str(target))
        watcher.notify(OperationKind.CHANGE, str(target))

        await self.settle()
        assert self.received == [(OperationKind.ADD, "new.txt")]

    @pytest.mark.asyncio
    async def test_latest_kind_wins(self, local_root):
        watcher = self._watcher(local_root)
        target = local_root / "gone.txt"

        watcher.notify(OperationKind.CHANGE, str(target))
        watcher.notify(OperationKind.DELETE, str(target))

        await self.settle()
        assert self.received == [(OperationKind.DELETE, "gone.txt")]

    @pytest.mark.asyncio
    async def test_delete_of_existing_file_becomes_change(self, local_root):
        watcher = self._watcher(local_root)
        target = write_local(local_root, "atomic-save.txt", b"x")

        watcher.notify(OperationKind.DELETE, str(target))

        await self.settle()
        assert self.received == [(OperationKind.CHANGE, "atomic-save.txt")]

    @pytest.mark.asyncio
    async def test_separate_paths_emit_separately(self, local_root):
        watcher = self._watcher(local_root)
        first = write_local(local_root, "a/one.txt", b"1")
        second = write_local(local_root, "b/two.txt", b"2")

        watcher.notify(OperationKind.ADD, str(first))
        watcher.notify(OperationKind.ADD, str(second))

        await self.settle()
        assert sorted(path for _, path in self.received) == ["a/one.txt", "b/two.txt"]

    @pytest.mark.asyncio
    async def test_ignored_paths_are_dropped(self, local_root):
        watcher = self._watcher(local_root)

        watcher.notify(OperationKind.CHANGE, str(local_root / ".gdrive-sync" / "chunk-sr.json"))
        watcher.notify(OperationKind.ADD, str(local_root / ".report.pdf.drivesync-part"))
        watcher.notify(OperationKind.ADD, str(local_root / "node_modules" / "x.js"))
        watcher.notify(OperationKind.ADD, str(local_root / "debug.log"))
        watcher.notify(OperationKind.ADD, str(local_root.parent / "outside.txt"))

        assert watcher.pending_count == 0

    @pytest.mark.asyncio
    async def test_inactive_watcher_emits_nothing(self, local_root):
        watcher = self._watcher(local_root, active=False)
        target = write_local(local_root, "doc.txt", b"x")

        watcher.notify(OperationKind.ADD, str(target))
        assert watcher.pending_count == 0

    @pytest.mark.asyncio
    async def test_deactivation_drops_pending_event(self, local_root):
        watcher = self._watcher(local_root)
        target = write_local(local_root, "doc.txt", b"x")

        watcher.notify(OperationKind.ADD, str(target))
        self.active = False

        await self.settle()
        assert self.received == []

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, local_root):
        watcher = self._watcher(local_root)
        target = write_local(local_root, "doc.txt", b"x")

        watcher.notify(OperationKind.ADD, str(target))
        watcher.stop()

        await self.settle()
        assert self.received == []
        assert not watcher.is_running

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self, local_root):
        def failing_callback(kind, path):
            raise RuntimeError("queue exploded")

        watcher = LocalWatcher(local_root, failing_callback, is_active=lambda: True, debounce_seconds=DEBOUNCE)
        target = write_local(local_root, "doc.txt", b"x")

        watcher.notify(OperationKind.ADD, str(target))
        await self.settle()

        assert watcher.pending_count == 0

    @pytest.mark.asyncio
    async def test_observer_delivers_real_events(self, local_root):
        watcher = self._watcher(local_root)
        watcher.start()
        try:
            await asyncio.sleep(0.2)
            write_local(local_root, "live.txt", b"hello")

            for _ in range(50):
                if self.received:
                    break
                await asyncio.sleep(0.1)
        finally:
            watcher.stop()

        assert "live.txt" in [path for _, path in self.received]

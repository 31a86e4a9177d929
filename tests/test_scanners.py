"""Tests for the local and remote tree scanners."""

from datetime import timedelta

import pytest

from drivesync.api_clients.base import FOLDER_MIME_TYPE, RemoteItem
from drivesync.core.local_scanner import (
    IgnoreRules,
    LocalTreeScanner,
    calculate_checksum,
    get_file_info,
    to_relative,
)
from drivesync.core.remote_scanner import RemoteTreeScanner, resolve_item_path

from conftest import BASE_TIME, ROOT_FOLDER_ID, md5, write_local


class TestIgnoreRules:

    def setup_method(self):
        self.rules = IgnoreRules()

    @pytest.mark.parametrize("path,is_dir,expected", [
        ("readme.md", False, False),
        ("src/app.py", False, False),
        (".gdrive-sync/meta.json", False, True),
        (".git", True, True),
        ("docs/.hidden", False, True),
        ("node_modules", True, True),
        ("web/node_modules/pkg/index.js", False, True),
        ("build/output.bin", False, True),
        ("build", False, False),
        ("src/__pycache__/mod.cpython-311.pyc", False, True),
        ("module.pyc", False, True),
        ("logs/server.log", False, True),
        ("catalog", False, False),
        ("", False, False),
    ])
    def test_is_ignored(self, path, is_dir, expected):
        assert self.rules.is_ignored(path, is_dir=is_dir) is expected

    def test_backslash_paths(self):
        assert self.rules.is_ignored("web\\node_modules\\x.js")

    def test_custom_rules(self):
        rules = IgnoreRules(ignored_dirs={"vendor"}, ignored_suffixes=(".tmp",))
        assert rules.is_ignored("vendor/lib.php")
        assert rules.is_ignored("file.tmp")
        assert not rules.is_ignored("node_modules/x.js")


class TestLocalTreeScanner:
    """Test local enumeration."""

    @pytest.mark.asyncio
    async def test_scan_skips_ignored_entries(self, local_root):
        write_local(local_root, "a.txt", b"a")
        write_local(local_root, "nested/deeper/b.txt", b"bb")
        write_local(local_root, ".gdrive-sync/chunk-a_.json", b"{}")
        write_local(local_root, "node_modules/lib/index.js", b"x")
        write_local(local_root, "app.log", b"log")

        files = await LocalTreeScanner(local_root).scan()

        assert sorted(files) == ["a.txt", "nested/deeper/b.txt"]
        assert files["nested/deeper/b.txt"].size == 2
        assert files["a.txt"].checksum is None

    @pytest.mark.asyncio
    async def test_file_info_and_lazy_checksum(self, local_root):
        write_local(local_root, "a.txt", b"hello", mtime=1700000000)
        scanner = LocalTreeScanner(local_root)

        info = await scanner.file_info("a.txt")
        assert info.checksum == md5(b"hello")
        assert info.size == 5
        assert info.modified_time.timestamp() == 1700000000

        files = await scanner.scan()
        assert await scanner.checksum(files["a.txt"]) == md5(b"hello")
        assert files["a.txt"].checksum == md5(b"hello")

    @pytest.mark.asyncio
    async def test_missing_file(self, local_root):
        scanner = LocalTreeScanner(local_root)
        assert await scanner.file_info("nope.txt") is None

        write_local(local_root, "gone.txt", b"x")
        files = await scanner.scan()
        (local_root / "gone.txt").unlink()
        assert await scanner.checksum(files["gone.txt"]) is None

    def test_helpers(self, local_root):
        path = write_local(local_root, "dir/file.bin", b"\x00" * 2048)
        assert calculate_checksum(path) == md5(b"\x00" * 2048)
        assert to_relative(local_root, path) == "dir/file.bin"
        assert get_file_info(local_root / "dir", "dir") is None
        assert get_file_info(path, "dir/file.bin", with_checksum=False).checksum is None


class TestRemoteTreeScanner:
    """Test recursive remote listing."""

    @pytest.mark.asyncio
    async def test_scan_builds_flat_index(self, fake_client):
        fake_client.add_file("top.txt", b"1")
        fake_client.add_file("a/b/c.txt", b"2")
        fake_client.add_folder("empty")
        fake_client.add_virtual("Budget sheet")

        result = await RemoteTreeScanner(fake_client, ROOT_FOLDER_ID).scan()

        assert sorted(result.files) == ["a/b/c.txt", "top.txt"]
        assert sorted(result.folders) == ["", "a", "a/b", "empty"]
        assert result.folders[""] == ROOT_FOLDER_ID
        assert result.folder_count == 3
        assert result.virtual_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_names_keep_newest(self, fake_client):
        fake_client.add_file("dup.txt", b"old", BASE_TIME)
        newer = fake_client.add_file("dup.txt", b"new", BASE_TIME + timedelta(hours=1))

        result = await RemoteTreeScanner(fake_client, ROOT_FOLDER_ID).scan()

        assert result.files["dup.txt"].id == newer.id

    @pytest.mark.asyncio
    async def test_folder_cycle_is_traversed_once(self, fake_client):
        loop_folder = fake_client.add_folder("loop")
        # listed inside itself under another name
        fake_client.items["alias"] = RemoteItem(
            id=loop_folder, name="again", mime_type=FOLDER_MIME_TYPE,
            modified_time=BASE_TIME, parents=[loop_folder]
        )

        result = await RemoteTreeScanner(fake_client, ROOT_FOLDER_ID).scan()

        assert fake_client.call_count("list_folder") == 2
        assert "loop" in result.folders
        assert "loop/again" not in result.folders


class TestResolveItemPath:

    def _folder(self, item_id, name, parent):
        return RemoteItem(
            id=item_id, name=name, mime_type=FOLDER_MIME_TYPE,
            modified_time=BASE_TIME, parents=[parent] if parent else []
        )

    def test_nested_path(self):
        items = {
            "p": self._folder("p", "Projects", "root"),
            "c": self._folder("c", "ChatApp", "p"),
        }
        assert resolve_item_path("c", items) == "Projects/ChatApp"

    def test_unknown_parent_stops(self):
        items = {"c": self._folder("c", "Shared", "someone-elses-folder")}
        assert resolve_item_path("c", items) == "Shared"

    def test_cycle_returns_empty(self):
        items = {
            "x": self._folder("x", "X", "y"),
            "y": self._folder("y", "Y", "x"),
        }
        assert resolve_item_path("x", items) == ""

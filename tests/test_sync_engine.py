"""Tests for ramfs_manager.sync.engine module.

Validates mirror and copy_tree: exact mirroring, preservation of
attributes and symlinks, change detection, and the durability barrier.
"""

import os
from unittest import mock

import pytest

from ramfs_manager.sync.engine import (
    SyncStats,
    copy_tree,
    durability_barrier,
    is_empty_dir,
    mirror,
)
from ramfs_manager.utils.hashing import compare_hashes, hash_directory


class TestSyncStats:
    """Test SyncStats dataclass."""

    def test_defaults(self):
        s = SyncStats()
        assert s.success is True
        assert s.files_copied == 0
        assert s.files_failed == 0
        assert s.duration_ms == 0.0
        assert s.changed is False

    def test_fail(self):
        s = SyncStats()
        s.fail("boom")
        assert s.success is False
        assert s.files_failed == 1
        assert s.errors == ["boom"]

    def test_to_dict(self):
        s = SyncStats(files_copied=5, bytes_copied=1024)
        d = s.to_dict()
        assert d["files_copied"] == 5
        assert d["bytes_copied"] == 1024
        assert "success" in d


class TestIsEmptyDir:

    def test_missing(self, tmp_path):
        assert is_empty_dir(tmp_path / "missing") is True

    def test_empty(self, tmp_path):
        assert is_empty_dir(tmp_path) is True

    def test_hidden_file_counts(self, tmp_path):
        (tmp_path / ".hidden").write_text("x")
        assert is_empty_dir(tmp_path) is False


class TestMirror:
    """Test exact mirroring of a source tree."""

    def test_full_copy(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        stats = mirror(source, target)

        assert stats.success is True
        assert stats.strategy == "mirror"
        assert stats.files_copied > 0
        assert stats.bytes_copied > 0
        assert hash_directory(source) == hash_directory(target)

    def test_symlink_preserved(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        mirror(source, target)

        link = target / "link.txt"
        assert link.is_symlink()
        assert os.readlink(link) == "file1.txt"

    def test_deletes_extras(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        mirror(source, target)
        (target / "stale.txt").write_text("stale")
        (target / "stale_dir").mkdir()
        (target / "stale_dir" / "inner.txt").write_text("stale")

        stats = mirror(source, target)

        assert stats.files_deleted == 3
        assert not (target / "stale.txt").exists()
        assert not (target / "stale_dir").exists()
        assert hash_directory(source) == hash_directory(target)

    def test_directory_replaced_by_relative_link(self, tmp_path):
        source, target = tmp_path / "memory", tmp_path / "persistent"
        for root in (source, target):
            (root / "subdir").mkdir(parents=True)
            (root / "subdir" / "x").write_text("live")
        os.symlink("subdir", source / "d")
        (target / "d").mkdir()
        (target / "d" / "x").write_text("old")

        stats = mirror(source, target)

        assert stats.success
        assert os.readlink(target / "d") == "subdir"
        assert (target / "subdir" / "x").read_text() == "live"
        assert hash_directory(source) == hash_directory(target)

    def test_directory_replaced_by_absolute_link(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "precious").write_text("not ours")
        source, target = tmp_path / "memory", tmp_path / "persistent"
        source.mkdir()
        os.symlink(str(outside), source / "d")
        (target / "d").mkdir(parents=True)
        (target / "d" / "precious").write_text("old")

        stats = mirror(source, target)

        assert stats.success
        assert (outside / "precious").read_text() == "not ours"
        assert os.readlink(target / "d") == str(outside)
        assert hash_directory(source) == hash_directory(target)

    def test_never_writes_through_unreplaced_link(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        source, target = tmp_path / "memory", tmp_path / "persistent"
        (source / "d").mkdir(parents=True)
        (source / "d" / "y").write_text("data")
        target.mkdir()
        os.symlink(str(outside), target / "d")

        with mock.patch("ramfs_manager.sync.engine._remove", side_effect=PermissionError("denied")):
            stats = mirror(source, target)

        assert not stats.success
        assert stats.files_failed == 2
        assert list(outside.iterdir()) == []

    def test_unchanged_second_run(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        mirror(source, target)

        stats = mirror(source, target)

        assert stats.success is True
        assert stats.files_copied == 0
        assert stats.files_deleted == 0
        assert stats.changed is False
        assert stats.files_unchanged > 0

    def test_modified_file_recopied(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        mirror(source, target)
        (source / "file1.txt").write_text("hello world, updated")

        stats = mirror(source, target)

        assert stats.files_copied == 1
        assert (target / "file1.txt").read_text() == "hello world, updated"

    def test_same_size_content_change_detected(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        mirror(source, target)
        (source / "file1.txt").write_text("HELLO WORLD")
        os.utime(source / "file1.txt", ns=(1_000_000_000, 1_000_000_000))

        mirror(source, target)

        assert (target / "file1.txt").read_text() == "HELLO WORLD"

    def test_type_change_replaced(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        mirror(source, target)
        (source / "file1.txt").unlink()
        (source / "file1.txt").mkdir()
        (source / "file1.txt" / "inside").write_text("x")

        stats = mirror(source, target)

        assert stats.success is True
        assert (target / "file1.txt").is_dir()
        assert (target / "file1.txt" / "inside").read_text() == "x"

    def test_permissions_and_mtime_preserved(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        path = source / "file1.txt"
        os.chmod(path, 0o640)
        os.utime(path, ns=(1_500_000_000_000_000_000, 1_500_000_000_000_000_000))

        mirror(source, target)

        copied = (target / "file1.txt").stat()
        assert copied.st_mode & 0o777 == 0o640
        assert copied.st_mtime_ns == path.stat().st_mtime_ns

    def test_empty_source_empties_target(self, tmp_dirs):
        source, target = tmp_dirs["source"], tmp_dirs["target"]
        target.mkdir()
        (target / "old.txt").write_text("old")

        mirror(source, target)

        assert is_empty_dir(target)

    def test_no_temp_files_left(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        mirror(source, target)
        leftovers = [p for p in target.rglob("*") if p.name.endswith(".ramfs-tmp")]
        assert leftovers == []

    def test_special_files_skipped(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        os.mkfifo(source / "pipe")

        stats = mirror(source, target)

        assert stats.success is True
        assert stats.files_skipped >= 1
        assert not os.path.lexists(target / "pipe")

    def test_missing_source_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            mirror(tmp_path / "missing", tmp_path / "target")


class TestCopyTree:
    """Test additive copying."""

    def test_keeps_target_extras(self, populated_dirs):
        source, target = populated_dirs["source"], populated_dirs["target"]
        target.mkdir()
        (target / "extra.txt").write_text("keep me")

        stats = copy_tree(source, target)

        assert stats.strategy == "copy"
        assert stats.files_deleted == 0
        assert (target / "extra.txt").read_text() == "keep me"
        diff = compare_hashes(hash_directory(source), hash_directory(target))
        assert diff["added"] == []
        assert diff["modified"] == []
        assert diff["removed"] == ["extra.txt"]


class TestDurabilityBarrier:

    def test_barrier_on_directory(self, tmp_path):
        (tmp_path / "f").write_text("data")
        durability_barrier(tmp_path)

    def test_barrier_on_missing_path(self, tmp_path):
        with pytest.raises(OSError):
            durability_barrier(tmp_path / "missing")

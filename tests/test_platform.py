"""Tests for ramfs_manager.utils.platform and the mount helpers built on it."""

import sys
from unittest import mock

import pytest

from ramfs_manager import mounts
from ramfs_manager.errors import MountFailure
from ramfs_manager.mounts import BindMounter
from ramfs_manager.utils.platform import run_command, running_under_systemd


class TestRunningUnderSystemd:

    def test_invocation_id(self):
        assert running_under_systemd({"INVOCATION_ID": "abc"}) is True

    def test_legacy_variable(self):
        assert running_under_systemd({"SYSTEMD_INVOCATION_ID": "abc"}) is True

    def test_plain_shell(self):
        assert running_under_systemd({"HOME": "/root"}) is False


class TestRunCommand:

    def test_output_captured(self):
        code, stdout, _ = run_command([sys.executable, "-c", "print('ok')"])
        assert code == 0
        assert stdout.strip() == "ok"

    def test_exit_code(self):
        code, _, _ = run_command([sys.executable, "-c", "raise SystemExit(3)"])
        assert code == 3

    def test_missing_command(self):
        code, _, stderr = run_command(["ramfs-manager-no-such-command"])
        assert code == -1
        assert stderr

    def test_timeout(self):
        code, _, _ = run_command([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)
        assert code == -2


class TestBindMounter:

    def test_mountinfo_fallback(self, tmp_path, monkeypatch):
        target = tmp_path / "with space"
        target.mkdir()
        escaped = str(target.resolve()).replace(" ", "\\040")
        mountinfo = tmp_path / "mountinfo"
        mountinfo.write_text(
            "22 1 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw\n"
            f"95 22 0:25 /rrdcached-ram {escaped} rw shared:40 - tmpfs tmpfs rw\n"
        )
        monkeypatch.setattr(mounts, "MOUNTINFO_PATH", mountinfo)
        monkeypatch.setattr(mounts, "command_available", lambda name: False)

        mounter = BindMounter()
        assert mounter.is_mounted(target) is True
        assert mounter.is_mounted(tmp_path) is False

    def test_missing_path_not_mounted(self, tmp_path):
        assert BindMounter().is_mounted(tmp_path / "missing") is False

    def test_lazy_unmount_fallback(self, tmp_path):
        results = [(32, "", "target is busy"), (0, "", "")]
        with mock.patch.object(mounts, "run_command", side_effect=results) as run:
            BindMounter().unmount(tmp_path)
        assert run.call_args_list[1][0][0] == ["umount", "-l", str(tmp_path)]

    def test_unmount_failure(self, tmp_path):
        results = [(32, "", "target is busy"), (32, "", "not mounted")]
        with mock.patch.object(mounts, "run_command", side_effect=results):
            with pytest.raises(MountFailure, match="not mounted"):
                BindMounter().unmount(tmp_path)

    def test_bind_failure(self, tmp_path):
        with mock.patch.object(mounts, "run_command", return_value=(32, "", "permission denied")):
            with pytest.raises(MountFailure, match="permission denied"):
                BindMounter().bind(tmp_path / "m", tmp_path / "d")

    def test_files_in_use_without_fuser(self, tmp_path, monkeypatch):
        monkeypatch.setattr(mounts, "command_available", lambda name: False)
        assert BindMounter().files_in_use(tmp_path) is False

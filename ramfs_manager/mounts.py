"""Bind mount operations for RAMFS Manager.

The BindMounter exposes a memory-backed working directory at the path a
service writes to. It wraps the ``mount``, ``umount``, ``mountpoint`` and
``fuser`` commands and falls back to /proc/self/mountinfo for mount-point
queries when ``mountpoint`` is not installed.

Example:
    mounter = BindMounter()
    if not mounter.is_mounted(disk_path):
        mounter.bind(memory_path, disk_path)
    ...
    mounter.unmount(disk_path)
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .errors import MountFailure
from .utils.platform import command_available, run_command


MOUNTINFO_PATH = Path("/proc/self/mountinfo")


def _unescape_mount_path(field: str) -> str:
    """Decode the octal escapes mountinfo uses for spaces and friends."""
    return (
        field.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


class BindMounter:
    """Linux bind mounts via the util-linux commands.

    Attributes:
        command_timeout: Seconds before a mount command is abandoned
    """

    def __init__(self, command_timeout: Optional[float] = 60.0):
        self.command_timeout = command_timeout
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def is_mounted(self, path: Path) -> bool:
        """Check if a path is a mount point.

        Args:
            path: Path to check

        Returns:
            bool: True if path is a mount point
        """
        path = Path(path)
        if not path.exists():
            return False

        if command_available("mountpoint"):
            code, _, _ = run_command(["mountpoint", "-q", str(path)])
            return code == 0

        return self._in_mountinfo(path)

    def _in_mountinfo(self, path: Path) -> bool:
        target = os.path.realpath(path)
        try:
            with open(MOUNTINFO_PATH, "r", encoding="utf-8") as f:
                for line in f:
                    parts = line.split()
                    # field 5 is the mount point
                    if len(parts) >= 5 and _unescape_mount_path(parts[4]) == target:
                        return True
        except OSError as e:
            self.logger.warning(f"Cannot read {MOUNTINFO_PATH}: {e}")
        return False

    def bind(self, source: Path, target: Path) -> None:
        """Bind-mount source onto target.

        Raises:
            MountFailure: If the mount command fails
        """
        code, _, stderr = run_command(
            ["mount", "--bind", str(source), str(target)],
            timeout=self.command_timeout,
        )
        if code != 0:
            raise MountFailure(
                f"mount --bind {source} {target} failed: "
                f"{stderr.strip() or f'exit code {code}'}"
            )
        self.logger.debug(f"Bind-mounted {source} on {target}")

    def unmount(self, path: Path) -> None:
        """Unmount a path, falling back to a lazy unmount if it is busy.

        Raises:
            MountFailure: If both the normal and the lazy unmount fail
        """
        code, _, stderr = run_command(["umount", str(path)], timeout=self.command_timeout)
        if code == 0:
            return

        self.logger.warning(f"Normal unmount of {path} failed, trying lazy unmount: {stderr.strip()}")
        code, _, stderr = run_command(["umount", "-l", str(path)], timeout=self.command_timeout)
        if code != 0:
            raise MountFailure(
                f"umount {path} failed: {stderr.strip() or f'exit code {code}'}"
            )

    def files_in_use(self, path: Path) -> bool:
        """Check if any process is using path (open handle or working directory).

        Returns False when ``fuser`` is not installed.
        """
        path = Path(path)
        if not path.is_dir() or not command_available("fuser"):
            return False
        code, _, _ = run_command(["fuser", "-s", str(path)], timeout=self.command_timeout)
        return code == 0

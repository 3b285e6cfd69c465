"""Shared pytest fixtures for RAMFS Manager tests.

Provides temp resource layouts, config objects, and in-memory stand-ins for
the service manager and the bind mounter so that lifecycle tests run
without root and without touching real services or mounts.
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from ramfs_manager.checkpoint import Checkpointer
from ramfs_manager.config import ManagerConfig, ResourceConfig
from ramfs_manager.errors import MountFailure, ServiceCommandFailed
from ramfs_manager.mounts import BindMounter
from ramfs_manager.services import ServiceController
from ramfs_manager.unit import MountUnit


class FakeServiceController(ServiceController):
    """In-memory service manager.

    Units in ``stuck`` accept requests but never change state, which drives
    the controller into its convergence timeout. Time only advances when the
    controller sleeps.
    """

    def __init__(
        self,
        running: Iterable[str] = (),
        fail_start: Iterable[str] = (),
        fail_stop: Iterable[str] = (),
        stuck: Iterable[str] = (),
        timeout: float = 3.0,
    ):
        self.now = 0.0
        super().__init__(
            timeout=timeout,
            poll_interval=1.0,
            sleep=self._advance,
            clock=lambda: self.now,
        )
        self.running = set(running)
        self.fail_start = set(fail_start)
        self.fail_stop = set(fail_stop)
        self.stuck = set(stuck)
        self.requests: List[Tuple[str, str]] = []

    def _advance(self, seconds: float) -> None:
        self.now += seconds

    def is_running(self, unit: str) -> bool:
        return unit in self.running

    def _request_start(self, unit: str) -> None:
        self.requests.append(("start", unit))
        if unit in self.fail_start:
            raise ServiceCommandFailed(f"systemctl start {unit} failed", service=unit)
        if unit not in self.stuck:
            self.running.add(unit)

    def _request_stop(self, unit: str) -> None:
        self.requests.append(("stop", unit))
        if unit in self.fail_stop:
            raise ServiceCommandFailed(f"systemctl stop {unit} failed", service=unit)
        if unit not in self.stuck:
            self.running.discard(unit)

    def count(self, action: str, unit: str) -> int:
        return self.requests.count((action, unit))


class FakeMounter(BindMounter):
    """Bind mounter that records mounts instead of performing them."""

    def __init__(
        self,
        mounted: Iterable[Path] = (),
        busy: Iterable[Path] = (),
        fail_bind: Iterable[Path] = (),
        fail_unmount: Iterable[Path] = (),
    ):
        super().__init__()
        self.mounts: Dict[Path, Optional[Path]] = {Path(p): None for p in mounted}
        self.busy = {Path(p) for p in busy}
        self.fail_bind = {Path(p) for p in fail_bind}
        self.fail_unmount = {Path(p) for p in fail_unmount}
        self.history: List[Tuple[str, Path]] = []

    def is_mounted(self, path: Path) -> bool:
        return Path(path) in self.mounts

    def bind(self, source: Path, target: Path) -> None:
        target = Path(target)
        self.history.append(("bind", target))
        if target in self.fail_bind:
            raise MountFailure(f"mount --bind {source} {target} failed: permission denied")
        self.mounts[target] = Path(source)

    def unmount(self, path: Path) -> None:
        path = Path(path)
        self.history.append(("unmount", path))
        if path in self.fail_unmount:
            raise MountFailure(f"umount {path} failed: target is busy")
        self.mounts.pop(path, None)

    def files_in_use(self, path: Path) -> bool:
        return Path(path) in self.busy


def make_resource(root: Path, name: str, **overrides) -> ResourceConfig:
    """Build a ResourceConfig whose paths all live below root/name."""
    base = root / name
    values = dict(
        name=name,
        service_unit=f"{name}.service",
        disk_path=base / "disk",
        memory_path=base / "memory",
        persistent_path=base / "persistent",
        checkpoint_interval=0,
    )
    values.update(overrides)
    return ResourceConfig(**values)


@pytest.fixture
def services():
    """Service controller with no running services."""
    return FakeServiceController()


@pytest.fixture
def mounter():
    """Mounter with nothing mounted."""
    return FakeMounter()


@pytest.fixture
def checkpointer():
    """Checkpointer with its own shutdown event."""
    return Checkpointer()


@pytest.fixture
def resource(tmp_path):
    """A single resource laid out below tmp_path."""
    return make_resource(tmp_path, "rrdcached")


@pytest.fixture
def populated_resource(resource):
    """Resource whose disk path already holds service data."""
    disk = resource.disk_path
    disk.mkdir(parents=True)
    (disk / "file1.txt").write_text("hello world")
    (disk / "file2.json").write_text(json.dumps({"key": "value"}))
    (disk / "subdir").mkdir()
    (disk / "subdir" / "nested.txt").write_text("nested content")
    (disk / "data.bin").write_bytes(b"\x00\x01\x02\x03" * 100)
    return resource


@pytest.fixture
def make_unit(services, mounter, checkpointer):
    """Factory for MountUnits wired to the fake collaborators."""

    def _make(config: ResourceConfig, **kwargs) -> MountUnit:
        return MountUnit(config, services, mounter, checkpointer, **kwargs)

    return _make


@pytest.fixture
def manager_config(tmp_path):
    """ManagerConfig with two resources and a temp lock file."""
    return ManagerConfig(
        resources=[
            make_resource(tmp_path, "pve-cluster"),
            make_resource(tmp_path, "rrdcached"),
        ],
        lock_file=tmp_path / "run" / "ramfs-manager.lock",
        defer_service_start=False,
        idle_period=0.05,
    )


@pytest.fixture
def tmp_dirs(tmp_path):
    """Source and target directories for sync tests."""
    source = tmp_path / "source"
    target = tmp_path / "target"
    source.mkdir()
    return {"source": source, "target": target, "root": tmp_path}


@pytest.fixture
def populated_dirs(tmp_dirs):
    """Source directory with sample files, symlinks and nested dirs."""
    source = tmp_dirs["source"]
    (source / "file1.txt").write_text("hello world")
    (source / "file2.json").write_text(json.dumps({"key": "value"}))
    (source / "subdir").mkdir()
    (source / "subdir" / "nested.txt").write_text("nested content")
    (source / "data.bin").write_bytes(b"\x00\x01\x02\x03" * 100)
    (source / "link.txt").symlink_to("file1.txt")
    return tmp_dirs

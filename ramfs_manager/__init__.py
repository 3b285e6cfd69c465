"""RAMFS Manager - keep service data directories in RAM, persisted to disk.

Runs services whose data directories see heavy small writes (cluster
databases, RRD caches) from a tmpfs copy bind-mounted over the original
directory, and periodically mirrors that copy back to durable storage.

Key Features:
    - First-run migration of existing data into persistent storage
    - Bind mounts of memory copies over service data directories
    - Periodic and shutdown-time persistence with a durability barrier
    - Refusal to mirror an empty memory copy over persistent data
    - Deferred service activation with the systemd notify protocol
    - Single-instance locking and best-effort teardown

Quick Start:
    from ramfs_manager import Manager, ManagerConfig

    manager = Manager(ManagerConfig.default())
    manager.start()
    manager.wait()
    manager.shutdown()

Classes:
    Manager: Orchestrates every managed resource
    ManagerConfig: Global manager configuration
    ResourceConfig: Configuration for one managed resource
    MountUnit: Lifecycle of one managed resource
    UnitState: MountUnit lifecycle states
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .config import ManagerConfig, ResourceConfig, load_config
from .errors import (
    AlreadyRunning,
    RamfsError,
    ShutdownError,
    StartupError,
)
from .manager import Manager
from .unit import MountUnit, UnitState

__all__ = [
    "__version__",
    "__license__",
    "Manager",
    "ManagerConfig",
    "ResourceConfig",
    "load_config",
    "MountUnit",
    "UnitState",
    "RamfsError",
    "AlreadyRunning",
    "StartupError",
    "ShutdownError",
]

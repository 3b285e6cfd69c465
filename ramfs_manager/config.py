"""Configuration dataclasses for RAMFS Manager."""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


DEFAULT_CONFIG_FILE = Path("/etc/ramfs-manager/config.yaml")
DEFAULT_LOCK_FILE = Path("/run/ramfs-manager.lock")
DEFAULT_LOG_FILE = Path("/var/log/ramfs-manager.log")


@dataclass(frozen=True)
class ResourceConfig:
    """Configuration for a single managed resource.

    Attributes:
        name: Unique identifier used in logs (e.g., "pve-cluster")
        service_unit: Service that owns the directory (e.g., "rrdcached.service")
        disk_path: Directory the service writes to; overlaid by the memory copy
        memory_path: Volatile working directory on tmpfs
        persistent_path: Durable backing copy, the source of truth across restarts
        checkpoint_interval: Seconds between flushes (0 = only on shutdown)
        enabled: Disabled resources are ignored entirely
        owner: Optional owner applied to the memory copy after populating it
        group: Optional group applied to the memory copy after populating it
    """
    name: str
    service_unit: str
    disk_path: Path
    memory_path: Path
    persistent_path: Path
    checkpoint_interval: float = 3600
    enabled: bool = True
    owner: Optional[str] = None
    group: Optional[str] = None

    def __post_init__(self):
        """Ensure paths are Path objects and the layout is sane."""
        for name in ("disk_path", "memory_path", "persistent_path"):
            value = getattr(self, name)
            if isinstance(value, str):
                object.__setattr__(self, name, Path(value))

        if not self.name:
            raise ValueError("Resource name must not be empty")
        if not self.service_unit:
            raise ValueError(f"Resource '{self.name}' has no service unit")
        if self.checkpoint_interval < 0:
            raise ValueError(
                f"Resource '{self.name}': checkpoint_interval must be >= 0, "
                f"got {self.checkpoint_interval}"
            )

        paths = {self.disk_path, self.memory_path, self.persistent_path}
        if len(paths) != 3:
            raise ValueError(
                f"Resource '{self.name}': disk_path, memory_path and "
                f"persistent_path must be distinct"
            )

    @property
    def flushes_periodically(self) -> bool:
        """True if the checkpoint loop flushes on a schedule."""
        return self.checkpoint_interval > 0


def _default_resources() -> List[ResourceConfig]:
    return [
        ResourceConfig(
            name="pve-cluster",
            service_unit="pve-cluster.service",
            disk_path=Path("/var/lib/pve-cluster"),
            memory_path=Path("/dev/shm/pve-cluster-ram"),
            persistent_path=Path("/var/lib/pve-cluster-persistent"),
            checkpoint_interval=3600,
        ),
        ResourceConfig(
            name="rrdcached",
            service_unit="rrdcached.service",
            disk_path=Path("/var/lib/rrdcached/db"),
            memory_path=Path("/dev/shm/rrdcached-ram"),
            persistent_path=Path("/var/lib/rrdcached-persistent"),
            checkpoint_interval=3600,
        ),
    ]


@dataclass
class ManagerConfig:
    """Global configuration for the Manager.

    Attributes:
        resources: Managed resources, set up and torn down in this order
        lock_file: Single-instance lock file (holds the owner PID)
        log_file: Path to log file (None for stderr only)
        log_level: Logging level name
        json_logs: Emit JSON lines instead of text
        defer_service_start: Start services only after signalling readiness.
            None auto-detects a systemd invocation.
        service_timeout: Seconds to wait for a service to start or stop
        service_poll_interval: Seconds between service state polls
        idle_period: Wait period of loops whose checkpoint interval is 0
    """
    resources: List[ResourceConfig] = field(default_factory=_default_resources)
    lock_file: Path = DEFAULT_LOCK_FILE
    log_file: Optional[Path] = None
    log_level: str = "INFO"
    json_logs: bool = False
    defer_service_start: Optional[bool] = None
    service_timeout: float = 15.0
    service_poll_interval: float = 1.0
    idle_period: float = 3600.0

    def __post_init__(self):
        """Ensure paths are Path objects and resource names are unique."""
        if isinstance(self.lock_file, str):
            self.lock_file = Path(self.lock_file)
        if isinstance(self.log_file, str):
            self.log_file = Path(self.log_file)

        seen = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ValueError(f"Duplicate resource name: '{resource.name}'")
            seen.add(resource.name)

        if self.service_timeout <= 0:
            raise ValueError("service_timeout must be positive")
        if self.service_poll_interval <= 0:
            raise ValueError("service_poll_interval must be positive")

    @property
    def enabled_resources(self) -> List[ResourceConfig]:
        """Resources that should be managed, in configuration order."""
        return [r for r in self.resources if r.enabled]

    @classmethod
    def default(cls) -> "ManagerConfig":
        """Configuration with the two stock Proxmox VE resources."""
        return cls()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerConfig":
        """Build a ManagerConfig from a parsed mapping.

        Raises:
            ValueError: On unknown keys or invalid values.
        """
        data = dict(data or {})
        _reject_unknown_keys(cls, data, "manager")

        if "resources" in data:
            raw_resources = data.pop("resources") or []
            if not isinstance(raw_resources, list):
                raise ValueError("'resources' must be a list")
            resources = []
            for raw in raw_resources:
                if not isinstance(raw, dict):
                    raise ValueError(f"Resource entries must be mappings, got {raw!r}")
                _reject_unknown_keys(ResourceConfig, raw, raw.get("name", "resource"))
                try:
                    resources.append(ResourceConfig(**raw))
                except TypeError as e:
                    raise ValueError(f"Invalid resource {raw.get('name')!r}: {e}") from e
            data["resources"] = resources

        return cls(**data)


def _reject_unknown_keys(klass: type, data: Dict[str, Any], where: str) -> None:
    known = {f.name for f in fields(klass)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown {where} config keys: {', '.join(unknown)}")


def load_config(path: Union[str, Path]) -> ManagerConfig:
    """Load a ManagerConfig from a YAML file.

    Example file:

        lock_file: /run/ramfs-manager.lock
        resources:
          - name: rrdcached
            service_unit: rrdcached.service
            disk_path: /var/lib/rrdcached/db
            memory_path: /dev/shm/rrdcached-ram
            persistent_path: /var/lib/rrdcached-persistent
            checkpoint_interval: 3600

    Args:
        path: YAML file to read

    Returns:
        Parsed configuration

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not valid configuration
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Top level of {path} must be a mapping")

    return ManagerConfig.from_dict(data)

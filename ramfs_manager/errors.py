"""Exception hierarchy for RAMFS Manager.

Every failure the manager can surface derives from RamfsError. Errors that
concern a single managed resource carry its name in ``unit`` so the
orchestration layer can aggregate them per resource.

Hierarchy:
    RamfsError
    ├── PreconditionViolated
    │   └── AlreadyMounted
    ├── MigrationFailure
    ├── MountFailure
    ├── ServiceError
    │   ├── ServiceCommandFailed
    │   └── ConvergenceTimeout
    ├── CheckpointError
    │   ├── SourceMissing
    │   ├── UnsafeEmptySource
    │   └── FlushFailure
    ├── AlreadyRunning
    └── AggregateError
        ├── AggregateServiceError
        ├── StartupError
        └── ShutdownError
"""

from typing import Dict, List, Optional


class RamfsError(Exception):
    """Base class for all RAMFS Manager errors."""

    def __init__(self, message: str, unit: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.unit = unit

    def __str__(self) -> str:
        if self.unit:
            return f"[{self.unit}] {self.message}"
        return self.message


class PreconditionViolated(RamfsError):
    """External state is unclean and requires operator attention."""


class AlreadyMounted(PreconditionViolated):
    """The disk path is already a mount point."""


class MigrationFailure(RamfsError):
    """Copying data into persistent or memory storage failed."""


class MountFailure(RamfsError):
    """A bind mount or unmount command failed."""


class ServiceError(RamfsError):
    """Base class for service control failures.

    ``service`` names the systemd unit; ``unit`` stays the managed resource
    and is filled in by whoever drives the service on its behalf.
    """

    def __init__(self, message: str, unit: Optional[str] = None,
                 service: Optional[str] = None):
        super().__init__(message, unit)
        self.service = service


class ServiceCommandFailed(ServiceError):
    """The service manager rejected a start or stop request."""


class ConvergenceTimeout(ServiceError):
    """A service did not reach the requested state in time."""

    def __init__(self, message: str, unit: Optional[str] = None,
                 service: Optional[str] = None, desired_state: str = "",
                 timeout: float = 0.0):
        super().__init__(message, unit, service)
        self.desired_state = desired_state
        self.timeout = timeout


class CheckpointError(RamfsError):
    """Base class for checkpoint flush failures."""


class SourceMissing(CheckpointError):
    """The memory path to flush from does not exist."""


class UnsafeEmptySource(CheckpointError):
    """Refused to mirror an empty memory path over non-empty persistent data."""


class FlushFailure(CheckpointError):
    """Copying the memory path to the persistent path failed."""


class AlreadyRunning(RamfsError):
    """Another manager instance holds the instance lock."""

    def __init__(self, message: str, pid: Optional[int] = None):
        super().__init__(message)
        self.pid = pid


class AggregateError(RamfsError):
    """Several independent failures, grouped by unit name."""

    def __init__(self, message: str, failures: Dict[str, List[Exception]]):
        self.failures = {name: list(errors) for name, errors in failures.items()}
        super().__init__(message)

    @property
    def units(self) -> List[str]:
        """Names of the units that failed."""
        return sorted(self.failures)

    def __str__(self) -> str:
        lines = [self.message]
        for name in self.units:
            for error in self.failures[name]:
                lines.append(f"  {name}: {error}")
        return "\n".join(lines)


class AggregateServiceError(AggregateError):
    """One or more deferred service starts failed."""


class StartupError(AggregateError):
    """Startup failed and all work already done was unwound."""


class ShutdownError(AggregateError):
    """Shutdown completed with errors; manual verification recommended."""

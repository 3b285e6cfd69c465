"""Main Manager class - owns every managed resource for the process lifetime.

This module provides the orchestration entry point. It acquires the
single-instance lock, sets every enabled resource up in configuration order,
runs the checkpoint loops, talks to the supervisor, and on shutdown tears
everything down with maximal effort before releasing the lock.

Example:
    from ramfs_manager import Manager, ManagerConfig

    manager = Manager(ManagerConfig.default())
    manager.start()             # raises StartupError, AlreadyRunning
    manager.wait()              # until request_shutdown()
    manager.shutdown()          # raises ShutdownError
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .activation import ActivationCoordinator, SupervisorNotifier
from .checkpoint import Checkpointer, CheckpointLoop
from .config import ManagerConfig
from .errors import (
    AggregateServiceError,
    AlreadyRunning,
    RamfsError,
    ShutdownError,
    StartupError,
)
from .lock import LockHandle, SingleInstanceLock
from .mounts import BindMounter
from .services import ServiceController, SystemctlController
from .unit import MountUnit
from .utils.platform import running_under_systemd


logger = logging.getLogger(__name__)

BANNER = "=" * 42


@dataclass
class ManagerRuntimeState:
    """Process-wide runtime state, owned by the Manager.

    Attributes:
        shutdown: Cancellation token; set once shutdown is requested. While
            set, periodic flushes are skipped.
        units: Units created for the enabled resources, in order
        loops: Checkpoint loop handles of the units that were set up
        lock_handle: The held instance lock
    """
    shutdown: threading.Event = field(default_factory=threading.Event)
    units: List[MountUnit] = field(default_factory=list)
    loops: List[CheckpointLoop] = field(default_factory=list)
    lock_handle: Optional[LockHandle] = None

    @property
    def shutting_down(self) -> bool:
        return self.shutdown.is_set()


class Manager:
    """Supervisor for memory-backed mounts of service data directories.

    The Manager is single-use: once shut down, a fresh process is needed.

    Attributes:
        config: Manager configuration
        runtime: Runtime state (units, loop handles, lock)
        defer_service_start: Whether service starts wait for readiness
    """

    def __init__(
        self,
        config: Optional[ManagerConfig] = None,
        services: Optional[ServiceController] = None,
        mounter: Optional[BindMounter] = None,
        notifier: Optional[SupervisorNotifier] = None,
        lock: Optional[SingleInstanceLock] = None,
    ):
        """Initialize the Manager.

        Args:
            config: Manager configuration. Defaults to the stock resources.
            services: Service controller (systemctl by default)
            mounter: Bind mounter (util-linux commands by default)
            notifier: Supervisor notifier ($NOTIFY_SOCKET by default)
            lock: Instance lock (config.lock_file by default)
        """
        self.config = config or ManagerConfig()
        self.runtime = ManagerRuntimeState()

        self._services = services or SystemctlController(
            timeout=self.config.service_timeout,
            poll_interval=self.config.service_poll_interval,
        )
        self._mounter = mounter or BindMounter()
        self._notifier = notifier or SupervisorNotifier()
        self._lock = lock or SingleInstanceLock(self.config.lock_file)
        self._checkpointer = Checkpointer(self.runtime.shutdown)
        self._coordinator = ActivationCoordinator(self._services)

        if self.config.defer_service_start is None:
            self.defer_service_start = running_under_systemd()
        else:
            self.defer_service_start = self.config.defer_service_start

        self._started = False
        self._shutdown_guard = threading.Lock()
        self._shutdown_failures: Optional[Dict[str, List[Exception]]] = None

    @property
    def units(self) -> List[MountUnit]:
        return list(self.runtime.units)

    def start(self) -> None:
        """Acquire the lock, set up every enabled unit and start services.

        Raises:
            AlreadyRunning: If another instance holds the lock (nothing is
                touched)
            StartupError: If any unit failed to set up or its service failed
                to start; everything already done has been unwound
            RuntimeError: If called more than once
        """
        if self._started:
            raise RuntimeError("Manager cannot be restarted; start a new process")
        self._started = True

        self.runtime.lock_handle = self._lock.acquire()

        logger.info(BANNER)
        logger.info("Starting RAMFS Manager")
        logger.info(BANNER)

        coordinator = self._coordinator if self.defer_service_start else None
        failures: Dict[str, List[Exception]] = {}

        for resource in self.config.enabled_resources:
            unit = MountUnit(resource, self._services, self._mounter, self._checkpointer)
            self.runtime.units.append(unit)
            try:
                unit.setup(coordinator)
            except (RamfsError, OSError) as e:
                logger.error(f"[{unit.name}] Setup failed: {e.message if isinstance(e, RamfsError) else e}")
                failures[unit.name] = [e]
                continue

            loop = CheckpointLoop(unit, self._checkpointer, idle_period=self.config.idle_period)
            self.runtime.loops.append(loop.start())

        if failures:
            logger.error("Some mounts failed to setup")
            self._unwind(failures)
            raise StartupError("Startup failed; completed setups were rolled back", failures)

        self._notifier.ready("Mounts ready; starting managed services")

        try:
            self._coordinator.release_all()
        except AggregateServiceError as e:
            logger.error("Failed to start managed services")
            failures = dict(e.failures)
            self._unwind(failures)
            raise StartupError("Managed services failed to start; mounts were rolled back", failures) from e

        self._notifier.status("ramfs-manager is running")
        logger.info("RAMFS Manager started successfully")

    def _unwind(self, failures: Dict[str, List[Exception]]) -> None:
        """Shut down after a failed startup, merging teardown failures."""
        try:
            self.shutdown()
        except ShutdownError as e:
            for name, errors in e.failures.items():
                failures.setdefault(name, []).extend(errors)

    def request_shutdown(self) -> None:
        """Ask the manager to shut down. Idempotent and safe from any thread."""
        if not self.runtime.shutdown.is_set():
            logger.info("Shutdown requested")
            self.runtime.shutdown.set()

    def wait(self, poll_interval: float = 1.0) -> None:
        """Block until shutdown is requested."""
        while not self.runtime.shutdown.wait(poll_interval):
            pass

    def shutdown(self) -> None:
        """Stop the loops, tear every unit down and release the lock.

        Runs once; later calls report the outcome of the first run.

        Raises:
            ShutdownError: If any teardown step failed
        """
        with self._shutdown_guard:
            if self._shutdown_failures is None:
                self._shutdown_failures = self._shutdown()
            failures = self._shutdown_failures

        if failures:
            raise ShutdownError(
                "Shutdown completed with errors; manual verification recommended",
                failures,
            )

    def _shutdown(self) -> Dict[str, List[Exception]]:
        logger.info(BANNER)
        logger.info("Stopping RAMFS Manager")
        logger.info(BANNER)

        self.runtime.shutdown.set()
        self._notifier.stopping("Persisting data and removing RAM mounts")

        for loop in self.runtime.loops:
            loop.cancel()
        for loop in self.runtime.loops:
            logger.debug(f"[{loop.name}] Waiting for persistence loop to exit")
            loop.join()

        failures: Dict[str, List[Exception]] = {}
        for unit in self.runtime.units:
            report = unit.teardown()
            if not report.success:
                failures[unit.name] = report.errors

        self._lock.release(self.runtime.lock_handle)
        self.runtime.lock_handle = None

        if failures:
            logger.error("Shutdown completed with errors; manual verification recommended")
        else:
            logger.info("RAMFS Manager stopped")
        return failures

    def run(self) -> int:
        """Start, block until shutdown is requested, then shut down.

        Returns:
            Exit status: 0 on a clean run, 1 if anything failed
        """
        try:
            self.start()
        except AlreadyRunning as e:
            logger.error(str(e))
            return 1
        except StartupError as e:
            logger.error(str(e))
            return 1
        except Exception:
            logger.exception("Unexpected error during startup")
            self._shutdown_quietly()
            return 1

        self.wait()

        try:
            self.shutdown()
        except ShutdownError as e:
            logger.error(str(e))
            return 1
        return 0

    def _shutdown_quietly(self) -> None:
        try:
            self.shutdown()
        except ShutdownError as e:
            logger.error(str(e))

    def status(self) -> dict:
        """Get the status of the manager and every unit.

        Returns:
            Dict containing:
                - lock_file: Instance lock path
                - shutting_down: Whether shutdown was requested
                - defer_service_start: Deferred activation mode
                - units: Dict of unit statuses by name
        """
        return {
            "lock_file": str(self.config.lock_file),
            "shutting_down": self.runtime.shutting_down,
            "defer_service_start": self.defer_service_start,
            "units": {unit.name: unit.status() for unit in self.runtime.units},
        }

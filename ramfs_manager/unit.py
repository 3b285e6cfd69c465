"""MountUnit - lifecycle of one managed resource.

A MountUnit owns one resource's directory triple:

    persistent_path   durable copy, source of truth across restarts
    memory_path       volatile working copy on tmpfs
    disk_path         where the service writes; memory_path is bound here

and walks it through this state machine:

    UNCONFIGURED --prepare()--> PERSISTENT_READY --mount()--> MOUNTED
    MOUNTED --activate()--> SERVICE_QUEUED --mark_running()--> SERVICE_RUNNING
    MOUNTED --activate()--> SERVICE_RUNNING
    any --teardown()--> TEARING_DOWN --> TORN_DOWN

Invariants:
    memory_path exists    iff state in MOUNTED, SERVICE_QUEUED,
                          SERVICE_RUNNING, TEARING_DOWN
    disk_path is bound    iff state in MOUNTED, SERVICE_QUEUED, SERVICE_RUNNING
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from .checkpoint import Checkpointer, CheckpointJob
from .config import ResourceConfig
from .errors import (
    AlreadyMounted,
    MigrationFailure,
    MountFailure,
    PreconditionViolated,
    RamfsError,
    ServiceError,
)
from .mounts import BindMounter
from .services import ServiceController
from .sync.engine import copy_tree, is_empty_dir, mirror
from .utils.hashing import compare_hashes, hash_directory

if TYPE_CHECKING:
    from .activation import ActivationCoordinator

logger = logging.getLogger(__name__)

PostPopulateHook = Callable[["MountUnit"], None]


class UnitState(Enum):
    """Lifecycle states of a MountUnit."""
    UNCONFIGURED = "unconfigured"
    PERSISTENT_READY = "persistent_ready"
    MOUNTED = "mounted"
    SERVICE_QUEUED = "service_queued"
    SERVICE_RUNNING = "service_running"
    TEARING_DOWN = "tearing_down"
    TORN_DOWN = "torn_down"


# States in which disk_path is bound to memory_path
BOUND_STATES = frozenset({
    UnitState.MOUNTED,
    UnitState.SERVICE_QUEUED,
    UnitState.SERVICE_RUNNING,
})


@dataclass
class TeardownReport:
    """Outcome of a teardown; each failed step is recorded, none aborts.

    Attributes:
        unit: Unit name
        failures: (step, error) pairs in the order they happened
    """
    unit: str
    failures: List[Tuple[str, Exception]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def errors(self) -> List[Exception]:
        return [error for _, error in self.failures]

    def add(self, step: str, error: Exception) -> None:
        if isinstance(error, RamfsError) and error.unit is None:
            error.unit = self.unit
        detail = error.message if isinstance(error, RamfsError) else error
        logger.error(f"[{self.unit}] Teardown step '{step}' failed: {detail}")
        self.failures.append((step, error))


def apply_ownership(path: Path, owner: Optional[str], group: Optional[str]) -> None:
    """Recursively set owner and group below path (symlinks untouched).

    Raises:
        OSError: If an entry cannot be changed
        LookupError: If the user or group does not exist
    """
    if owner is None and group is None:
        return

    shutil.chown(path, user=owner, group=group)
    for root, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            entry = Path(root) / name
            if not entry.is_symlink():
                shutil.chown(entry, user=owner, group=group)


def ownership_hook(unit: MountUnit) -> None:
    """Default post-populate hook: apply the configured owner/group."""
    config = unit.config
    if config.owner or config.group:
        logger.info(
            f"[{unit.name}] Setting ownership of {config.memory_path} "
            f"to {config.owner or '-'}:{config.group or '-'}"
        )
        apply_ownership(config.memory_path, config.owner, config.group)


class MountUnit:
    """One managed resource and its setup/teardown state machine.

    Attributes:
        config: Immutable resource configuration
        last_checkpoint_time: When the last flush attempt finished
        last_checkpoint: The last flush attempt
        checkpoint_failure_count: Consecutive failed flushes
        checkpoint_count: Total flush attempts
    """

    def __init__(
        self,
        config: ResourceConfig,
        services: ServiceController,
        mounter: BindMounter,
        checkpointer: Checkpointer,
        post_populate: Optional[PostPopulateHook] = ownership_hook,
    ):
        self.config = config
        self._services = services
        self._mounter = mounter
        self._checkpointer = checkpointer
        self._post_populate = post_populate
        self._state = UnitState.UNCONFIGURED

        self.last_checkpoint_time: Optional[datetime] = None
        self.last_checkpoint: Optional[CheckpointJob] = None
        self.checkpoint_failure_count = 0
        self.checkpoint_count = 0

    def __repr__(self) -> str:
        return f"MountUnit(name={self.name!r}, state={self._state.value})"

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> UnitState:
        return self._state

    @property
    def bound(self) -> bool:
        """True if the state says disk_path is bound to memory_path."""
        return self._state in BOUND_STATES

    def _require(self, *states: UnitState) -> None:
        if self._state not in states:
            expected = ", ".join(s.value for s in states)
            raise RuntimeError(
                f"Unit '{self.name}' is {self._state.value}; expected {expected}"
            )

    # -- setup ---------------------------------------------------------------

    def setup(self, coordinator: Optional[ActivationCoordinator] = None) -> None:
        """Run prepare(), mount() and activate() in order.

        Args:
            coordinator: Defer the service start to this coordinator; start
                it immediately when None

        Raises:
            RamfsError: If any step fails; the unit cleans up after itself
        """
        logger.info(f"[{self.name}] Setting up RAM mount...")
        self.prepare()
        self.mount()
        self.activate(coordinator)
        logger.info(f"[{self.name}] RAM mount setup complete")

    def prepare(self) -> None:
        """UNCONFIGURED -> PERSISTENT_READY.

        Verifies disk_path is not mounted, stops the service and makes sure
        persistent_path exists, migrating existing data on first run.

        Raises:
            AlreadyMounted: If disk_path is already a mount point
            PreconditionViolated: If the service cannot be stopped or
                disk_path is still in use
            MigrationFailure: If first-run migration failed
        """
        self._require(UnitState.UNCONFIGURED)
        config = self.config

        if self._mounter.is_mounted(config.disk_path):
            raise AlreadyMounted(f"{config.disk_path} is already mounted", unit=self.name)

        try:
            self._services.stop(config.service_unit)
        except ServiceError as e:
            raise PreconditionViolated(
                f"{config.service_unit} could not be stopped: {e}",
                unit=self.name,
            ) from e

        if self._mounter.files_in_use(config.disk_path):
            raise PreconditionViolated(
                f"Files in {config.disk_path} are still in use by other processes",
                unit=self.name,
            )

        if not config.persistent_path.exists():
            self._migrate_first_run()

        self._state = UnitState.PERSISTENT_READY

    def _migrate_first_run(self) -> None:
        """Create persistent_path, seeded with whatever disk_path holds.

        The copy goes to a staging directory that is renamed into place, so
        an interrupted migration never leaves a partial persistent_path that
        a later run would trust.
        """
        config = self.config
        persistent = config.persistent_path
        staging = persistent.with_name(f".{persistent.name}.migrating")

        logger.info(f"[{self.name}] First run - creating persistent storage")
        try:
            if staging.exists():
                shutil.rmtree(staging)
            staging.mkdir(parents=True)

            if config.disk_path.is_dir() and not is_empty_dir(config.disk_path):
                logger.info(f"[{self.name}] Copying existing data to persistent storage")
                stats = copy_tree(config.disk_path, staging)
                if not stats.success:
                    raise MigrationFailure(
                        f"Failed to copy existing data: {'; '.join(stats.errors[:5])}",
                        unit=self.name,
                    )
                self._verify_migration(staging)
            else:
                logger.info(f"[{self.name}] No existing data found, starting fresh")

            os.rename(staging, persistent)
        except (OSError, MigrationFailure) as e:
            shutil.rmtree(staging, ignore_errors=True)
            if isinstance(e, MigrationFailure):
                raise
            raise MigrationFailure(
                f"Failed to create persistent storage {persistent}: {e}",
                unit=self.name,
            ) from e

    def _verify_migration(self, staging: Path) -> None:
        """Compare the staged copy against disk_path before trusting it."""
        diff = compare_hashes(hash_directory(self.config.disk_path), hash_directory(staging))
        mismatched = diff["added"] + diff["removed"] + diff["modified"]
        if mismatched:
            raise MigrationFailure(
                f"Copy of {self.config.disk_path} does not match the original "
                f"({len(mismatched)} entries differ, e.g. {mismatched[0]})",
                unit=self.name,
            )
        logger.info(f"[{self.name}] Verified {len(diff['unchanged'])} migrated entries")

    def mount(self) -> None:
        """PERSISTENT_READY -> MOUNTED.

        Discards a stale memory_path, populates a fresh one from
        persistent_path and binds it onto disk_path. On failure the memory
        path is removed again.

        Raises:
            MigrationFailure: If populating the memory path failed
            MountFailure: If the bind mount failed
        """
        self._require(UnitState.PERSISTENT_READY)
        config = self.config
        memory = config.memory_path

        if memory.exists():
            # volatile by definition, never authoritative
            logger.info(f"[{self.name}] Memory path {memory} exists from previous run, cleaning up...")
            try:
                shutil.rmtree(memory)
            except OSError as e:
                raise MigrationFailure(f"Cannot remove stale {memory}: {e}", unit=self.name) from e

        logger.info(f"[{self.name}] Creating RAM directory")
        try:
            memory.mkdir(parents=True)
        except OSError as e:
            raise MigrationFailure(f"Failed to create RAM directory {memory}: {e}", unit=self.name) from e

        try:
            self._populate()
            config.disk_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"[{self.name}] Mounting RAM directory to {config.disk_path}")
            self._mounter.bind(memory, config.disk_path)
        except (RamfsError, OSError, LookupError) as e:
            shutil.rmtree(memory, ignore_errors=True)
            if isinstance(e, RamfsError):
                if e.unit is None:
                    e.unit = self.name
                raise
            raise MigrationFailure(f"Failed to prepare {memory}: {e}", unit=self.name) from e

        self._state = UnitState.MOUNTED

    def _populate(self) -> None:
        config = self.config
        if not is_empty_dir(config.persistent_path):
            logger.info(f"[{self.name}] Loading data from persistent storage to RAM")
            stats = mirror(config.persistent_path, config.memory_path)
            if not stats.success:
                raise MigrationFailure(
                    f"Failed to copy data to RAM: {'; '.join(stats.errors[:5])}",
                    unit=self.name,
                )
        if self._post_populate is not None:
            self._post_populate(self)

    def activate(self, coordinator: Optional[ActivationCoordinator] = None) -> None:
        """MOUNTED -> SERVICE_QUEUED (deferred) or SERVICE_RUNNING.

        A failed immediate start rolls the unit back to TORN_DOWN before
        the error propagates; a unit is never left mounted with its service
        down.

        Raises:
            ServiceError: If the immediate start failed
        """
        self._require(UnitState.MOUNTED)
        service = self.config.service_unit

        if coordinator is not None:
            logger.info(f"[{self.name}] Deferring {service} start until manager activation completes")
            self._state = UnitState.SERVICE_QUEUED
            coordinator.queue(self)
            return

        try:
            self._services.start(service)
        except ServiceError as e:
            if e.unit is None:
                e.unit = self.name
            logger.error(f"[{self.name}] Failed to start {service} after mounting; rolling back")
            self.teardown()
            raise

        self._state = UnitState.SERVICE_RUNNING

    def mark_running(self) -> None:
        """SERVICE_QUEUED -> SERVICE_RUNNING, once the deferred start succeeded."""
        self._require(UnitState.SERVICE_QUEUED)
        self._state = UnitState.SERVICE_RUNNING

    # -- checkpoint bookkeeping ---------------------------------------------

    def record_checkpoint(self, job: CheckpointJob) -> None:
        """Record a flush attempt. Written only by the flushing thread."""
        self.last_checkpoint = job
        self.last_checkpoint_time = job.finished_at or datetime.now()
        self.checkpoint_count += 1
        if job.success:
            self.checkpoint_failure_count = 0
        else:
            self.checkpoint_failure_count += 1

    # -- teardown ------------------------------------------------------------

    def teardown(self) -> TeardownReport:
        """Stop the service, flush, unmount and remove the memory path.

        Each step is attempted even if earlier ones failed. Units that never
        reached MOUNTED own no mount and no memory copy and are only marked
        TORN_DOWN.

        Returns:
            TeardownReport listing failed steps
        """
        report = TeardownReport(unit=self.name)

        if self._state == UnitState.TORN_DOWN:
            return report
        if self._state in (UnitState.UNCONFIGURED, UnitState.PERSISTENT_READY):
            self._state = UnitState.TORN_DOWN
            return report

        self._state = UnitState.TEARING_DOWN
        config = self.config
        logger.info(f"[{self.name}] Tearing down RAM mount...")

        try:
            self._services.stop(config.service_unit)
        except (RamfsError, OSError) as e:
            report.add("stop-service", e)

        # a bound unit with no memory copy left is reported as SourceMissing
        try:
            self._checkpointer.flush(self, forced=True)
        except (RamfsError, OSError) as e:
            report.add("flush", e)

        try:
            if self._mounter.is_mounted(config.disk_path):
                logger.info(f"[{self.name}] Unmounting {config.disk_path}")
                self._mounter.unmount(config.disk_path)
        except (RamfsError, OSError) as e:
            report.add("unmount", e)

        if config.memory_path.exists():
            self._remove_memory(report)

        self._state = UnitState.TORN_DOWN
        if report.success:
            logger.info(f"[{self.name}] Teardown complete")
        return report

    def _remove_memory(self, report: TeardownReport) -> None:
        config = self.config
        try:
            if self._mounter.is_mounted(config.disk_path):
                # removing it now would empty the still-visible disk_path
                report.add("remove-memory", MountFailure(
                    f"{config.disk_path} is still mounted; keeping {config.memory_path}",
                    unit=self.name,
                ))
                return
            logger.info(f"[{self.name}] Removing RAM directory")
            shutil.rmtree(config.memory_path)
        except (RamfsError, OSError) as e:
            report.add("remove-memory", e)

    def status(self) -> dict:
        """Snapshot of the unit for status reporting."""
        config = self.config
        last = self.last_checkpoint
        return {
            "state": self._state.value,
            "service_unit": config.service_unit,
            "disk_path": str(config.disk_path),
            "memory_path": str(config.memory_path),
            "persistent_path": str(config.persistent_path),
            "checkpoint_interval": config.checkpoint_interval,
            "last_checkpoint_time": self.last_checkpoint_time.isoformat() if self.last_checkpoint_time else None,
            "last_checkpoint_error": str(last.error) if last and last.error else None,
            "checkpoint_count": self.checkpoint_count,
            "checkpoint_failure_count": self.checkpoint_failure_count,
        }

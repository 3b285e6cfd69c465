"""Checkpointing of memory copies back to persistent storage.

The Checkpointer performs one flush of a unit's memory path to its
persistent path. A CheckpointLoop runs the periodic flushes for one unit on
its own thread.

Flush rules:
- unforced flushes are skipped once the manager is shutting down; the forced
  flush in teardown is the only shutdown-time writer
- an empty memory path is never mirrored over non-empty persistent data
- every successful mirror is followed by a durability barrier
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .errors import CheckpointError, FlushFailure, SourceMissing, UnsafeEmptySource
from .sync.engine import SyncStats, durability_barrier, is_empty_dir, mirror

if TYPE_CHECKING:
    from .unit import MountUnit

logger = logging.getLogger(__name__)

DEFAULT_IDLE_PERIOD = 3600.0


@dataclass
class CheckpointJob:
    """Record of a single flush attempt.

    Attributes:
        source: Memory path flushed from
        destination: Persistent path flushed to
        forced: True for the shutdown-time flush
        started_at: When the attempt began
        finished_at: When the attempt ended
        skipped: True if the flush was skipped because of shutdown
        stats: Sync statistics (None if no copy ran)
        error: Failure cause (None on success)
    """
    source: Path
    destination: Path
    forced: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    skipped: bool = False
    stats: Optional[SyncStats] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        """True if the flush succeeded or was skipped."""
        return self.error is None

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "source": str(self.source),
            "destination": str(self.destination),
            "forced": self.forced,
            "success": self.success,
            "skipped": self.skipped,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stats": self.stats.to_dict() if self.stats else None,
            "error": str(self.error) if self.error else None,
        }


class Checkpointer:
    """Flushes memory copies to persistent storage.

    Attributes:
        shutdown: Manager-wide shutdown event; once set, unforced flushes
            are skipped
    """

    def __init__(self, shutdown: Optional[threading.Event] = None):
        self.shutdown = shutdown or threading.Event()

    @property
    def shutting_down(self) -> bool:
        return self.shutdown.is_set()

    def flush(self, unit: MountUnit, forced: bool = False) -> CheckpointJob:
        """Mirror the unit's memory path onto its persistent path.

        Args:
            unit: Unit to flush
            forced: Flush even if the manager is shutting down

        Returns:
            CheckpointJob describing the attempt

        Raises:
            SourceMissing: If the memory path does not exist
            UnsafeEmptySource: If the memory path is empty but the persistent
                path is not
            FlushFailure: If copying or the durability barrier failed
        """
        config = unit.config
        job = CheckpointJob(
            source=config.memory_path,
            destination=config.persistent_path,
            forced=forced,
            started_at=datetime.now(),
        )

        if self.shutting_down and not forced:
            job.skipped = True
            job.finished_at = datetime.now()
            logger.debug(f"[{unit.name}] Shutdown in progress, skipping periodic flush")
            return job

        try:
            job.stats = self._flush(unit.name, config.memory_path, config.persistent_path)
        except Exception as e:
            job.error = e
            raise
        finally:
            job.finished_at = datetime.now()
            unit.record_checkpoint(job)

        return job

    def _flush(self, name: str, source: Path, destination: Path) -> SyncStats:
        if not source.is_dir():
            raise SourceMissing(
                f"Memory path {source} does not exist; skipping persistence",
                unit=name,
            )

        logger.info(f"[{name}] Persisting data to disk...")

        try:
            destination.mkdir(parents=True, exist_ok=True)
            source_empty = is_empty_dir(source)
            destination_empty = is_empty_dir(destination)
        except OSError as e:
            raise FlushFailure(f"Cannot inspect {source} or {destination}: {e}", unit=name) from e

        if source_empty:
            if destination_empty:
                logger.info(f"[{name}] Memory and persistent directories are empty, nothing to persist")
                return SyncStats(strategy="mirror", source=str(source), target=str(destination))
            raise UnsafeEmptySource(
                f"Memory directory {source} is empty; refusing to mirror it "
                f"over {destination} to protect persistent data",
                unit=name,
            )

        try:
            stats = mirror(source, destination)
        except OSError as e:
            raise FlushFailure(f"Failed to persist data: {e}", unit=name) from e

        if not stats.success:
            details = "; ".join(stats.errors[:5])
            raise FlushFailure(
                f"Failed to persist data ({stats.files_failed} entries failed): {details}",
                unit=name,
            )

        try:
            durability_barrier(destination)
        except OSError as e:
            raise FlushFailure(f"Durability barrier on {destination} failed: {e}", unit=name) from e

        logger.info(
            f"[{name}] Data persisted successfully "
            f"({stats.files_copied} copied, {stats.files_deleted} deleted, "
            f"{stats.bytes_copied:,} bytes in {stats.duration_ms:.1f}ms)"
        )
        return stats


class CheckpointLoop:
    """Periodic flush loop for one unit, running on its own thread.

    The loop waits ``checkpoint_interval`` seconds, flushes, and repeats.
    With an interval of 0 it only idles; the unit is then flushed solely by
    the forced flush in teardown. ``cancel()`` interrupts the wait at once
    and the loop exits without flushing again.

    Example:
        loop = CheckpointLoop(unit, checkpointer).start()
        ...
        loop.cancel()
        loop.join()
    """

    def __init__(
        self,
        unit: MountUnit,
        checkpointer: Checkpointer,
        idle_period: float = DEFAULT_IDLE_PERIOD,
    ):
        self.unit = unit
        self.checkpointer = checkpointer
        self.idle_period = idle_period
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"checkpoint-{unit.name}",
            daemon=True,
        )

    @property
    def name(self) -> str:
        return self.unit.name

    @property
    def alive(self) -> bool:
        """True while the loop thread is running."""
        return self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> CheckpointLoop:
        """Start the loop thread and return self as its handle."""
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Ask the loop to exit. Idempotent."""
        self._cancelled.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop thread to exit.

        Returns:
            True if the thread has exited
        """
        if self._thread.ident is not None:
            self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        interval = self.unit.config.checkpoint_interval
        name = self.unit.name

        if interval <= 0:
            logger.info(f"[{name}] Persistence only on shutdown (interval: 0)")
            while not self._cancelled.wait(self.idle_period):
                pass
        else:
            logger.info(f"[{name}] Starting persistence loop (interval: {interval:g}s)")
            while not self._cancelled.wait(interval):
                self._flush_once()

        logger.debug(f"[{name}] Persistence loop stopped")

    def _flush_once(self) -> None:
        try:
            self.checkpointer.flush(self.unit)
        except CheckpointError as e:
            logger.error(
                f"[{self.name}] Persistence loop encountered an error: {e} "
                f"(consecutive failures: {self.unit.checkpoint_failure_count})"
            )
        except Exception:
            # the loop must survive anything a single flush throws
            logger.exception(f"[{self.name}] Unexpected error in persistence loop")

"""Sync engine for RAMFS Manager.

Philosophy: PERSISTENT IS TRUTH, MEMORY IS WORKING COPY.

The engine copies directory trees in the spirit of ``rsync -a``:
- mirror(): make the target an exact copy of the source (extras deleted)
- copy_tree(): copy the source over the target, never deleting anything

Regular files, directories and symlinks are copied with permissions and
timestamps preserved (ownership too when running as root). Sockets, FIFOs
and device nodes are skipped.

Unchanged files are detected with a size/mtime quick check; when only the
mtime differs the content hashes decide.
"""

import ctypes
import ctypes.util
import logging
import os
import shutil
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from ramfs_manager.utils.hashing import fast_hash_file
from ramfs_manager.utils.platform import is_root

logger = logging.getLogger(__name__)

DIR = "dir"
FILE = "file"
LINK = "link"


@dataclass
class SyncStats:
    """Statistics from a sync operation."""

    success: bool = True
    strategy: str = "unknown"   # "mirror" or "copy"
    source: str = ""
    target: str = ""

    # Entry counts
    files_copied: int = 0
    files_deleted: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    files_skipped: int = 0

    # Size stats
    bytes_copied: int = 0

    # Timing
    started_at: float = 0.0
    completed_at: float = 0.0
    duration_ms: float = 0.0

    # Errors
    errors: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True if the target was modified."""
        return bool(self.files_copied or self.files_deleted)

    def fail(self, message: str) -> None:
        """Record a per-entry failure."""
        self.success = False
        self.files_failed += 1
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "success": self.success,
            "strategy": self.strategy,
            "source": self.source,
            "target": self.target,
            "files_copied": self.files_copied,
            "files_deleted": self.files_deleted,
            "files_unchanged": self.files_unchanged,
            "files_failed": self.files_failed,
            "files_skipped": self.files_skipped,
            "bytes_copied": self.bytes_copied,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
        }


def is_empty_dir(path: Path) -> bool:
    """True if path is a directory without any entries (or does not exist)."""
    path = Path(path)
    if not path.exists():
        return True
    with os.scandir(path) as it:
        return next(it, None) is None


def mirror(source: Path, target: Path) -> SyncStats:
    """Make target an exact copy of source, deleting extra entries.

    Args:
        source: Directory to copy from
        target: Directory to copy to (created if missing)

    Returns:
        SyncStats; ``success`` is False if any entry failed

    Raises:
        OSError: If either tree cannot be scanned
    """
    return _sync(Path(source), Path(target), delete=True)


def copy_tree(source: Path, target: Path) -> SyncStats:
    """Copy source over target without deleting anything from target.

    Args:
        source: Directory to copy from
        target: Directory to copy to (created if missing)

    Returns:
        SyncStats; ``success`` is False if any entry failed

    Raises:
        OSError: If either tree cannot be scanned
    """
    return _sync(Path(source), Path(target), delete=False)


def durability_barrier(path: Path) -> None:
    """Block until the filesystem holding path has committed its writes.

    Uses syncfs(2) so only the filesystem of ``path`` is flushed, like
    ``sync -f``. Falls back to a global sync where syncfs is unavailable.

    Raises:
        OSError: If syncfs reports an error
    """
    libc_name = ctypes.util.find_library("c")
    libc = ctypes.CDLL(libc_name, use_errno=True) if libc_name else None
    syncfs = getattr(libc, "syncfs", None)

    if syncfs is None:
        logger.debug(f"syncfs unavailable, running global sync for {path}")
        os.sync()
        return

    fd = os.open(path, os.O_RDONLY)
    try:
        if syncfs(fd) != 0:
            err = ctypes.get_errno()
            raise OSError(err, f"syncfs failed: {os.strerror(err)}", str(path))
    finally:
        os.close(fd)


def _scan(root: Path, stats: SyncStats) -> Dict[str, str]:
    """Map relative paths below root to their entry kind."""
    entries: Dict[str, str] = {}
    if not root.exists():
        return entries

    def _raise(error: OSError) -> None:
        if not isinstance(error, FileNotFoundError):
            raise error

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        base = Path(dirpath)
        for name in dirnames + filenames:
            path = base / name
            rel = path.relative_to(root).as_posix()
            try:
                mode = os.lstat(path).st_mode
            except FileNotFoundError:
                # vanished while scanning
                continue
            if stat.S_ISLNK(mode):
                entries[rel] = LINK
            elif stat.S_ISDIR(mode):
                entries[rel] = DIR
            elif stat.S_ISREG(mode):
                entries[rel] = FILE
            else:
                logger.debug(f"Skipping special file {path}")
                stats.files_skipped += 1
    return entries


def _same_file(src: Path, dst: Path) -> bool:
    src_stat = src.stat()
    dst_stat = dst.stat()
    if src_stat.st_size != dst_stat.st_size:
        return False
    if src_stat.st_mtime_ns == dst_stat.st_mtime_ns:
        return True
    return fast_hash_file(src) == fast_hash_file(dst)


def _parents_are_dirs(root: Path, rel: str) -> bool:
    """True if every parent of rel below root is a real directory, not a link."""
    parent = root
    for part in rel.split("/")[:-1]:
        parent = parent / part
        try:
            if not stat.S_ISDIR(os.lstat(parent).st_mode):
                return False
        except FileNotFoundError:
            return False
    return True


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _copy_owner(src: Path, dst: Path) -> None:
    if is_root():
        st = os.lstat(src)
        os.lchown(dst, st.st_uid, st.st_gid)


def _copy_file(src: Path, dst: Path) -> None:
    """Copy a regular file so dst is replaced atomically."""
    tmp = dst.with_name(f".{dst.name}.ramfs-tmp")
    try:
        shutil.copy2(src, tmp)
        _copy_owner(src, tmp)
        os.replace(tmp, dst)
    except BaseException:
        if os.path.lexists(tmp):
            tmp.unlink()
        raise


def _sync(source: Path, target: Path, delete: bool) -> SyncStats:
    stats = SyncStats(
        strategy="mirror" if delete else "copy",
        source=str(source),
        target=str(target),
        started_at=time.time(),
    )

    if not source.is_dir():
        raise FileNotFoundError(f"Source directory does not exist: {source}")

    target.mkdir(parents=True, exist_ok=True)
    source_entries = _scan(source, stats)
    target_entries = _scan(target, stats)

    # Parents sort before children, so directories exist before their files
    for rel, kind in sorted(source_entries.items()):
        src = source / rel
        dst = target / rel
        existing = target_entries.get(rel)

        if not _parents_are_dirs(target, rel):
            # a parent could not be made a directory; never write through a link
            if os.path.lexists(src):
                stats.fail(f"Failed to copy {rel}: parent in {target} is not a directory")
            else:
                stats.files_skipped += 1
            continue

        try:
            if existing is not None and existing != kind:
                _remove(dst)
                existing = None

            if kind == DIR:
                if existing is None:
                    dst.mkdir()
                    stats.files_copied += 1
                _copy_owner(src, dst)
            elif kind == LINK:
                link_target = os.readlink(src)
                if existing is not None and os.readlink(dst) == link_target:
                    stats.files_unchanged += 1
                    continue
                if existing is not None:
                    dst.unlink()
                os.symlink(link_target, dst)
                _copy_owner(src, dst)
                stats.files_copied += 1
            else:
                if existing is not None and _same_file(src, dst):
                    shutil.copystat(src, dst)
                    stats.files_unchanged += 1
                    continue
                _copy_file(src, dst)
                stats.files_copied += 1
                stats.bytes_copied += dst.stat().st_size
        except FileNotFoundError as e:
            if os.path.lexists(src):
                stats.fail(f"Failed to copy {rel}: {e}")
            else:
                logger.debug(f"{src} vanished during sync")
                stats.files_skipped += 1
        except (OSError, shutil.Error) as e:
            stats.fail(f"Failed to copy {rel}: {e}")

    if delete:
        # Children sort after parents, so walk backwards to delete leaves first
        for rel in sorted(set(target_entries) - set(source_entries), reverse=True):
            dst = target / rel
            if not _parents_are_dirs(target, rel) or not os.path.lexists(dst):
                # went away with a parent replaced during the copy pass
                continue
            try:
                _remove(dst)
                stats.files_deleted += 1
            except OSError as e:
                stats.fail(f"Failed to delete {rel}: {e}")

    # Directory mtimes change while their contents are written
    for rel, kind in sorted(source_entries.items(), reverse=True):
        dst = target / rel
        if kind == DIR and (source / rel).is_dir() and dst.is_dir() and not dst.is_symlink():
            try:
                shutil.copystat(source / rel, dst)
            except OSError as e:
                stats.fail(f"Failed to copy attributes of {rel}: {e}")
    try:
        shutil.copystat(source, target)
    except OSError as e:
        stats.fail(f"Failed to copy attributes of {target}: {e}")

    return _finalize_stats(stats)


def _finalize_stats(stats: SyncStats) -> SyncStats:
    """Finalize stats with timing info."""
    stats.completed_at = time.time()
    stats.duration_ms = (stats.completed_at - stats.started_at) * 1000

    logger.debug(
        f"Sync {stats.source} -> {stats.target} ({stats.strategy}): "
        f"{stats.files_copied} copied, "
        f"{stats.files_deleted} deleted, "
        f"{stats.files_unchanged} unchanged, "
        f"{stats.files_failed} failed "
        f"in {stats.duration_ms:.1f}ms"
    )

    return stats

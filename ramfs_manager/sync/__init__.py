"""Synchronization module for RAMFS Manager.

Philosophy: PERSISTENT IS TRUTH, MEMORY IS WORKING COPY.

This module provides:
- mirror: Exact copy of a tree, deleting extras at the target
- copy_tree: Non-destructive copy used for first-run migration
- durability_barrier: Commit a filesystem's pending writes
"""

from ramfs_manager.sync.engine import (
    SyncStats,
    copy_tree,
    durability_barrier,
    is_empty_dir,
    mirror,
)

__all__ = [
    "SyncStats",
    "copy_tree",
    "durability_barrier",
    "is_empty_dir",
    "mirror",
]

"""Utility modules for RAMFS Manager.

This package provides:
- hashing: Fast file and directory hashing utilities
- logging: Configured logging with JSON/text output support
- platform: Privilege, systemd and command availability checks
"""

from ramfs_manager.utils.hashing import compare_hashes, fast_hash_file, hash_directory
from ramfs_manager.utils.logging import configure_root_logger
from ramfs_manager.utils.platform import (
    command_available,
    is_root,
    run_command,
    running_under_systemd,
)

__all__ = [
    "compare_hashes",
    "fast_hash_file",
    "hash_directory",
    "configure_root_logger",
    "command_available",
    "is_root",
    "run_command",
    "running_under_systemd",
]

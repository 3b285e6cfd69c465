"""Fast file and directory hashing utilities.

Uses xxhash (xxh64) for speed. The digests only detect changed content
during syncs and verify migrated copies; they are not a security measure.
"""

import os
from pathlib import Path
from typing import Dict, List

import xxhash

# Buffer size for file reading (64KB is good for most filesystems)
BUFFER_SIZE = 65536


def fast_hash_file(file_path: Path) -> str:
    """Compute the xxh64 digest of a file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If the path is not a regular file
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise ValueError(f"Not a file: {file_path}")

    hasher = xxhash.xxh64()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(BUFFER_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def hash_directory(directory: Path) -> Dict[str, str]:
    """Digest every entry below a directory.

    Regular files map to their content hash, symlinks to ``link:<target>``
    and directories to ``dir``, so two trees compare equal only if they hold
    the same entries with the same content. Special files are left out.

    Args:
        directory: Directory to hash

    Returns:
        Dict mapping relative paths (forward slashes) to digests, sorted

    Raises:
        FileNotFoundError: If directory doesn't exist
        ValueError: If directory is not a directory
    """
    directory = Path(directory)
    if not directory.exists():
        raise FileNotFoundError(f"Directory not found: {directory}")
    if not directory.is_dir():
        raise ValueError(f"Not a directory: {directory}")

    result: Dict[str, str] = {}
    for root, dirnames, filenames in os.walk(directory):
        for name in dirnames + filenames:
            path = Path(root, name)
            key = path.relative_to(directory).as_posix()
            if path.is_symlink():
                result[key] = f"link:{os.readlink(path)}"
            elif path.is_dir():
                result[key] = "dir"
            elif path.is_file():
                result[key] = fast_hash_file(path)

    return dict(sorted(result.items()))


def compare_hashes(
    source_hashes: Dict[str, str],
    target_hashes: Dict[str, str]
) -> Dict[str, List[str]]:
    """Classify the entries of two hash_directory() results.

    Returns:
        Dict of sorted path lists under "added" (only in source), "removed"
        (only in target), "modified" and "unchanged"
    """
    common = source_hashes.keys() & target_hashes.keys()
    return {
        "added": sorted(source_hashes.keys() - target_hashes.keys()),
        "removed": sorted(target_hashes.keys() - source_hashes.keys()),
        "modified": sorted(k for k in common if source_hashes[k] != target_hashes[k]),
        "unchanged": sorted(k for k in common if source_hashes[k] == target_hashes[k]),
    }

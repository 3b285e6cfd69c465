"""Platform detection and privilege checking utilities.

Handles the environment checks the manager depends on:
- Root privilege detection
- systemd invocation detection
- Availability and execution of external commands
"""

import logging
import os
import shutil
import subprocess
from typing import List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


def is_root() -> bool:
    """Check if the current process runs with UID 0.

    Returns:
        True if running as root, False otherwise
    """
    return os.geteuid() == 0


def running_under_systemd(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Check if the process was started as a systemd unit.

    systemd sets INVOCATION_ID for every unit it starts; some older versions
    only export SYSTEMD_INVOCATION_ID.

    Args:
        environ: Environment to inspect (defaults to os.environ)

    Returns:
        True if a systemd invocation ID is present

    Example:
        >>> running_under_systemd({"INVOCATION_ID": "4f1c..."})
        True
    """
    env = os.environ if environ is None else environ
    return bool(env.get("INVOCATION_ID") or env.get("SYSTEMD_INVOCATION_ID"))


def command_available(name: str) -> bool:
    """Check if an external command is on PATH."""
    return shutil.which(name) is not None


def run_command(cmd: List[str], timeout: Optional[float] = None) -> Tuple[int, str, str]:
    """Run an external command and return its results.

    Never raises for a failing command; a missing executable is reported
    as return code -1 and a timeout as -2.

    Args:
        cmd: Command and arguments
        timeout: Seconds before the command is killed

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    logger.debug(f"Running command: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr
    except FileNotFoundError:
        return -1, "", f"Command not found: {cmd[0]}"
    except subprocess.TimeoutExpired:
        return -2, "", f"Command timed out after {timeout}s: {' '.join(cmd)}"

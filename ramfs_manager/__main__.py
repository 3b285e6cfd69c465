"""CLI entry point for RAMFS Manager.

Usage:
    python -m ramfs_manager [--config PATH] [-v] start
    python -m ramfs_manager [--config PATH] stop [--timeout SECONDS]

Commands:
    start     Mount every configured resource and run until SIGTERM/SIGINT
    stop      Signal the running instance and wait for it to exit
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from . import __version__
from .config import DEFAULT_CONFIG_FILE, DEFAULT_LOG_FILE, ManagerConfig, load_config
from .lock import SingleInstanceLock
from .manager import Manager
from .utils.logging import configure_root_logger


logger = logging.getLogger("ramfs_manager")

DEFAULT_STOP_TIMEOUT = 120.0
STOP_POLL_INTERVAL = 0.5


def setup_logging(args: argparse.Namespace, config: ManagerConfig) -> None:
    """Configure logging from CLI flags, falling back to the config file."""
    level = logging.DEBUG if args.verbose else config.log_level
    json_output = args.json_logs or config.json_logs
    log_file = args.log_file or config.log_file or DEFAULT_LOG_FILE

    try:
        configure_root_logger(level, json_output=json_output, log_file=log_file)
    except OSError as e:
        configure_root_logger(level, json_output=json_output)
        logger.warning(f"Cannot open log file {log_file}: {e}; logging to stderr only")


def read_config(path: Optional[str]) -> ManagerConfig:
    """Load the configuration file.

    Without --config a missing default file selects the built-in resources.

    Raises:
        FileNotFoundError: If an explicitly given file does not exist
        ValueError: If the file is not valid configuration
    """
    if path is None:
        if not DEFAULT_CONFIG_FILE.exists():
            return ManagerConfig.default()
        path = DEFAULT_CONFIG_FILE
    return load_config(path)


def install_signal_handlers(manager: Manager) -> None:
    """Route SIGTERM and SIGINT to Manager.request_shutdown()."""

    def handler(signum, frame):
        # keep the handler itself lock-free; the Event is set from a thread
        threading.Thread(
            target=manager.request_shutdown,
            name="shutdown-request",
            daemon=True,
        ).start()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


def cmd_start(args: argparse.Namespace, config: ManagerConfig) -> int:
    """Handle the 'start' command - run the manager in the foreground.

    Args:
        args: Parsed CLI arguments
        config: Loaded configuration

    Returns:
        Exit code (0 for a clean run and shutdown, 1 on any failure)
    """
    manager = Manager(config)
    install_signal_handlers(manager)
    return manager.run()


def cmd_stop(args: argparse.Namespace, config: ManagerConfig) -> int:
    """Handle the 'stop' command - terminate the running instance.

    Args:
        args: Parsed CLI arguments
        config: Loaded configuration

    Returns:
        Exit code (0 if the instance exited or none was running, 1 otherwise)
    """
    pid = SingleInstanceLock(config.lock_file).read_pid()
    if pid is None:
        print("ramfs-manager is not running")
        return 0

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print(f"ramfs-manager is not running (stale PID {pid})")
        return 0
    except PermissionError as e:
        print(f"Error: cannot signal PID {pid}: {e}", file=sys.stderr)
        return 1

    print(f"Sent SIGTERM to ramfs-manager (PID {pid}), waiting for shutdown...")
    deadline = time.monotonic() + args.timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            print("ramfs-manager stopped")
            return 0
        time.sleep(STOP_POLL_INTERVAL)

    print(f"Error: PID {pid} still running after {args.timeout:g}s", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="ramfs-manager",
        description="RAMFS Manager - keep service data directories in RAM with periodic persistence",
    )
    parser.add_argument(
        "--version", action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug output"
    )
    parser.add_argument(
        "--config",
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE}, built-in resources if absent)"
    )
    parser.add_argument(
        "--json-logs", action="store_true",
        help="Emit JSON log lines"
    )
    parser.add_argument(
        "--log-file", type=Path,
        help=f"Log file (default: {DEFAULT_LOG_FILE})"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.required = True

    subparsers.add_parser("start", help="Set up RAM mounts and run until signalled")

    stop_parser = subparsers.add_parser("stop", help="Stop the running instance")
    stop_parser.add_argument(
        "--timeout", type=float, default=DEFAULT_STOP_TIMEOUT,
        help=f"Seconds to wait for the instance to exit (default: {DEFAULT_STOP_TIMEOUT:g})"
    )

    return parser


def main(argv=None) -> int:
    """Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = read_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    commands = {
        "start": cmd_start,
        "stop": cmd_stop,
    }

    if args.command == "start":
        setup_logging(args, config)

    return commands[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())

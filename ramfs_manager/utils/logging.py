"""Logging configuration for RAMFS Manager.

Modules log through ``logging.getLogger(__name__)`` and prefix per-resource
messages with ``[name]``. The CLI calls configure_root_logger() once to pick
text or JSON-lines output on stderr, optionally mirrored to a log file.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union


# Default format for text output
TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord has; anything else was passed via ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime",
}


class JsonFormatter(logging.Formatter):
    """Format log records as JSON lines for journald or log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        entry.update(extras)

        return json.dumps(entry, default=str)


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def configure_root_logger(
    level: Union[int, str] = logging.INFO,
    json_output: bool = False,
    log_file: Optional[Path] = None
) -> None:
    """Configure the root logger for the entire application.

    Replaces any handlers installed earlier, so calling it again switches
    format or destination.

    Args:
        level: Logging level (number or name such as "DEBUG")
        json_output: If True, emit JSON lines instead of text
        log_file: Optional path to a log file, created with its parent

    Raises:
        OSError: If the log file cannot be opened
    """
    level = _coerce_level(level)
    formatter: logging.Formatter = (
        JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT, DATE_FORMAT)
    )

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

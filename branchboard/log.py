"""
Per-repository log file.

Every module logs through `logging.getLogger(__name__)`; configure_logging()
sends the `branchboard` logger tree to an append-only file, one line per
record:

    2025-01-01T12:00:00.000Z INFO git.branch.create {"name": "bb/task/..."}

Structured metadata goes in `extra={"meta": {...}}`. Logging must never break
a board operation, so write errors are dropped.
"""
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from .config import project_storage_dir, storage_root

LOG_FILENAME = "branchboard.log"
LOGGER_NAME = "branchboard"

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def env_level() -> int:
    value = os.environ.get("BRANCHBOARD_LOG_LEVEL", "info").strip().lower()
    return LEVELS.get(value, logging.INFO)


class LineFormatter(logging.Formatter):
    """`<utc iso> <LEVEL> <message> [json meta]`."""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        level = "WARN" if record.levelno == logging.WARNING else record.levelname
        line = f"{self.formatTime(record)} {level} {record.getMessage()}"
        meta = getattr(record, "meta", None)
        if meta:
            line += " " + json.dumps(meta, default=str, ensure_ascii=False)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class RepoLogHandler(logging.Handler):
    """Appends formatted records to a file, opening it per record."""

    def __init__(self, path: Union[str, Path], level: int = logging.NOTSET):
        super().__init__(level)
        self.path = Path(path)
        self.setFormatter(LineFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except Exception:
            # swallow logging errors
            pass


def resolve_log_path(repo_root: Optional[str], root: Optional[Path] = None) -> Path:
    """Log next to the board, or in the storage root when there is no repo."""
    if repo_root:
        return project_storage_dir(repo_root, root) / LOG_FILENAME
    return (root or storage_root()) / LOG_FILENAME


def configure_logging(log_path: Union[str, Path], level: Optional[int] = None) -> RepoLogHandler:
    """Attach a RepoLogHandler to the package logger, replacing an earlier one."""
    pkg_logger = logging.getLogger(LOGGER_NAME)
    for existing in list(pkg_logger.handlers):
        if isinstance(existing, RepoLogHandler):
            pkg_logger.removeHandler(existing)

    handler = RepoLogHandler(log_path)
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level if level is not None else env_level())
    # Records stay out of the terminal UI
    pkg_logger.propagate = False
    return handler

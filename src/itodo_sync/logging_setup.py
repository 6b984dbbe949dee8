# src/itodo_sync/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FILE_NAME = "itodo-sync.log"

# Per-item push/pull loggers: console shows their warnings only.
_CHATTY_LOGGERS = ("itodo_sync.sync.executor", "itodo_sync.sync.merge")

# HTTP client loggers: request lines stay out of both handlers.
_HTTP_LOGGERS = ("httpx", "httpcore")


class _ConsoleNoiseFilter(logging.Filter):
    """Console view: itodo_sync logs minus drain/pull chatter; anything else at ERROR+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith("itodo_sync."):
            return record.levelno >= logging.ERROR
        if record.name.startswith(_CHATTY_LOGGERS):
            return record.levelno >= logging.WARNING
        return True


def setup_logging(
    *,
    log_dir: str | Path = ".local/itodo",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Install a filtered stderr handler and a full log file under log_dir.

    Replaces existing root handlers; returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    log_file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    log_file_handler.setLevel(file_level)
    log_file_handler.setFormatter(fmt)
    root.addHandler(log_file_handler)

    logging.captureWarnings(True)

    for name in _HTTP_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file

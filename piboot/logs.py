"""Logging setup for the piboot command line tools."""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


def configure_logging(level: int = logging.INFO, log_file: Optional[Path] = None) -> None:
    """Send records to stdout and, when given, append them to ``log_file``."""
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_file is not None and _stream_is_file(sys.stdout, log_file):
        # cron already redirects stdout into the log
        log_file = None
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a")
        except OSError as exc:
            root.warning("Cannot open log file %s: %s", log_file, exc)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    # watchdog logs every inotify event at debug level
    logging.getLogger("watchdog").setLevel(max(level, logging.INFO))


def _stream_is_file(stream, path: Path) -> bool:
    try:
        return os.path.samestat(os.fstat(stream.fileno()), os.stat(path))
    except (AttributeError, OSError, ValueError):
        return False

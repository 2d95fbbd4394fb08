"""Logging setup for the homerun command-line tool."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from platformdirs import user_log_dir


def log_file_path() -> Path:
    log_dir = Path(user_log_dir("homerun"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "homerun.log"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    *,
    console: bool = False,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> None:
    """Route package logs to a rotating file, and optionally to stderr.

    Library code only ever calls ``logging.getLogger(__name__)``; this is the
    one place handlers get attached.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger("homerun")
    root.setLevel(numeric)
    root.handlers.clear()

    path = log_file or log_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setLevel(numeric)
        stream.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(stream)

    root.debug("Logging initialized: %s (level=%s)", path, level)

"""Logging configuration for the ``cge`` command."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from cge_constants import CGE_HOME

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%H:%M:%S"

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def default_log_file(cge_home: Path = CGE_HOME) -> Path:
    return Path(cge_home) / "logs" / "cge.log"


def setup_logging(verbose: bool = False, quiet: bool = False,
                  log_file: Optional[Path] = None) -> None:
    """Configure root logging once per process.

    verbose -> DEBUG for our own loggers, quiet -> only errors on the console.
    When *log_file* is given a rotating file handler records DEBUG output
    regardless of the console level.
    """
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT, force=True)

    # Keep third-party libraries out of the way unless something breaks
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING if verbose else logging.ERROR)

    if log_file is not None:
        log_file = Path(log_file)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(log_file, maxBytes=2 * 1024 * 1024,
                                          backupCount=3, encoding="utf-8")
        except OSError as e:
            logging.getLogger(__name__).warning("Cannot open log file %s: %s", log_file, e)
            return
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        # The root level gates every handler; the console handler keeps its own.
        for existing in root.handlers:
            if existing is not handler and existing.level == logging.NOTSET:
                existing.setLevel(level)
        root.setLevel(logging.DEBUG)

"""Process-wide logging: stdout plus a size-rotated file under ``LOG_DIR``."""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
LOG_FILE_NAME = "studyquiz.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# Third-party loggers that flood INFO with per-request lines
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def configure_logging(log_dir: str, debug: bool = False) -> None:
    """Attach the console and rotating-file handlers to the root logger."""
    os.makedirs(log_dir, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)

    logfile = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    logfile.setFormatter(formatter)

    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, handlers=[console, logfile])
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

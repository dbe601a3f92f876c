# =============================================================================
# madrasa_core/logging/config.py
# Logging setup for the sync layer
# =============================================================================

import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_DIR = Path("logs")

# HTTP client and Streamlit internals log every request and rerun at INFO
NOISY_LOGGERS = ("urllib3", "requests", "streamlit", "watchdog")


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> None:
    """
    Send sync logs to stdout and, optionally, a dated file.

    Args:
        level: Root logging level
        log_to_file: Also write logs/sync_YYYY-MM-DD.log
        log_filename: Override the file name
        log_dir: Override the logs/ directory
    """
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        directory = Path(log_dir) if log_dir else LOG_DIR
        directory.mkdir(parents=True, exist_ok=True)
        name = log_filename or f"sync_{datetime.now():%Y-%m-%d}.log"
        handlers.append(logging.FileHandler(directory / name))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("madrasa_core").info(f"Logging at {logging.getLevelName(level)}")


def get_logger(name: str) -> logging.Logger:
    """Module logger; call with __name__."""
    return logging.getLogger(name)


class LogContext:
    """
    Times a sync cycle and logs one line when it ends.

    Counters passed to note() are appended to the closing line:
        with LogContext(logger, "Drain") as ctx:
            ...
            ctx.note(synced=3, failed=0)
        # "Drain finished in 0.42s (synced=3, failed=0)"
    """

    def __init__(self, logger: logging.Logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.start_time: Optional[float] = None
        self.fields: Dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self.start_time = time.monotonic()
        self.logger.debug(f"{self.operation} started")
        return self

    @property
    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return time.monotonic() - self.start_time

    def note(self, **fields: Any) -> None:
        self.fields.update(fields)

    def _summary(self) -> str:
        if not self.fields:
            return ""
        return " (" + ", ".join(f"{k}={v}" for k, v in self.fields.items()) + ")"

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.logger.info(f"{self.operation} finished in {self.elapsed:.2f}s{self._summary()}")
        else:
            self.logger.error(
                f"{self.operation} aborted after {self.elapsed:.2f}s{self._summary()}: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )
        return False

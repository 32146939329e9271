"""
Centralized logging configuration for the pipeline.
Every module logs through ``logging.getLogger(__name__)``; this installs the
shared handlers on the root logger once at startup.
"""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
LOG_FILENAME = "lab-reports.log"


def configure_logging(log_dir: Path, level: str = "INFO", backup_count: int = 30) -> Path:
    """
    Send pipeline logs to a daily rolling file and to standard output.

    Args:
        log_dir (Path): Directory where log files will be stored.
        level (str): Logging level name (default is INFO).
        backup_count (int): Number of daily files kept after rollover.

    Returns:
        Path: The active log file.
    """

    # Check for existence of log directory, create if it doesn't exist
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILENAME

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Rolled files are named lab-reports.log.YYYY-MM-DD
    file_handler = TimedRotatingFileHandler(
        log_path, when="midnight", backupCount=backup_count, encoding="utf-8"
    )
    console_handler = logging.StreamHandler(sys.stdout)

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    return log_path

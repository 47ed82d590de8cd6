"""Logging setup for the convoy CLI and daemon.

Messages go to stderr and to a dated file under .convoy/logs/
(``convoy-YYYY-MM-DD.log``).
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import get_logs_dir

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

_HANDLER_MARK = "_convoy_handler"


def get_log_file(logs_dir: Path | None = None) -> Path:
    """Path of today's log file."""
    logs_dir = logs_dir or get_logs_dir()
    date_str = datetime.now().strftime("%Y-%m-%d")
    return logs_dir / f"convoy-{date_str}.log"


def setup_logging(debug: bool = False, log_file: bool = True, quiet: bool = False) -> Path | None:
    """Configure the ``convoy`` logger.

    Safe to call more than once: handlers installed by a previous call are
    replaced.

    Args:
        debug: Log at DEBUG instead of INFO
        log_file: Also write to the dated file under .convoy/logs/
        quiet: Only WARNING and above (one-shot CLI commands)

    Returns:
        The log file path, or None when file logging is off or the logs
        directory cannot be created
    """
    logger = logging.getLogger("convoy")
    if debug:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.WARNING if quiet else logging.INFO)

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    setattr(stream, _HANDLER_MARK, True)
    logger.addHandler(stream)

    if not log_file:
        return None

    path = get_log_file()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
    except OSError as e:
        logger.warning("Cannot write log file %s: %s", path, e)
        return None
    file_handler.setFormatter(formatter)
    setattr(file_handler, _HANDLER_MARK, True)
    logger.addHandler(file_handler)
    return path

"""
Logger construction and teardown.

The logger built here is passed explicitly into the registry, the retry
policy, the fallback sequencer, the scheduler and every job.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "overseer"
LOG_FILE = "overseer.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def get_logger(logger: Optional[logging.Logger] = None) -> logging.Logger:
    return logger if logger is not None else logging.getLogger(LOGGER_NAME)


def setup_logging(
    log_file: Optional[Union[str, Path]] = LOG_FILE,
    level: Union[int, str] = logging.INFO,
    name: str = LOGGER_NAME,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file:
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


def close_logging(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        try:
            handler.flush()
            handler.close()
        finally:
            logger.removeHandler(handler)

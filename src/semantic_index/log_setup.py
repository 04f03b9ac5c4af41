"""Loguru sink configuration for command-line use."""

import sys
from pathlib import Path

from loguru import logger

STDERR_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Replace loguru's default sink with a stderr sink and an optional rotating file.

    Args:
        level: Minimum level for both sinks
        log_file: Optional path of a log file (rotated at 10 MB, 5 kept)
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=STDERR_FORMAT)
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level=level, format=FILE_FORMAT, rotation="10 MB", retention=5)

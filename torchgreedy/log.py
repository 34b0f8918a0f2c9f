"""
Logging setup for the command line and scripts.

Library modules only create module level loggers; handlers are installed
here, once, by the application.
"""

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)-15s [%(levelname)s] %(message)s"


def configure_logging(
    level: int | str = logging.INFO, log_file: str | Path | None = None
) -> logging.Logger:
    """
    Configure the ``torchgreedy`` logger hierarchy.

    Args:
        level: Logging level, as a number or a name such as "DEBUG"
        log_file: Optional file that receives a copy of all messages

    Returns:
        The package root logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger("torchgreedy")
    logger.setLevel(level)
    logger.propagate = False

    # Replace handlers from a previous call
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger

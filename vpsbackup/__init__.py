import os
import logging
from typing import Optional

__version__ = '1.0.0'

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
RUN_LOG_FORMAT = '%(asctime)s: %(message)s'
RUN_LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def configure_logging(log_file: Optional[str] = None, debug: bool = False) -> logging.Logger:
    """
    Configure package logging.

    Console output carries level and module; the run log is an append-only
    file of `<timestamp>: <message>` lines that is never truncated here.

    Args:
        log_file: Path of the run log (None disables the file handler)
        debug: Enable DEBUG level output

    Returns:
        The configured `vpsbackup` logger
    """
    log_level = logging.DEBUG if debug else logging.INFO

    logger = logging.getLogger('vpsbackup')
    logger.setLevel(log_level)

    # Reconfiguring (tests, repeated CLI invocations) must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    # Run log handler
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8', delay=True)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT))
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger

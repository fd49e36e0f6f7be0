"""
Logging helpers.

Every module logs through a child of the 'fisheye_calibration' logger:

    from fisheye_calibration.logger import get_logger
    logger = get_logger(__name__)

The CLI calls setup_logger() once; library users configure logging
themselves or leave it silent.
"""

import logging
import sys

ROOT_LOGGER_NAME = 'fisheye_calibration'

CONSOLE_FORMAT = '[%(levelname)s] %(message)s'
DEBUG_FORMAT = '[%(levelname)s] %(asctime)s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_initialized = False


def setup_logger(level=logging.INFO, stream=None) -> logging.Logger:
    """
    Configure the package root logger (console only).

    Calling it again only updates the level.
    """
    global _initialized

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    if _initialized:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    # keep messages out of the root logger (no double output)
    logger.propagate = False

    fmt = DEBUG_FORMAT if level <= logging.DEBUG else CONSOLE_FORMAT
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=DATE_FORMAT))
    logger.addHandler(handler)

    _initialized = True
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Return a logger below the package root.

    'fisheye_calibration.solver' is returned unchanged, anything else
    (e.g. '__main__') is nested under the root.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + '.'):
        return logging.getLogger(name)
    return logging.getLogger(f'{ROOT_LOGGER_NAME}.{name}')


def parse_level(name: str) -> int:
    """Map a level name such as 'debug' to its logging constant."""
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level

import logging
import os
import sys
from typing import Dict, Union


LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

# Every logger handed out by get_logger, by name.
_CONFIGURED: Dict[str, logging.Logger] = {}


def coerce_level(value: Union[str, int, None]) -> int:
    """Map a level name or number to a logging level; unknown names give INFO."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _LEVELS.get(value.upper().strip(), logging.INFO)
    return logging.INFO


def _attach(logger: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return a stderr logger with the project-wide format.

    - Honors LOG_LEVEL (default INFO) and LOG_FILE (optional path, appended).
    - Configures each named logger once; later calls return it unchanged.
    """
    existing = _CONFIGURED.get(name)
    if existing is not None:
        return existing

    logger = logging.getLogger(name)
    level = coerce_level(os.environ.get("LOG_LEVEL", "INFO"))
    logger.setLevel(level)
    _attach(logger, logging.StreamHandler(sys.stderr), level)

    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            _attach(logger, logging.FileHandler(log_file, encoding="utf-8"), level)
        except OSError:
            logger.warning("LOG_FILE %s could not be opened; continuing without file logging", log_file)

    logger.propagate = False
    _CONFIGURED[name] = logger
    return logger


def set_level(level: Union[str, int, None]) -> int:
    """Change the level of every project logger and its handlers at runtime."""
    resolved = coerce_level(level)
    for logger in _CONFIGURED.values():
        logger.setLevel(resolved)
        for handler in logger.handlers:
            handler.setLevel(resolved)
    return resolved

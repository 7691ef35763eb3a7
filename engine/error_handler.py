"""
Centralized error handling and logging system.

This module provides:
- The "factions" logger hierarchy and its file/console handlers
- Custom exception types for engine failures
- Guarded calls into external collaborators
"""
import logging
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from settings import LOGGER_NAME

T = TypeVar("T")

logger = logging.getLogger(LOGGER_NAME)


def get_logger(name: str) -> logging.Logger:
    """Child logger of the engine logger, e.g. ``get_logger("claims")``."""
    return logger.getChild(name)


def configure_logging(log_dir: Optional[Path] = None, console_level: int = logging.WARNING) -> logging.Logger:
    """
    Install file and console handlers on the engine logger.

    Safe to call more than once; handlers are only added the first time.

    Args:
        log_dir: Directory for the daily log file. No file handler if None.
        console_level: Minimum level echoed to the console

    Returns:
        The configured engine logger
    """
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers
    if logger.handlers:
        return logger

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"factions_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(
        logging.Formatter('%(levelname)s: %(message)s')
    )
    logger.addHandler(console_handler)
    return logger


class EngineError(Exception):
    """Base exception for engine failures that are not business outcomes."""
    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or message


class InvariantViolation(EngineError):
    """Engine state broke one of its own guarantees."""
    pass


class ConfigError(EngineError):
    """Configuration could not be read or written."""
    pass


class PersistenceError(EngineError):
    """Snapshot load/save failed."""
    pass


def log_error(
    error: Exception,
    context: str = "",
    level: int = logging.ERROR,
) -> None:
    """
    Log an error with context information.

    Args:
        error: The exception that occurred
        context: Where the error occurred (e.g., "autosave", "page_tracker")
        level: Logging level to record it at
    """
    error_type = type(error).__name__
    error_msg = str(error)
    trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

    logger.log(level, f"Error in {context}: {error_type}: {error_msg}\n{trace}")


def guarded_call(context: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """
    Call an external collaborator, logging instead of raising on failure.

    Returns:
        The callee's result, or None if it raised
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        log_error(e, context)
        return None


def invariant_violation(message: str) -> InvariantViolation:
    """Log a broken invariant at CRITICAL and return the exception to raise."""
    logger.critical(f"Invariant violated: {message}")
    return InvariantViolation(message)

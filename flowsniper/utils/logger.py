# flowsniper/utils/logger.py
import logging
import colorlog
import sys
from typing import Optional
from pathlib import Path

_FORMAT = "%(asctime)s | %(levelname)8s | %(name)20s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Shared file handler, attached to every logger once configure_file_logging() ran
_file_handler: Optional[logging.Handler] = None


# Custom formatter with colors
class ColoredFormatter(colorlog.ColoredFormatter):
    """Custom colored formatter with improved formatting"""

    def __init__(self):
        super().__init__(
            "%(log_color)s" + _FORMAT,
            datefmt=_DATEFMT,
            reset=True,
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        )


def configure_file_logging(log_file_path: Optional[str], level: str = "INFO") -> Optional[logging.Handler]:
    """
    Mirror all flowsniper loggers into a plain-text log file.

    Args:
        log_file_path: Target file; ``None`` disables file logging
        level: Logging level for the file handler

    Returns:
        The installed handler, or None
    """
    global _file_handler

    if not log_file_path or _file_handler is not None:
        return _file_handler

    path = Path(log_file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    _file_handler = handler

    # Attach to loggers created before file logging was configured
    for name, existing in logging.Logger.manager.loggerDict.items():
        if isinstance(existing, logging.Logger) and name.startswith("flowsniper"):
            if existing.handlers and handler not in existing.handlers:
                existing.addHandler(handler)

    return handler


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """
    Get a configured logger with colored output

    Args:
        name: Logger name
        level: Logging level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Clear existing handlers to avoid duplicates
    if logger.handlers:
        return logger

    # Set log level
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    # Create console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(ColoredFormatter())
    logger.addHandler(console_handler)

    if _file_handler is not None:
        logger.addHandler(_file_handler)

    # Prevent propagation to avoid duplicate logs
    logger.propagate = False

    return logger


def setup_logger(name: str, level: str = "INFO") -> logging.Logger:
    """
    Setup and configure a logger with colored output
    (Alias for get_logger for backward compatibility)
    """
    return get_logger(name, level)

# flowsniper/utils/__init__.py
"""
Utility package for the FlowSniper engine.

This package provides:
- Colored logging system (logger.py)
- Helper functions (helpers.py)
- Notification system (notifications.py)

Usage:
    from flowsniper.utils.logger import get_logger
    from flowsniper.utils.helpers import format_currency, truncate_address
    from flowsniper.utils.notifications import NotificationManager
"""

from .logger import get_logger, setup_logger, configure_file_logging
from .helpers import (
    validate_address,
    same_address,
    truncate_address,
    format_currency,
    format_duration
)
from .notifications import NotificationManager, NotificationConfig

__all__ = [
    # Logging
    "get_logger",
    "setup_logger",
    "configure_file_logging",

    # Helpers
    "validate_address",
    "same_address",
    "truncate_address",
    "format_currency",
    "format_duration",

    # Notifications
    "NotificationManager",
    "NotificationConfig"
]

"""
clearpass utilities module.
"""

from clearpass.utils.config import get_project_root, get_settings
from clearpass.utils.logging import LogContext, configure_logging, get_logger

__all__ = [
    "get_settings",
    "get_project_root",
    "get_logger",
    "configure_logging",
    "LogContext",
]

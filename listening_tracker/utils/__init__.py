"""Utility modules for the listening tracker."""

from .logger import setup_logger
from .platform import get_config_dir, is_windows
from .time import Clock, DateRange, Period

__all__ = ["Clock", "DateRange", "Period", "setup_logger", "get_config_dir", "is_windows"]

"""Utility functions for livebranch.

This package provides utility modules:
- logging: Logging configuration and logger creation
- concurrency: Sizing of concurrent boots
"""

from .logging import setup_logging, get_logger, ColoredFormatter
from .concurrency import get_optimal_worker_count, get_concurrency_info

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "ColoredFormatter",
    # Concurrency
    "get_optimal_worker_count",
    "get_concurrency_info",
]

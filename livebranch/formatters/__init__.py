"""Formatting utilities for livebranch."""

from .status import format_mirror_presence, format_status, get_status_color

__all__ = [
    "format_mirror_presence",
    "format_status",
    "get_status_color",
]

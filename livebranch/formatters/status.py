"""Status formatting utilities."""

from typing import Optional

from livebranch.constants import CLI_COLORS, PROGRESS_COLOR, STATUS_DISPLAY


def format_status(status: str) -> str:
    """
    Format a branch status as display text.

    Progress labels reported by booting workers ("installing", ...) are
    shown as they are.

    Args:
        status: Status returned by the supervisor

    Returns:
        Display text for status
    """
    return STATUS_DISPLAY.get(status, status)


def get_status_color(status: str) -> Optional[str]:
    """
    Rich color for a status.

    Args:
        status: Status returned by the supervisor

    Returns:
        Color name, or None for the default style
    """
    if status in CLI_COLORS:
        return CLI_COLORS[status]
    return PROGRESS_COLOR


def format_mirror_presence(in_mirror: bool) -> str:
    """✓ when the branch is listed by the mirror, ✗ when it is gone upstream."""
    return "✓" if in_mirror else "✗"

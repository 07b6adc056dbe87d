"""Helpers for sizing concurrent work on the host."""

import os
import sys
from typing import Dict, Any, Optional


def get_optimal_worker_count(user_specified: Optional[int] = None) -> int:
    """Calculate how many branches may boot at the same time.

    Booting runs install and build steps, which are CPU heavy, so the default
    is one boot per core.

    Args:
        user_specified: User-specified count, if provided

    Returns:
        Number of branches allowed to boot concurrently
    """
    if user_specified is not None and user_specified > 0:
        return user_specified

    return os.cpu_count() or 1


def get_concurrency_info() -> Dict[str, Any]:
    """Get information about the host used to size concurrent boots.

    Returns:
        Dictionary containing CPU count, boot concurrency and interpreter version
    """
    return {
        "cpu_count": os.cpu_count() or 1,
        "optimal_workers": get_optimal_worker_count(),
        "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        "platform": sys.platform,
    }

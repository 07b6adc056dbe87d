"""Git-related services for livebranch."""

from .mirror import MirrorRepository
from .branch import Branch

__all__ = [
    "MirrorRepository",
    "Branch",
]

"""Data models for livebranch."""

from .mirror import MirrorState
from .worker import BranchListing, ErrorRecord, WorkerRecord, WorkerState, BranchStatus

__all__ = [
    "MirrorState",
    "BranchListing",
    "ErrorRecord",
    "WorkerRecord",
    "WorkerState",
    "BranchStatus",
]

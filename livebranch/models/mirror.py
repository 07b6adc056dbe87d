"""Mirror repository state"""
from enum import Enum


class MirrorState(Enum):
    """Lifecycle of the local mirror."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"

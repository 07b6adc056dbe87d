"""Worker record model and related enums"""
import asyncio
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, List, Optional


class WorkerState(Enum):
    """Lifecycle state of a served branch.

    DOWN is represented by the absence of a record.
    """
    BOOTING = "booting"
    UP = "up"


class BranchStatus(str, Enum):
    """Statuses reported by WorkerSupervisor.get_status().

    Workers may also report free-form progress labels ("installing",
    "building", ...) which are returned verbatim while booting.
    """
    DOWN = "down"
    BOOTING = "booting"
    UP = "up"
    ERROR = "error"


@dataclass
class WorkerRecord:
    """One branch's worker process, proxy and bookkeeping."""
    branch: str
    state: WorkerState = WorkerState.BOOTING
    process: Optional[Any] = None  # WorkerProcess once spawned
    proxy: Optional[Any] = None  # BranchProxy once UP
    progress: Optional[str] = None  # latest {boot: ...} label while booting
    last_updated_at: float = 0.0
    last_accessed_at: float = 0.0
    update_task: Optional[asyncio.Task] = None
    stop_task: Optional[asyncio.Task] = None
    exit_task: Optional[asyncio.Task] = None

    @property
    def updating(self) -> bool:
        """True while an update check is in flight."""
        return self.update_task is not None and not self.update_task.done()

    @property
    def stopping(self) -> bool:
        """True once teardown has started."""
        return self.stop_task is not None


@dataclass
class ErrorRecord:
    """A failed branch, kept around to quarantine it and to report the failure."""
    branch: str
    cause: str
    quarantine_until: float
    status_until: float


@dataclass
class BranchListing:
    """Branches partitioned for observability.

    active: refs currently listed by the mirror
    up: branches with a live worker process (booting or serving)
    ready: branches with a proxy accepting traffic
    errored: branches in their error cool-down
    """
    active: List[str] = field(default_factory=list)
    up: List[str] = field(default_factory=list)
    ready: List[str] = field(default_factory=list)
    errored: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "up": self.up,
            "ready": self.ready,
            "errored": self.errored,
        }

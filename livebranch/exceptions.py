"""Custom exceptions for livebranch"""

from typing import Optional


class LiveBranchError(Exception):
    """Base exception for all livebranch errors."""
    pass


class GitOperationError(LiveBranchError):
    """Exception raised for errors in Git operations."""

    def __init__(self, operation: str, branch: Optional[str] = None, message: Optional[str] = None):
        self.operation = operation
        self.branch = branch
        self.message = message

        error_msg = f"Git operation '{operation}' failed"
        if branch:
            error_msg += f" for branch '{branch}'"
        if message:
            error_msg += f": {message}"

        super().__init__(error_msg)


class RepositoryInitError(GitOperationError):
    """Exception raised when the mirror repository cannot be cloned."""

    def __init__(self, message: Optional[str] = None):
        super().__init__("init", message=message)


class SyncError(GitOperationError):
    """Exception raised when fetching into the mirror fails.

    Non-fatal: the mirror simply stays stale until the next sync.
    """

    def __init__(self, message: Optional[str] = None):
        super().__init__("sync", message=message)


class BranchNotFoundError(GitOperationError):
    """Exception raised when a branch is not found."""

    def __init__(self, branch: str):
        super().__init__("find_branch", branch, "Branch not found")


class InvalidBranchNameError(LiveBranchError):
    """Exception raised for branch names that cannot be served safely."""

    def __init__(self, branch: str, reason: str = "Invalid branch name"):
        self.branch = branch
        self.reason = reason
        super().__init__(f"Invalid branch name '{branch}': {reason}")


class SocketPathTooLongError(InvalidBranchNameError):
    """Exception raised when a branch's socket path exceeds the platform limit."""

    def __init__(self, branch: str, path: str, limit: int):
        self.path = path
        self.limit = limit
        super().__init__(branch, f"socket path {path} is longer than {limit} bytes")


class WorkerError(LiveBranchError):
    """Base exception for worker lifecycle errors."""

    action = "serve"

    def __init__(self, branch: str, message: Optional[str] = None):
        self.branch = branch
        self.message = message

        error_msg = f"Could not {self.action} branch '{branch}'"
        if message:
            error_msg += f": {message}"

        super().__init__(error_msg)


class BootError(WorkerError):
    """Exception raised when a worker fails to spawn or to complete its handshake."""

    action = "boot"

    def __init__(self, branch: str, message: Optional[str] = None, quarantined: bool = False):
        self.quarantined = quarantined
        super().__init__(branch, message)


class UpdateError(WorkerError):
    """Exception raised when a worker fails to update its checkout."""

    action = "update"


class ProxyUnavailableError(WorkerError):
    """Exception raised when a request arrives for a branch with no live proxy."""

    action = "proxy to"

    def __init__(self, branch: str):
        super().__init__(branch, "no proxy is running")


class ControlChannelError(LiveBranchError):
    """Base exception for the supervisor/worker control channel."""
    pass


class ControlChannelClosedError(ControlChannelError):
    """Exception raised for requests pending when the worker's channel closes."""

    def __init__(self, message: str = "control channel closed"):
        super().__init__(message)


class WorkerRequestError(ControlChannelError):
    """Exception carrying a structured error returned by a worker."""

    def __init__(self, name: str, message: str):
        self.name = name
        self.message = message
        super().__init__(f"{name}: {message}")

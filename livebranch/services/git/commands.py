"""Helpers shared by the git services."""

from contextlib import contextmanager
from typing import Optional

import git

from livebranch.exceptions import GitOperationError


def format_git_error(error: Exception) -> str:
    """Build an informative message from a GitPython error.

    Args:
        error: Exception raised by GitPython

    Returns:
        Message naming the command, its exit status and stderr when available
    """
    if isinstance(error, git.exc.GitCommandError):
        command = error.command if hasattr(error, "command") else "git"
        if isinstance(command, (list, tuple)):
            command = " ".join(str(part) for part in command)
        stderr = (error.stderr if hasattr(error, "stderr") else str(error)) or ""
        stderr = stderr.strip()
        status = error.status if hasattr(error, "status") else "unknown"

        if stderr:
            return f"'{command}' failed (exit {status}): {stderr}"
        return f"'{command}' failed with exit code {status}"
    return str(error)


@contextmanager
def git_operation(operation: str, branch: Optional[str] = None):
    """Translate GitPython failures into GitOperationError."""
    try:
        yield
    except (git.exc.GitCommandError, git.exc.NoSuchPathError, git.exc.InvalidGitRepositoryError) as e:
        raise GitOperationError(operation, branch, format_git_error(e)) from e

"""Branch checkout service"""

import os
import shutil
from typing import TYPE_CHECKING, List, Optional

import git

from livebranch.exceptions import BranchNotFoundError, GitOperationError
from livebranch.services.branch_validation_service import BranchValidationService
from livebranch.services.git.commands import git_operation
from livebranch.utils.logging import get_logger

if TYPE_CHECKING:
    from livebranch.services.git.mirror import MirrorRepository

logger = get_logger(__name__)


class Branch:
    """One ref of the mirror, checked out in its own working directory.

    The handle is cheap; the checkout is created on the first checkout()
    and may later be moved away by the janitor independently of the handle.
    All git calls pass arguments as lists, never through a shell.
    """

    def __init__(self, name: str, repository: "MirrorRepository", destination: str):
        """Initialize the branch handle.

        Args:
            name: Branch name
            repository: Mirror the branch is cloned from
            destination: Directory holding every branch checkout

        Raises:
            InvalidBranchNameError: If the name is unsafe (e.g. contains '..')
        """
        self.name = BranchValidationService.validate_branch_name(name)
        self.repository = repository
        self.destination = destination

    def __repr__(self) -> str:
        return f"Branch({self.name!r})"

    def get_directory(self) -> str:
        return os.path.join(self.destination, self.name)

    @property
    def upstream_ref(self) -> str:
        return f"refs/remotes/origin/{self.name}"

    def _get_repo(self):
        """Get a fresh git.Repo instance for the checkout."""
        directory = self.get_directory()
        if not os.path.isdir(directory):
            raise GitOperationError(
                "open", self.name, f"Branch directory {directory} does not exist"
            )
        return git.Repo(directory)

    def has_checkout(self) -> bool:
        return os.path.isdir(os.path.join(self.get_directory(), ".git"))

    def exists(self) -> bool:
        """Check that the ref still exists in the mirror.

        Runs against the mirror directory directly so it works without a checkout.
        """
        with git_operation("exists", self.name):
            output = git.Git().ls_remote(self.repository.get_directory(), f"refs/heads/{self.name}")
        return bool(output.strip())

    def checkout(self) -> str:
        """Clone the branch from the mirror, or update an existing checkout.

        Returns:
            Path of the working directory

        Raises:
            BranchNotFoundError: If the ref is gone from the mirror; nothing
                is created on disk in that case
            GitOperationError: If cloning or updating fails
        """
        if not self.exists():
            raise BranchNotFoundError(self.name)

        directory = self.get_directory()
        if self.has_checkout():
            self.update()
            return directory

        if os.path.isdir(directory):
            # Left over from an interrupted clone
            logger.debug(f"Removing incomplete checkout at {directory}")
            shutil.rmtree(directory)

        # `git clone` cannot create the intermediate directories of names like feature/foo
        os.makedirs(directory, exist_ok=True)
        logger.info(f"Cloning branch {self.name} into {directory}")
        with git_operation("checkout", self.name):
            repo = git.Repo.clone_from(self.repository.get_directory(), directory, branch=self.name)
            repo.close()
        return directory

    def _fetch(self, repo) -> None:
        repo.git.fetch("origin", f"+refs/heads/{self.name}:{self.upstream_ref}")

    def update(self) -> str:
        """Fetch and hard-reset the checkout to the upstream tip of its ref."""
        with git_operation("update", self.name):
            repo = self._get_repo()
            try:
                self._fetch(repo)
                repo.git.reset("--hard", self.upstream_ref)
            finally:
                repo.close()
        logger.debug(f"Branch {self.name} reset to upstream")
        return self.get_directory()

    def is_up_to_date(self) -> bool:
        """True iff the local HEAD equals the upstream tip after fetching."""
        with git_operation("is_up_to_date", self.name):
            repo = self._get_repo()
            try:
                self._fetch(repo)
                local = repo.head.commit.hexsha
                upstream = repo.commit(self.upstream_ref).hexsha
            finally:
                repo.close()
        return local == upstream

    def get_last_commit(self) -> str:
        """Return the sha of the checkout's HEAD."""
        with git_operation("get_last_commit", self.name):
            repo = self._get_repo()
            try:
                return repo.head.commit.hexsha
            finally:
                repo.close()

    def has_changed(self, since_commit: str, watch_paths: Optional[List[str]] = None) -> bool:
        """Check whether commits after `since_commit` touch any watched path.

        Args:
            since_commit: Commit to diff from
            watch_paths: Paths relative to the checkout; defaults to the whole tree

        Returns:
            True if `git diff since..HEAD` lists at least one file
        """
        paths = list(watch_paths) if watch_paths else ["."]
        with git_operation("has_changed", self.name):
            repo = self._get_repo()
            try:
                output = repo.git.diff("--name-only", f"{since_commit}..HEAD", "--", *paths)
            finally:
                repo.close()
        return bool(output.strip())

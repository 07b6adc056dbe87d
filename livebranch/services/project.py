"""Project service: branch namespace, filesystem layout and janitor"""

import asyncio
import os
import shutil
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from livebranch.config import Config
from livebranch.constants import (
    BRANCHES_DIRNAME,
    LOG_SUFFIX,
    LOGS_DIRNAME,
    MAX_SOCKET_PATH_LENGTH,
    REPO_DIRNAME,
    SOCKET_SUFFIX,
    SOCKETS_DIRNAME,
)
from livebranch.exceptions import SocketPathTooLongError
from livebranch.services.branch_validation_service import BranchValidationService
from livebranch.services.git import Branch, MirrorRepository
from livebranch.utils.logging import get_logger

logger = get_logger(__name__)


def create_repository(config: Config, destination: Path) -> MirrorRepository:
    """Create the mirror for the configured repository type."""
    if config.repository_type == "git":
        return MirrorRepository(
            config.repository_url,
            destination / REPO_DIRNAME,
            fetch_refspecs=config.fetch_refspecs,
        )
    raise ValueError(f"Unsupported repository type '{config.repository_type}'")


class Project:
    """One source repository: its mirror, its branches and their files.

    Layout under <destination_root>/<project>:
        repo/                   bare mirror
        branches/<name>/        working checkouts
        sockets/<name>.socket   worker sockets
        logs/<name>.log         worker logs
    """

    def __init__(self, config: Config):
        self.config = config
        self.name = config.project_name
        self.destination = config.project_root
        self.repository = create_repository(config, self.destination)
        self.branches: Dict[str, Branch] = {}
        self.graveyard_path = config.graveyard
        self._tasks: List[asyncio.Task] = []

    def get_directory(self) -> str:
        return str(self.destination)

    def get_branches_directory(self) -> str:
        return str(self.destination / BRANCHES_DIRNAME)

    def get_branch(self, branch_name: str) -> Branch:
        """Return the branch handle, creating it on first use.

        Raises:
            InvalidBranchNameError: If the name is unsafe
        """
        branch = self.branches.get(branch_name)
        if branch is None:
            branch = Branch(branch_name, self.repository, self.get_branches_directory())
            self.branches[branch_name] = branch
        return branch

    def get_socket_path(self, branch_name: str) -> str:
        """Socket the branch's application listens on.

        Raises:
            InvalidBranchNameError: If the name is unsafe
            SocketPathTooLongError: If the path does not fit in a sockaddr_un
        """
        BranchValidationService.validate_branch_name(branch_name)
        path = os.path.join(self.destination, SOCKETS_DIRNAME, branch_name + SOCKET_SUFFIX)
        if len(os.fsencode(path)) > MAX_SOCKET_PATH_LENGTH:
            raise SocketPathTooLongError(branch_name, path, MAX_SOCKET_PATH_LENGTH)
        return path

    def get_log_path(self, branch_name: str) -> str:
        BranchValidationService.validate_branch_name(branch_name)
        return os.path.join(self.destination, LOGS_DIRNAME, branch_name + LOG_SUFFIX)

    def cleanup_branch(self, branch_name: str) -> tuple[bool, Optional[str]]:
        """Move the branch checkout to the graveyard and forget the handle.

        Runs synchronously so a concurrent boot cannot re-create the checkout
        halfway through the move.

        Args:
            branch_name: Branch to clean up

        Returns:
            Tuple of (success, error_message). error_message is None on success.
        """
        branch = self.branches.pop(branch_name, None)
        if branch is None:
            return False, f"Branch '{branch_name}' is not known"

        directory = branch.get_directory()
        if not os.path.exists(directory):
            return True, None

        target = self.graveyard_path / f"{branch_name.replace('/', '-')}-{uuid.uuid4().hex[:8]}"
        try:
            self.graveyard_path.mkdir(parents=True, exist_ok=True)
            shutil.move(directory, target)
        except OSError as e:
            error_msg = f"Could not move {directory} to the graveyard: {e}"
            logger.error(error_msg)
            return False, error_msg

        logger.info(f"Moved checkout of {branch_name} to {target}")
        return True, None

    def sweep_graveyard(self) -> int:
        """Delete what the graveyard holds, entry by entry.

        An entry that cannot be removed is left for the next sweep.

        Returns:
            Number of entries removed
        """
        if not self.graveyard_path.is_dir():
            return 0

        removed = 0
        for entry in list(self.graveyard_path.iterdir()):
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Janitor could not remove {entry}: {e}")
        if removed:
            logger.debug(f"Janitor removed {removed} entries from {self.graveyard_path}")
        return removed

    async def run_janitor(self, interval: float) -> None:
        """Drain the graveyard forever, every `interval` seconds."""
        while True:
            await asyncio.to_thread(self.sweep_graveyard)
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Start the mirror sync loop and the janitor."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.ensure_future(
                self.repository.keep_synced(self.config.sync_interval, self.config.max_branches)
            ),
            asyncio.ensure_future(self.run_janitor(self.config.janitor_interval)),
        ]
        logger.info(f"Project {self.name} started")

    async def close(self) -> None:
        """Stop the background loops."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.repository.close()


class ProjectRegistry:
    """Projects served by this process, keyed by name."""

    def __init__(self):
        self._projects: Dict[str, Project] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._projects

    def get(self, name: str) -> Optional[Project]:
        return self._projects.get(name)

    def create(self, config: Config) -> Project:
        """Return the project for this config, creating it on first use."""
        project = self._projects.get(config.project_name)
        if project is None:
            project = Project(config)
            self._projects[project.name] = project
        return project

    def start(self) -> None:
        for project in self._projects.values():
            project.start()

    async def close(self) -> None:
        for project in self._projects.values():
            await project.close()
        self._projects.clear()

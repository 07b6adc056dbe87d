"""Mirror repository service"""

import asyncio
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set, Union

import git

from livebranch.exceptions import GitOperationError, RepositoryInitError, SyncError
from livebranch.models.mirror import MirrorState
from livebranch.services.git.commands import format_git_error, git_operation
from livebranch.utils.logging import get_logger

logger = get_logger(__name__)

UpdateListener = Callable[[List[str]], Union[None, Awaitable[None]]]


class MirrorRepository:
    """Single bare mirror of the remote repository.

    Every branch checkout clones from this mirror. Git is not safe to run
    concurrently against one repository, so the clone and every fetch go
    through one in-flight task each: callers arriving while one runs await
    that task instead of starting another.
    """

    def __init__(self, remote_url: str, local_path: Union[str, Path], fetch_refspecs: Optional[List[str]] = None):
        """Initialize the mirror.

        Args:
            remote_url: URL of the repository to mirror
            local_path: Directory of the bare mirror; its existence means it is initialized
            fetch_refspecs: Extra refspecs added to the mirror's origin after cloning
        """
        self.remote_url = remote_url
        self.local_path = Path(local_path)
        self.fetch_refspecs = list(fetch_refspecs or [])
        self.state = MirrorState.UNINITIALIZED
        self.last_synced_at: Optional[float] = None
        self._init_task: Optional[asyncio.Task] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._branches: Optional[List[str]] = None
        self._listeners: List[UpdateListener] = []
        self._background: Set[asyncio.Task] = set()

    def get_directory(self) -> str:
        return str(self.local_path)

    @property
    def ready(self) -> bool:
        return self.state is MirrorState.READY

    @property
    def syncing(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    @property
    def branches(self) -> List[str]:
        """Branches seen by the last refresh (most recently committed first)."""
        return list(self._branches or [])

    def _get_repo(self):
        """Get a fresh git.Repo instance for the mirror."""
        return git.Repo(self.local_path)

    async def ensure_initialized(self) -> None:
        """Clone the mirror unless it already exists on disk.

        Concurrent callers share a single clone.

        Raises:
            RepositoryInitError: If cloning fails; the mirror is left absent
        """
        if self.state is MirrorState.READY:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._init())
        await asyncio.shield(self._init_task)

    async def _init(self) -> None:
        self.state = MirrorState.INITIALIZING
        try:
            if self.local_path.exists():
                logger.debug(f"Mirror already present at {self.local_path}")
            else:
                await asyncio.to_thread(self._clone)
            self.state = MirrorState.READY
            logger.info(f"Mirror repository is ready at {self.local_path}")
        except BaseException:
            self.state = MirrorState.UNINITIALIZED
            raise
        finally:
            self._init_task = None

    def _clone(self) -> None:
        """Clone the remote in mirror mode and apply the extra fetch refspecs.

        The clone happens in a sibling directory that is renamed into place,
        so a crash mid-clone never leaves a directory that looks initialized.
        """
        staging = self.local_path.with_name(self.local_path.name + ".partial")
        shutil.rmtree(staging, ignore_errors=True)
        staging.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Cloning {self.remote_url} to {self.local_path}")
        try:
            repo = git.Repo.clone_from(self.remote_url, str(staging), mirror=True)
            if self.fetch_refspecs:
                logger.debug("Updating mirror git repository configuration")
                for refspec in self.fetch_refspecs:
                    repo.git.config("--add", "remote.origin.fetch", refspec)
                repo.git.fetch("origin")
            repo.close()
            staging.rename(self.local_path)
        except (git.exc.GitCommandError, OSError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise RepositoryInitError(format_git_error(e)) from e

    async def sync(self) -> None:
        """Fetch with prune from origin.

        Callers arriving while a fetch is in flight wait for that fetch and
        share its outcome.

        Raises:
            RepositoryInitError: If the mirror could not be initialized
            SyncError: If the fetch failed; the mirror stays usable but stale
        """
        await self.ensure_initialized()
        if self._sync_task is None:
            self._sync_task = asyncio.ensure_future(self._sync())
        await asyncio.shield(self._sync_task)

    async def _sync(self) -> None:
        try:
            await asyncio.to_thread(self._fetch)
            self.last_synced_at = time.time()
        finally:
            self._sync_task = None

    def _fetch(self) -> None:
        logger.debug(f"Fetching {self.remote_url} into mirror")
        try:
            repo = self._get_repo()
            try:
                repo.git.fetch("--prune", "origin")
            finally:
                repo.close()
        except git.exc.GitError as e:
            raise SyncError(format_git_error(e)) from e

    async def wait_available(self) -> None:
        """Wait until the mirror is initialized and not mid-fetch.

        Used before anything reads from or clones off the mirror so readers
        never observe a half-cloned or half-fetched repository.

        Raises:
            RepositoryInitError: If the mirror could not be initialized
        """
        await self.ensure_initialized()
        task = self._sync_task
        if task is not None:
            try:
                await asyncio.shield(task)
            except SyncError:
                # A stale mirror is still a usable mirror
                pass

    async def list_branches(self, max_branches: Optional[int] = None) -> List[str]:
        """List branch names, most recently committed first.

        Args:
            max_branches: Only return this many branches

        Returns:
            List of branch names
        """
        await self.wait_available()
        return await asyncio.to_thread(self._list_refs, max_branches)

    def _list_refs(self, max_branches: Optional[int] = None) -> List[str]:
        args = ["--sort=-committerdate", "--format=%(refname:lstrip=2)"]
        if max_branches:
            args.append(f"--count={int(max_branches)}")
        with git_operation("list_branches"):
            repo = self._get_repo()
            try:
                output = repo.git.for_each_ref(*args, "refs/heads")
            finally:
                repo.close()
        return [line.strip() for line in output.splitlines() if line.strip()]

    def on_update(self, listener: UpdateListener) -> None:
        """Register a callback receiving the sorted branch list when it changes."""
        self._listeners.append(listener)

    async def refresh(self, max_branches: Optional[int] = None) -> Optional[List[str]]:
        """Sync once and notify listeners if the set of branches changed.

        Returns:
            The branches listed, or None if the mirror could not be read
        """
        try:
            await self.sync()
        except RepositoryInitError as e:
            logger.error(f"Could not initialize mirror: {e}")
            return None
        except SyncError as e:
            logger.warning(f"Mirror sync failed, continuing with stale data: {e}")

        try:
            branches = await self.list_branches(max_branches)
        except GitOperationError as e:
            logger.warning(f"Could not list mirror branches: {e}")
            return None

        previous = self._branches
        self._branches = branches
        if previous is None or set(previous) != set(branches):
            logger.info(f"Branch set changed: {len(branches)} branches")
            self._emit_update(sorted(branches))
        return branches

    async def keep_synced(self, interval: float, max_branches: Optional[int] = None) -> None:
        """Refresh the mirror forever, every `interval` seconds."""
        while True:
            await self.refresh(max_branches)
            await asyncio.sleep(interval)

    def _emit_update(self, branches: List[str]) -> None:
        for listener in self._listeners:
            try:
                result = listener(list(branches))
            except Exception as e:
                logger.error(f"Branch update listener failed: {e}")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Branch update listener failed: {error}")

    async def close(self) -> None:
        """Cancel listener tasks still running."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

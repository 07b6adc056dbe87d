"""Worker supervisor: one worker process and one proxy per served branch"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Iterable, Optional

from aiohttp import web

from livebranch.config import Config
from livebranch.exceptions import (
    BootError,
    GitOperationError,
    LiveBranchError,
    ProxyUnavailableError,
    UpdateError,
)
from livebranch.models.worker import (
    BranchListing,
    BranchStatus,
    ErrorRecord,
    WorkerRecord,
    WorkerState,
)
from livebranch.services.branch_validation_service import BranchValidationService
from livebranch.services.process import WorkerProcess
from livebranch.services.project import Project
from livebranch.services.proxy import BranchProxy
from livebranch.utils.concurrency import get_optimal_worker_count
from livebranch.utils.logging import get_logger

logger = get_logger(__name__)

SpawnWorker = Callable[[Config, str, Callable[[str], None]], Awaitable[WorkerProcess]]
ProxyFactory = Callable[[str], BranchProxy]


class WorkerSupervisor:
    """Drives the lifecycle of every served branch of one project.

    A branch is DOWN (no record), BOOTING (worker spawned, `init` pending)
    or UP (handshake done, proxy bound to the worker's socket). A failed
    boot or update marks the branch errored: it is torn down, its checkout
    goes to the graveyard and new boots are refused until the quarantine
    expires. All bookkeeping happens on the event loop, so the maps below
    are only ever touched by one coroutine at a time.
    """

    def __init__(
        self,
        project: Project,
        config: Optional[Config] = None,
        spawn_worker: Optional[SpawnWorker] = None,
        proxy_factory: Optional[ProxyFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the supervisor.

        Args:
            project: Project whose branches are served
            config: Settings; defaults to the project's
            spawn_worker: Coroutine starting a worker process (for tests)
            proxy_factory: Builds the proxy for a socket path (for tests)
            clock: Monotonic time source in seconds (for tests)
        """
        self.project = project
        self.config = config or project.config
        self._spawn_worker = spawn_worker or WorkerProcess.spawn
        self._proxy_factory = proxy_factory or self._create_proxy
        self._clock = clock
        self._workers: Dict[str, WorkerRecord] = {}
        self._errors: Dict[str, ErrorRecord] = {}
        self._boot_tasks: Dict[str, asyncio.Task] = {}
        self._autoboot_limit = asyncio.Semaphore(
            get_optimal_worker_count(self.config.autoboot_concurrency)
        )

    def _create_proxy(self, socket_path: str) -> BranchProxy:
        return BranchProxy(socket_path, timeout=self.config.proxy_timeout)

    def listen(self) -> None:
        """Follow the mirror's branch-set changes for eviction and autoboot."""
        self.project.repository.on_update(self.serve_active_branches)

    # Boot

    def _create_record(self, branch_name: str) -> WorkerRecord:
        # Both calls validate the name before anything touches the disk
        self.project.get_branch(branch_name)
        self.project.get_socket_path(branch_name)
        if branch_name in self._workers:
            raise BootError(branch_name, "a worker is already running")

        now = self._clock()
        record = WorkerRecord(branch=branch_name, last_updated_at=now, last_accessed_at=now)
        self._workers[branch_name] = record
        return record

    async def serve_branch(self, branch_name: str) -> WorkerRecord:
        """Spawn a worker for the branch and complete the `init` handshake.

        On failure the worker may still be running; boot_branch() is the
        caller that tears it down.

        Raises:
            InvalidBranchNameError: If the name cannot be served
            BootError: If spawning or the handshake failed
        """
        record = self._create_record(branch_name)
        await self._serve(record)
        return record

    async def _serve(self, record: WorkerRecord) -> None:
        branch_name = record.branch

        def on_status(status: str) -> None:
            logger.debug(f"Worker for {branch_name} reports '{status}'")
            if record.state is WorkerState.BOOTING:
                record.progress = status

        try:
            record.process = await self._spawn_worker(self.config, branch_name, on_status)
        except (OSError, LiveBranchError) as e:
            if self._workers.get(branch_name) is record:
                del self._workers[branch_name]
            raise BootError(branch_name, f"could not spawn worker: {e}") from e

        if record.stopping:
            # Stopped while the process was starting; the teardown had nothing to kill
            await record.process.stop(self.config.kill_grace_period)
            raise BootError(branch_name, "stopped while booting")
        record.exit_task = asyncio.ensure_future(self._watch_exit(record))

        try:
            await self.project.repository.wait_available()
            await record.process.request("init", {"branch": branch_name})
        except LiveBranchError as e:
            raise BootError(branch_name, str(e)) from e

        if record.stopping:
            raise BootError(branch_name, "stopped while booting")

    async def boot_branch(self, branch_name: str) -> None:
        """Boot the branch unless it is already up.

        Concurrent callers for one branch share a single boot.

        Raises:
            InvalidBranchNameError: If the name cannot be served
            BootError: If the branch is quarantined or the boot failed
        """
        self.project.get_socket_path(branch_name)
        error = self.get_error(branch_name)
        if error is not None and self._clock() < error.quarantine_until:
            raise BootError(
                branch_name, f"quarantined after failure: {error.cause}", quarantined=True
            )

        task = self._boot_tasks.get(branch_name)
        while task is None:
            record = self._workers.get(branch_name)
            if record is not None and record.stopping:
                await asyncio.shield(record.stop_task)
                # Another caller may have started the boot while we waited
                task = self._boot_tasks.get(branch_name)
                continue
            if record is not None:
                if record.state is WorkerState.UP:
                    return
                raise BootError(branch_name, "a worker is already running")

            task = asyncio.ensure_future(self._boot(branch_name))
            self._boot_tasks[branch_name] = task
            task.add_done_callback(lambda t: self._boot_done(branch_name, t))
        await asyncio.shield(task)

    def _boot_done(self, branch_name: str, task: asyncio.Task) -> None:
        if self._boot_tasks.get(branch_name) is task:
            del self._boot_tasks[branch_name]

    async def _boot(self, branch_name: str) -> None:
        logger.info(f"Booting branch {branch_name}")
        record = self._create_record(branch_name)
        try:
            await self._serve(record)
        except BootError as e:
            if record.stopping:
                # Whoever stopped the record already decided whether this is an error
                if self.get_error(branch_name) is None:
                    logger.info(f"Boot of {branch_name} interrupted: {e.message}")
                raise
            logger.error(f"Boot of {branch_name} failed: {e.message}")
            await self._mark_error(branch_name, e.message or str(e))
            raise

        record.proxy = self._proxy_factory(self.project.get_socket_path(branch_name))
        record.state = WorkerState.UP
        record.progress = None
        now = self._clock()
        record.last_updated_at = now
        record.last_accessed_at = now
        self._errors.pop(branch_name, None)
        logger.info(f"Branch {branch_name} is up")

    async def _watch_exit(self, record: WorkerRecord) -> None:
        returncode = await record.process.wait()
        if record.stopping or self._workers.get(record.branch) is not record:
            return
        logger.warning(f"Worker for {record.branch} exited with status {returncode}")
        if record.state is WorkerState.BOOTING:
            await self._mark_error(record.branch, f"worker exited with status {returncode} while booting")
        else:
            await self.stop_serving_branch(record.branch)

    # Teardown

    async def stop_serving_branch(self, branch_name: str, cleanup: bool = False) -> None:
        """Close the proxy, then terminate the worker (SIGTERM, then SIGKILL).

        Safe to call on a branch that is not served, and concurrently.

        Args:
            branch_name: Branch to stop
            cleanup: Also move the branch checkout to the graveyard
        """
        record = self._workers.get(branch_name)
        if record is not None:
            if record.stop_task is None:
                record.stop_task = asyncio.ensure_future(self._teardown(record))
            await asyncio.shield(record.stop_task)

        if cleanup and branch_name in self.project.branches:
            success, error_msg = self.project.cleanup_branch(branch_name)
            if not success:
                logger.warning(f"Cleanup of {branch_name} failed: {error_msg}")

    async def _teardown(self, record: WorkerRecord) -> None:
        logger.info(f"Stopping worker for {record.branch}")
        proxy, record.proxy = record.proxy, None
        try:
            if proxy is not None:
                await proxy.close()
            if record.process is not None:
                returncode = await record.process.stop(self.config.kill_grace_period)
                logger.debug(f"Worker for {record.branch} exited with status {returncode}")
        finally:
            if self._workers.get(record.branch) is record:
                del self._workers[record.branch]

    def _set_error(self, branch_name: str, cause: str) -> ErrorRecord:
        now = self._clock()
        error = ErrorRecord(
            branch=branch_name,
            cause=cause,
            quarantine_until=now + self.config.error_quarantine,
            status_until=now + self.config.error_status_retention,
        )
        self._errors[branch_name] = error
        logger.warning(
            f"Branch {branch_name} quarantined for {self.config.error_quarantine}s: {cause}"
        )
        return error

    async def _mark_error(self, branch_name: str, cause: str) -> None:
        self._set_error(branch_name, cause)
        await self.stop_serving_branch(branch_name, cleanup=True)

    # Updates

    async def check_updated(self, branch_name: str) -> bool:
        """Ask the worker to pull its branch.

        Checks are skipped within `update_debounce` seconds of the last one,
        and concurrent callers join the check already in flight.

        Returns:
            True if the worker was stopped so the branch boots fresh

        Raises:
            UpdateError: If the branch is not up or the update failed
        """
        record = self._workers.get(branch_name)
        if record is None or record.state is not WorkerState.UP or record.stopping:
            raise UpdateError(branch_name, "branch is not up")

        if record.update_task is None:
            if self._clock() - record.last_updated_at < self.config.update_debounce:
                return False
            record.update_task = asyncio.ensure_future(self._run_update(record))
        return await asyncio.shield(record.update_task)

    async def _run_update(self, record: WorkerRecord) -> bool:
        branch_name = record.branch
        try:
            await self.project.repository.wait_available()
            result = await record.process.request("update", {})
        except LiveBranchError as e:
            if record.stopping:
                logger.info(f"Update of {branch_name} interrupted by a stop")
                return True
            logger.error(f"Update of {branch_name} failed: {e}")
            await self._mark_error(branch_name, str(e))
            raise UpdateError(branch_name, str(e)) from e
        finally:
            record.last_updated_at = self._clock()
            record.update_task = None

        restart_required = isinstance(result, dict) and bool(result.get("restartRequired"))
        if restart_required:
            logger.info(f"Branch {branch_name} changed, restarting its worker")
            await self.stop_serving_branch(branch_name)
        return restart_required

    # Proxying

    def _get_proxy(self, branch_name: str) -> BranchProxy:
        record = self._workers.get(branch_name)
        if record is None or record.proxy is None or record.stopping:
            raise ProxyUnavailableError(branch_name)
        record.last_accessed_at = self._clock()
        return record.proxy

    async def proxy_request(self, branch_name: str, request: web.BaseRequest) -> web.StreamResponse:
        """Forward a request to the branch's worker.

        Raises:
            ProxyUnavailableError: If the branch has no live proxy
        """
        return await self._get_proxy(branch_name).forward(request)

    async def proxy_websocket(self, branch_name: str, request: web.Request) -> web.WebSocketResponse:
        return await self._get_proxy(branch_name).forward_websocket(request)

    # Mirror notifications

    async def serve_active_branches(self, active_branches: Iterable[str]) -> None:
        """Evict idle branches gone from the mirror and autoboot new ones.

        A served branch absent from `active_branches` is only stopped once
        it has been idle for `inactivity_threshold`; protected branches are
        never evicted.
        """
        active_branches = list(active_branches)
        active = set(active_branches)
        now = self._clock()

        jobs = []
        for branch_name, record in list(self._workers.items()):
            if branch_name in active or record.stopping:
                continue
            if BranchValidationService.is_protected(branch_name, self.config.protected_branches):
                continue
            idle = now - record.last_accessed_at
            if idle > self.config.inactivity_threshold:
                logger.info(f"Evicting {branch_name}: gone from the mirror, idle for {idle:.0f}s")
                jobs.append(self.stop_serving_branch(branch_name, cleanup=True))
            else:
                logger.debug(f"Keeping {branch_name}: gone from the mirror but accessed {idle:.0f}s ago")

        if self.config.autoboot:
            for branch_name in active_branches:
                if (
                    branch_name in self._workers
                    or branch_name in self._boot_tasks
                    or self.is_quarantined(branch_name)
                ):
                    continue
                jobs.append(self._autoboot(branch_name))

        results = await asyncio.gather(*jobs, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Branch update handling failed: {result}")

    async def _autoboot(self, branch_name: str) -> None:
        async with self._autoboot_limit:
            try:
                await self.boot_branch(branch_name)
            except LiveBranchError as e:
                logger.warning(f"Autoboot of {branch_name} failed: {e}")

    # Queries

    def get_error(self, branch_name: str) -> Optional[ErrorRecord]:
        """Return the branch's error while it is quarantined or still reported."""
        error = self._errors.get(branch_name)
        if error is None:
            return None
        if self._clock() >= max(error.quarantine_until, error.status_until):
            del self._errors[branch_name]
            return None
        return error

    def is_quarantined(self, branch_name: str) -> bool:
        error = self.get_error(branch_name)
        return error is not None and self._clock() < error.quarantine_until

    def is_up(self, branch_name: str) -> bool:
        record = self._workers.get(branch_name)
        return (
            record is not None
            and record.state is WorkerState.UP
            and record.proxy is not None
            and not record.stopping
        )

    def is_booting(self, branch_name: str) -> bool:
        record = self._workers.get(branch_name)
        return record is not None and record.state is WorkerState.BOOTING and not record.stopping

    def get_status(self, branch_name: str) -> str:
        """Richest status known for the branch.

        A progress label reported by a booting worker wins over "booting";
        a failed branch reads "error" until `error_status_retention` passes.
        """
        record = self._workers.get(branch_name)
        error = self.get_error(branch_name)
        if error is not None and self._clock() < error.status_until:
            if record is None or record.stopping:
                return BranchStatus.ERROR.value
        if record is None or record.stopping:
            return BranchStatus.DOWN.value
        if record.state is WorkerState.BOOTING:
            return record.progress or BranchStatus.BOOTING.value
        return BranchStatus.UP.value

    def list_branches(self) -> BranchListing:
        errored = [name for name in list(self._errors) if self.get_error(name) is not None]
        return BranchListing(
            active=self.project.repository.branches,
            up=sorted(
                name
                for name, record in self._workers.items()
                if record.process is not None and record.process.is_alive
            ),
            ready=sorted(name for name, record in self._workers.items() if record.proxy is not None),
            errored=sorted(errored),
        )

    async def get_commit_id(self, branch_name: str) -> Optional[str]:
        """HEAD of the branch checkout, or None when there is none."""
        branch = self.project.branches.get(branch_name)
        if branch is None or not branch.has_checkout():
            return None
        try:
            return await asyncio.to_thread(branch.get_last_commit)
        except GitOperationError as e:
            logger.debug(f"Could not read commit of {branch_name}: {e}")
            return None

    async def close(self) -> None:
        """Stop every worker."""
        for task in list(self._boot_tasks.values()):
            task.cancel()
        await asyncio.gather(*self._boot_tasks.values(), return_exceptions=True)
        await asyncio.gather(
            *(self.stop_serving_branch(name) for name in list(self._workers)),
            return_exceptions=True,
        )
        logger.info("All workers stopped")

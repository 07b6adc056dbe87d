"""Worker process: checks out one branch and runs its application.

Started by the supervisor as ``python -m livebranch.worker`` with the
configuration in the LIVEBRANCH_CONFIG environment variable. The worker
answers `init` and `update` requests on the control channel (stdin for
requests, a private copy of the original stdout for answers) and exits
when the channel closes, on SIGTERM, or once its branch disappears.
"""

import asyncio
import os
import shlex
import signal
import sys
from typing import Any, BinaryIO, Dict, Optional

from livebranch.config import Config
from livebranch.constants import ENV_BRANCH, ENV_CONFIG, ENV_SOCKET
from livebranch.exceptions import ControlChannelClosedError, GitOperationError
from livebranch.services.git import Branch
from livebranch.services.project import Project
from livebranch.services.protocol import ControlChannel
from livebranch.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

SOCKET_POLL_INTERVAL = 0.1


class BranchWorker:
    """Boots one branch and keeps its application running."""

    def __init__(self, config: Config):
        self.config = config
        self.project = Project(config)
        self.branch: Optional[Branch] = None
        self.channel: Optional[ControlChannel] = None
        self.finished = asyncio.Event()
        self.exit_code = 0
        self._app: Optional[asyncio.subprocess.Process] = None
        self._log: Optional[BinaryIO] = None
        self._log_path: Optional[str] = None
        self._tasks = []

    async def handle_request(self, method: str, params: Dict[str, Any]) -> Any:
        """Dispatch one control request."""
        if method == "init":
            return await self.init(params.get("branch"))
        if method == "update":
            return await self.update()
        raise ValueError(f"Unknown method '{method}'")

    async def _report(self, status: str) -> None:
        logger.info(f"{self.branch.name if self.branch else 'worker'}: {status}")
        if self.channel is None:
            return
        try:
            await self.channel.send_status(status)
        except ControlChannelClosedError:
            logger.debug(f"Could not report '{status}': channel closed")

    async def init(self, branch_name: Any) -> None:
        """Check out the branch, install, build, and start the application.

        Returns once the application listens on the branch's socket.

        Raises:
            InvalidBranchNameError: If the name cannot be served
            BranchNotFoundError: If the branch is not in the mirror
            RuntimeError: If a command fails or the application dies early
        """
        if self.branch is not None:
            raise RuntimeError("Branch already booted")
        if not isinstance(branch_name, str):
            raise ValueError("init requires a branch name")

        branch = self.project.get_branch(branch_name)
        socket_path = self.project.get_socket_path(branch_name)
        self._log_path = self.project.get_log_path(branch_name)
        self.branch = branch

        await self._report("checkout")
        directory = await asyncio.to_thread(branch.checkout)

        for path in (socket_path, self._log_path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
        self._log = open(self._log_path, "ab")

        env = self._app_env(branch_name, socket_path)
        if self.config.install_commands:
            await self._report("installing")
            for command in self.config.install_commands:
                await self._run_step(command, directory, env)
        if self.config.build_commands:
            await self._report("building")
            for command in self.config.build_commands:
                await self._run_step(command, directory, env)

        await self._report("starting")
        await self._start_app(directory, env, socket_path)
        self._tasks.append(asyncio.ensure_future(self._watch_branch()))
        logger.info(f"Branch {branch_name} is listening on {socket_path}")

    def _app_env(self, branch_name: str, socket_path: str) -> Dict[str, str]:
        env = dict(os.environ)
        env.pop(ENV_CONFIG, None)
        env.update({key: str(value) for key, value in self.config.env.items()})
        env[ENV_SOCKET] = socket_path
        env[ENV_BRANCH] = branch_name
        return env

    def _log_line(self, text: str) -> None:
        self._log.write(f"{text}\n".encode("utf-8"))
        self._log.flush()

    async def _run_step(self, command: str, cwd: str, env: Dict[str, str]) -> None:
        logger.info(f"Running '{command}' in {cwd}")
        self._log_line(f"$ {command}")
        process = await asyncio.create_subprocess_exec(
            *shlex.split(command),
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=self._log,
            stderr=asyncio.subprocess.STDOUT,
        )
        returncode = await process.wait()
        if returncode != 0:
            raise RuntimeError(
                f"'{command}' exited with status {returncode}, see {self._log_path}"
            )

    async def _start_app(self, cwd: str, env: Dict[str, str], socket_path: str) -> None:
        if not self.config.run_command:
            raise ValueError("run_command is not configured")

        command = self.config.run_command.replace("{socket}", shlex.quote(socket_path))
        logger.info(f"Starting '{command}' in {cwd}")
        self._log_line(f"$ {command}")
        self._app = await asyncio.create_subprocess_exec(
            *shlex.split(command),
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=self._log,
            stderr=asyncio.subprocess.STDOUT,
        )

        exited = asyncio.ensure_future(self._app.wait())
        self._tasks.append(exited)
        while not os.path.exists(socket_path):
            if exited.done():
                raise RuntimeError(
                    f"Application exited with status {exited.result()} before listening "
                    f"on {socket_path}, see {self._log_path}"
                )
            await asyncio.sleep(SOCKET_POLL_INTERVAL)
        exited.add_done_callback(self._app_exited)

    def _app_exited(self, task: asyncio.Task) -> None:
        if task.cancelled() or self.finished.is_set():
            return
        returncode = task.result()
        logger.warning(f"Application for {self.branch.name} exited with status {returncode}")
        self.exit_code = returncode or 1
        self.finished.set()

    async def _watch_branch(self) -> None:
        """Exit once the branch is gone from the mirror."""
        while True:
            await asyncio.sleep(self.config.branch_check_interval)
            try:
                exists = await asyncio.to_thread(self.branch.exists)
            except GitOperationError as e:
                logger.warning(f"Could not check branch {self.branch.name}: {e}")
                continue
            if not exists:
                logger.info(f"Branch {self.branch.name} was deleted, shutting down")
                self.finished.set()
                return

    async def update(self) -> Dict[str, bool]:
        """Pull the branch.

        Returns:
            {"restartRequired": True} if new commits touch a watched path
        """
        if self.branch is None:
            raise RuntimeError("No branch booted")
        if await asyncio.to_thread(self.branch.is_up_to_date):
            return {"restartRequired": False}

        last_commit = await asyncio.to_thread(self.branch.get_last_commit)
        await asyncio.to_thread(self.branch.update)
        changed = await asyncio.to_thread(
            self.branch.has_changed, last_commit, self.config.watch_paths
        )
        logger.info(
            f"Branch {self.branch.name} updated from {last_commit[:8]}"
            f"{', restart required' if changed else ''}"
        )
        return {"restartRequired": changed}

    async def shutdown(self, grace_period: float) -> None:
        """Stop the application and release the log file."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        app = self._app
        if app is not None and app.returncode is None:
            try:
                app.terminate()
                await asyncio.wait_for(app.wait(), timeout=grace_period)
            except asyncio.TimeoutError:
                logger.warning(f"Application ignored SIGTERM for {grace_period}s, killing it")
                app.kill()
                await app.wait()
            except ProcessLookupError:
                pass
        if self._log is not None:
            self._log.close()
            self._log = None


async def serve(config: Config, control_in: BinaryIO, control_out: BinaryIO) -> int:
    """Run the worker until the control channel closes or it is told to stop.

    Returns:
        Exit status for the worker process
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), control_in)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, control_out)
    writer = asyncio.StreamWriter(transport, protocol, None, loop)

    worker = BranchWorker(config)
    channel = ControlChannel(reader, writer, on_request=worker.handle_request)
    worker.channel = channel
    channel.start()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.finished.set)

    waiters = [
        asyncio.ensure_future(channel.wait_closed()),
        asyncio.ensure_future(worker.finished.wait()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await worker.shutdown(config.kill_grace_period)
        await channel.close()
    return worker.exit_code


def main() -> int:
    payload = os.environ.get(ENV_CONFIG)
    if not payload:
        print(f"livebranch.worker is started by livebranch ({ENV_CONFIG} is not set)", file=sys.stderr)
        return 2

    config = Config.from_json(payload)
    setup_logging(verbose=config.verbose, debug=config.debug)

    # Keep the real stdout for the control channel; anything printed goes to stderr
    control_out = os.fdopen(os.dup(sys.stdout.fileno()), "wb", buffering=0)
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())

    try:
        return asyncio.run(serve(config, sys.stdin.buffer, control_out))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

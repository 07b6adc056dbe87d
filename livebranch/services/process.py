"""Worker process handle used by the supervisor"""

import asyncio
import os
import signal
import sys
from typing import Any, Dict, Optional

from livebranch.config import Config
from livebranch.constants import ENV_CONFIG
from livebranch.services.protocol import ControlChannel, StatusHandler
from livebranch.utils.logging import get_logger

logger = get_logger(__name__)


class WorkerProcess:
    """A `python -m livebranch.worker` child and its control channel.

    The child leads its own process group, so signals sent by terminate()
    and kill() also reach the application it launched.
    """

    def __init__(
        self,
        branch: str,
        process: asyncio.subprocess.Process,
        on_status: Optional[StatusHandler] = None,
    ):
        self.branch = branch
        self._process = process
        self.channel = ControlChannel(process.stdout, process.stdin, on_status=on_status)
        self.channel.start()

    @classmethod
    async def spawn(
        cls, config: Config, branch: str, on_status: Optional[StatusHandler] = None
    ) -> "WorkerProcess":
        """Start a worker for `branch`.

        The worker receives the configuration through the environment and
        waits for an `init` request before doing anything.
        """
        env = dict(os.environ)
        env[ENV_CONFIG] = config.to_json()
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "livebranch.worker",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
            start_new_session=True,
        )
        logger.info(f"Spawned worker {process.pid} for branch {branch}")
        return cls(branch, process, on_status=on_status)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def is_alive(self) -> bool:
        return self._process.returncode is None

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.channel.request(method, params)

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group already gone and the id reused; fall back to the child itself
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    async def wait(self) -> int:
        return await self._process.wait()

    async def stop(self, grace_period: float) -> int:
        """Terminate the worker, escalating to SIGKILL after `grace_period` seconds.

        Returns:
            The worker's exit status
        """
        if self.is_alive:
            self.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=grace_period)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Worker {self.pid} for {self.branch} ignored SIGTERM for {grace_period}s, killing it"
                )
                self.kill()
        returncode = await self._process.wait()
        await self.channel.close()
        return returncode

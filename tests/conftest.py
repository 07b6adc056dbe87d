"""Pytest fixtures for livebranch tests"""
import asyncio
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock
import pytest
import git
from aiohttp import web

from livebranch.config import Config
from livebranch.exceptions import ControlChannelClosedError, WorkerRequestError
from livebranch.services.project import Project
from livebranch.services.supervisor import WorkerSupervisor


def commit_file(repo, branch, relative_path, content, message):
    """Commit one file on `branch` of a non-bare repository, then return to main."""
    repo.git.checkout(branch)
    path = Path(repo.working_dir) / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.index.add([relative_path])
    commit = repo.index.commit(message)
    repo.git.checkout("main")
    return commit.hexsha


async def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll `predicate` until it is true or fail after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def remote_repo(temp_dir):
    """Create the 'remote' Git repository served by the tests.

    Branches: main, feature/foo
    """
    repo_path = temp_dir / "origin"
    repo_path.mkdir()

    repo = git.Repo.init(repo_path)

    # Configure git user for commits
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    readme = repo_path / "README.md"
    readme.write_text("# Test Repository\n")
    repo.index.add(["README.md"])
    repo.index.commit("Initial commit")

    # Rename master to main if needed
    repo.git.branch("-M", "main")

    repo.git.checkout("-b", "feature/foo")
    feature_file = repo_path / "feature.txt"
    feature_file.write_text("Feature content\n")
    repo.index.add(["feature.txt"])
    repo.index.commit("Add feature")
    repo.git.checkout("main")

    yield repo

    repo.close()


@pytest.fixture
def config(temp_dir, remote_repo):
    """Config serving the remote repository out of the temporary directory."""
    return Config(
        repository_url=remote_repo.working_dir,
        destination_root=str(temp_dir / "root"),
        graveyard_path=str(temp_dir / "graveyard"),
        fetch_refspecs=[],
        kill_grace_period=0.5,
        host=None,
    )


@pytest.fixture
def project(config):
    """Project with no mirror on disk yet."""
    return Project(config)


@pytest.fixture
def mirrored_project(project):
    """Project whose mirror has been cloned."""
    project.repository._clone()
    return project


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeWorker:
    """Stands in for WorkerProcess: answers init/update from test-controlled state."""

    def __init__(self, branch, on_status):
        self.branch = branch
        self.on_status = on_status
        self.requests = []
        self.init_error = None
        self.update_result = {"restartRequired": False}
        self.update_error = None
        self.init_gate = asyncio.Event()
        self.init_gate.set()
        self.update_gate = asyncio.Event()
        self.update_gate.set()
        self.returncode = None
        self.stop_calls = 0
        self.stop_gate = asyncio.Event()
        self.stop_gate.set()
        self._exited = asyncio.Event()

    @property
    def is_alive(self):
        return self.returncode is None

    async def request(self, method, params=None):
        self.requests.append(method)
        if method == "init":
            await self.init_gate.wait()
            if self.returncode is not None:
                raise ControlChannelClosedError()
            if self.init_error is not None:
                raise self.init_error
            return None
        if method == "update":
            await self.update_gate.wait()
            if self.returncode is not None:
                raise ControlChannelClosedError()
            if self.update_error is not None:
                raise self.update_error
            return self.update_result
        raise WorkerRequestError("ValueError", f"Unknown method '{method}'")

    def exit(self, returncode):
        """Simulate the process exiting on its own."""
        self.returncode = returncode
        self._exited.set()
        self.init_gate.set()
        self.update_gate.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    async def stop(self, grace_period):
        self.stop_calls += 1
        await self.stop_gate.wait()
        if self.returncode is None:
            self.exit(-15)
        return self.returncode


class FakeWorkerFactory:
    """spawn_worker replacement recording every spawned FakeWorker."""

    def __init__(self):
        self.workers = {}
        self.spawned = []
        self.configure = None
        self.spawn_error = None

    async def __call__(self, config, branch, on_status):
        if self.spawn_error is not None:
            raise self.spawn_error
        worker = FakeWorker(branch, on_status)
        if self.configure is not None:
            self.configure(worker)
        self.workers[branch] = worker
        self.spawned.append(branch)
        return worker


class FakeProxy:
    """BranchProxy replacement answering with the branch socket name and path."""

    def __init__(self, socket_path):
        self.socket_path = socket_path
        self.closed = False
        self.forwarded = []

    async def forward(self, request):
        self.forwarded.append(request)
        return web.Response(text=f"{Path(self.socket_path).stem} {request.path_qs}")

    async def forward_websocket(self, request):
        return web.Response(text="bridged")

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def factory():
    return FakeWorkerFactory()


@pytest.fixture
def supervisor_config(temp_dir):
    return Config(
        repository_url="https://example.com/acme/webapp.git",
        destination_root=str(temp_dir / "root"),
        graveyard_path=str(temp_dir / "graveyard"),
        error_quarantine=10,
        error_status_retention=20,
        update_debounce=5,
        inactivity_threshold=100,
        kill_grace_period=0.1,
        host=None,
    )


def make_supervisor(config, factory, clock):
    project = Project(config)
    project.repository.wait_available = AsyncMock()
    return WorkerSupervisor(project, config, spawn_worker=factory, proxy_factory=FakeProxy, clock=clock)


@pytest.fixture
def supervisor(supervisor_config, factory, clock):
    return make_supervisor(supervisor_config, factory, clock)


"""Routing layer: picks the branch for a request and drives the supervisor"""

import asyncio
import html
import re
from http.cookies import SimpleCookie
from typing import Optional, Set, Tuple

import aiohttp
from aiohttp import hdrs, web

from livebranch.config import Config
from livebranch.constants import BRANCH_COOKIE
from livebranch.exceptions import (
    BootError,
    InvalidBranchNameError,
    LiveBranchError,
    ProxyUnavailableError,
    UpdateError,
)
from livebranch.services.branch_validation_service import BranchValidationService
from livebranch.services.supervisor import WorkerSupervisor
from livebranch.utils.logging import get_logger

logger = get_logger(__name__)

BOOT_PAGE_REFRESH = 5

# Request attribute holding the branch picked with ?branch=, for the cookie
SELECTED_BRANCH_KEY = "livebranch_selected_branch"


class BranchResolver:
    """Works out which branch a request is for.

    Order: subdomain of the configured host, `branch` query parameter,
    the branch cookie, then the default branch.
    """

    def __init__(self, host: Optional[str], default_branch: str):
        self.default_branch = default_branch
        self._subdomain = None
        if host:
            self._subdomain = re.compile(rf"^(.+?)\.{re.escape(host)}(:\d+)?$", re.IGNORECASE)

    def resolve(self, request: web.BaseRequest) -> Tuple[str, bool]:
        """Return (branch name, whether it came from the query string)."""
        if self._subdomain is not None:
            match = self._subdomain.match(request.host or "")
            if match:
                # DNS is case-insensitive; feature.foo.example.com -> feature/foo
                return match.group(1).replace(".", "/", 1).lower(), False

        selected = request.query.get("branch")
        if selected:
            return selected, True
        remembered = request.cookies.get(BRANCH_COOKIE)
        if remembered:
            return remembered, False
        return self.default_branch, False


def wants_html(request: web.BaseRequest) -> bool:
    accepted = request.headers.get("Accept", "").split(";")[0]
    return "text/html" in [kind.strip() for kind in accepted.split(",")]


def boot_page(request: web.BaseRequest, message: str, status: int = 202) -> web.Response:
    """Page shown while a branch boots; HTML clients reload it periodically."""
    if wants_html(request):
        body = (
            f'<head><meta http-equiv="refresh" content="{BOOT_PAGE_REFRESH}"></head>'
            f"<body><p>{html.escape(message)}</p></body>"
        )
        return web.Response(status=status, text=body, content_type="text/html")
    return web.Response(status=status, text=message)


def error_page(request: web.BaseRequest, message: str, status: int) -> web.Response:
    if wants_html(request):
        body = f"<body><h1>{status}</h1><p>{html.escape(message)}</p></body>"
        return web.Response(status=status, text=body, content_type="text/html")
    return web.Response(status=status, text=message)


async def remember_branch(request: web.BaseRequest, response: web.StreamResponse) -> None:
    """Store a branch picked with ?branch= in the cookie (on_response_prepare).

    The hook runs after the response cookies were turned into headers, so the
    Set-Cookie header is added directly.
    """
    selected = request.get(SELECTED_BRANCH_KEY)
    if selected and request.cookies.get(BRANCH_COOKIE) != selected:
        cookie = SimpleCookie()
        cookie[BRANCH_COOKIE] = selected
        morsel = cookie[BRANCH_COOKIE]
        morsel["path"] = "/"
        morsel["httponly"] = True
        morsel["samesite"] = "Lax"
        response.headers.add(hdrs.SET_COOKIE, morsel.OutputString())


class BranchRouter:
    """Boot-if-needed, update-if-stale, then proxy."""

    def __init__(self, supervisor: WorkerSupervisor, config: Config):
        self.supervisor = supervisor
        self.config = config
        self.resolver = BranchResolver(config.host, config.default_branch)
        self._boots: Set[asyncio.Task] = set()

    def _start_boot(self, branch_name: str) -> asyncio.Task:
        task = asyncio.ensure_future(self.supervisor.boot_branch(branch_name))
        self._boots.add(task)
        task.add_done_callback(self._boot_done)
        return task

    def _boot_done(self, task: asyncio.Task) -> None:
        self._boots.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, LiveBranchError):
            logger.error(f"Unexpected boot failure: {error!r}")

    def _error_response(self, request: web.BaseRequest, branch_name: str) -> Optional[web.Response]:
        error = self.supervisor.get_error(branch_name)
        if error is None or self.supervisor.get_status(branch_name) != "error":
            return None
        return error_page(request, f"Branch {branch_name} failed: {error.cause}", status=503)

    async def handle(self, request: web.Request) -> web.StreamResponse:
        branch_name, selected = self.resolver.resolve(request)
        try:
            BranchValidationService.validate_branch_name(branch_name)
        except InvalidBranchNameError as e:
            return error_page(request, str(e), status=400)
        if selected:
            request[SELECTED_BRANCH_KEY] = branch_name

        if self._is_websocket(request):
            return await self.handle_websocket(request, branch_name)

        errored = self._error_response(request, branch_name)
        if errored is not None:
            return errored

        if not self.supervisor.is_up(branch_name):
            response = await self._wait_for_boot(request, branch_name)
            if response is not None:
                return response

        try:
            restarted = await self.supervisor.check_updated(branch_name)
        except UpdateError as e:
            return error_page(request, str(e), status=503)
        if restarted:
            self._start_boot(branch_name)
            return boot_page(request, "Restarting branch...")

        try:
            return await self.supervisor.proxy_request(branch_name, request)
        except ProxyUnavailableError:
            return boot_page(request, "proxy stopped")
        except asyncio.TimeoutError:
            return boot_page(request, "Compiling assets...")
        except aiohttp.ClientError as e:
            logger.warning(f"Proxying to {branch_name} failed: {e}")
            return error_page(request, f"Branch {branch_name} is not responding", status=502)

    async def _wait_for_boot(self, request: web.Request, branch_name: str) -> Optional[web.Response]:
        """Start or join the boot; None once the branch is up."""
        boot = self._start_boot(branch_name)
        # A boot that fails fast is reported directly instead of via the boot page
        await asyncio.wait([boot], timeout=self.config.boot_page_delay)

        if boot.done() and not boot.cancelled():
            error = boot.exception()
            if isinstance(error, InvalidBranchNameError):
                return error_page(request, str(error), status=400)
            if isinstance(error, BootError):
                return error_page(request, str(error), status=503)
        if self.supervisor.is_up(branch_name):
            return None

        status = self.supervisor.get_status(branch_name)
        if status == "error":
            return self._error_response(request, branch_name) or error_page(
                request, f"Branch {branch_name} failed", status=503
            )
        return boot_page(request, f"Booting branch {branch_name}... ({status})")

    @staticmethod
    def _is_websocket(request: web.BaseRequest) -> bool:
        return request.headers.get("Upgrade", "").lower() == "websocket"

    async def handle_websocket(self, request: web.Request, branch_name: str) -> web.StreamResponse:
        """WebSockets go only to branches that are already up."""
        if not self.supervisor.is_up(branch_name):
            return error_page(request, f"Branch {branch_name} is not up", status=503)
        try:
            return await self.supervisor.proxy_websocket(branch_name, request)
        except ProxyUnavailableError as e:
            return error_page(request, str(e), status=503)
        except aiohttp.ClientError as e:
            logger.warning(f"WebSocket to {branch_name} failed: {e}")
            return error_page(request, f"Branch {branch_name} is not responding", status=502)

    async def close(self) -> None:
        for task in list(self._boots):
            task.cancel()
        await asyncio.gather(*self._boots, return_exceptions=True)

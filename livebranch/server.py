"""Front server: admin endpoints plus the catch-all branch proxy"""

from typing import Optional

from aiohttp import web

from livebranch.config import Config
from livebranch.constants import ADMIN_PREFIX
from livebranch.exceptions import InvalidBranchNameError
from livebranch.services.branch_validation_service import BranchValidationService
from livebranch.services.project import ProjectRegistry
from livebranch.services.routing import BranchRouter, remember_branch
from livebranch.services.supervisor import WorkerSupervisor
from livebranch.utils.logging import get_logger

logger = get_logger(__name__)

CONFIG_KEY = web.AppKey("config", Config)
REGISTRY_KEY = web.AppKey("registry", ProjectRegistry)
SUPERVISOR_KEY = web.AppKey("supervisor", WorkerSupervisor)
ROUTER_KEY = web.AppKey("router", BranchRouter)


async def handle_branches(request: web.Request) -> web.Response:
    """GET /_livebranch/branches"""
    supervisor = request.app[SUPERVISOR_KEY]
    listing = supervisor.list_branches()
    names = sorted(set(listing.active) | set(listing.up) | set(listing.errored))
    payload = listing.to_dict()
    payload["statuses"] = {name: supervisor.get_status(name) for name in names}
    return web.json_response(payload)


async def handle_status(request: web.Request) -> web.Response:
    """GET /_livebranch/status?branch=<name>"""
    config = request.app[CONFIG_KEY]
    supervisor = request.app[SUPERVISOR_KEY]
    branch_name = request.query.get("branch") or config.default_branch
    try:
        BranchValidationService.validate_branch_name(branch_name)
    except InvalidBranchNameError as e:
        return web.json_response({"error": str(e)}, status=400)

    error = supervisor.get_error(branch_name)
    return web.json_response(
        {
            "branch": branch_name,
            "status": supervisor.get_status(branch_name),
            "commit": await supervisor.get_commit_id(branch_name),
            "error": error.cause if error else None,
        }
    )


async def handle_proxy(request: web.Request) -> web.StreamResponse:
    return await request.app[ROUTER_KEY].handle(request)


async def on_startup(app: web.Application) -> None:
    app[SUPERVISOR_KEY].listen()
    app[REGISTRY_KEY].start()
    logger.info(f"Serving {app[CONFIG_KEY].repository_url}")


async def on_cleanup(app: web.Application) -> None:
    await app[ROUTER_KEY].close()
    await app[SUPERVISOR_KEY].close()
    await app[REGISTRY_KEY].close()


def create_app(config: Config, registry: Optional[ProjectRegistry] = None, **supervisor_options) -> web.Application:
    """Create the aiohttp application for one project.

    Args:
        config: Project and server settings
        registry: Registry to create the project in; a new one by default
        supervisor_options: Extra WorkerSupervisor arguments (for tests)
    """
    registry = registry or ProjectRegistry()
    project = registry.create(config)
    supervisor = WorkerSupervisor(project, config, **supervisor_options)

    app = web.Application()
    app[CONFIG_KEY] = config
    app[REGISTRY_KEY] = registry
    app[SUPERVISOR_KEY] = supervisor
    app[ROUTER_KEY] = BranchRouter(supervisor, config)

    app.router.add_get(f"{ADMIN_PREFIX}/branches", handle_branches)
    app.router.add_get(f"{ADMIN_PREFIX}/status", handle_status)
    app.router.add_route("*", "/{tail:.*}", handle_proxy)

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    app.on_response_prepare.append(remember_branch)
    return app


def run_server(config: Config) -> None:
    """Serve until interrupted."""
    app = create_app(config)
    logger.info(f"Listening on {config.listen_host}:{config.port}")
    web.run_app(app, host=config.listen_host, port=config.port, print=None)

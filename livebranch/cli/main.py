"""Command-line interface for livebranch"""

import asyncio
import os
import sys

import aiohttp
from rich.console import Console

from livebranch.cli.args import parse_args
from livebranch.config import Config
from livebranch.constants import ADMIN_PREFIX
from livebranch.services.display_service import DisplayService
from livebranch.utils.concurrency import get_concurrency_info
from livebranch.utils.logging import setup_logging

console = Console()


def build_config(parsed_args) -> Config:
    """Build the server config from a config file or a repository URL plus flags."""
    if os.path.isfile(parsed_args.source):
        config_dict = Config.from_file(parsed_args.source).to_dict()
    else:
        config_dict = {"repository_url": parsed_args.source}

    overrides = {
        "port": parsed_args.port,
        "listen_host": parsed_args.listen_host,
        "destination_root": parsed_args.root,
    }
    config_dict.update({key: value for key, value in overrides.items() if value is not None})
    if parsed_args.autoboot:
        config_dict["autoboot"] = True
    config_dict["verbose"] = parsed_args.verbose or config_dict.get("verbose", False)
    config_dict["debug"] = parsed_args.debug or config_dict.get("debug", False)
    return Config.from_dict(config_dict)


def serve(parsed_args) -> int:
    from livebranch.server import run_server

    config = build_config(parsed_args)

    if config.debug:
        console.print("[yellow]Debug mode enabled[/yellow]")

        info = get_concurrency_info()
        console.print("[yellow]Host Information:[/yellow]")
        console.print(f"  Python version: {info['python_version']}")
        console.print(f"  CPU count: {info['cpu_count']}")
        console.print(f"  Concurrent boots: {info['optimal_workers']}")

        console.print("[yellow]Configuration:[/yellow]")
        for key, value in config.to_dict().items():
            console.print(f"  {key}: {value}")

    if not config.run_command:
        console.print("[yellow]No run_command configured: branches will fail to boot[/yellow]")

    run_server(config)
    return 0


async def fetch_listing(base_url: str) -> dict:
    """GET the branch listing of a running server."""
    url = base_url.rstrip("/") + f"{ADMIN_PREFIX}/branches"
    timeout = aiohttp.ClientTimeout(total=10)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url) as response:
            response.raise_for_status()
            return await response.json()


def status(parsed_args) -> int:
    listing = asyncio.run(fetch_listing(parsed_args.url))
    display = DisplayService(verbose=parsed_args.verbose, debug=parsed_args.debug)
    display.display_branch_table(listing, show_summary=parsed_args.summary)
    return 0


def main(argv=None):
    """Main entry point for the application."""
    parsed_args = None
    try:
        parsed_args = parse_args(argv)
        setup_logging(
            verbose=parsed_args.verbose,
            debug=parsed_args.debug,
            log_file=getattr(parsed_args, "log_file", None),
        )

        if parsed_args.command == "serve":
            return serve(parsed_args)
        return status(parsed_args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        return 1
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        console.print(f"[red]Error: could not reach the server: {e}[/red]")
        return 1
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        if parsed_args is not None and parsed_args.debug:
            console.print_exception()
        return 1


if __name__ == "__main__":
    sys.exit(main())

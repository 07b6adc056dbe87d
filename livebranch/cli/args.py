"""Command-line argument parsing for livebranch."""

import argparse
from livebranch.__version__ import __version__


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with its `serve` and `status` commands."""
    parser = argparse.ArgumentParser(
        prog="livebranch",
        description="Serve every branch of a git repository as its own preview environment",
    )
    parser.add_argument("--version", action="version", version=f"livebranch {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Show verbose output")
    common.add_argument(
        "--debug", action="store_true", help="Show debug information for troubleshooting"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser(
        "serve",
        parents=[common],
        help="Start the front server",
        description="Start the front server for a repository URL or a JSON config file",
    )
    serve.add_argument("source", help="Repository URL, or path to a JSON config file")
    serve.add_argument("--port", type=int, help="Port to listen on (default: 3000)")
    serve.add_argument("--listen-host", help="Address to bind (default: 0.0.0.0)")
    serve.add_argument(
        "--root",
        help="Directory holding the mirror, checkouts, sockets and logs (default: $TMP_DIR or /tmp)",
    )
    serve.add_argument(
        "--autoboot", action="store_true", help="Boot every branch of the mirror as it appears"
    )
    serve.add_argument("--log-file", help="Also write detailed logs to this file")

    status = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show the branches of a running server",
    )
    status.add_argument(
        "--url",
        default="http://localhost:3000",
        help="Base URL of the running server (default: http://localhost:3000)",
    )
    status.add_argument("--summary", action="store_true", help="Show totals under the table")

    return parser


def parse_args(argv=None):
    """Parse command-line arguments."""
    return build_parser().parse_args(argv)

"""Display service for `livebranch status`"""
from typing import Any, Dict

from rich.console import Console
from rich.table import Table

from livebranch.constants import COLUMNS
from livebranch.formatters import format_mirror_presence, format_status, get_status_color
from livebranch.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)


class DisplayService:
    def __init__(self, verbose: bool = False, debug: bool = False):
        self.verbose = verbose
        self.debug_mode = debug

    def build_branch_table(self, listing: Dict[str, Any]) -> Table:
        """Build a table from the /_livebranch/branches payload."""
        active = set(listing.get("active", []))
        statuses: Dict[str, str] = listing.get("statuses", {})
        names = sorted(active | set(listing.get("up", [])) | set(listing.get("errored", [])))

        table = Table()
        for col in COLUMNS:
            table.add_column(col.label, width=col.width or None)

        for name in names:
            status = statuses.get(name, "down")
            if status == "down" and not self.verbose:
                continue
            table.add_row(
                name,
                format_status(status),
                format_mirror_presence(name in active),
                style=get_status_color(status),
            )
        return table

    def display_branch_table(self, listing: Dict[str, Any], show_summary: bool = False) -> None:
        """Print the branch table and, optionally, a summary."""
        console.print(self.build_branch_table(listing))

        if show_summary:
            console.print("\nSummary:")
            console.print(f"Branches in mirror: {len(listing.get('active', []))}")
            console.print(f"Running workers: {len(listing.get('up', []))}")
            console.print(f"Serving traffic: {len(listing.get('ready', []))}")
            console.print(f"Errored: {len(listing.get('errored', []))}")

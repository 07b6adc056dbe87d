"""Shared constants for livebranch."""

import sys
from dataclasses import dataclass
from typing import List


# Filesystem layout under <destination_root>/<project>
REPO_DIRNAME = "repo"
BRANCHES_DIRNAME = "branches"
SOCKETS_DIRNAME = "sockets"
LOGS_DIRNAME = "logs"
SOCKET_SUFFIX = ".socket"
LOG_SUFFIX = ".log"
GRAVEYARD_DIRNAME = "livebranch-graveyard"

# sun_path is 104 bytes on BSD/macOS and 108 on Linux, NUL terminator included
MAX_SOCKET_PATH_LENGTH = 103 if sys.platform == "darwin" else 107

# Extra refs fetched into the mirror so pull requests can be previewed too
DEFAULT_FETCH_REFSPECS = ["+refs/pull/*/head:refs/heads/gh-pull/*"]

# Environment variables shared between the supervisor, workers and apps
ENV_CONFIG = "LIVEBRANCH_CONFIG"
ENV_SOCKET = "LIVEBRANCH_SOCKET"
ENV_BRANCH = "LIVEBRANCH_BRANCH"

# Cookie remembering the branch picked with ?branch=
BRANCH_COOKIE = "livebranch_branch"

# Prefix of the front server's own endpoints
ADMIN_PREFIX = "/_livebranch"


@dataclass
class ColumnDefinition:
    """Definition of a table column."""

    key: str
    label: str
    width: int = 0  # 0 means auto-width


# Columns of `livebranch status`
COLUMNS: List[ColumnDefinition] = [
    ColumnDefinition("branch", "Branch", 40),
    ColumnDefinition("status", "Status", 12),
    ColumnDefinition("mirror", "In Mirror", 9),
]


# Status display names
STATUS_DISPLAY = {
    "down": "down",
    "booting": "booting",
    "up": "up",
    "error": "error",
}


# CLI colors (Rich color names); unknown statuses are worker progress labels
CLI_COLORS = {
    "down": None,
    "booting": "yellow",
    "up": "green",
    "error": "red",
}
PROGRESS_COLOR = "cyan"

"""Configuration handling for livebranch"""

import json
import os
import shlex
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional, List, Union
from urllib.parse import urlparse

from livebranch.constants import DEFAULT_FETCH_REFSPECS, GRAVEYARD_DIRNAME

# Commands are not run through a shell, so these would reach the program as arguments
SHELL_OPERATORS = frozenset(["&&", "||", "|", ";", "&", ">", ">>", "<", "2>&1"])


def unique_project_name(repository_url: str) -> str:
    """Derive a stable directory name for a repository URL.

    GitHub repositories become ``gh-<name>``; anything else uses the
    repository's basename without the ``.git`` suffix.
    """
    parsed = urlparse(repository_url)
    path = parsed.path if parsed.scheme else repository_url
    # scp-like syntax: git@github.com:owner/repo.git
    if not parsed.scheme and ":" in repository_url:
        host, _, path = repository_url.partition(":")
        host = host.split("@")[-1]
    else:
        host = parsed.hostname or ""

    basename = os.path.basename(path.rstrip("/"))
    if basename.endswith(".git"):
        basename = basename[: -len(".git")]
    if not basename:
        raise ValueError(f"Cannot derive a project name from '{repository_url}'")

    if host == "github.com":
        return f"gh-{basename}"
    return basename


@dataclass
class Config:
    """Configuration for livebranch with validation."""

    # Repository
    repository_url: str = ""
    repository_type: str = "git"
    project_name: Optional[str] = None
    fetch_refspecs: List[str] = field(default_factory=lambda: list(DEFAULT_FETCH_REFSPECS))

    # Storage
    destination_root: str = field(default_factory=lambda: os.environ.get("TMP_DIR", "/tmp"))
    graveyard_path: Optional[str] = None

    # Branch selection
    default_branch: str = "main"
    protected_branches: List[str] = field(default_factory=list)
    max_branches: Optional[int] = None

    # Autoboot and eviction
    autoboot: bool = False
    autoboot_concurrency: Optional[int] = None  # None = one boot per CPU
    inactivity_threshold: float = 24 * 60 * 60

    # Change detection
    watch_paths: List[str] = field(default_factory=list)

    # Timings (seconds)
    sync_interval: float = 60
    janitor_interval: float = 60
    kill_grace_period: float = 5
    update_debounce: float = 5
    error_quarantine: float = 10
    error_status_retention: float = 10
    branch_check_interval: float = 60 * 60
    proxy_timeout: float = 50
    boot_page_delay: float = 10

    # Application steps run inside each worker. Each entry is one argv command,
    # split like a shell would but run without one; run_command may use {socket}
    install_commands: List[str] = field(default_factory=list)
    build_commands: List[str] = field(default_factory=list)
    run_command: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    # Front server
    host: Optional[str] = field(default_factory=lambda: os.environ.get("HOST") or None)
    listen_host: str = "0.0.0.0"
    port: int = 3000

    # Output
    verbose: bool = False
    debug: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_repository()
        self._validate_project_name()
        self._validate_default_branch()
        self._validate_protected_branches()
        self._validate_max_branches()
        self._validate_durations()
        self._validate_port()
        self._validate_commands()

    def _validate_repository(self):
        """Validate repository_type and strip the npm-style git+ prefix."""
        if self.repository_type != "git":
            raise ValueError(f"repository_type must be 'git', got '{self.repository_type}'")
        if self.repository_url.startswith("git+"):
            self.repository_url = self.repository_url[len("git+"):]

    def _validate_project_name(self):
        """Derive project_name from the repository URL when missing."""
        if not self.project_name and self.repository_url:
            self.project_name = unique_project_name(self.repository_url)
        if self.project_name and ("/" in self.project_name or ".." in self.project_name):
            raise ValueError(f"project_name must be a plain directory name, got '{self.project_name}'")

    def _validate_default_branch(self):
        """Validate default_branch is not empty."""
        if not self.default_branch or not self.default_branch.strip():
            raise ValueError("default_branch cannot be empty")
        self.default_branch = self.default_branch.strip()

    def _validate_protected_branches(self):
        """Validate protected_branches list."""
        if not isinstance(self.protected_branches, list):
            raise ValueError("protected_branches must be a list")

        # Ensure default_branch is in protected_branches
        if self.default_branch not in self.protected_branches:
            self.protected_branches.append(self.default_branch)

    def _validate_max_branches(self):
        """Validate max_branches is positive when set."""
        if self.max_branches is not None and self.max_branches <= 0:
            raise ValueError(f"max_branches must be positive, got {self.max_branches}")

    def _validate_durations(self):
        """Validate every timing setting is non-negative."""
        for name in (
            "inactivity_threshold",
            "sync_interval",
            "janitor_interval",
            "kill_grace_period",
            "update_debounce",
            "error_quarantine",
            "error_status_retention",
            "branch_check_interval",
            "proxy_timeout",
            "boot_page_delay",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative, got {getattr(self, name)}")

    def _validate_port(self):
        """Validate port is a TCP port number."""
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")

    def _validate_commands(self):
        """Validate application commands are single commands without shell syntax."""
        commands = list(self.install_commands) + list(self.build_commands)
        if self.run_command:
            commands.append(self.run_command)
        for command in commands:
            words = shlex.split(command)
            if not words:
                raise ValueError("application commands cannot be empty")
            operators = SHELL_OPERATORS.intersection(words)
            if operators:
                raise ValueError(
                    f"'{command}' uses shell syntax ({', '.join(sorted(operators))}), "
                    "list each step as its own command instead"
                )

    @property
    def project_root(self) -> Path:
        """Directory holding the mirror, checkouts, sockets and logs."""
        if not self.project_name:
            raise ValueError("project_name is not set (no repository_url given)")
        return Path(self.destination_root).resolve() / self.project_name

    @property
    def graveyard(self) -> Path:
        """Directory where removed checkouts wait for the janitor."""
        if self.graveyard_path:
            return Path(self.graveyard_path)
        return Path(tempfile.gettempdir()) / GRAVEYARD_DIRNAME / (self.project_name or "default")

    def to_dict(self) -> dict:
        """Convert config to a JSON-serializable dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def to_json(self) -> str:
        """Serialize config for handing it to worker processes."""
        return json.dumps(self.to_dict())

    def get(self, key: str, default=None):
        """Get config value by key."""
        return getattr(self, key, default)

    @classmethod
    def from_dict(cls, config_dict: dict) -> "Config":
        """Create Config from dictionary.

        Also accepts the nested ``{"repository": {"type": ..., "url": ...}}``
        form used by existing project files.
        """
        config_dict = dict(config_dict)
        repository = config_dict.pop("repository", None)
        if isinstance(repository, dict):
            config_dict.setdefault("repository_url", repository.get("url", ""))
            config_dict.setdefault("repository_type", repository.get("type", "git"))
        elif isinstance(repository, str):
            config_dict.setdefault("repository_url", repository)

        # Extract only known fields
        known_fields = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in config_dict.items() if k in known_fields}
        return cls(**filtered)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Config":
        """Load config from a JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_json(cls, payload: str) -> "Config":
        """Create Config from the JSON produced by to_json()."""
        return cls.from_dict(json.loads(payload))

"""
livebranch - Per-branch preview environments served from a git mirror
"""

from .__version__ import __version__
from .config import Config
from .services.project import Project, ProjectRegistry
from .services.supervisor import WorkerSupervisor

__all__ = ["Config", "Project", "ProjectRegistry", "WorkerSupervisor", "__version__"]

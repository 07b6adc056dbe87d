"""Branch validation service for livebranch."""

import re

from livebranch.exceptions import InvalidBranchNameError

# Characters git refuses in ref names, plus whitespace and control characters
_FORBIDDEN_CHARS = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")


class BranchValidationService:
    """Service for validating branch names coming from requests."""

    @staticmethod
    def validate_branch_name(branch_name: str) -> str:
        """
        Check that a branch name is safe to use as a path and as a git argument.

        Args:
            branch_name: Branch name, usually derived from request input

        Returns:
            The branch name, unchanged

        Raises:
            InvalidBranchNameError: If the name could escape the checkout
                directory or be mistaken for a git option
        """
        if not branch_name or not isinstance(branch_name, str):
            raise InvalidBranchNameError(str(branch_name), "Branch name is empty")
        if ".." in branch_name:
            raise InvalidBranchNameError(branch_name, "'..' is forbidden")
        if branch_name.startswith(("-", "/")) or branch_name.endswith(("/", ".lock")):
            raise InvalidBranchNameError(branch_name, "Branch name is not a valid ref name")
        if "//" in branch_name or "@{" in branch_name or _FORBIDDEN_CHARS.search(branch_name):
            raise InvalidBranchNameError(branch_name, "Branch name contains forbidden characters")
        if any(part.startswith(".") for part in branch_name.split("/")):
            raise InvalidBranchNameError(branch_name, "Path components must not start with '.'")
        return branch_name

    @staticmethod
    def is_valid_branch_name(branch_name: str) -> bool:
        """Return True if validate_branch_name() accepts the name."""
        try:
            BranchValidationService.validate_branch_name(branch_name)
            return True
        except InvalidBranchNameError:
            return False

    @staticmethod
    def is_protected(branch_name: str, protected_branches: list[str]) -> bool:
        """
        Check if a branch is protected from eviction.

        Args:
            branch_name: Name of the branch to check
            protected_branches: List of protected branch names

        Returns:
            True if branch is protected
        """
        return branch_name in protected_branches

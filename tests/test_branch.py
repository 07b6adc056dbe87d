"""Tests for Branch checkouts"""
import os
from pathlib import Path
import pytest

from livebranch.exceptions import BranchNotFoundError, GitOperationError, InvalidBranchNameError
from livebranch.services.branch_validation_service import BranchValidationService
from livebranch.services.git import Branch

from conftest import commit_file


class TestBranchValidation:
    """Test branch names are validated before any side effect."""

    @pytest.mark.parametrize(
        "name",
        ["..", "../etc", "feature/../../etc", "a..b", "-rf", "/abs", "trailing/", "x.lock",
         "a//b", "with space", "a~1", "ref@{1}", ".hidden", "dir/.hidden", ""],
    )
    def test_invalid_names_rejected(self, name):
        """Test unsafe names raise InvalidBranchNameError."""
        with pytest.raises(InvalidBranchNameError):
            BranchValidationService.validate_branch_name(name)

    @pytest.mark.parametrize("name", ["main", "feature/foo", "gh-pull/12", "release-1.2", "user/x/y"])
    def test_valid_names_accepted(self, name):
        """Test ordinary ref names pass unchanged."""
        assert BranchValidationService.validate_branch_name(name) == name
        assert BranchValidationService.is_valid_branch_name(name) is True

    def test_traversal_rejected_before_directory_created(self, project):
        """Test a '..' name never creates the branches directory."""
        with pytest.raises(InvalidBranchNameError):
            project.get_branch("../../outside")
        assert not os.path.exists(project.get_branches_directory())
        assert "../../outside" not in project.branches

    def test_constructor_validates(self, project):
        """Test Branch itself refuses unsafe names."""
        with pytest.raises(InvalidBranchNameError):
            Branch("feature/../x", project.repository, project.get_branches_directory())

    def test_is_protected(self):
        """Test protected branch lookup."""
        assert BranchValidationService.is_protected("main", ["main", "develop"]) is True
        assert BranchValidationService.is_protected("feature/foo", ["main"]) is False


class TestBranchCheckout:
    """Test checking branches out of the mirror."""

    def test_nested_name_creates_full_path(self, mirrored_project):
        """Test feature/foo is cloned into branches/feature/foo."""
        branch = mirrored_project.get_branch("feature/foo")
        directory = branch.checkout()

        expected = Path(mirrored_project.get_branches_directory()) / "feature" / "foo"
        assert Path(directory) == expected
        assert (expected / ".git").is_dir()
        assert (expected / "feature.txt").read_text() == "Feature content\n"
        assert branch.has_checkout() is True

    def test_missing_branch_creates_nothing(self, mirrored_project):
        """Test a ref absent from the mirror raises before touching the disk."""
        branch = mirrored_project.get_branch("does-not-exist")
        with pytest.raises(BranchNotFoundError):
            branch.checkout()
        assert not os.path.exists(branch.get_directory())

    def test_checkout_twice_updates_in_place(self, mirrored_project, remote_repo):
        """Test a second checkout resets the existing working copy."""
        branch = mirrored_project.get_branch("main")
        branch.checkout()

        new_sha = commit_file(remote_repo, "main", "new.txt", "new\n", "Add new file")
        mirrored_project.repository._fetch()

        branch.checkout()
        assert branch.get_last_commit() == new_sha
        assert (Path(branch.get_directory()) / "new.txt").exists()

    def test_incomplete_checkout_replaced(self, mirrored_project):
        """Test a directory without .git is removed before cloning."""
        branch = mirrored_project.get_branch("main")
        os.makedirs(branch.get_directory())
        Path(branch.get_directory(), "junk.txt").write_text("junk")

        branch.checkout()
        assert not Path(branch.get_directory(), "junk.txt").exists()
        assert branch.has_checkout() is True

    def test_git_calls_without_checkout_fail(self, mirrored_project):
        """Test operations needing a checkout raise GitOperationError."""
        branch = mirrored_project.get_branch("main")
        with pytest.raises(GitOperationError):
            branch.get_last_commit()


class TestBranchUpdate:
    """Test update detection and change detection."""

    def test_up_to_date_after_checkout(self, mirrored_project):
        """Test a fresh checkout is up to date."""
        branch = mirrored_project.get_branch("main")
        branch.checkout()
        assert branch.is_up_to_date() is True

    def test_new_commit_detected_and_pulled(self, mirrored_project, remote_repo):
        """Test update() moves HEAD to the new upstream commit."""
        branch = mirrored_project.get_branch("feature/foo")
        branch.checkout()
        last_commit = branch.get_last_commit()

        new_sha = commit_file(remote_repo, "feature/foo", "src/app.py", "print('hi')\n", "Add app")
        mirrored_project.repository._fetch()

        assert branch.is_up_to_date() is False
        branch.update()
        assert branch.is_up_to_date() is True
        assert branch.get_last_commit() == new_sha
        assert branch.has_changed(last_commit) is True

    def test_has_changed_respects_watch_paths(self, mirrored_project, remote_repo):
        """Test only commits touching watched paths count as changes."""
        branch = mirrored_project.get_branch("main")
        branch.checkout()
        last_commit = branch.get_last_commit()

        commit_file(remote_repo, "main", "docs/guide.md", "# Guide\n", "Add docs")
        mirrored_project.repository._fetch()
        branch.update()

        assert branch.has_changed(last_commit, ["src"]) is False
        assert branch.has_changed(last_commit, ["docs"]) is True
        assert branch.has_changed(last_commit) is True

    def test_has_changed_false_without_new_commits(self, mirrored_project):
        """Test diffing HEAD against itself reports no change."""
        branch = mirrored_project.get_branch("main")
        branch.checkout()
        assert branch.has_changed(branch.get_last_commit()) is False


class TestBranchExists:
    """Test the liveness check against the mirror."""

    def test_exists(self, mirrored_project):
        """Test existing and missing refs."""
        assert mirrored_project.get_branch("main").exists() is True
        assert mirrored_project.get_branch("feature/foo").exists() is True
        assert mirrored_project.get_branch("nope").exists() is False

    def test_deleted_upstream(self, mirrored_project, remote_repo):
        """Test a branch deleted upstream disappears after a pruning fetch."""
        branch = mirrored_project.get_branch("feature/foo")
        remote_repo.git.branch("-D", "feature/foo")
        mirrored_project.repository._fetch()
        assert branch.exists() is False

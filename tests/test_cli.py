"""Tests for the command-line interface and the status table"""
import json
from unittest.mock import patch
import pytest
from rich.console import Console

from livebranch.cli import main, parse_args
from livebranch.cli.main import build_config
from livebranch.formatters import format_mirror_presence, format_status, get_status_color
from livebranch.services.display_service import DisplayService

LISTING = {
    "active": ["main", "feature/foo", "feature/bar"],
    "up": ["main", "feature/foo"],
    "ready": ["main"],
    "errored": ["gone"],
    "statuses": {
        "main": "up",
        "feature/foo": "installing",
        "feature/bar": "down",
        "gone": "error",
    },
}


def render(table):
    console = Console(width=120, record=True)
    console.print(table)
    return console.export_text()


class TestParseArgs:
    """Test argument parsing."""

    def test_serve(self):
        """Test serve options."""
        args = parse_args(["serve", "https://github.com/acme/webapp.git", "--port", "8080", "--autoboot", "-v"])
        assert args.command == "serve"
        assert args.source == "https://github.com/acme/webapp.git"
        assert args.port == 8080
        assert args.autoboot is True
        assert args.verbose is True
        assert args.root is None

    def test_status_defaults(self):
        """Test status talks to localhost by default."""
        args = parse_args(["status"])
        assert args.url == "http://localhost:3000"
        assert args.summary is False

    def test_command_required(self):
        """Test a command must be given."""
        with pytest.raises(SystemExit):
            parse_args([])


class TestBuildConfig:
    """Test config assembly from flags."""

    def test_from_url(self, temp_dir):
        """Test a repository URL plus overrides."""
        args = parse_args(["serve", "/srv/webapp", "--port", "4000", "--root", str(temp_dir), "--debug"])
        config = build_config(args)
        assert config.repository_url == "/srv/webapp"
        assert config.port == 4000
        assert config.destination_root == str(temp_dir)
        assert config.debug is True
        assert config.autoboot is False

    def test_from_file_with_overrides(self, temp_dir):
        """Test flags override values from a config file."""
        path = temp_dir / "livebranch.json"
        path.write_text(json.dumps({"repository_url": "/srv/webapp", "port": 5000, "autoboot": False, "verbose": True}))
        config = build_config(parse_args(["serve", str(path), "--autoboot"]))
        assert config.port == 5000
        assert config.autoboot is True
        assert config.verbose is True


class TestMain:
    """Test the entry point's error handling."""

    def test_unreachable_server(self):
        """Test status against a server that is not running fails cleanly."""
        assert main(["status", "--url", "http://127.0.0.1:1"]) == 1

    def test_status_prints_table(self):
        """Test status renders the listing it fetched."""
        with patch("livebranch.cli.main.fetch_listing", return_value=LISTING) as fetch, \
                patch("livebranch.cli.main.DisplayService.display_branch_table") as display:
            assert main(["status", "--summary"]) == 0
        fetch.assert_called_once_with("http://localhost:3000")
        display.assert_called_once_with(LISTING, show_summary=True)

    def test_invalid_config(self):
        """Test configuration errors are reported, not raised."""
        assert main(["serve", "/srv/webapp", "--port", "0"]) == 1


class TestFormatters:
    """Test status formatting."""

    def test_format_status(self):
        """Test known statuses and progress labels."""
        assert format_status("up") == "up"
        assert format_status("building") == "building"

    def test_status_colors(self):
        """Test colors for known statuses, and progress labels."""
        assert get_status_color("up") == "green"
        assert get_status_color("error") == "red"
        assert get_status_color("down") is None
        assert get_status_color("installing") == "cyan"

    def test_mirror_presence(self):
        assert format_mirror_presence(True) == "✓"
        assert format_mirror_presence(False) == "✗"


class TestDisplayService:
    """Test the status table."""

    def test_hides_down_branches(self):
        """Test down branches only show in verbose mode."""
        text = render(DisplayService().build_branch_table(LISTING))
        assert "main" in text
        assert "installing" in text
        assert "gone" in text
        assert "feature/bar" not in text

    def test_verbose_shows_everything(self):
        """Test verbose mode lists every branch."""
        table = DisplayService(verbose=True).build_branch_table(LISTING)
        assert table.row_count == 4
        assert "feature/bar" in render(table)

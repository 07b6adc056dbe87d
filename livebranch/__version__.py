"""Version information for livebranch."""

__version__ = "0.3.0"

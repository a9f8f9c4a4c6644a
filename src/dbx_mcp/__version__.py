"""Version information for dbx-mcp."""

__version__ = "0.1.0"

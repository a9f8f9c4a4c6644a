"""Dropbox MCP server with encrypted token storage and safe deletion."""

from dbx_mcp.__version__ import __version__

__all__ = ["__version__"]

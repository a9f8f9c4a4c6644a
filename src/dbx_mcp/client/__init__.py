"""Dropbox API access."""

from dbx_mcp.client.dropbox_client import DropboxClient, classify_provider_error

__all__ = ["DropboxClient", "classify_provider_error"]

"""MCP server implementation for Dropbox.

Tools (13):
- Browse: list_files, get_file_metadata, search_file_db, get_account_info
- Transfer: upload_file, download_file, get_file_content
- Organize: create_folder, copy_item, move_item, get_sharing_link
- Delete: safe_delete_item (confirmation, recycle bin, quota, audit),
  delete_item (deprecated hard delete)

Transport: Stdio
Authentication: OAuth 2.0 with PKCE and automatic token refresh
"""

from dbx_mcp.config import AuditLog, Settings
from dbx_mcp.server.dropbox_server import DropboxServer, main


def create_server(settings: Settings, audit: AuditLog) -> DropboxServer:
    """Create and configure a Dropbox MCP server.

    Example:
        >>> server = create_server(Settings.from_env(), AuditLog())
        >>> asyncio.run(server.run())
    """
    return DropboxServer.from_settings(settings, audit)


__all__ = ["create_server", "DropboxServer", "main"]

"""Dropbox MCP server.

Exposes Dropbox file operations as MCP tools over stdio. Bearer tokens come
from the TokenManager, which refreshes them transparently; every deletion
goes through the SafeDeleteEngine.
"""

import asyncio
import base64
import binascii
import json
import logging
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import ValidationError

from dbx_mcp.auth.token_manager import TokenManager
from dbx_mcp.auth.token_storage import TokenStorage
from dbx_mcp.client.dropbox_client import DropboxClient
from dbx_mcp.client.files import (
    SearchOptions,
    entry_reference,
    file_reference,
    filter_search_matches,
    summarize_entry,
)
from dbx_mcp.config import AuditLog, Settings, configure_logging, load_env_file
from dbx_mcp.errors import DbxMcpError, ErrorKind, ProviderError
from dbx_mcp.safety.delete_engine import SafeDeleteEngine
from dbx_mcp.safety.path_policy import format_dropbox_path

logger = logging.getLogger(__name__)

SERVER_NAME = "dbx-mcp"

# Argument keys never written to the logs verbatim
_SENSITIVE_ARGS = {"content"}


def sanitize_args(arguments: dict[str, Any] | None) -> dict[str, Any] | None:
    """Copy of the tool arguments safe for logging."""
    if not arguments:
        return arguments
    sanitized = dict(arguments)
    for key in _SENSITIVE_ARGS:
        if key in sanitized:
            sanitized[key] = "[CONTENT]"
    return sanitized


def _path_schema(description: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"path": {"type": "string", "description": description}},
        "required": ["path"],
    }


def _transfer_schema(to_description: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "from_path": {
                "type": "string",
                "description": "Path of the source file or folder",
            },
            "to_path": {"type": "string", "description": to_description},
        },
        "required": ["from_path", "to_path"],
    }


TOOLS = [
    Tool(
        name="list_files",
        description="List files in a Dropbox folder",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the folder (default: root)",
                },
            },
            "required": [],
        },
    ),
    Tool(
        name="upload_file",
        description="Upload a file to Dropbox, overwriting any existing file",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to upload the file to"},
                "content": {
                    "type": "string",
                    "description": "File content (base64 encoded)",
                },
            },
            "required": ["path", "content"],
        },
    ),
    Tool(
        name="download_file",
        description=(
            "Download a file as a base64 inline resource, or list a folder as "
            "resource references"
        ),
        inputSchema=_path_schema("Path to the file or folder in Dropbox"),
    ),
    Tool(
        name="safe_delete_item",
        description=(
            "Safely delete a file or folder with recycle bin support, confirmation, "
            "and audit logging"
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file or folder to delete",
                },
                "userId": {
                    "type": "string",
                    "description": "User ID for tracking and rate limiting",
                },
                "skipConfirmation": {
                    "type": "boolean",
                    "description": "Skip deletion confirmation (default: false)",
                    "default": False,
                },
                "retentionDays": {
                    "type": "integer",
                    "description": "Number of days to keep in recycle bin (default: from config)",
                    "minimum": 0,
                },
                "reason": {
                    "type": "string",
                    "description": "Reason for deletion (for audit logs)",
                },
                "permanent": {
                    "type": "boolean",
                    "description": "Permanently delete instead of moving to recycle bin",
                    "default": False,
                },
            },
            "required": ["path", "userId"],
        },
    ),
    Tool(
        name="delete_item",
        description="Legacy delete operation (deprecated, use safe_delete_item instead)",
        inputSchema=_path_schema("Path to the file or folder to delete"),
    ),
    Tool(
        name="create_folder",
        description="Create a new folder",
        inputSchema=_path_schema('Path where the folder should be created (e.g., "/New Folder")'),
    ),
    Tool(
        name="copy_item",
        description="Copy a file or folder to a new location",
        inputSchema=_transfer_schema("Path for the destination file or folder"),
    ),
    Tool(
        name="move_item",
        description="Move or rename a file or folder",
        inputSchema=_transfer_schema("New path for the file or folder"),
    ),
    Tool(
        name="get_file_metadata",
        description="Get metadata for a file or folder",
        inputSchema=_path_schema("Path to the file or folder"),
    ),
    Tool(
        name="search_file_db",
        description="Search for files and folders with extension, category and date filters",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query string"},
                "path": {
                    "type": "string",
                    "description": "Path to search within (defaults to root)",
                },
                "max_results": {
                    "type": "integer",
                    "description": "Maximum number of results to return (1-1000)",
                    "minimum": 1,
                    "maximum": 1000,
                    "default": 20,
                },
                "file_extensions": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": 'Filter by file extensions (e.g., ["pdf", "doc", "txt"])',
                },
                "file_categories": {
                    "type": "array",
                    "items": {
                        "type": "string",
                        "enum": [
                            "document",
                            "spreadsheet",
                            "presentation",
                            "image",
                            "audio",
                            "video",
                            "pdf",
                            "folder",
                            "other",
                        ],
                    },
                    "description": "Filter by file categories",
                },
                "date_range": {
                    "type": "object",
                    "properties": {
                        "start": {
                            "type": "string",
                            "description": 'Start date in ISO format (e.g., "2024-01-01")',
                        },
                        "end": {
                            "type": "string",
                            "description": 'End date in ISO format (e.g., "2024-12-31")',
                        },
                    },
                },
                "include_content_match": {
                    "type": "boolean",
                    "description": "Search within file contents (may be slower)",
                    "default": False,
                },
                "sort_by": {
                    "type": "string",
                    "enum": ["relevance", "last_modified_time", "file_size"],
                    "default": "relevance",
                },
                "order": {"type": "string", "enum": ["asc", "desc"], "default": "desc"},
            },
            "required": ["query"],
        },
    ),
    Tool(
        name="get_sharing_link",
        description="Create a shared link for a file or folder",
        inputSchema=_path_schema("Path to the file or folder to share"),
    ),
    Tool(
        name="get_account_info",
        description="Get information about the connected Dropbox account",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    Tool(
        name="get_file_content",
        description="Get the content of a file as a base64 inline resource",
        inputSchema=_path_schema("Path to the file in Dropbox"),
    ),
]


def _require(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value is None or value == "":
        raise DbxMcpError(f"Missing required argument: {key}", kind=ErrorKind.INVALID_ARGUMENT)
    return value


def _visibility(link: dict[str, Any]) -> str:
    permissions = link.get("link_permissions") or {}
    return str((permissions.get("resolved_visibility") or {}).get(".tag", "unknown"))


class DropboxServer:
    """MCP server for the Dropbox API.

    Attributes:
        server: MCP Server instance.
        token_manager: Keeps the Dropbox credential valid.
        client: Dropbox API client.
        delete_engine: Guard rails for every deletion.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        client: DropboxClient,
        delete_engine: SafeDeleteEngine,
    ) -> None:
        self.server = Server(SERVER_NAME)
        self.token_manager = token_manager
        self.client = client
        self.delete_engine = delete_engine
        self._setup_handlers()

    @classmethod
    def from_settings(cls, settings: Settings, audit: AuditLog) -> "DropboxServer":
        """Compose the server from validated settings.

        Raises:
            ConfigurationError: If the encryption key is unusable.
        """
        storage = None
        if not settings.dropbox.access_token:
            storage = TokenStorage(settings.secret_store(), settings.tokens.store_path)
        token_manager = TokenManager.from_settings(settings, storage)
        client = DropboxClient.from_settings(settings, token_manager)
        delete_engine = SafeDeleteEngine.from_settings(settings.safety, client, audit)
        return cls(token_manager, client, delete_engine)

    async def close(self) -> None:
        """Release HTTP clients."""
        await self.client.close()
        await self.token_manager.close()

    def _setup_handlers(self) -> None:
        """Register MCP tool handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """Return list of available tools."""
            return TOOLS

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            """Handle tool calls."""
            result = await self.handle_tool_call(name, arguments)
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

    async def handle_tool_call(self, name: str, arguments: dict[str, Any] | None) -> Any:
        """Run a tool and convert failures into an error payload."""
        logger.info(f"Tool request: {name} {sanitize_args(arguments)}")
        try:
            return await self._dispatch_tool(name, arguments or {})
        except DbxMcpError as e:
            logger.warning(f"Tool {name} failed ({e.kind.value}): {e.message}")
            return {"error": e.to_dict()}
        except Exception as e:
            logger.exception(f"Error calling tool {name}")
            return {"error": {"kind": "internal_error", "message": str(e), "retryable": False}}

    async def _dispatch_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Dispatch tool call to appropriate handler.

        Raises:
            DbxMcpError: If the tool name is not recognized.
        """
        handlers = {
            "list_files": self._list_files,
            "upload_file": self._upload_file,
            "download_file": self._download_file,
            "safe_delete_item": self._safe_delete_item,
            "delete_item": self._delete_item,
            "create_folder": self._create_folder,
            "copy_item": self._copy_item,
            "move_item": self._move_item,
            "get_file_metadata": self._get_file_metadata,
            "search_file_db": self._search_file_db,
            "get_sharing_link": self._get_sharing_link,
            "get_account_info": self._get_account_info,
            "get_file_content": self._get_file_content,
        }

        handler = handlers.get(name)
        if handler is None:
            raise DbxMcpError(f"Unknown tool: {name}", kind=ErrorKind.INVALID_ARGUMENT)
        return await handler(arguments)

    # ------------------------------------------------------------------
    # File tools
    # ------------------------------------------------------------------

    async def _list_files(self, arguments: dict[str, Any]) -> list[dict[str, Any]]:
        path = format_dropbox_path(arguments.get("path", ""))
        entries = await self.client.list_folder(path)
        return [summarize_entry(entry) for entry in entries]

    async def _upload_file(self, arguments: dict[str, Any]) -> dict[str, Any]:
        path = format_dropbox_path(_require(arguments, "path"))
        try:
            content = base64.b64decode(_require(arguments, "content"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise DbxMcpError(
                f"content must be base64 encoded: {e}", kind=ErrorKind.INVALID_ARGUMENT
            ) from e

        result = await self.client.upload(path, content)
        return {"status": "uploaded", "path": result.get("path_display", path), "size": len(content)}

    async def _download_file(self, arguments: dict[str, Any]) -> Any:
        raw_path = _require(arguments, "path")
        path = format_dropbox_path(raw_path)
        metadata = await self.client.get_metadata(path)

        if metadata.get(".tag") == "folder":
            entries = await self.client.list_folder(path)
            return [entry_reference(entry, fallback_path=raw_path) for entry in entries]

        file_metadata, content = await self.client.download(path)
        return file_reference(raw_path, {**metadata, **file_metadata}, content)

    async def _get_file_content(self, arguments: dict[str, Any]) -> dict[str, Any]:
        raw_path = _require(arguments, "path")
        path = format_dropbox_path(raw_path)
        metadata = await self.client.get_metadata(path)
        if metadata.get(".tag") != "file":
            raise DbxMcpError("Cannot get content of a folder", kind=ErrorKind.INVALID_ARGUMENT)

        _, content = await self.client.download(path)
        return file_reference(raw_path, metadata, content)

    async def _create_folder(self, arguments: dict[str, Any]) -> dict[str, Any]:
        path = format_dropbox_path(_require(arguments, "path"))
        await self.client.create_folder(path)
        return {"status": "created", "path": path}

    async def _copy_item(self, arguments: dict[str, Any]) -> dict[str, Any]:
        from_path = format_dropbox_path(_require(arguments, "from_path"))
        to_path = format_dropbox_path(_require(arguments, "to_path"))
        await self.client.copy(from_path, to_path)
        return {"status": "copied", "from_path": from_path, "to_path": to_path}

    async def _move_item(self, arguments: dict[str, Any]) -> dict[str, Any]:
        from_path = format_dropbox_path(_require(arguments, "from_path"))
        to_path = format_dropbox_path(_require(arguments, "to_path"))
        await self.client.move(from_path, to_path)
        return {"status": "moved", "from_path": from_path, "to_path": to_path}

    async def _get_file_metadata(self, arguments: dict[str, Any]) -> dict[str, Any]:
        path = format_dropbox_path(_require(arguments, "path"))
        return await self.client.get_metadata(
            path, include_media_info=True, include_has_explicit_shared_members=True
        )

    async def _search_file_db(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            options = SearchOptions.model_validate(arguments)
        except ValidationError as e:
            raise DbxMcpError(
                f"Invalid search arguments: {e}", kind=ErrorKind.INVALID_ARGUMENT
            ) from e

        raw_matches = await self.client.search(
            options.query,
            path=format_dropbox_path(options.path),
            max_results=options.clamped_max_results,
            filename_only=not options.include_content_match,
        )
        try:
            matches = filter_search_matches(raw_matches, options)
        except ValueError as e:
            raise DbxMcpError(
                f"Invalid date_range: {e}", kind=ErrorKind.INVALID_ARGUMENT
            ) from e

        return {
            "total_results": len(matches),
            "search_criteria": options.criteria(),
            "matches": matches,
        }

    # ------------------------------------------------------------------
    # Deletion tools
    # ------------------------------------------------------------------

    async def _safe_delete_item(self, arguments: dict[str, Any]) -> dict[str, Any]:
        retention_days = arguments.get("retentionDays")
        outcome = await self.delete_engine.safe_delete(
            path=_require(arguments, "path"),
            user_id=str(_require(arguments, "userId")),
            skip_confirmation=bool(arguments.get("skipConfirmation", False)),
            retention_days=int(retention_days) if retention_days is not None else None,
            reason=str(arguments.get("reason") or ""),
            permanent=bool(arguments.get("permanent", False)),
        )
        return outcome.to_dict()

    async def _delete_item(self, arguments: dict[str, Any]) -> dict[str, Any]:
        path = _require(arguments, "path")
        logger.warning(f"Legacy delete operation used for {path}; use safe_delete_item instead")
        outcome = await self.delete_engine.delete_item(path)
        return outcome.to_dict()

    # ------------------------------------------------------------------
    # Sharing and account tools
    # ------------------------------------------------------------------

    async def _get_sharing_link(self, arguments: dict[str, Any]) -> dict[str, Any]:
        path = format_dropbox_path(_require(arguments, "path"))
        try:
            link = await self.client.create_shared_link(path)
        except ProviderError as e:
            if "shared_link_already_exists" not in (e.error_summary or ""):
                raise
            links = await self.client.list_shared_links(path)
            if not links:
                raise
            existing = links[0]
            return {
                "url": existing.get("url"),
                "path": existing.get("path_lower"),
                "visibility": _visibility(existing),
                "note": "Existing shared link retrieved",
            }

        return {
            "url": link.get("url"),
            "path": link.get("path_lower"),
            "visibility": _visibility(link),
        }

    async def _get_account_info(self, arguments: dict[str, Any]) -> dict[str, Any]:
        account = await self.client.get_current_account()
        team = account.get("team")
        return {
            "account_id": account.get("account_id"),
            "name": account.get("name"),
            "email": account.get("email"),
            "email_verified": account.get("email_verified"),
            "profile_photo_url": account.get("profile_photo_url"),
            "country": account.get("country"),
            "locale": account.get("locale"),
            "team": {"name": team.get("name"), "team_id": team.get("id")} if team else None,
            "account_type": (account.get("account_type") or {}).get(".tag", "unknown"),
        }

    async def run(self) -> None:
        """Run the MCP server using stdio transport."""
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
        finally:
            await self.close()


def main(settings: Settings | None = None) -> None:
    """Entry point for the Dropbox MCP server.

    Raises:
        ConfigurationError: If required configuration is missing or invalid.
    """
    if settings is None:
        load_env_file()
        settings = Settings.from_env()
    settings.require_oauth()
    audit = configure_logging(settings)
    server = DropboxServer.from_settings(settings, audit)
    asyncio.run(server.run())

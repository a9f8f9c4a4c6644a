"""Thin async client for the Dropbox HTTP API v2.

Every call fetches a bearer token from the TokenManager, runs under the
configured request timeout and converts HTTP failures into ProviderError
with a stable ``kind``.
"""

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from dbx_mcp.errors import ErrorKind, ProviderError

if TYPE_CHECKING:
    from dbx_mcp.auth.token_manager import TokenManager
    from dbx_mcp.config import Settings

logger = logging.getLogger(__name__)

API_BASE = "https://api.dropboxapi.com/2"
CONTENT_BASE = "https://content.dropboxapi.com/2"
DEFAULT_TIMEOUT = 30.0

ERROR_MESSAGES = {
    ErrorKind.NOT_FOUND: "The specified path was not found in Dropbox",
    ErrorKind.MALFORMED_PATH: "The path format is invalid",
    ErrorKind.INSUFFICIENT_PERMISSIONS: "The access token does not have the required permissions",
    ErrorKind.INVALID_ACCESS_TOKEN: "The access token is invalid or has expired",
    ErrorKind.PROVIDER_RATE_LIMIT: "Rate limit exceeded. Please try again later",
    ErrorKind.PROVIDER_SERVER_ERROR: "Dropbox server error occurred",
    ErrorKind.PROVIDER_NETWORK_ERROR: "Network error occurred while connecting to Dropbox",
}

# error_summary fragments, checked in order
_SUMMARY_PATTERNS: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("path_not_found", "not_found"), ErrorKind.NOT_FOUND),
    (("path_malformed", "malformed_path"), ErrorKind.MALFORMED_PATH),
    (("insufficient_permissions", "missing_scope"), ErrorKind.INSUFFICIENT_PERMISSIONS),
    (("invalid_access_token", "expired_access_token"), ErrorKind.INVALID_ACCESS_TOKEN),
    (("too_many_requests", "too_many_write_operations", "rate_limit"), ErrorKind.PROVIDER_RATE_LIMIT),
]

_RETRYABLE_KINDS = {
    ErrorKind.PROVIDER_RATE_LIMIT,
    ErrorKind.PROVIDER_SERVER_ERROR,
    ErrorKind.PROVIDER_NETWORK_ERROR,
}


def _error_summary(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("error_summary") or body.get("error") or "")
    return str(body)


def classify_provider_error(error: httpx.HTTPError) -> ProviderError:
    """Map an httpx failure to a ProviderError.

    Dropbox reports endpoint errors as HTTP 409 with an ``error_summary``
    such as ``path/not_found/..``; auth, throttling and server failures use
    401/403, 429 and 5xx.
    """
    if not isinstance(error, httpx.HTTPStatusError):
        return ProviderError(
            ERROR_MESSAGES[ErrorKind.PROVIDER_NETWORK_ERROR],
            kind=ErrorKind.PROVIDER_NETWORK_ERROR,
            retryable=True,
        )

    status_code = error.response.status_code
    summary = _error_summary(error.response)

    kind: ErrorKind | None = None
    for fragments, candidate in _SUMMARY_PATTERNS:
        if any(fragment in summary for fragment in fragments):
            kind = candidate
            break
    if kind is None:
        if status_code == 401:
            kind = ErrorKind.INVALID_ACCESS_TOKEN
        elif status_code == 403:
            kind = ErrorKind.INSUFFICIENT_PERMISSIONS
        elif status_code == 429:
            kind = ErrorKind.PROVIDER_RATE_LIMIT
        elif status_code >= 500:
            kind = ErrorKind.PROVIDER_SERVER_ERROR

    if kind is None:
        return ProviderError(
            f"Dropbox API error: {summary or status_code}",
            kind=ErrorKind.PROVIDER_ERROR,
            status_code=status_code,
            error_summary=summary,
        )
    return ProviderError(
        ERROR_MESSAGES[kind],
        kind=kind,
        retryable=kind in _RETRYABLE_KINDS,
        status_code=status_code,
        error_summary=summary,
    )


class DropboxClient:
    """Async Dropbox API client.

    Attributes:
        token_manager: Source of bearer tokens.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        token_manager: "TokenManager",
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token_manager = token_manager
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls, settings: "Settings", token_manager: "TokenManager") -> "DropboxClient":
        return cls(token_manager, timeout=settings.dropbox.request_timeout)

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client with connection pooling."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                http2=True,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                timeout=httpx.Timeout(self.timeout, connect=10.0),
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _send(
        self,
        url: str,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        access_token = await self.token_manager.get_valid_access_token()
        client = await self._get_http_client()

        request_headers = {"Authorization": f"Bearer {access_token}"}
        if headers:
            request_headers.update(headers)

        try:
            response = await client.post(
                url, content=content, headers=request_headers, timeout=self.timeout
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            error = classify_provider_error(e)
            logger.error(f"Dropbox API error on {url}: {error.error_summary or e}")
            raise error from e
        return response

    async def _rpc(self, route: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call an RPC-style endpoint with a JSON body."""
        response = await self._send(
            f"{API_BASE}/{route}",
            content=json.dumps(args),
            headers={"Content-Type": "application/json"},
        )
        result: dict[str, Any] = response.json()
        return result

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def list_folder(self, path: str, recursive: bool = False) -> list[dict[str, Any]]:
        """List a folder, following pagination cursors."""
        result = await self._rpc(
            "files/list_folder",
            {
                "path": path,
                "recursive": recursive,
                "include_media_info": True,
                "include_deleted": False,
                "include_has_explicit_shared_members": False,
                "include_mounted_folders": True,
                "include_non_downloadable_files": True,
            },
        )
        entries: list[dict[str, Any]] = list(result.get("entries", []))
        while result.get("has_more"):
            result = await self._rpc("files/list_folder/continue", {"cursor": result["cursor"]})
            entries.extend(result.get("entries", []))
        return entries

    async def upload(self, path: str, content: bytes, mode: str = "overwrite") -> dict[str, Any]:
        response = await self._send(
            f"{CONTENT_BASE}/files/upload",
            content=content,
            headers={
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps({"path": path, "mode": {".tag": mode}}),
            },
        )
        result: dict[str, Any] = response.json()
        return result

    async def download(self, path: str) -> tuple[dict[str, Any], bytes]:
        """Download a file.

        Returns:
            Tuple of (file metadata, file bytes).
        """
        response = await self._send(
            f"{CONTENT_BASE}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": path})},
        )
        metadata: dict[str, Any] = json.loads(response.headers.get("Dropbox-API-Result", "{}"))
        return metadata, response.content

    async def get_metadata(
        self,
        path: str,
        include_media_info: bool = False,
        include_has_explicit_shared_members: bool = False,
    ) -> dict[str, Any]:
        return await self._rpc(
            "files/get_metadata",
            {
                "path": path,
                "include_media_info": include_media_info,
                "include_deleted": False,
                "include_has_explicit_shared_members": include_has_explicit_shared_members,
            },
        )

    async def delete(self, path: str) -> dict[str, Any]:
        """Permanently delete via files/delete_v2."""
        result = await self._rpc("files/delete_v2", {"path": path})
        return dict(result.get("metadata", {}))

    async def move(self, from_path: str, to_path: str, autorename: bool = False) -> dict[str, Any]:
        result = await self._rpc(
            "files/move_v2",
            {
                "from_path": from_path,
                "to_path": to_path,
                "allow_shared_folder": True,
                "autorename": autorename,
                "allow_ownership_transfer": False,
            },
        )
        return dict(result.get("metadata", {}))

    async def copy(self, from_path: str, to_path: str, autorename: bool = False) -> dict[str, Any]:
        result = await self._rpc(
            "files/copy_v2",
            {
                "from_path": from_path,
                "to_path": to_path,
                "allow_shared_folder": True,
                "autorename": autorename,
                "allow_ownership_transfer": False,
            },
        )
        return dict(result.get("metadata", {}))

    async def create_folder(self, path: str, autorename: bool = False) -> dict[str, Any]:
        result = await self._rpc("files/create_folder_v2", {"path": path, "autorename": autorename})
        return dict(result.get("metadata", {}))

    async def search(
        self,
        query: str,
        path: str = "",
        max_results: int = 20,
        filename_only: bool = True,
    ) -> list[dict[str, Any]]:
        """Run files/search_v2 and return the raw matches."""
        result = await self._rpc(
            "files/search_v2",
            {
                "query": query,
                "options": {
                    "path": path,
                    "max_results": max_results,
                    "file_status": {".tag": "active"},
                    "filename_only": filename_only,
                },
                "match_field_options": {"include_highlights": True},
            },
        )
        return list(result.get("matches", []))

    # ------------------------------------------------------------------
    # Sharing and account
    # ------------------------------------------------------------------

    async def create_shared_link(self, path: str) -> dict[str, Any]:
        return await self._rpc(
            "sharing/create_shared_link_with_settings",
            {
                "path": path,
                "settings": {
                    "requested_visibility": {".tag": "public"},
                    "audience": {".tag": "public"},
                    "access": {".tag": "viewer"},
                },
            },
        )

    async def list_shared_links(self, path: str) -> list[dict[str, Any]]:
        result = await self._rpc("sharing/list_shared_links", {"path": path, "direct_only": True})
        return list(result.get("links", []))

    async def get_current_account(self) -> dict[str, Any]:
        return await self._rpc("users/get_current_account")

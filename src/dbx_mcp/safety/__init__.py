"""Deletion guard rails: path policy, daily quota, confirmation and recycle bin."""

from dbx_mcp.safety.delete_engine import LEGACY_USER_ID, SafeDeleteEngine, StorageClient
from dbx_mcp.safety.models import (
    DeleteOperation,
    DeleteOutcome,
    DeleteRecord,
    DeleteStatus,
    VersionMetadata,
)
from dbx_mcp.safety.path_policy import PathPolicy, format_dropbox_path
from dbx_mcp.safety.rate_limit import DeleteRateLimiter

__all__ = [
    "SafeDeleteEngine",
    "StorageClient",
    "LEGACY_USER_ID",
    "PathPolicy",
    "format_dropbox_path",
    "DeleteRateLimiter",
    "DeleteRecord",
    "DeleteOutcome",
    "DeleteOperation",
    "DeleteStatus",
    "VersionMetadata",
]

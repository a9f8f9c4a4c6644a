"""Allow/block list checks for deletions.

A path matches a rule when it equals the rule or lies beneath it, ignoring
letter case. Blocked rules are checked first and win over allowed ones.
"""

import logging
import re
from collections.abc import Iterable

from dbx_mcp.errors import ErrorKind, PathPolicyError

logger = logging.getLogger(__name__)

_EDGE_SLASHES = re.compile(r"^/+|/+$")


def format_dropbox_path(path: str | None) -> str:
    """Normalize a path for the Dropbox API.

    The root is the empty string; anything else gets exactly one leading
    slash and no trailing slash.

    Examples:
        >>> format_dropbox_path("/")
        ''
        >>> format_dropbox_path("docs/reports/")
        '/docs/reports'
    """
    if not path or path == "/":
        return ""
    stripped = _EDGE_SLASHES.sub("", path)
    return f"/{stripped}" if stripped else ""


def _matches(path: str, rules: Iterable[str]) -> bool:
    # Dropbox paths are case-insensitive.
    path = path.lower()
    for rule in rules:
        prefix = format_dropbox_path(rule).lower()
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


class PathPolicy:
    """Decides whether a path may be deleted.

    Attributes:
        allowed_paths: Paths (and their subtrees) where deletion is permitted.
        blocked_paths: Paths (and their subtrees) that are never deleted.
    """

    def __init__(self, allowed_paths: Iterable[str], blocked_paths: Iterable[str]) -> None:
        self.allowed_paths = list(allowed_paths)
        self.blocked_paths = list(blocked_paths)

    def check(self, path: str) -> str:
        """Validate a path for deletion.

        Returns:
            The normalized path.

        Raises:
            PathPolicyError: With kind PATH_BLOCKED or PATH_NOT_ALLOWED.
        """
        normalized = format_dropbox_path(path)
        if _matches(normalized, self.blocked_paths):
            logger.warning(f"Attempted access to blocked path: {normalized}")
            raise PathPolicyError(
                f"Path {path} is blocked and cannot be deleted",
                kind=ErrorKind.PATH_BLOCKED,
            )
        if not _matches(normalized, self.allowed_paths):
            logger.warning(f"Path not in allowed paths: {normalized}")
            raise PathPolicyError(
                f"Path {path} is not in allowed paths for deletion",
                kind=ErrorKind.PATH_NOT_ALLOWED,
            )
        return normalized
